from rest_framework import permissions

from apps.groups.models import GroupPrivacy, MemberStatus


class CanViewGroup(permissions.BasePermission):
    """
    Permission: Public groups are visible to everyone signed in; private and
    invite-only groups only to their active members.
    """

    message = 'This group is only visible to its members'

    def has_object_permission(self, request, view, obj):
        # obj is a Group instance
        if obj.privacy == GroupPrivacy.PUBLIC:
            return True
        return obj.memberships.filter(user=request.user, status=MemberStatus.ACTIVE).exists()
