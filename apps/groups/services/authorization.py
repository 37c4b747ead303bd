"""
Role authorization service.

Every mutating group operation calls ``require_role`` before touching
state. The returned membership is handed back so callers do not look it
up twice.
"""

from uuid import UUID

from django.utils import timezone

from apps.groups.models import GroupMembership, MemberStatus

from . import roles
from .exceptions import InsufficientPermissionsError, NotMemberError


def require_role(
    *,
    group_id: UUID,
    user_id: UUID,
    min_role: str,
    for_update: bool = False,
    record_activity: bool = True,
) -> GroupMembership:
    """
    Return the caller's active membership if its role is at least ``min_role``.

    Also records the caller's activity in the group unless
    ``record_activity`` is off, which read-only callers use.

    Args:
        group_id: UUID of the group
        user_id: UUID of the caller
        min_role: Lowest role allowed to proceed
        for_update: Lock the membership row (inside a transaction)
        record_activity: Stamp ``last_activity_at`` on success

    Returns:
        The caller's active GroupMembership

    Raises:
        NotMemberError: If the caller has no active membership
        InsufficientPermissionsError: If the caller's role ranks below ``min_role``
    """
    queryset = GroupMembership.objects.filter(
        group_id=group_id,
        user_id=user_id,
        status=MemberStatus.ACTIVE,
    )
    if for_update:
        queryset = queryset.select_for_update()

    membership = queryset.first()
    if membership is None:
        raise NotMemberError()

    if not roles.at_least(membership.role, min_role):
        raise InsufficientPermissionsError(
            f"This action requires the {min_role} role or higher"
        )

    if record_activity:
        now = timezone.now()
        GroupMembership.objects.filter(pk=membership.pk).update(last_activity_at=now)
        membership.last_activity_at = now
    return membership
