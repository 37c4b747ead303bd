from rest_framework import serializers

from apps.accounts.models import User
from apps.groups.conf import groups_setting
from .models import (
    Group,
    GroupInvitation,
    GroupMembership,
    GroupPrivacy,
    GroupType,
    InvitationStatus,
    MemberRole,
    MemberStatus,
)


class UserMinimalSerializer(serializers.ModelSerializer):
    """Minimal user info for nested serialization."""

    display_name = serializers.SerializerMethodField()

    class Meta:
        model = User
        fields = ['id', 'email', 'display_name']
        read_only_fields = fields

    def get_display_name(self, obj):
        return obj.get_display_name()


class BanSerializer(serializers.Serializer):
    reason = serializers.CharField(read_only=True)
    banned_by_id = serializers.UUIDField(read_only=True)
    banned_at = serializers.DateTimeField(read_only=True)


class GroupMemberSerializer(serializers.ModelSerializer):
    """Detailed member information."""

    user = UserMinimalSerializer(read_only=True)
    invited_by = UserMinimalSerializer(read_only=True)
    ban = BanSerializer(read_only=True, allow_null=True)
    notification_preferences = serializers.DictField(child=serializers.BooleanField(), read_only=True)

    class Meta:
        model = GroupMembership
        fields = [
            'id',
            'user',
            'role',
            'status',
            'joined_at',
            'invited_by',
            'ban',
            'last_activity_at',
            'notification_preferences',
        ]
        read_only_fields = fields


class GroupSerializer(serializers.ModelSerializer):
    """Main serializer for groups."""

    owner = UserMinimalSerializer(read_only=True)
    user_role = serializers.SerializerMethodField()

    class Meta:
        model = Group
        fields = [
            'id',
            'name',
            'slug',
            'description',
            'group_type',
            'privacy',
            'crops',
            'region',
            'tags',
            'rules',
            'owner',
            'member_count',
            'post_count',
            'user_role',
            'created_at',
            'updated_at',
        ]
        read_only_fields = fields

    def get_user_role(self, obj):
        """Current user's role, if they are an active member."""
        request = self.context.get('request')
        if not (request and request.user.is_authenticated):
            return None
        membership = obj.memberships.filter(
            user=request.user, status=MemberStatus.ACTIVE
        ).only('role').first()
        return membership.role if membership else None


class GroupListSerializer(serializers.ModelSerializer):
    """Lightweight serializer for list views."""

    owner = UserMinimalSerializer(read_only=True)

    class Meta:
        model = Group
        fields = [
            'id',
            'name',
            'slug',
            'description',
            'group_type',
            'privacy',
            'crops',
            'region',
            'owner',
            'member_count',
            'created_at',
        ]
        read_only_fields = fields


class GroupCreateSerializer(serializers.Serializer):
    """Input for creating a group."""

    name = serializers.CharField(min_length=3, max_length=100)
    description = serializers.CharField(required=False, allow_blank=True, max_length=1000, default='')
    privacy = serializers.ChoiceField(choices=GroupPrivacy.choices, default=GroupPrivacy.PUBLIC)
    group_type = serializers.ChoiceField(choices=GroupType.choices, default=GroupType.TOPIC)
    crops = serializers.ListField(child=serializers.CharField(max_length=50), required=False, default=list)
    region = serializers.CharField(required=False, allow_blank=True, max_length=100, default='')
    tags = serializers.ListField(child=serializers.CharField(max_length=50), required=False, default=list)
    rules = serializers.ListField(child=serializers.CharField(max_length=500), required=False, default=list)


class GroupUpdateSerializer(serializers.Serializer):
    """Partial update input; omitted fields are left unchanged."""

    name = serializers.CharField(min_length=3, max_length=100, required=False)
    description = serializers.CharField(required=False, allow_blank=True, max_length=1000)
    privacy = serializers.ChoiceField(choices=GroupPrivacy.choices, required=False)
    group_type = serializers.ChoiceField(choices=GroupType.choices, required=False)
    region = serializers.CharField(required=False, allow_blank=True, max_length=100)
    tags = serializers.ListField(child=serializers.CharField(max_length=50), required=False)
    rules = serializers.ListField(child=serializers.CharField(max_length=500), required=False)


class MemberFilterSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=MemberStatus.choices, default=MemberStatus.ACTIVE)
    role = serializers.ChoiceField(choices=MemberRole.choices, required=False)


class GroupSearchSerializer(serializers.Serializer):
    """Query parameters for group search."""

    q = serializers.CharField(min_length=2, max_length=100, trim_whitespace=True)
    group_type = serializers.ChoiceField(choices=GroupType.choices, required=False)
    privacy = serializers.ChoiceField(choices=GroupPrivacy.choices, required=False)
    sort_by = serializers.ChoiceField(
        choices=['relevance', 'member_count', 'created_at'],
        default='relevance',
    )


class UpdateMemberRoleSerializer(serializers.Serializer):
    """Serializer for updating member role."""

    role = serializers.ChoiceField(
        choices=[MemberRole.MEMBER, MemberRole.MODERATOR, MemberRole.ADMIN],
        required=True,
    )


class BanMemberSerializer(serializers.Serializer):
    user_id = serializers.UUIDField()
    reason = serializers.CharField(max_length=500)


class TransferOwnershipSerializer(serializers.Serializer):
    new_owner_id = serializers.UUIDField()


class NotificationPreferencesSerializer(serializers.Serializer):
    new_posts = serializers.BooleanField(required=False)
    mentions = serializers.BooleanField(required=False)
    announcements = serializers.BooleanField(required=False)


class JoinRequestDecisionSerializer(serializers.Serializer):
    user_id = serializers.UUIDField()
    action = serializers.ChoiceField(choices=['approve', 'reject'])


class InvitationSerializer(serializers.ModelSerializer):
    invited_by = UserMinimalSerializer(read_only=True)
    invited_user = UserMinimalSerializer(read_only=True)
    is_direct = serializers.BooleanField(read_only=True)
    remaining_uses = serializers.IntegerField(read_only=True)

    class Meta:
        model = GroupInvitation
        fields = [
            'id',
            'group',
            'invite_code',
            'invited_by',
            'invited_user',
            'is_direct',
            'status',
            'max_uses',
            'used_count',
            'remaining_uses',
            'expires_at',
            'created_at',
        ]
        read_only_fields = fields


class CreateInvitationSerializer(serializers.Serializer):
    """
    Input for issuing an invitation.

    With ``invited_user_id`` a direct invitation is issued and ``max_uses``
    must be omitted; without it a shareable code is created.
    """

    invited_user_id = serializers.UUIDField(required=False)
    max_uses = serializers.IntegerField(required=False, min_value=1)
    expires_at = serializers.DateTimeField(required=False)

    def validate_max_uses(self, value):
        limit = groups_setting('CODE_INVITE_MAX_USES_LIMIT')
        if value > limit:
            raise serializers.ValidationError(f"Ensure this value is less than or equal to {limit}.")
        return value

    def validate(self, attrs):
        if attrs.get('invited_user_id') and attrs.get('max_uses', 1) != 1:
            raise serializers.ValidationError({
                'max_uses': 'Direct invitations are single use'
            })
        return attrs


class InvitationFilterSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=InvitationStatus.choices, required=False)


class InvitationPreviewSerializer(serializers.Serializer):
    group = GroupListSerializer(read_only=True)
    invite_code = serializers.CharField(read_only=True)
    is_direct = serializers.BooleanField(read_only=True)
    expires_at = serializers.DateTimeField(read_only=True)
    remaining_uses = serializers.IntegerField(read_only=True)
    is_valid = serializers.BooleanField(read_only=True)
    reason = serializers.CharField(read_only=True, allow_null=True)
