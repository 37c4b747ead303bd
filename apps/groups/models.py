# ==========================================
# apps/groups/models.py
# ==========================================

from dataclasses import dataclass
from datetime import datetime
from typing import Optional
import uuid

from django.db import models
from django.db.models import F, Q
from django.utils import timezone


class MemberRole(models.TextChoices):
    MEMBER = 'member', 'Member'
    MODERATOR = 'moderator', 'Moderator'
    ADMIN = 'admin', 'Admin'
    OWNER = 'owner', 'Owner'


class MemberStatus(models.TextChoices):
    ACTIVE = 'active', 'Active'
    PENDING = 'pending', 'Pending'
    BANNED = 'banned', 'Banned'
    LEFT = 'left', 'Left'


class GroupPrivacy(models.TextChoices):
    PUBLIC = 'public', 'Public'
    PRIVATE = 'private', 'Private'
    INVITE_ONLY = 'invite-only', 'Invite only'


class GroupType(models.TextChoices):
    CROP = 'crop', 'Crop'
    REGION = 'region', 'Region'
    TOPIC = 'topic', 'Topic'
    PRACTICE = 'practice', 'Practice'


class InvitationStatus(models.TextChoices):
    PENDING = 'pending', 'Pending'
    ACCEPTED = 'accepted', 'Accepted'
    DECLINED = 'declined', 'Declined'
    EXPIRED = 'expired', 'Expired'
    CANCELLED = 'cancelled', 'Cancelled'


@dataclass(frozen=True)
class BanInfo:
    """Ban metadata, only present on a banned membership."""

    reason: str
    banned_by_id: Optional[uuid.UUID]
    banned_at: datetime


class Group(models.Model):
    """Farming community group."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=100)
    slug = models.SlugField(max_length=120, unique=True, allow_unicode=True)
    description = models.TextField(blank=True)
    group_type = models.CharField(max_length=20, choices=GroupType.choices, default=GroupType.TOPIC)
    privacy = models.CharField(max_length=20, choices=GroupPrivacy.choices, default=GroupPrivacy.PUBLIC)
    crops = models.JSONField(default=list, blank=True)
    region = models.CharField(max_length=100, blank=True)
    tags = models.JSONField(default=list, blank=True)
    rules = models.JSONField(default=list, blank=True)

    created_by = models.ForeignKey(
        'accounts.User', on_delete=models.SET_NULL, null=True, related_name='created_groups'
    )
    owner = models.ForeignKey(
        'accounts.User', on_delete=models.PROTECT, related_name='owned_groups'
    )
    admins = models.ManyToManyField('accounts.User', related_name='administered_groups', blank=True)
    moderators = models.ManyToManyField('accounts.User', related_name='moderated_groups', blank=True)

    # Caches maintained alongside membership changes
    member_count = models.PositiveIntegerField(default=0)
    post_count = models.PositiveIntegerField(default=0)

    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'groups'
        indexes = [
            models.Index(fields=['is_active', '-member_count'], name='groups_active_members_idx'),
            models.Index(fields=['owner', 'created_at'], name='groups_owner_created_idx'),
            models.Index(fields=['group_type', 'is_active'], name='groups_type_active_idx'),
        ]
        ordering = ['-created_at']

    def __str__(self):
        return self.name


class GroupMembership(models.Model):
    """A user's role and status in one group. Never deleted once active."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    group = models.ForeignKey(Group, on_delete=models.CASCADE, related_name='memberships')
    user = models.ForeignKey('accounts.User', on_delete=models.CASCADE, related_name='group_memberships')
    role = models.CharField(max_length=20, choices=MemberRole.choices, default=MemberRole.MEMBER)
    status = models.CharField(max_length=20, choices=MemberStatus.choices, default=MemberStatus.ACTIVE)
    joined_at = models.DateTimeField(default=timezone.now)
    invited_by = models.ForeignKey(
        'accounts.User', on_delete=models.SET_NULL, null=True, blank=True, related_name='+'
    )

    ban_reason = models.CharField(max_length=500, blank=True)
    banned_by = models.ForeignKey(
        'accounts.User', on_delete=models.SET_NULL, null=True, blank=True, related_name='+'
    )
    banned_at = models.DateTimeField(null=True, blank=True)

    last_activity_at = models.DateTimeField(null=True, blank=True)

    notify_new_posts = models.BooleanField(default=True)
    notify_mentions = models.BooleanField(default=True)
    notify_announcements = models.BooleanField(default=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'group_memberships'
        constraints = [
            models.UniqueConstraint(fields=['group', 'user'], name='unique_group_membership'),
            models.UniqueConstraint(
                fields=['group'],
                condition=Q(role='owner'),
                name='unique_group_owner',
            ),
            models.CheckConstraint(
                condition=(
                    Q(status='banned', banned_at__isnull=False)
                    | (
                        ~Q(status='banned')
                        & Q(banned_at__isnull=True, banned_by__isnull=True, ban_reason='')
                    )
                ),
                name='membership_ban_metadata_matches_status',
            ),
        ]
        indexes = [
            models.Index(fields=['group', 'status', 'role'], name='membership_group_status_idx'),
            models.Index(fields=['user', 'status'], name='membership_user_status_idx'),
            models.Index(fields=['group', 'status', '-created_at'], name='membership_group_recent_idx'),
        ]
        ordering = ['joined_at']

    def __str__(self):
        return f"{self.user_id} in {self.group_id} ({self.role}, {self.status})"

    @property
    def ban(self) -> Optional[BanInfo]:
        if self.status != MemberStatus.BANNED:
            return None
        return BanInfo(reason=self.ban_reason, banned_by_id=self.banned_by_id, banned_at=self.banned_at)

    @property
    def notification_preferences(self) -> dict:
        return {
            'new_posts': self.notify_new_posts,
            'mentions': self.notify_mentions,
            'announcements': self.notify_announcements,
        }


class GroupInvitation(models.Model):
    """
    Offer of membership.

    A direct invitation names ``invited_user`` and is single use; a code
    invitation leaves it empty and can be redeemed up to ``max_uses`` times.
    Invitations are kept for audit and never deleted.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    group = models.ForeignKey(Group, on_delete=models.CASCADE, related_name='invitations')
    invited_by = models.ForeignKey(
        'accounts.User', on_delete=models.CASCADE, related_name='sent_group_invitations'
    )
    invited_user = models.ForeignKey(
        'accounts.User', on_delete=models.CASCADE, null=True, blank=True,
        related_name='received_group_invitations',
    )
    invite_code = models.CharField(max_length=16, unique=True, editable=False)
    status = models.CharField(
        max_length=20, choices=InvitationStatus.choices, default=InvitationStatus.PENDING
    )
    max_uses = models.PositiveIntegerField(default=1)
    used_count = models.PositiveIntegerField(default=0)
    expires_at = models.DateTimeField()
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'group_invitations'
        constraints = [
            models.CheckConstraint(
                condition=Q(used_count__lte=F('max_uses')),
                name='invitation_used_count_within_max_uses',
            ),
            models.CheckConstraint(
                condition=Q(max_uses__gte=1),
                name='invitation_max_uses_positive',
            ),
            models.CheckConstraint(
                condition=Q(invited_user__isnull=True) | Q(max_uses=1),
                name='direct_invitation_single_use',
            ),
            models.UniqueConstraint(
                fields=['group', 'invited_user'],
                condition=Q(status='pending', invited_user__isnull=False),
                name='unique_pending_direct_invitation',
            ),
        ]
        indexes = [
            models.Index(fields=['group', 'status', '-created_at'], name='invitation_group_status_idx'),
            models.Index(fields=['group', 'invited_user', 'status'], name='invitation_group_user_idx'),
            models.Index(fields=['invited_by', '-created_at'], name='invitation_issuer_recent_idx'),
        ]
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.invite_code} ({self.status})"

    @property
    def is_direct(self) -> bool:
        return self.invited_user_id is not None

    @property
    def remaining_uses(self) -> int:
        return max(0, self.max_uses - self.used_count)

    def is_expired(self, now=None) -> bool:
        return (now or timezone.now()) > self.expires_at
