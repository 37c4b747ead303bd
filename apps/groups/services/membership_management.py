"""
Membership management service.

Owns the (group, user) membership record and every status transition on
it. Writes go through conditional updates keyed on the expected current
status, so two concurrent writers cannot both apply a transition.

State machine::

    (none)  --join / invite-->  active
    (none)  --request-->        pending
    pending --approve-->        active
    pending --reject-->         left
    active  --ban-->            banned
    active  --leave-->          left
    banned  --unban-->          active
    left    --rejoin-->         active
"""

import logging
from typing import Optional, Union
from uuid import UUID

from django.db import IntegrityError, transaction
from django.db.models import Case, IntegerField, QuerySet, Value, When
from django.utils import timezone

from apps.accounts.models import User
from apps.groups import signals
from apps.groups.models import (
    Group,
    GroupMembership,
    GroupPrivacy,
    MemberRole,
    MemberStatus,
)

from . import roles
from .authorization import require_role
from .exceptions import (
    AlreadyMemberError,
    BannedMemberError,
    InsufficientPermissionsError,
    InvalidInputError,
    InvalidStatusTransitionError,
    InviteOnlyGroupError,
    MemberNotFoundError,
    NotMemberError,
    OwnerActionError,
    PendingRequestExistsError,
    SelfActionError,
)
from .group_management import increment_member_count, resolve_group, sync_staff_sets

logger = logging.getLogger(__name__)

BAN_REASON_MAX_LENGTH = 500

ALLOWED_TRANSITIONS = {
    MemberStatus.PENDING: {MemberStatus.ACTIVE, MemberStatus.BANNED, MemberStatus.LEFT},
    MemberStatus.ACTIVE: {MemberStatus.BANNED, MemberStatus.LEFT},
    MemberStatus.BANNED: {MemberStatus.ACTIVE},
    MemberStatus.LEFT: {MemberStatus.ACTIVE, MemberStatus.BANNED},
}

ROLE_ORDER = Case(
    *[When(role=role, then=Value(rank)) for role, rank in roles.ROLE_RANKS.items()],
    output_field=IntegerField(),
)


def _same_user(a, b) -> bool:
    return str(a) == str(b)


# =============================================================================
# Store primitives
# =============================================================================

def find_membership(
    *,
    group_id: UUID,
    user_id: UUID,
    for_update: bool = False,
) -> Optional[GroupMembership]:
    queryset = GroupMembership.objects.filter(group_id=group_id, user_id=user_id)
    if for_update:
        queryset = queryset.select_for_update()
    return queryset.first()


def is_active_member(*, group_id: UUID, user_id: UUID) -> bool:
    return GroupMembership.objects.filter(
        group_id=group_id,
        user_id=user_id,
        status=MemberStatus.ACTIVE,
    ).exists()


def check_admissible(membership: Optional[GroupMembership]) -> None:
    """
    Raise if an existing membership blocks a join or invitation.

    No record, or a ``left`` record, is admissible.
    """
    if membership is None or membership.status == MemberStatus.LEFT:
        return
    if membership.status == MemberStatus.ACTIVE:
        raise AlreadyMemberError()
    if membership.status == MemberStatus.PENDING:
        raise PendingRequestExistsError()
    if membership.status == MemberStatus.BANNED:
        raise BannedMemberError()


def create_or_reactivate(
    *,
    group: Group,
    user_id: UUID,
    role: str = MemberRole.MEMBER,
    invited_by_id: Optional[UUID] = None,
    status: str = MemberStatus.ACTIVE,
) -> GroupMembership:
    """
    Insert a membership, or flip an existing ``left`` record back in.

    Reactivation refreshes ``joined_at``, overwrites ``invited_by`` and
    resets the role. Counters are the caller's responsibility.

    Args:
        group: Group being joined
        user_id: UUID of the joining user
        role: Role to grant
        invited_by_id: Inviter, if joining through an invitation
        status: ``active``, or ``pending`` for a join request

    Returns:
        The created or reactivated GroupMembership

    Raises:
        AlreadyMemberError: If an active record exists, or the unique
            constraint caught a concurrent insert
        PendingRequestExistsError: If a pending request exists
        BannedMemberError: If the user is banned from the group
    """
    now = timezone.now()
    existing = find_membership(group_id=group.id, user_id=user_id, for_update=True)

    if existing is None:
        try:
            with transaction.atomic():
                return GroupMembership.objects.create(
                    group=group,
                    user_id=user_id,
                    role=role,
                    status=status,
                    joined_at=now,
                    invited_by_id=invited_by_id,
                )
        except IntegrityError:
            # unique (group, user) caught a concurrent join
            raise AlreadyMemberError()

    check_admissible(existing)

    updated = GroupMembership.objects.filter(
        pk=existing.pk,
        status=MemberStatus.LEFT,
    ).update(
        status=status,
        role=role,
        joined_at=now,
        invited_by_id=invited_by_id,
        ban_reason='',
        banned_by_id=None,
        banned_at=None,
        updated_at=now,
    )
    if not updated:
        raise AlreadyMemberError("Membership changed concurrently, please retry")

    existing.refresh_from_db()
    return existing


def set_status(
    membership: GroupMembership,
    new_status: str,
    *,
    actor_id: Optional[UUID] = None,
    reason: str = '',
) -> GroupMembership:
    """
    Apply a validated status transition.

    Banning needs ``actor_id`` and a non-empty ``reason``; every other
    transition clears ban metadata. Moving into ``active`` from
    ``pending`` or ``left`` refreshes ``joined_at``.

    Raises:
        InvalidStatusTransitionError: If the transition is not allowed, or
            the record changed status under us
        InvalidInputError: If ban metadata is missing or too long
    """
    old_status = membership.status
    if new_status not in ALLOWED_TRANSITIONS.get(old_status, ()):
        raise InvalidStatusTransitionError(
            f"Cannot move membership from {old_status} to {new_status}"
        )

    now = timezone.now()
    changes = {'status': new_status, 'updated_at': now}

    if new_status == MemberStatus.BANNED:
        reason = (reason or '').strip()
        if actor_id is None or not reason:
            raise InvalidInputError("Banning requires a reason and the banning user")
        if len(reason) > BAN_REASON_MAX_LENGTH:
            raise InvalidInputError(
                f"Ban reason cannot exceed {BAN_REASON_MAX_LENGTH} characters"
            )
        changes.update(ban_reason=reason, banned_by_id=actor_id, banned_at=now)
    else:
        changes.update(ban_reason='', banned_by_id=None, banned_at=None)

    if new_status == MemberStatus.ACTIVE and old_status in (MemberStatus.PENDING, MemberStatus.LEFT):
        changes['joined_at'] = now

    updated = GroupMembership.objects.filter(pk=membership.pk, status=old_status).update(**changes)
    if not updated:
        raise InvalidStatusTransitionError("Membership status changed concurrently, please retry")

    membership.refresh_from_db()
    return membership


def list_members(
    *,
    group: Group,
    status: Optional[str] = MemberStatus.ACTIVE,
    role: Optional[str] = None,
) -> QuerySet[GroupMembership]:
    """Memberships of ``group``, highest role first, then by join date."""
    queryset = GroupMembership.objects.filter(group=group)
    if status:
        queryset = queryset.filter(status=status)
    if role:
        queryset = queryset.filter(role=role)
    return (
        queryset
        .select_related('user', 'invited_by')
        .annotate(role_rank=ROLE_ORDER)
        .order_by('-role_rank', 'joined_at')
    )


def list_staff(*, group_id: UUID) -> QuerySet[GroupMembership]:
    """Active moderators, admins and the owner."""
    return (
        GroupMembership.objects
        .filter(
            group_id=group_id,
            status=MemberStatus.ACTIVE,
            role__in=list(roles.STAFF_ROLES),
        )
        .select_related('user')
        .annotate(role_rank=ROLE_ORDER)
        .order_by('-role_rank', 'joined_at')
    )


def _shift_counters(group_id: UUID, user_id: UUID, delta: int) -> None:
    increment_member_count(group_id, delta)
    User.objects.adjust_groups_joined(user_id, delta)


# =============================================================================
# Lifecycle operations
# =============================================================================

@transaction.atomic
def join_group(*, group_ref: Union[UUID, str], user: User) -> GroupMembership:
    """
    Join a group directly.

    Public groups admit immediately; private groups record a pending join
    request for staff to review; invite-only groups refuse.

    Raises:
        GroupNotFoundError: If group doesn't exist
        AlreadyMemberError / PendingRequestExistsError / BannedMemberError:
            If an existing membership blocks the join
        InviteOnlyGroupError: If the group only admits through invitations
    """
    group = resolve_group(group_ref, for_update=True)

    existing = find_membership(group_id=group.id, user_id=user.id, for_update=True)
    check_admissible(existing)

    if group.privacy == GroupPrivacy.INVITE_ONLY:
        raise InviteOnlyGroupError()

    status = MemberStatus.ACTIVE if group.privacy == GroupPrivacy.PUBLIC else MemberStatus.PENDING
    membership = create_or_reactivate(group=group, user_id=user.id, status=status)

    if status == MemberStatus.ACTIVE:
        _shift_counters(group.id, user.id, 1)
        logger.info("User %s joined group %s", user.id, group.id)
    else:
        signals.emit_after_commit(
            signals.join_request_submitted,
            sender=GroupMembership,
            group_id=group.id,
            user_id=user.id,
            membership_id=membership.id,
        )
        logger.info("User %s requested to join group %s", user.id, group.id)

    return membership


@transaction.atomic
def leave_group(*, group_ref: Union[UUID, str], user: User) -> GroupMembership:
    """
    Leave a group.

    Owner cannot leave their own group - they must transfer ownership first.

    Raises:
        GroupNotFoundError: If group doesn't exist
        NotMemberError: If user is not an active member
        InvalidStatusTransitionError: If user has already left
        OwnerActionError: If user is the owner
    """
    group = resolve_group(group_ref, for_update=True)

    membership = find_membership(group_id=group.id, user_id=user.id, for_update=True)
    if membership is not None and membership.status == MemberStatus.LEFT:
        raise InvalidStatusTransitionError("You have already left this group")
    if membership is None or membership.status != MemberStatus.ACTIVE:
        raise NotMemberError()

    if membership.role == MemberRole.OWNER:
        raise OwnerActionError("Group owner cannot leave. Transfer ownership first.")

    set_status(membership, MemberStatus.LEFT)
    _shift_counters(group.id, user.id, -1)
    sync_staff_sets(group, user.id, membership.role, active=False)

    logger.info("User %s left group %s", user.id, group.id)
    return membership


@transaction.atomic
def remove_member(
    *,
    group_ref: Union[UUID, str],
    user_id: UUID,
    removed_by: User,
) -> GroupMembership:
    """
    Remove an active member from a group (moderator and above).

    The actor must strictly outrank the target; the owner cannot be removed.

    Raises:
        GroupNotFoundError: If group doesn't exist
        NotMemberError / InsufficientPermissionsError: If actor lacks the role
        SelfActionError: If actor targets themselves
        MemberNotFoundError: If target has no membership
        InvalidStatusTransitionError: If target is not active
        OwnerActionError: If target is the owner
    """
    group = resolve_group(group_ref, for_update=True)
    actor = require_role(group_id=group.id, user_id=removed_by.id, min_role=MemberRole.MODERATOR)

    if _same_user(user_id, removed_by.id):
        raise SelfActionError("Use leave to exit the group")

    target = find_membership(group_id=group.id, user_id=user_id, for_update=True)
    if target is None:
        raise MemberNotFoundError()
    if target.status == MemberStatus.LEFT:
        raise InvalidStatusTransitionError("Member has already left the group")
    if target.status != MemberStatus.ACTIVE:
        raise InvalidStatusTransitionError(f"Cannot remove a {target.status} member")
    if target.role == MemberRole.OWNER:
        raise OwnerActionError("Cannot remove the group owner")
    if not roles.outranks(actor.role, target.role):
        raise InsufficientPermissionsError("You cannot remove a member with equal or higher role")

    set_status(target, MemberStatus.LEFT)
    _shift_counters(group.id, target.user_id, -1)
    sync_staff_sets(group, target.user_id, target.role, active=False)

    logger.info("User %s removed %s from group %s", removed_by.id, target.user_id, group.id)
    return target


@transaction.atomic
def ban_member(
    *,
    group_ref: Union[UUID, str],
    user_id: UUID,
    banned_by: User,
    reason: str,
) -> GroupMembership:
    """
    Ban a member from a group (moderator and above).

    Only the owner may ban an admin; otherwise the actor must strictly
    outrank the target. Banning an active member decrements the counters.

    Raises:
        SelfActionError: If actor targets themselves
        GroupNotFoundError: If group doesn't exist
        NotMemberError / InsufficientPermissionsError: If actor lacks the role
        MemberNotFoundError: If target has no membership
        InvalidStatusTransitionError: If target is already banned
        OwnerActionError: If target is the owner
        InvalidInputError: If reason is missing or too long
    """
    if _same_user(user_id, banned_by.id):
        raise SelfActionError("You cannot ban yourself")

    group = resolve_group(group_ref, for_update=True)
    actor = require_role(group_id=group.id, user_id=banned_by.id, min_role=MemberRole.MODERATOR)

    target = find_membership(group_id=group.id, user_id=user_id, for_update=True)
    if target is None:
        raise MemberNotFoundError()
    if target.status == MemberStatus.BANNED:
        raise InvalidStatusTransitionError("Member is already banned from this group")
    if target.role == MemberRole.OWNER:
        raise OwnerActionError("Cannot ban the group owner")
    if target.role == MemberRole.ADMIN and actor.role != MemberRole.OWNER:
        raise InsufficientPermissionsError("Only the owner can ban admins")
    if not roles.outranks(actor.role, target.role):
        raise InsufficientPermissionsError("You cannot ban a member with equal or higher role")

    was_active = target.status == MemberStatus.ACTIVE
    set_status(target, MemberStatus.BANNED, actor_id=banned_by.id, reason=reason)
    if was_active:
        _shift_counters(group.id, target.user_id, -1)
    sync_staff_sets(group, target.user_id, target.role, active=False)

    signals.emit_after_commit(
        signals.member_banned,
        sender=GroupMembership,
        group_id=group.id,
        user_id=target.user_id,
        banned_by_id=banned_by.id,
    )
    logger.info("User %s banned %s from group %s", banned_by.id, target.user_id, group.id)
    return target


@transaction.atomic
def unban_member(
    *,
    group_ref: Union[UUID, str],
    user_id: UUID,
    unbanned_by: User,
) -> GroupMembership:
    """
    Lift a ban (moderator and above).

    The member comes back active with the role they held before the ban;
    ban metadata is cleared and staff are put back in the group's staff sets.
    """
    group = resolve_group(group_ref, for_update=True)
    require_role(group_id=group.id, user_id=unbanned_by.id, min_role=MemberRole.MODERATOR)

    target = find_membership(group_id=group.id, user_id=user_id, for_update=True)
    if target is None:
        raise MemberNotFoundError()
    if target.status != MemberStatus.BANNED:
        raise InvalidStatusTransitionError("Member is not banned")

    set_status(target, MemberStatus.ACTIVE)
    now = timezone.now()
    GroupMembership.objects.filter(pk=target.pk).update(last_activity_at=now)
    target.last_activity_at = now
    _shift_counters(group.id, target.user_id, 1)
    sync_staff_sets(group, target.user_id, target.role, active=True)

    logger.info("User %s unbanned %s in group %s", unbanned_by.id, target.user_id, group.id)
    return target


def list_join_requests(*, group_ref: Union[UUID, str], requested_by: User) -> QuerySet[GroupMembership]:
    """Pending join requests, newest first (moderator and above)."""
    group = resolve_group(group_ref)
    require_role(
        group_id=group.id,
        user_id=requested_by.id,
        min_role=MemberRole.MODERATOR,
        record_activity=False,
    )

    return (
        GroupMembership.objects
        .filter(group=group, status=MemberStatus.PENDING)
        .select_related('user')
        .order_by('-created_at')
    )


@transaction.atomic
def approve_join_request(
    *,
    group_ref: Union[UUID, str],
    user_id: UUID,
    approved_by: User,
) -> GroupMembership:
    """
    Approve a pending join request (moderator and above).

    Raises:
        MemberNotFoundError: If the user has no pending request
    """
    group = resolve_group(group_ref, for_update=True)
    require_role(group_id=group.id, user_id=approved_by.id, min_role=MemberRole.MODERATOR)

    target = find_membership(group_id=group.id, user_id=user_id, for_update=True)
    if target is None or target.status != MemberStatus.PENDING:
        raise MemberNotFoundError("No pending join request found for this user")

    set_status(target, MemberStatus.ACTIVE)
    _shift_counters(group.id, target.user_id, 1)

    signals.emit_after_commit(
        signals.membership_approved,
        sender=GroupMembership,
        group_id=group.id,
        user_id=target.user_id,
        approved_by_id=approved_by.id,
    )
    logger.info("User %s approved %s in group %s", approved_by.id, target.user_id, group.id)
    return target


@transaction.atomic
def reject_join_request(
    *,
    group_ref: Union[UUID, str],
    user_id: UUID,
    rejected_by: User,
) -> GroupMembership:
    """
    Reject a pending join request (moderator and above).

    The request is closed as ``left``; the record is kept and the user may
    ask again later.

    Raises:
        MemberNotFoundError: If the user has no pending request
    """
    group = resolve_group(group_ref, for_update=True)
    require_role(group_id=group.id, user_id=rejected_by.id, min_role=MemberRole.MODERATOR)

    target = find_membership(group_id=group.id, user_id=user_id, for_update=True)
    if target is None or target.status != MemberStatus.PENDING:
        raise MemberNotFoundError("No pending join request found for this user")

    set_status(target, MemberStatus.LEFT)

    logger.info("User %s rejected join request of %s in group %s", rejected_by.id, user_id, group.id)
    return target


def update_notification_preferences(
    *,
    group_ref: Union[UUID, str],
    user: User,
    new_posts: Optional[bool] = None,
    mentions: Optional[bool] = None,
    announcements: Optional[bool] = None,
) -> GroupMembership:
    """Update the caller's own notification toggles for a group."""
    group = resolve_group(group_ref)
    membership = require_role(group_id=group.id, user_id=user.id, min_role=MemberRole.MEMBER)

    update_fields = ['updated_at']
    for field, value in (
        ('notify_new_posts', new_posts),
        ('notify_mentions', mentions),
        ('notify_announcements', announcements),
    ):
        if value is not None:
            setattr(membership, field, value)
            update_fields.append(field)

    membership.save(update_fields=update_fields)
    return membership
