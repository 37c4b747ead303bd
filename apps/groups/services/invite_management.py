"""
Invite management service.

Issues direct and code invitations with unique invite codes, validates
them lazily against expiry and usage caps, and consumes them with a
conditional update so concurrent redeemers can never exceed ``max_uses``.
"""

import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union
from uuid import UUID

from django.db import IntegrityError, transaction
from django.db.models import F, QuerySet
from django.utils import timezone

from apps.accounts.models import User
from apps.groups import signals
from apps.groups.conf import groups_setting
from apps.groups.models import (
    Group,
    GroupInvitation,
    InvitationStatus,
    MemberRole,
)

from .authorization import require_role
from .exceptions import (
    DuplicateInvitationError,
    GroupsServiceError,
    InvalidExpiryError,
    InvalidMaxUsesError,
    InvitationExhaustedError,
    InvitationExpiredError,
    InvitationNotFoundError,
    InvitationNotPendingError,
    InvitationRecipientMismatchError,
    InviteCodeGenerationError,
    SelfInvitationError,
    UserNotFoundError,
)
from .group_management import resolve_group
from .membership_management import check_admissible, find_membership

logger = logging.getLogger(__name__)

INVITE_CODE_ALPHABET = string.ascii_uppercase + string.digits


# =============================================================================
# Codes
# =============================================================================

def normalize_invite_code(code: str) -> str:
    return (code or '').strip().upper()


def _random_code() -> str:
    length = groups_setting('INVITE_CODE_LENGTH')
    return ''.join(secrets.choice(INVITE_CODE_ALPHABET) for _ in range(length))


def generate_invite_code() -> str:
    """
    Draw a random code from ``[A-Z0-9]`` that no invitation uses yet.

    The lookup is advisory; inserts still rely on the unique constraint.

    Raises:
        InviteCodeGenerationError: If every attempt collided
    """
    max_attempts = groups_setting('INVITE_CODE_MAX_ATTEMPTS')
    for attempt in range(max_attempts):
        code = _random_code()
        if not GroupInvitation.objects.filter(invite_code=code).exists():
            return code
        logger.warning("Invite code collision (attempt %d/%d)", attempt + 1, max_attempts)

    logger.error("Could not generate a unique invite code after %d attempts", max_attempts)
    raise InviteCodeGenerationError()


def _create_invitation(**fields) -> GroupInvitation:
    """Insert an invitation, drawing a fresh code when the insert collides."""
    max_attempts = groups_setting('INVITE_CODE_MAX_ATTEMPTS')
    for attempt in range(max_attempts):
        code = generate_invite_code()
        try:
            with transaction.atomic():
                return GroupInvitation.objects.create(invite_code=code, **fields)
        except IntegrityError:
            invited_user_id = fields.get('invited_user_id')
            if invited_user_id and GroupInvitation.objects.filter(
                group=fields['group'],
                invited_user_id=invited_user_id,
                status=InvitationStatus.PENDING,
            ).exists():
                raise DuplicateInvitationError()
            logger.warning(
                "Invite code %s taken at insert (attempt %d/%d)",
                code, attempt + 1, max_attempts,
            )

    logger.error("Could not insert an invitation after %d attempts", max_attempts)
    raise InviteCodeGenerationError()


def _resolve_expiry(expires_at: Optional[datetime]) -> datetime:
    now = timezone.now()
    if expires_at is None:
        return now + timedelta(days=groups_setting('INVITATION_EXPIRY_DAYS'))
    if expires_at <= now:
        raise InvalidExpiryError()
    return expires_at


# =============================================================================
# Issuing
# =============================================================================

@transaction.atomic
def issue_direct_invitation(
    *,
    group_ref: Union[UUID, str],
    issued_by: User,
    invited_user_id: UUID,
    expires_at: Optional[datetime] = None,
) -> GroupInvitation:
    """
    Invite one specific user (admin only). Single use.

    A pending invitation to the same user that has already lapsed is
    marked expired so it no longer blocks a new one.

    Raises:
        SelfInvitationError: If the issuer invites themselves
        GroupNotFoundError: If group doesn't exist
        NotMemberError / InsufficientPermissionsError: If issuer is not admin
        UserNotFoundError: If the invited user doesn't exist
        AlreadyMemberError / PendingRequestExistsError / BannedMemberError:
            If the invited user's membership blocks admission
        DuplicateInvitationError: If a pending direct invitation exists
        InvalidExpiryError: If ``expires_at`` is not in the future
    """
    if str(invited_user_id) == str(issued_by.id):
        raise SelfInvitationError()

    group = resolve_group(group_ref, for_update=True)
    require_role(group_id=group.id, user_id=issued_by.id, min_role=MemberRole.ADMIN)

    if not User.objects.filter(id=invited_user_id, is_active=True).exists():
        raise UserNotFoundError()

    check_admissible(find_membership(group_id=group.id, user_id=invited_user_id))
    expires_at = _resolve_expiry(expires_at)

    now = timezone.now()
    GroupInvitation.objects.filter(
        group=group,
        invited_user_id=invited_user_id,
        status=InvitationStatus.PENDING,
        expires_at__lt=now,
    ).update(status=InvitationStatus.EXPIRED, updated_at=now)

    if GroupInvitation.objects.filter(
        group=group,
        invited_user_id=invited_user_id,
        status=InvitationStatus.PENDING,
    ).exists():
        raise DuplicateInvitationError()

    invitation = _create_invitation(
        group=group,
        invited_by=issued_by,
        invited_user_id=invited_user_id,
        max_uses=1,
        expires_at=expires_at,
    )

    signals.emit_after_commit(
        signals.invitation_issued,
        sender=GroupInvitation,
        group_id=group.id,
        invitation_id=invitation.id,
        invited_by_id=issued_by.id,
        invited_user_id=invitation.invited_user_id,
    )
    logger.info(
        "User %s invited %s to group %s (invitation %s)",
        issued_by.id, invited_user_id, group.id, invitation.id,
    )
    return invitation


@transaction.atomic
def issue_code_invitation(
    *,
    group_ref: Union[UUID, str],
    issued_by: User,
    max_uses: int = 1,
    expires_at: Optional[datetime] = None,
) -> GroupInvitation:
    """
    Create a shareable invite code (admin only).

    Raises:
        GroupNotFoundError: If group doesn't exist
        NotMemberError / InsufficientPermissionsError: If issuer is not admin
        InvalidMaxUsesError: If ``max_uses`` is outside 1..limit
        InvalidExpiryError: If ``expires_at`` is not in the future
    """
    group = resolve_group(group_ref, for_update=True)
    require_role(group_id=group.id, user_id=issued_by.id, min_role=MemberRole.ADMIN)

    limit = groups_setting('CODE_INVITE_MAX_USES_LIMIT')
    if isinstance(max_uses, bool) or not isinstance(max_uses, int) or not 1 <= max_uses <= limit:
        raise InvalidMaxUsesError(f"max_uses must be between 1 and {limit}")
    expires_at = _resolve_expiry(expires_at)

    invitation = _create_invitation(
        group=group,
        invited_by=issued_by,
        max_uses=max_uses,
        expires_at=expires_at,
    )

    signals.emit_after_commit(
        signals.invitation_issued,
        sender=GroupInvitation,
        group_id=group.id,
        invitation_id=invitation.id,
        invited_by_id=issued_by.id,
        invited_user_id=None,
    )
    logger.info(
        "User %s created invite code %s for group %s (max_uses=%d)",
        issued_by.id, invitation.invite_code, group.id, max_uses,
    )
    return invitation


# =============================================================================
# Lookup and validation
# =============================================================================

def get_invitation_by_code(code: str, *, for_update: bool = False) -> GroupInvitation:
    """
    Raises:
        InvitationNotFoundError: If no invitation carries the code
    """
    queryset = GroupInvitation.objects.select_related('group', 'invited_by')
    if for_update:
        queryset = queryset.select_for_update(of=('self',))

    invitation = queryset.filter(invite_code=normalize_invite_code(code)).first()
    if invitation is None:
        raise InvitationNotFoundError()
    return invitation


def validate_invitation(invitation: GroupInvitation, now: Optional[datetime] = None) -> None:
    """
    Raise the specific reason an invitation cannot be redeemed.

    Expiry is evaluated lazily here; the row is not rewritten.

    Raises:
        InvitationExhaustedError: If every use has been taken
        InvitationExpiredError: If ``expires_at`` has passed
        InvitationNotPendingError: If accepted, declined or cancelled
    """
    if invitation.status == InvitationStatus.ACCEPTED and not invitation.is_direct:
        raise InvitationExhaustedError()
    if invitation.status == InvitationStatus.EXPIRED:
        raise InvitationExpiredError()
    if invitation.status != InvitationStatus.PENDING:
        raise InvitationNotPendingError(f"Invitation has been {invitation.status}")
    if invitation.is_expired(now):
        raise InvitationExpiredError()
    if invitation.used_count >= invitation.max_uses:
        raise InvitationExhaustedError()


def consume_invitation(invitation: GroupInvitation) -> GroupInvitation:
    """
    Take one use of a pending invitation.

    The increment is conditional on ``used_count < max_uses`` at the
    database, so a stale in-memory copy cannot push past the cap. The
    invitation becomes ``accepted`` once the last use is taken.

    Raises:
        InvitationExhaustedError: If no use is left (or it stopped being pending)
    """
    now = timezone.now()
    updated = GroupInvitation.objects.filter(
        pk=invitation.pk,
        status=InvitationStatus.PENDING,
        used_count__lt=F('max_uses'),
    ).update(used_count=F('used_count') + 1, updated_at=now)
    if not updated:
        raise InvitationExhaustedError()

    GroupInvitation.objects.filter(
        pk=invitation.pk,
        status=InvitationStatus.PENDING,
        used_count__gte=F('max_uses'),
    ).update(status=InvitationStatus.ACCEPTED, updated_at=now)

    invitation.refresh_from_db()
    return invitation


@dataclass(frozen=True)
class InvitationPreview:
    """What an invite link shows before the visitor redeems it."""

    group: Group
    invite_code: str
    is_direct: bool
    expires_at: datetime
    remaining_uses: int
    is_valid: bool
    reason: Optional[str] = None


def describe_invitation(code: str) -> InvitationPreview:
    """
    Summarize an invitation for the public invite page.

    Raises:
        InvitationNotFoundError: If the code doesn't resolve
        GroupNotFoundError: If the group has been deactivated
    """
    invitation = get_invitation_by_code(code)
    group = resolve_group(invitation.group_id)

    reason = None
    try:
        validate_invitation(invitation)
    except GroupsServiceError as exc:
        reason = exc.code

    return InvitationPreview(
        group=group,
        invite_code=invitation.invite_code,
        is_direct=invitation.is_direct,
        expires_at=invitation.expires_at,
        remaining_uses=invitation.remaining_uses,
        is_valid=reason is None,
        reason=reason,
    )


def list_group_invitations(
    *,
    group_ref: Union[UUID, str],
    requested_by: User,
    status: Optional[str] = None,
) -> QuerySet[GroupInvitation]:
    """Invitations of a group, newest first (admin only)."""
    group = resolve_group(group_ref)
    require_role(
        group_id=group.id,
        user_id=requested_by.id,
        min_role=MemberRole.ADMIN,
        record_activity=False,
    )

    queryset = GroupInvitation.objects.filter(group=group)
    if status:
        queryset = queryset.filter(status=status)
    return queryset.select_related('invited_by', 'invited_user').order_by('-created_at')


# =============================================================================
# Cancel / decline
# =============================================================================

@transaction.atomic
def cancel_invitation(
    *,
    group_ref: Union[UUID, str],
    invitation_id: UUID,
    cancelled_by: User,
) -> GroupInvitation:
    """
    Withdraw a pending invitation (admin only).

    Raises:
        InvitationNotFoundError: If the invitation is not in this group
        InvitationNotPendingError: If it is no longer pending
    """
    group = resolve_group(group_ref)
    require_role(group_id=group.id, user_id=cancelled_by.id, min_role=MemberRole.ADMIN)

    invitation = GroupInvitation.objects.filter(id=invitation_id, group=group).first()
    if invitation is None:
        raise InvitationNotFoundError()

    updated = GroupInvitation.objects.filter(
        pk=invitation.pk,
        status=InvitationStatus.PENDING,
    ).update(status=InvitationStatus.CANCELLED, updated_at=timezone.now())
    if not updated:
        raise InvitationNotPendingError(f"Invitation has been {invitation.status}")

    invitation.refresh_from_db()
    logger.info("User %s cancelled invitation %s in group %s", cancelled_by.id, invitation.id, group.id)
    return invitation


@transaction.atomic
def decline_invitation(*, invite_code: str, user: User) -> GroupInvitation:
    """
    Decline a direct invitation (its recipient only).

    Raises:
        InvitationNotFoundError: If the code doesn't resolve
        InvitationRecipientMismatchError: If the caller is not the recipient
        InvitationNotPendingError: If it is no longer pending
    """
    invitation = get_invitation_by_code(invite_code)
    if not invitation.is_direct or str(invitation.invited_user_id) != str(user.id):
        raise InvitationRecipientMismatchError("Only the invited user can decline this invitation")

    updated = GroupInvitation.objects.filter(
        pk=invitation.pk,
        status=InvitationStatus.PENDING,
    ).update(status=InvitationStatus.DECLINED, updated_at=timezone.now())
    if not updated:
        raise InvitationNotPendingError(f"Invitation has been {invitation.status}")

    invitation.refresh_from_db()
    logger.info("User %s declined invitation %s", user.id, invitation.id)
    return invitation
