"""
Invitation acceptance.

Redeeming an invitation writes to three entities: the membership, the two
counters (group members, user's joined groups) and the invitation itself.
All four writes share one transaction; any failure rolls every one back.
"""

import logging

from django.db import DatabaseError, transaction

from apps.accounts.models import User
from apps.groups import signals
from apps.groups.models import GroupInvitation, GroupMembership, MemberRole

from .exceptions import AcceptanceFailedError, InvitationRecipientMismatchError
from .group_management import increment_member_count, resolve_group
from .invite_management import (
    consume_invitation,
    get_invitation_by_code,
    validate_invitation,
)
from .membership_management import check_admissible, create_or_reactivate, find_membership

logger = logging.getLogger(__name__)


def _redeem(invite_code: str, user: User):
    invitation = get_invitation_by_code(invite_code, for_update=True)
    validate_invitation(invitation)

    if invitation.is_direct and str(invitation.invited_user_id) != str(user.id):
        raise InvitationRecipientMismatchError()

    group = resolve_group(invitation.group_id, for_update=True)

    check_admissible(find_membership(group_id=group.id, user_id=user.id, for_update=True))

    membership = create_or_reactivate(
        group=group,
        user_id=user.id,
        role=MemberRole.MEMBER,
        invited_by_id=invitation.invited_by_id,
    )
    increment_member_count(group.id, 1)
    User.objects.adjust_groups_joined(user.id, 1)
    invitation = consume_invitation(invitation)

    return membership, invitation


def accept_invitation(*, invite_code: str, user: User) -> GroupMembership:
    """
    Redeem an invitation code for ``user``.

    Steps, all under one transaction:
    1. Look up the invitation (code is case-normalized) and lock it
    2. Validate status, expiry and remaining uses
    3. For a direct invitation, check the redeemer is its recipient
    4. Resolve the group (deactivated groups are not found)
    5. Refuse active, pending or banned memberships
    6. Create or reactivate the membership, bump both counters and
       consume one use of the invitation

    Args:
        invite_code: Code as typed or linked by the user
        user: Redeeming user

    Returns:
        The active GroupMembership, with user and group loaded

    Raises:
        InvitationNotFoundError: If the code doesn't resolve
        InvitationExpiredError / InvitationExhaustedError /
            InvitationNotPendingError: If the invitation is not redeemable
        InvitationRecipientMismatchError: If a direct invitation is
            redeemed by someone else
        GroupNotFoundError: If the group was deactivated
        AlreadyMemberError / PendingRequestExistsError: If a membership
            already exists
        BannedMemberError: If the user is banned from the group
        AcceptanceFailedError: If the database failed mid-transaction
    """
    try:
        with transaction.atomic():
            membership, invitation = _redeem(invite_code, user)
            signals.emit_after_commit(
                signals.invitation_accepted,
                sender=GroupInvitation,
                group_id=invitation.group_id,
                invitation_id=invitation.id,
                user_id=user.id,
                invited_by_id=invitation.invited_by_id,
            )
    except DatabaseError:
        logger.exception("Acceptance of invite code %s by %s rolled back", invite_code, user.id)
        raise AcceptanceFailedError()

    logger.info(
        "User %s joined group %s through invitation %s",
        user.id, invitation.group_id, invitation.id,
    )
    return (
        GroupMembership.objects
        .select_related('user', 'group', 'invited_by')
        .get(pk=membership.pk)
    )
