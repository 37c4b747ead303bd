"""
Role management service.

Handles member role updates and ownership transfer with row locks on the
memberships involved.
"""

import logging
from typing import Union
from uuid import UUID

from django.db import transaction
from django.utils import timezone

from apps.accounts.models import User
from apps.groups import signals
from apps.groups.models import Group, GroupMembership, MemberRole, MemberStatus

from .authorization import require_role
from .exceptions import (
    InsufficientPermissionsError,
    InvalidRoleError,
    MemberNotFoundError,
    OwnerActionError,
    SelfActionError,
)
from .group_management import resolve_group, sync_staff_sets
from .membership_management import find_membership

logger = logging.getLogger(__name__)


def _set_role(membership: GroupMembership, role: str) -> None:
    membership.role = role
    membership.updated_at = timezone.now()
    membership.save(update_fields=['role', 'updated_at'])


def _announce_role_change(group, membership, old_role, changed_by):
    signals.emit_after_commit(
        signals.member_role_changed,
        sender=GroupMembership,
        group_id=group.id,
        user_id=membership.user_id,
        old_role=old_role,
        new_role=membership.role,
        changed_by_id=changed_by.id,
    )


@transaction.atomic
def update_member_role(
    *,
    group_ref: Union[UUID, str],
    user_id: UUID,
    new_role: str,
    updated_by: User,
) -> GroupMembership:
    """
    Update a member's role (admin only).

    Uses select_for_update to prevent concurrent role changes.
    Only the owner may promote to admin or change an admin's role; the
    owner role itself moves only through ``transfer_ownership``.

    Args:
        group_ref: Group UUID or slug
        user_id: UUID of the user whose role to update
        new_role: 'member', 'moderator' or 'admin'
        updated_by: User performing the update (must be admin)

    Returns:
        Updated GroupMembership instance

    Raises:
        InvalidRoleError: If new_role is unknown or 'owner'
        GroupNotFoundError: If group doesn't exist
        NotMemberError / InsufficientPermissionsError: If updated_by is not
            an admin, or is an admin acting on admin territory
        SelfActionError: If updated_by targets themselves
        MemberNotFoundError: If target is not an active member
        OwnerActionError: If target is the owner
    """
    if new_role not in MemberRole.values:
        raise InvalidRoleError(f"Invalid role. Must be one of: {', '.join(MemberRole.values)}")
    if new_role == MemberRole.OWNER:
        raise InvalidRoleError("Use ownership transfer to assign the owner role")

    group = resolve_group(group_ref, for_update=True)
    actor = require_role(group_id=group.id, user_id=updated_by.id, min_role=MemberRole.ADMIN)

    if str(user_id) == str(updated_by.id):
        raise SelfActionError("You cannot change your own role")

    membership = find_membership(group_id=group.id, user_id=user_id, for_update=True)
    if membership is None or membership.status != MemberStatus.ACTIVE:
        raise MemberNotFoundError()

    if membership.role == MemberRole.OWNER:
        raise OwnerActionError("Cannot change the owner's role")
    if membership.role == MemberRole.ADMIN and actor.role != MemberRole.OWNER:
        raise InsufficientPermissionsError("Only the owner can change an admin's role")
    if new_role == MemberRole.ADMIN and actor.role != MemberRole.OWNER:
        raise InsufficientPermissionsError("Only the owner can promote members to admin")

    old_role = membership.role
    if old_role == new_role:
        return membership

    _set_role(membership, new_role)
    sync_staff_sets(group, membership.user_id, new_role, active=True)
    _announce_role_change(group, membership, old_role, updated_by)

    logger.info(
        "User %s changed role of %s in group %s: %s -> %s",
        updated_by.id, membership.user_id, group.id, old_role, new_role,
    )
    return membership


@transaction.atomic
def transfer_ownership(
    *,
    group_ref: Union[UUID, str],
    new_owner_id: UUID,
    transferred_by: User,
) -> Group:
    """
    Hand the group to another active member (owner only).

    The previous owner stays on as admin. ``Group.owner`` follows the
    transfer; ``Group.created_by`` does not.

    Raises:
        GroupNotFoundError: If group doesn't exist
        NotMemberError / InsufficientPermissionsError: If caller is not the owner
        SelfActionError: If caller names themselves
        MemberNotFoundError: If the new owner is not an active member
    """
    group = resolve_group(group_ref, for_update=True)
    current = require_role(
        group_id=group.id,
        user_id=transferred_by.id,
        min_role=MemberRole.OWNER,
        for_update=True,
    )

    if str(new_owner_id) == str(transferred_by.id):
        raise SelfActionError("You already own this group")

    target = find_membership(group_id=group.id, user_id=new_owner_id, for_update=True)
    if target is None or target.status != MemberStatus.ACTIVE:
        raise MemberNotFoundError("New owner must be an active member of the group")

    target_old_role = target.role

    # one owner per group: demote before promoting
    _set_role(current, MemberRole.ADMIN)
    _set_role(target, MemberRole.OWNER)

    group.owner_id = target.user_id
    group.save(update_fields=['owner', 'updated_at'])

    sync_staff_sets(group, current.user_id, MemberRole.ADMIN, active=True)
    sync_staff_sets(group, target.user_id, MemberRole.OWNER, active=True)

    _announce_role_change(group, current, MemberRole.OWNER, transferred_by)
    _announce_role_change(group, target, target_old_role, transferred_by)

    logger.info(
        "Ownership of group %s transferred from %s to %s",
        group.id, transferred_by.id, target.user_id,
    )
    return group
