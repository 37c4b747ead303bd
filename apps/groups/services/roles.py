"""
Role hierarchy.

Pure functions over ``member < moderator < admin < owner``. Unknown roles
are programming errors and raise ``KeyError``.
"""

from apps.groups.models import MemberRole, MemberStatus


ROLE_RANKS = {
    MemberRole.MEMBER: 1,
    MemberRole.MODERATOR: 2,
    MemberRole.ADMIN: 3,
    MemberRole.OWNER: 4,
}

STAFF_ROLES = frozenset({MemberRole.MODERATOR, MemberRole.ADMIN, MemberRole.OWNER})


def rank(role: str) -> int:
    return ROLE_RANKS[role]


def at_least(have: str, need: str) -> bool:
    """True if ``have`` is the same as or above ``need``."""
    return rank(have) >= rank(need)


def outranks(actor: str, target: str) -> bool:
    """True if ``actor`` is strictly above ``target``."""
    return rank(actor) > rank(target)


# Computed membership predicates. These are derived from role and status on
# every call; nothing here is stored.

def is_staff(membership) -> bool:
    return membership.status == MemberStatus.ACTIVE and membership.role in STAFF_ROLES


def can_moderate(membership) -> bool:
    return is_staff(membership)


def can_manage_members(membership) -> bool:
    return membership.status == MemberStatus.ACTIVE and at_least(membership.role, MemberRole.ADMIN)
