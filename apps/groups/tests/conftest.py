import pytest
from datetime import timedelta
from django.utils import timezone
from rest_framework.test import APIClient
from rest_framework_simplejwt.tokens import RefreshToken
from apps.accounts.models import User
from apps.groups.models import (
    GroupInvitation,
    GroupMembership,
    GroupPrivacy,
    InvitationStatus,
    MemberRole,
    MemberStatus,
)
from apps.groups.services import create_group
from apps.groups.services.group_management import increment_member_count, sync_staff_sets


def _client_for(user):
    client = APIClient()
    refresh = RefreshToken.for_user(user)
    client.credentials(HTTP_AUTHORIZATION=f'Bearer {refresh.access_token}')
    return client


def _make_user(email, display_name):
    return User.objects.create_user(
        email=email,
        password='TestPass123!',
        display_name=display_name,
    )


@pytest.fixture
def api_client():
    """Return an unauthenticated API client."""
    return APIClient()


@pytest.fixture
def group_owner(db):
    """Create and return a test user (group owner)."""
    return _make_user('owner@example.com', 'Group Owner')


@pytest.fixture
def admin_user(db):
    return _make_user('admin@example.com', 'Group Admin')


@pytest.fixture
def moderator_user(db):
    return _make_user('moderator@example.com', 'Group Moderator')


@pytest.fixture
def member_user(db):
    return _make_user('member@example.com', 'Group Member')


@pytest.fixture
def outsider(db):
    """Create and return a user not in any group."""
    return _make_user('outsider@example.com', 'Outsider')


@pytest.fixture
def make_user(db):
    """Factory for extra users: make_user('farmer1')."""
    def _make(handle):
        return _make_user(f'{handle}@example.com', handle.title())
    return _make


@pytest.fixture
def owner_client(group_owner):
    return _client_for(group_owner)


@pytest.fixture
def admin_client(admin_user):
    return _client_for(admin_user)


@pytest.fixture
def moderator_client(moderator_user):
    return _client_for(moderator_user)


@pytest.fixture
def member_client(member_user):
    return _client_for(member_user)


@pytest.fixture
def outsider_client(outsider):
    return _client_for(outsider)


@pytest.fixture
def client_for(db):
    """Factory returning an authenticated API client for any user."""
    return _client_for


@pytest.fixture
def group(group_owner):
    """Public group created through the service, so counters start consistent."""
    return create_group(
        name='Maize Growers',
        owner=group_owner,
        description='Planting, pests and prices',
        privacy=GroupPrivacy.PUBLIC,
        crops=['Maize'],
    )


@pytest.fixture
def private_group(group_owner):
    return create_group(name='Cassava Circle', owner=group_owner, privacy=GroupPrivacy.PRIVATE)


@pytest.fixture
def invite_only_group(group_owner):
    return create_group(name='Seed Savers', owner=group_owner, privacy=GroupPrivacy.INVITE_ONLY)


@pytest.fixture
def add_member(db):
    """
    Put a user straight into a group with the given role and status.

    Counters and staff sets are kept in step for active memberships.
    """
    def _add(group, user, role=MemberRole.MEMBER, status=MemberStatus.ACTIVE, **extra):
        if status == MemberStatus.BANNED:
            extra.setdefault('ban_reason', 'spam')
            extra.setdefault('banned_at', timezone.now())
        membership = GroupMembership.objects.create(
            group=group, user=user, role=role, status=status, **extra
        )
        if status == MemberStatus.ACTIVE:
            increment_member_count(group.id, 1)
            User.objects.adjust_groups_joined(user.id, 1)
            sync_staff_sets(group, user.id, role, active=True)
        group.refresh_from_db()
        return membership
    return _add


@pytest.fixture
def group_with_members(group, admin_user, moderator_user, member_user, add_member):
    """Group with owner, admin, moderator and member."""
    add_member(group, admin_user, MemberRole.ADMIN)
    add_member(group, moderator_user, MemberRole.MODERATOR)
    add_member(group, member_user, MemberRole.MEMBER)
    group.refresh_from_db()
    return group


@pytest.fixture
def make_invitation(db):
    """Insert an invitation row directly, bypassing issuance checks."""
    counter = {'n': 0}

    def _make(group, invited_by, invited_user=None, max_uses=1, used_count=0,
              status=InvitationStatus.PENDING, expires_in=timedelta(days=7)):
        counter['n'] += 1
        return GroupInvitation.objects.create(
            group=group,
            invited_by=invited_by,
            invited_user=invited_user,
            invite_code=f'TEST{counter["n"]:04d}',
            max_uses=max_uses,
            used_count=used_count,
            status=status,
            expires_at=timezone.now() + expires_in,
        )
    return _make
