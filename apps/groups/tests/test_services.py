"""
Service layer unit tests for groups app.

Tests cover:
- Role hierarchy and the role gate
- Group registry (slugs, resolution, soft delete)
- Group discovery and search
- Membership store and lifecycle transitions
- Role changes and ownership transfer
- Counter consistency
"""

import itertools
from datetime import timedelta
from unittest.mock import patch
from uuid import uuid4

import pytest
from django.utils import timezone

from apps.accounts.models import User
from apps.groups import signals
from apps.groups.models import (
    Group,
    GroupMembership,
    GroupPrivacy,
    GroupType,
    MemberRole,
    MemberStatus,
)
from apps.groups.services import (
    accept_invitation,
    approve_join_request,
    ban_member,
    create_group,
    create_or_reactivate,
    deactivate_group,
    discover_groups,
    find_membership,
    is_active_member,
    issue_code_invitation,
    join_group,
    leave_group,
    list_group_invitations,
    list_join_requests,
    list_members,
    list_staff,
    reject_join_request,
    remove_member,
    require_role,
    resolve_group,
    search_groups,
    set_status,
    transfer_ownership,
    unban_member,
    update_group,
    update_member_role,
    update_notification_preferences,
)
from apps.groups.services import roles
from apps.groups.services.group_management import increment_member_count
from apps.groups.services.exceptions import (
    AlreadyMemberError,
    BannedMemberError,
    GroupNotFoundError,
    InsufficientPermissionsError,
    InvalidGroupDataError,
    InvalidInputError,
    InvalidRoleError,
    InvalidSearchError,
    InvalidStatusTransitionError,
    InviteOnlyGroupError,
    MemberNotFoundError,
    NotMemberError,
    OwnerActionError,
    PendingRequestExistsError,
    SelfActionError,
    SlugUnavailableError,
)
from apps.groups.tests.helpers import active_member_count


ROLES = [MemberRole.MEMBER, MemberRole.MODERATOR, MemberRole.ADMIN, MemberRole.OWNER]


# =============================================================================
# Role hierarchy
# =============================================================================

class TestRoleHierarchy:

    def test_ranks_are_totally_ordered(self):
        assert [roles.rank(role) for role in ROLES] == [1, 2, 3, 4]

    @pytest.mark.parametrize('have,need', list(itertools.product(ROLES, ROLES)))
    def test_at_least_matches_rank(self, have, need):
        assert roles.at_least(have, need) == (ROLES.index(have) >= ROLES.index(need))

    def test_outranks_is_strict(self):
        assert roles.outranks(MemberRole.ADMIN, MemberRole.MODERATOR)
        assert not roles.outranks(MemberRole.ADMIN, MemberRole.ADMIN)
        assert not roles.outranks(MemberRole.MEMBER, MemberRole.OWNER)

    def test_unknown_role_is_a_programming_error(self):
        with pytest.raises(KeyError):
            roles.rank('superuser')

    def test_computed_predicates_follow_role_and_status(self):
        moderator = GroupMembership(role=MemberRole.MODERATOR, status=MemberStatus.ACTIVE)
        banned_admin = GroupMembership(role=MemberRole.ADMIN, status=MemberStatus.BANNED)
        admin = GroupMembership(role=MemberRole.ADMIN, status=MemberStatus.ACTIVE)

        assert roles.is_staff(moderator) and roles.can_moderate(moderator)
        assert not roles.can_manage_members(moderator)
        assert not roles.is_staff(banned_admin)
        assert roles.can_manage_members(admin)


# =============================================================================
# Role authorizer
# =============================================================================

@pytest.mark.django_db
class TestRequireRole:

    @pytest.mark.parametrize('have,need', list(itertools.product(ROLES, ROLES)))
    def test_role_gate(self, group, group_owner, member_user, add_member, have, need):
        """Equal or higher rank passes, lower rank is refused, for all 16 pairs."""
        if have == MemberRole.OWNER:
            user = group_owner
        else:
            add_member(group, member_user, have)
            user = member_user

        if roles.rank(have) >= roles.rank(need):
            membership = require_role(group_id=group.id, user_id=user.id, min_role=need)
            assert membership.role == have
        else:
            with pytest.raises(InsufficientPermissionsError):
                require_role(group_id=group.id, user_id=user.id, min_role=need)

    def test_non_member_is_refused(self, group, outsider):
        with pytest.raises(NotMemberError):
            require_role(group_id=group.id, user_id=outsider.id, min_role=MemberRole.MEMBER)

    def test_inactive_membership_is_refused(self, group, member_user, add_member):
        add_member(group, member_user, MemberRole.ADMIN, status=MemberStatus.LEFT)

        with pytest.raises(NotMemberError):
            require_role(group_id=group.id, user_id=member_user.id, min_role=MemberRole.MEMBER)

    def test_records_activity(self, group, group_owner):
        membership = require_role(group_id=group.id, user_id=group_owner.id, min_role=MemberRole.MEMBER)

        assert membership.last_activity_at is not None
        stored = GroupMembership.objects.get(pk=membership.pk)
        assert stored.last_activity_at == membership.last_activity_at

    def test_activity_opt_out(self, group, group_owner):
        membership = require_role(
            group_id=group.id, user_id=group_owner.id, min_role=MemberRole.MEMBER, record_activity=False,
        )

        assert membership.last_activity_at is None
        assert GroupMembership.objects.get(pk=membership.pk).last_activity_at is None

    def test_read_only_listings_leave_activity_alone(self, private_group, group_owner, outsider):
        join_group(group_ref=private_group.id, user=outsider)

        list(list_join_requests(group_ref=private_group.id, requested_by=group_owner))
        list(list_group_invitations(group_ref=private_group.id, requested_by=group_owner))

        owner_membership = find_membership(group_id=private_group.id, user_id=group_owner.id)
        assert owner_membership.last_activity_at is None


# =============================================================================
# Group Management Service Tests
# =============================================================================

@pytest.mark.django_db
class TestGroupManagement:
    """Tests for group_management.py service functions."""

    def test_create_group_success(self, group_owner):
        """Creating a group also creates owner membership and counters."""
        group = create_group(
            name="Rice Farmers",
            owner=group_owner,
            description="Paddy talk",
            privacy=GroupPrivacy.PRIVATE,
            crops=[' Rice ', ''],
        )

        assert group.slug == 'rice-farmers'
        assert group.owner == group_owner
        assert group.created_by == group_owner
        assert group.member_count == 1
        assert group.crops == ['rice']
        assert list(group.admins.all()) == [group_owner]

        membership = GroupMembership.objects.get(group=group, user=group_owner)
        assert membership.role == MemberRole.OWNER
        assert membership.status == MemberStatus.ACTIVE

        group_owner.refresh_from_db()
        assert group_owner.groups_joined == 1

    def test_create_group_suffixes_taken_slug(self, group, group_owner):
        second = create_group(name="Maize  Growers!", owner=group_owner)
        third = create_group(name="maize growers", owner=group_owner)

        assert group.slug == 'maize-growers'
        assert second.slug == 'maize-growers-1'
        assert third.slug == 'maize-growers-2'

    def test_create_group_retries_when_slug_taken_at_write(self, group, group_owner):
        """A slug grabbed between the lookup and the insert triggers a fresh lookup."""
        with patch(
            'apps.groups.services.group_management.generate_unique_slug',
            side_effect=[group.slug, 'maize-growers-late'],
        ):
            second = create_group(name="Maize Growers", owner=group_owner)

        assert second.slug == 'maize-growers-late'
        group_owner.refresh_from_db()
        assert group_owner.groups_joined == 2

    def test_create_group_gives_up_after_bounded_retries(self, group, group_owner):
        with patch(
            'apps.groups.services.group_management.generate_unique_slug',
            return_value=group.slug,
        ):
            with pytest.raises(SlugUnavailableError):
                create_group(name="Maize Growers", owner=group_owner)

        assert Group.objects.count() == 1
        group_owner.refresh_from_db()
        assert group_owner.groups_joined == 1

    @pytest.mark.parametrize('name', ['', 'ab', 'x' * 101])
    def test_create_group_rejects_bad_names(self, group_owner, name):
        with pytest.raises(InvalidGroupDataError):
            create_group(name=name, owner=group_owner)

    def test_create_group_rejects_unknown_privacy(self, group_owner):
        with pytest.raises(InvalidGroupDataError):
            create_group(name="Valid name", owner=group_owner, privacy='secret')

    def test_resolve_by_id_and_slug(self, group):
        assert resolve_group(group.id) == group
        assert resolve_group(str(group.id)) == group
        assert resolve_group(group.slug) == group

    def test_resolve_unknown_group(self):
        with pytest.raises(GroupNotFoundError):
            resolve_group(uuid4())
        with pytest.raises(GroupNotFoundError):
            resolve_group('no-such-group')

    def test_update_group_rename_reslugs(self, group_with_members, admin_user):
        updated = update_group(
            group_ref=group_with_members.slug,
            user=admin_user,
            name="Sorghum Growers",
            tags=['drought'],
        )

        assert updated.name == "Sorghum Growers"
        assert updated.slug == 'sorghum-growers'
        assert updated.tags == ['drought']
        assert resolve_group('sorghum-growers') == group_with_members

    def test_update_group_same_name_keeps_slug(self, group, group_owner):
        updated = update_group(group_ref=group.id, user=group_owner, name="Maize Growers", description="New")

        assert updated.slug == 'maize-growers'
        assert updated.description == "New"

    def test_update_group_insufficient_permissions(self, group_with_members, moderator_user):
        with pytest.raises(InsufficientPermissionsError):
            update_group(group_ref=group_with_members.id, user=moderator_user, description="Hacked")

    def test_deactivate_group_owner_only(self, group_with_members, admin_user, group_owner):
        with pytest.raises(InsufficientPermissionsError):
            deactivate_group(group_ref=group_with_members.id, user=admin_user)

        deactivate_group(group_ref=group_with_members.id, user=group_owner)

        with pytest.raises(GroupNotFoundError):
            resolve_group(group_with_members.id)
        # soft delete keeps the rows
        assert Group.objects.filter(id=group_with_members.id, is_active=False).exists()
        assert GroupMembership.objects.filter(group=group_with_members).count() == 4


# =============================================================================
# Discovery and search
# =============================================================================

@pytest.fixture
def catalogue(group_owner):
    """A spread of groups with different sizes, crops and regions."""
    def make(name, members, **kwargs):
        created = create_group(name=name, owner=group_owner, **kwargs)
        increment_member_count(created.id, members - 1)
        created.refresh_from_db()
        return created

    return {
        'tea': make('Kenya Tea Growers', 40, crops=['Tea'], region='Central'),
        'maize': make('Maize Market Prices', 25, crops=['Maize'], region='Rift Valley',
                      description='Daily maize prices', group_type=GroupType.CROP),
        'dairy': make('Dairy Farmers Coop', 10, region='Central', tags=['zero-grazing']),
        'closed': make('Maize Seed Bank', 90, crops=['Maize'], privacy=GroupPrivacy.INVITE_ONLY),
        'requests': make('Avocado Exporters', 5, crops=['Avocado'], privacy=GroupPrivacy.PRIVATE),
    }


@pytest.mark.django_db
class TestGroupDiscovery:

    def test_anonymous_sees_most_popular_open_groups(self, catalogue):
        deactivate_group(group_ref=catalogue['dairy'].id, user=catalogue['dairy'].owner)

        names = [g.name for g in discover_groups()]

        assert names == ['Kenya Tea Growers', 'Maize Market Prices', 'Avocado Exporters']

    def test_excludes_groups_already_joined_or_requested(self, catalogue, outsider, add_member):
        add_member(catalogue['tea'], outsider)
        join_group(group_ref=catalogue['requests'].id, user=outsider)

        names = {g.name for g in discover_groups(user=outsider)}

        assert names == {'Maize Market Prices', 'Dairy Farmers Coop'}

    def test_left_groups_are_offered_again(self, catalogue, outsider, add_member):
        add_member(catalogue['tea'], outsider, status=MemberStatus.LEFT)

        assert catalogue['tea'] in discover_groups(user=outsider)

    def test_ranks_shared_crops_and_region_above_size(self, catalogue, outsider):
        outsider.crops = ['maize']
        outsider.region = 'central'
        outsider.save(update_fields=['crops', 'region'])

        names = [g.name for g in discover_groups(user=outsider)]

        # region (15) beats crop (10); popularity breaks ties
        assert names == [
            'Kenya Tea Growers',
            'Dairy Farmers Coop',
            'Maize Market Prices',
            'Avocado Exporters',
        ]

    def test_crop_match_ignores_case(self, catalogue, outsider):
        outsider.crops = ['Avocado']
        outsider.save(update_fields=['crops'])

        assert discover_groups(user=outsider).first() == catalogue['requests']

    def test_profile_without_preferences_falls_back_to_popularity(self, catalogue, outsider):
        names = [g.name for g in discover_groups(user=outsider)]

        assert names[0] == 'Kenya Tea Growers'


@pytest.mark.django_db
class TestGroupSearch:

    @pytest.mark.parametrize('query', ['', ' ', 'm', ' m '])
    def test_query_too_short(self, catalogue, query):
        with pytest.raises(InvalidSearchError):
            search_groups(query=query)

    def test_unknown_sort(self, catalogue):
        with pytest.raises(InvalidSearchError):
            search_groups(query='maize', sort_by='alphabetical')

    def test_invalid_filter_choice(self, catalogue):
        with pytest.raises(InvalidGroupDataError):
            search_groups(query='maize', privacy='secret')

    def test_matches_name_description_tags_crops_and_region(self, catalogue):
        assert {g.name for g in search_groups(query='PRICES')} == {'Maize Market Prices'}
        assert {g.name for g in search_groups(query='grazing')} == {'Dairy Farmers Coop'}
        assert {g.name for g in search_groups(query='avocado')} == {'Avocado Exporters'}
        assert {g.name for g in search_groups(query='rift')} == {'Maize Market Prices'}

    def test_invite_only_groups_hidden_from_anonymous(self, catalogue):
        names = {g.name for g in search_groups(query='maize')}

        assert names == {'Maize Market Prices'}

    def test_invite_only_groups_visible_to_their_members(self, catalogue, outsider, member_user, add_member):
        add_member(catalogue['closed'], member_user)

        assert {g.name for g in search_groups(query='maize', user=outsider)} == {'Maize Market Prices'}
        assert {g.name for g in search_groups(query='maize', user=member_user)} == {
            'Maize Market Prices', 'Maize Seed Bank',
        }

    def test_filters_by_group_type_and_privacy(self, catalogue):
        assert list(search_groups(query='maize', group_type=GroupType.CROP)) == [catalogue['maize']]
        assert list(search_groups(query='central', privacy=GroupPrivacy.PRIVATE)) == []

    def test_deactivated_groups_not_found(self, catalogue):
        deactivate_group(group_ref=catalogue['maize'].id, user=catalogue['maize'].owner)

        assert list(search_groups(query='prices')) == []

    def test_relevance_puts_name_matches_first(self, catalogue):
        names = [g.name for g in search_groups(query='central')]
        assert names == ['Kenya Tea Growers', 'Dairy Farmers Coop']

        catalogue['dairy'].description = 'Central region dairy'
        catalogue['dairy'].name = 'Central Dairy Farmers'
        catalogue['dairy'].save(update_fields=['name', 'description'])

        names = [g.name for g in search_groups(query='central')]
        assert names == ['Central Dairy Farmers', 'Kenya Tea Growers']

    def test_sort_by_member_count_and_newest(self, catalogue):
        by_size = [g.name for g in search_groups(query='er', sort_by='member_count')]
        newest = [g.name for g in search_groups(query='er', sort_by='created_at')]

        assert by_size == ['Kenya Tea Growers', 'Dairy Farmers Coop', 'Avocado Exporters']
        assert newest == ['Avocado Exporters', 'Dairy Farmers Coop', 'Kenya Tea Growers']


# =============================================================================
# Membership store
# =============================================================================

@pytest.mark.django_db
class TestMembershipStore:

    def test_create_inserts_active_membership(self, group, outsider, group_owner):
        membership = create_or_reactivate(group=group, user_id=outsider.id, invited_by_id=group_owner.id)

        assert membership.status == MemberStatus.ACTIVE
        assert membership.role == MemberRole.MEMBER
        assert membership.invited_by_id == group_owner.id
        assert is_active_member(group_id=group.id, user_id=outsider.id)

    def test_reactivates_left_record(self, group, member_user, group_owner, add_member):
        old_joined = timezone.now() - timedelta(days=30)
        original = add_member(
            group, member_user, MemberRole.MODERATOR,
            status=MemberStatus.LEFT, joined_at=old_joined,
        )

        membership = create_or_reactivate(group=group, user_id=member_user.id, invited_by_id=group_owner.id)

        assert membership.pk == original.pk
        assert membership.status == MemberStatus.ACTIVE
        assert membership.role == MemberRole.MEMBER
        assert membership.joined_at > old_joined
        assert membership.invited_by_id == group_owner.id
        assert GroupMembership.objects.filter(group=group, user=member_user).count() == 1

    @pytest.mark.parametrize('status,error', [
        (MemberStatus.ACTIVE, AlreadyMemberError),
        (MemberStatus.PENDING, PendingRequestExistsError),
        (MemberStatus.BANNED, BannedMemberError),
    ])
    def test_existing_record_blocks_creation(self, group, member_user, add_member, status, error):
        add_member(group, member_user, status=status)

        with pytest.raises(error):
            create_or_reactivate(group=group, user_id=member_user.id)

    def test_ban_requires_metadata(self, group_with_members, member_user):
        membership = find_membership(group_id=group_with_members.id, user_id=member_user.id)

        with pytest.raises(InvalidInputError):
            set_status(membership, MemberStatus.BANNED)

        membership.refresh_from_db()
        assert membership.status == MemberStatus.ACTIVE

    def test_ban_and_unban_manage_metadata(self, group_with_members, member_user, group_owner):
        membership = find_membership(group_id=group_with_members.id, user_id=member_user.id)

        set_status(membership, MemberStatus.BANNED, actor_id=group_owner.id, reason='  spam  ')
        assert membership.ban.reason == 'spam'
        assert membership.ban.banned_by_id == group_owner.id

        set_status(membership, MemberStatus.ACTIVE)
        assert membership.ban is None
        assert membership.ban_reason == ''
        assert membership.banned_by_id is None
        assert membership.banned_at is None

    @pytest.mark.parametrize('start,target', [
        (MemberStatus.ACTIVE, MemberStatus.PENDING),
        (MemberStatus.ACTIVE, MemberStatus.ACTIVE),
        (MemberStatus.BANNED, MemberStatus.LEFT),
        (MemberStatus.LEFT, MemberStatus.PENDING),
    ])
    def test_rejects_transitions_outside_state_machine(self, group, member_user, add_member, start, target):
        membership = add_member(group, member_user, status=start)

        with pytest.raises(InvalidStatusTransitionError):
            set_status(membership, target)

    def test_pending_request_can_close_as_left(self, private_group, outsider, add_member):
        membership = add_member(private_group, outsider, status=MemberStatus.PENDING)

        set_status(membership, MemberStatus.LEFT)

        assert membership.status == MemberStatus.LEFT

    def test_concurrent_insert_hits_unique_constraint(self, group, member_user, add_member):
        add_member(group, member_user)

        # the row appears between the lookup and the insert
        with patch('apps.groups.services.membership_management.find_membership', return_value=None):
            with pytest.raises(AlreadyMemberError):
                create_or_reactivate(group=group, user_id=member_user.id)

        assert GroupMembership.objects.filter(group=group, user=member_user).count() == 1

    def test_stale_copy_cannot_apply_transition(self, group_with_members, member_user):
        first = find_membership(group_id=group_with_members.id, user_id=member_user.id)
        stale = GroupMembership.objects.get(pk=first.pk)

        set_status(first, MemberStatus.LEFT)

        with pytest.raises(InvalidStatusTransitionError):
            set_status(stale, MemberStatus.LEFT)

    def test_list_staff_highest_rank_first(self, group_with_members):
        staff = list(list_staff(group_id=group_with_members.id))

        assert [m.role for m in staff] == [MemberRole.OWNER, MemberRole.ADMIN, MemberRole.MODERATOR]

    def test_list_members_filters(self, group_with_members, outsider, add_member):
        add_member(group_with_members, outsider, status=MemberStatus.PENDING)

        active = list_members(group=group_with_members)
        pending = list_members(group=group_with_members, status=MemberStatus.PENDING)
        moderators = list_members(group=group_with_members, role=MemberRole.MODERATOR)

        assert active.count() == 4
        assert [m.user for m in pending] == [outsider]
        assert moderators.count() == 1


# =============================================================================
# Membership lifecycle
# =============================================================================

@pytest.mark.django_db
class TestMembershipLifecycle:

    def test_join_public_group(self, group, outsider):
        membership = join_group(group_ref=group.slug, user=outsider)

        assert membership.status == MemberStatus.ACTIVE
        group.refresh_from_db()
        outsider.refresh_from_db()
        assert group.member_count == 2
        assert outsider.groups_joined == 1

    def test_join_private_group_creates_request(self, private_group, outsider, django_capture_on_commit_callbacks):
        received = []

        def handler(sender, **payload):
            received.append(payload)

        signals.join_request_submitted.connect(handler)
        try:
            with django_capture_on_commit_callbacks(execute=True):
                membership = join_group(group_ref=private_group.id, user=outsider)
        finally:
            signals.join_request_submitted.disconnect(handler)

        assert membership.status == MemberStatus.PENDING
        private_group.refresh_from_db()
        assert private_group.member_count == 1
        assert received[0]['user_id'] == outsider.id

    def test_join_invite_only_group_refused(self, invite_only_group, outsider):
        with pytest.raises(InviteOnlyGroupError):
            join_group(group_ref=invite_only_group.id, user=outsider)

        assert find_membership(group_id=invite_only_group.id, user_id=outsider.id) is None

    def test_join_twice_refused(self, group_with_members, member_user):
        with pytest.raises(AlreadyMemberError):
            join_group(group_ref=group_with_members.id, user=member_user)

    def test_join_after_ban_refused(self, group, outsider, add_member):
        add_member(group, outsider, status=MemberStatus.BANNED)

        with pytest.raises(BannedMemberError):
            join_group(group_ref=group.id, user=outsider)

    def test_rejoin_after_leaving(self, group, outsider):
        first = join_group(group_ref=group.id, user=outsider)
        leave_group(group_ref=group.id, user=outsider)
        second = join_group(group_ref=group.id, user=outsider)

        assert second.pk == first.pk
        assert second.status == MemberStatus.ACTIVE
        group.refresh_from_db()
        assert group.member_count == 2

    def test_leave_group_success(self, group_with_members, member_user):
        leave_group(group_ref=group_with_members.id, user=member_user)

        membership = find_membership(group_id=group_with_members.id, user_id=member_user.id)
        assert membership.status == MemberStatus.LEFT
        group_with_members.refresh_from_db()
        member_user.refresh_from_db()
        assert group_with_members.member_count == 3
        assert member_user.groups_joined == 0

    def test_leave_twice(self, group_with_members, member_user):
        leave_group(group_ref=group_with_members.id, user=member_user)

        with pytest.raises(InvalidStatusTransitionError):
            leave_group(group_ref=group_with_members.id, user=member_user)

    def test_leave_group_owner_cannot_leave(self, group, group_owner):
        with pytest.raises(OwnerActionError):
            leave_group(group_ref=group.id, user=group_owner)

    def test_leaving_admin_drops_out_of_admin_set(self, group_with_members, admin_user):
        leave_group(group_ref=group_with_members.id, user=admin_user)

        assert admin_user not in group_with_members.admins.all()

    def test_remove_member_success(self, group_with_members, moderator_user, member_user):
        remove_member(group_ref=group_with_members.id, user_id=member_user.id, removed_by=moderator_user)

        membership = find_membership(group_id=group_with_members.id, user_id=member_user.id)
        assert membership.status == MemberStatus.LEFT
        group_with_members.refresh_from_db()
        assert group_with_members.member_count == 3

    def test_remove_member_requires_higher_rank(self, group_with_members, admin_user, moderator_user):
        with pytest.raises(InsufficientPermissionsError):
            remove_member(group_ref=group_with_members.id, user_id=admin_user.id, removed_by=moderator_user)

    def test_remove_member_cannot_remove_self(self, group_with_members, admin_user):
        with pytest.raises(SelfActionError):
            remove_member(group_ref=group_with_members.id, user_id=admin_user.id, removed_by=admin_user)

    def test_remove_owner_refused(self, group_with_members, group_owner, admin_user):
        with pytest.raises(OwnerActionError):
            remove_member(group_ref=group_with_members.id, user_id=group_owner.id, removed_by=admin_user)

    def test_member_cannot_remove(self, group_with_members, member_user, moderator_user):
        with pytest.raises(InsufficientPermissionsError):
            remove_member(group_ref=group_with_members.id, user_id=moderator_user.id, removed_by=member_user)

    def test_ban_member(self, group_with_members, moderator_user, member_user, django_capture_on_commit_callbacks):
        with django_capture_on_commit_callbacks() as callbacks:
            membership = ban_member(
                group_ref=group_with_members.id,
                user_id=member_user.id,
                banned_by=moderator_user,
                reason='Selling counterfeit seed',
            )

        assert membership.status == MemberStatus.BANNED
        assert membership.ban.reason == 'Selling counterfeit seed'
        assert membership.ban.banned_by_id == moderator_user.id
        assert len(callbacks) == 1
        group_with_members.refresh_from_db()
        assert group_with_members.member_count == 3

    def test_only_owner_bans_admin(self, group_with_members, admin_user, group_owner, add_member, make_user):
        other_admin = make_user('second-admin')
        add_member(group_with_members, other_admin, MemberRole.ADMIN)

        with pytest.raises(InsufficientPermissionsError):
            ban_member(group_ref=group_with_members.id, user_id=other_admin.id, banned_by=admin_user, reason='x')

        membership = ban_member(
            group_ref=group_with_members.id, user_id=other_admin.id, banned_by=group_owner, reason='x'
        )
        assert membership.status == MemberStatus.BANNED
        assert other_admin not in group_with_members.admins.all()

    def test_ban_self_owner_and_repeat(self, group_with_members, group_owner, admin_user, member_user):
        with pytest.raises(SelfActionError):
            ban_member(group_ref=group_with_members.id, user_id=admin_user.id, banned_by=admin_user, reason='x')
        with pytest.raises(OwnerActionError):
            ban_member(group_ref=group_with_members.id, user_id=group_owner.id, banned_by=admin_user, reason='x')

        ban_member(group_ref=group_with_members.id, user_id=member_user.id, banned_by=admin_user, reason='x')
        with pytest.raises(InvalidStatusTransitionError):
            ban_member(group_ref=group_with_members.id, user_id=member_user.id, banned_by=admin_user, reason='x')

    def test_ban_reason_length(self, group_with_members, admin_user, member_user):
        with pytest.raises(InvalidInputError):
            ban_member(
                group_ref=group_with_members.id, user_id=member_user.id, banned_by=admin_user, reason='x' * 501
            )

    def test_ban_left_member_keeps_counters(self, group_with_members, admin_user, member_user):
        leave_group(group_ref=group_with_members.id, user=member_user)

        ban_member(group_ref=group_with_members.id, user_id=member_user.id, banned_by=admin_user, reason='spam')

        group_with_members.refresh_from_db()
        assert group_with_members.member_count == 3

    def test_unban_keeps_prior_role(self, group_with_members, group_owner, admin_user, moderator_user):
        ban_member(group_ref=group_with_members.id, user_id=admin_user.id, banned_by=group_owner, reason='x')
        group_with_members.refresh_from_db()
        assert not group_with_members.admins.filter(id=admin_user.id).exists()

        membership = unban_member(group_ref=group_with_members.id, user_id=admin_user.id, unbanned_by=moderator_user)

        assert membership.status == MemberStatus.ACTIVE
        assert membership.role == MemberRole.ADMIN
        assert membership.ban is None
        assert membership.last_activity_at is not None
        group_with_members.refresh_from_db()
        assert group_with_members.member_count == 4
        assert group_with_members.admins.filter(id=admin_user.id).exists()

    def test_unban_moderator_rejoins_moderators(self, group_with_members, group_owner, moderator_user):
        ban_member(group_ref=group_with_members.id, user_id=moderator_user.id, banned_by=group_owner, reason='x')

        unban_member(group_ref=group_with_members.id, user_id=moderator_user.id, unbanned_by=group_owner)

        group_with_members.refresh_from_db()
        assert group_with_members.moderators.filter(id=moderator_user.id).exists()
        assert not group_with_members.admins.filter(id=moderator_user.id).exists()

    def test_unban_requires_banned_member(self, group_with_members, member_user, admin_user):
        with pytest.raises(InvalidStatusTransitionError):
            unban_member(group_ref=group_with_members.id, user_id=member_user.id, unbanned_by=admin_user)

    def test_join_request_approval(self, private_group, outsider, group_owner):
        join_group(group_ref=private_group.id, user=outsider)

        pending = list_join_requests(group_ref=private_group.id, requested_by=group_owner)
        assert [m.user for m in pending] == [outsider]

        membership = approve_join_request(group_ref=private_group.id, user_id=outsider.id, approved_by=group_owner)

        assert membership.status == MemberStatus.ACTIVE
        private_group.refresh_from_db()
        outsider.refresh_from_db()
        assert private_group.member_count == 2
        assert outsider.groups_joined == 1

    def test_join_request_rejection_closes_request(self, private_group, outsider, group_owner):
        request = join_group(group_ref=private_group.id, user=outsider)

        rejected = reject_join_request(group_ref=private_group.id, user_id=outsider.id, rejected_by=group_owner)

        assert rejected.pk == request.pk
        assert rejected.status == MemberStatus.LEFT
        private_group.refresh_from_db()
        outsider.refresh_from_db()
        assert private_group.member_count == 1
        assert outsider.groups_joined == 0
        # may ask again on the same record
        again = join_group(group_ref=private_group.id, user=outsider)
        assert again.pk == request.pk
        assert again.status == MemberStatus.PENDING

    def test_rejecting_returning_member_keeps_history(self, private_group, member_user, group_owner, add_member):
        record = add_member(private_group, member_user)
        leave_group(group_ref=private_group.id, user=member_user)
        join_group(group_ref=private_group.id, user=member_user)

        reject_join_request(group_ref=private_group.id, user_id=member_user.id, rejected_by=group_owner)

        kept = GroupMembership.objects.get(pk=record.pk)
        assert kept.status == MemberStatus.LEFT
        assert GroupMembership.objects.filter(group=private_group, user=member_user).count() == 1

    def test_reject_without_pending_request(self, private_group, member_user, group_owner, add_member):
        add_member(private_group, member_user)

        with pytest.raises(MemberNotFoundError):
            reject_join_request(group_ref=private_group.id, user_id=member_user.id, rejected_by=group_owner)

        assert is_active_member(group_id=private_group.id, user_id=member_user.id)

    def test_join_requests_need_moderator(self, private_group, outsider, member_user, add_member):
        add_member(private_group, member_user)
        join_group(group_ref=private_group.id, user=outsider)

        with pytest.raises(InsufficientPermissionsError):
            list_join_requests(group_ref=private_group.id, requested_by=member_user)
        with pytest.raises(InsufficientPermissionsError):
            approve_join_request(group_ref=private_group.id, user_id=outsider.id, approved_by=member_user)

    def test_approve_without_request(self, group_with_members, member_user, group_owner):
        with pytest.raises(MemberNotFoundError):
            approve_join_request(group_ref=group_with_members.id, user_id=member_user.id, approved_by=group_owner)

    def test_notification_preferences(self, group_with_members, member_user):
        membership = update_notification_preferences(
            group_ref=group_with_members.id, user=member_user, mentions=False
        )

        assert membership.notification_preferences == {
            'new_posts': True,
            'mentions': False,
            'announcements': True,
        }


# =============================================================================
# Role Management Service Tests
# =============================================================================

@pytest.mark.django_db
class TestRoleManagement:
    """Tests for role_management.py service functions."""

    def test_update_member_role_success(self, group_with_members, admin_user, member_user):
        membership = update_member_role(
            group_ref=group_with_members.id,
            user_id=member_user.id,
            new_role=MemberRole.MODERATOR,
            updated_by=admin_user,
        )

        assert membership.role == MemberRole.MODERATOR
        assert member_user in group_with_members.moderators.all()

    def test_only_owner_promotes_to_admin(self, group_with_members, admin_user, group_owner, member_user):
        with pytest.raises(InsufficientPermissionsError):
            update_member_role(
                group_ref=group_with_members.id, user_id=member_user.id,
                new_role=MemberRole.ADMIN, updated_by=admin_user,
            )

        update_member_role(
            group_ref=group_with_members.id, user_id=member_user.id,
            new_role=MemberRole.ADMIN, updated_by=group_owner,
        )
        assert member_user in group_with_members.admins.all()

    def test_admin_cannot_change_admin(self, group_with_members, admin_user, make_user, add_member):
        other_admin = make_user('second-admin')
        add_member(group_with_members, other_admin, MemberRole.ADMIN)

        with pytest.raises(InsufficientPermissionsError):
            update_member_role(
                group_ref=group_with_members.id, user_id=other_admin.id,
                new_role=MemberRole.MEMBER, updated_by=admin_user,
            )

    def test_update_member_role_cannot_change_owner(self, group_with_members, group_owner, admin_user):
        with pytest.raises(OwnerActionError):
            update_member_role(
                group_ref=group_with_members.id, user_id=group_owner.id,
                new_role=MemberRole.MEMBER, updated_by=admin_user,
            )

    def test_cannot_assign_owner_or_self(self, group_with_members, group_owner, member_user):
        with pytest.raises(InvalidRoleError):
            update_member_role(
                group_ref=group_with_members.id, user_id=member_user.id,
                new_role=MemberRole.OWNER, updated_by=group_owner,
            )
        with pytest.raises(SelfActionError):
            update_member_role(
                group_ref=group_with_members.id, user_id=group_owner.id,
                new_role=MemberRole.ADMIN, updated_by=group_owner,
            )

    def test_update_member_role_insufficient_permissions(self, group_with_members, moderator_user, member_user):
        with pytest.raises(InsufficientPermissionsError):
            update_member_role(
                group_ref=group_with_members.id, user_id=member_user.id,
                new_role=MemberRole.MODERATOR, updated_by=moderator_user,
            )

    def test_role_change_signal(self, group_with_members, admin_user, member_user, django_capture_on_commit_callbacks):
        received = []

        def handler(sender, **payload):
            received.append(payload)

        signals.member_role_changed.connect(handler)
        try:
            with django_capture_on_commit_callbacks(execute=True):
                update_member_role(
                    group_ref=group_with_members.id, user_id=member_user.id,
                    new_role=MemberRole.MODERATOR, updated_by=admin_user,
                )
        finally:
            signals.member_role_changed.disconnect(handler)

        assert received[0]['old_role'] == MemberRole.MEMBER
        assert received[0]['new_role'] == MemberRole.MODERATOR

    def test_transfer_ownership(self, group_with_members, group_owner, member_user):
        group = transfer_ownership(
            group_ref=group_with_members.id,
            new_owner_id=member_user.id,
            transferred_by=group_owner,
        )

        assert group.owner_id == member_user.id
        assert group.created_by_id == group_owner.id
        assert find_membership(group_id=group.id, user_id=member_user.id).role == MemberRole.OWNER
        assert find_membership(group_id=group.id, user_id=group_owner.id).role == MemberRole.ADMIN
        assert set(group.admins.all()) >= {group_owner, member_user}

        # previous owner may now leave
        leave_group(group_ref=group.id, user=group_owner)

    def test_transfer_ownership_owner_only(self, group_with_members, admin_user, member_user):
        with pytest.raises(InsufficientPermissionsError):
            transfer_ownership(
                group_ref=group_with_members.id, new_owner_id=member_user.id, transferred_by=admin_user
            )

    def test_transfer_to_non_member(self, group, group_owner, outsider):
        with pytest.raises(MemberNotFoundError):
            transfer_ownership(group_ref=group.id, new_owner_id=outsider.id, transferred_by=group_owner)


# =============================================================================
# Counter consistency
# =============================================================================

@pytest.mark.django_db
class TestCounters:

    def test_member_count_tracks_active_memberships(self, group, group_owner, make_user):
        farmers = [make_user(f'farmer{i}') for i in range(5)]

        join_group(group_ref=group.id, user=farmers[0])
        join_group(group_ref=group.id, user=farmers[1])
        leave_group(group_ref=group.id, user=farmers[0])
        ban_member(group_ref=group.id, user_id=farmers[1].id, banned_by=group_owner, reason='spam')
        unban_member(group_ref=group.id, user_id=farmers[1].id, unbanned_by=group_owner)

        invitation = issue_code_invitation(group_ref=group.id, issued_by=group_owner, max_uses=3)
        for farmer in farmers[2:]:
            accept_invitation(invite_code=invitation.invite_code, user=farmer)
        join_group(group_ref=group.id, user=farmers[0])

        group.refresh_from_db()
        assert group.member_count == active_member_count(group) == 6

        for farmer in farmers:
            farmer.refresh_from_db()
            assert farmer.groups_joined == 1

    def test_counters_never_negative(self, group):
        increment_member_count(group.id, -5)

        group.refresh_from_db()
        assert group.member_count == 0
        assert User.objects.adjust_groups_joined(uuid4(), -1) == 0
