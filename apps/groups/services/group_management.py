"""
Group management service.

Resolves groups by id or slug, assigns unique slugs, keeps the
denormalized member counter and handles group create/update/soft-delete.
"""

import logging
from typing import Optional, Union
from uuid import UUID

from django.db import IntegrityError, transaction
from django.db.models import Case, ExpressionWrapper, F, IntegerField, Q, QuerySet, Value, When
from django.db.models.functions import Greatest
from django.utils import timezone
from django.utils.text import slugify

from apps.accounts.models import User
from apps.groups.conf import groups_setting
from apps.groups.models import (
    Group,
    GroupMembership,
    GroupPrivacy,
    GroupType,
    MemberRole,
    MemberStatus,
)

from .authorization import require_role
from .exceptions import (
    GroupNotFoundError,
    InvalidGroupDataError,
    InvalidSearchError,
    SlugUnavailableError,
)

logger = logging.getLogger(__name__)

NAME_MIN_LENGTH = 3
NAME_MAX_LENGTH = 100

DISCOVER_CROP_WEIGHT = 10
DISCOVER_REGION_WEIGHT = 15

SEARCH_MIN_QUERY_LENGTH = 2
SEARCH_SORT_RELEVANCE = 'relevance'
SEARCH_SORT_MEMBER_COUNT = 'member_count'
SEARCH_SORT_CREATED_AT = 'created_at'
SEARCH_SORTS = (SEARCH_SORT_RELEVANCE, SEARCH_SORT_MEMBER_COUNT, SEARCH_SORT_CREATED_AT)


def _parse_uuid(value) -> Optional[UUID]:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        return None


def _clean_name(name: str) -> str:
    name = (name or '').strip()
    if not NAME_MIN_LENGTH <= len(name) <= NAME_MAX_LENGTH:
        raise InvalidGroupDataError(
            f"Group name must be between {NAME_MIN_LENGTH} and {NAME_MAX_LENGTH} characters"
        )
    return name


def _check_choice(value, choices, field):
    if value not in choices.values:
        raise InvalidGroupDataError(
            f"Invalid {field}. Must be one of: {', '.join(choices.values)}"
        )


# =============================================================================
# Lookup
# =============================================================================

def resolve_group(group_ref: Union[UUID, str], *, for_update: bool = False) -> Group:
    """
    Resolve a group by UUID, falling back to slug.

    Args:
        group_ref: Group UUID (or its string form) or slug
        for_update: Lock the group row (inside a transaction)

    Returns:
        Active Group instance

    Raises:
        GroupNotFoundError: If no group matches or it has been deactivated
    """
    queryset = Group.objects.all()
    if for_update:
        queryset = queryset.select_for_update()

    group = None
    group_id = _parse_uuid(group_ref)
    if group_id is not None:
        group = queryset.filter(id=group_id).first()
    if group is None:
        group = queryset.filter(slug=str(group_ref)).first()

    if group is None or not group.is_active:
        raise GroupNotFoundError(f"Group {group_ref} not found")
    return group


def get_user_groups(*, user: User) -> QuerySet[Group]:
    """Active groups where ``user`` holds an active membership."""
    return (
        Group.objects
        .filter(
            is_active=True,
            memberships__user=user,
            memberships__status=MemberStatus.ACTIVE,
        )
        .select_related('owner')
        .distinct()
    )


# =============================================================================
# Discovery and search
# =============================================================================

def _signed_in(user) -> bool:
    return user is not None and user.is_authenticated


def _crop_match_score(crops) -> Optional[Case]:
    """``DISCOVER_CROP_WEIGHT`` points for each profile crop the group lists."""
    score = None
    for crop in sorted({c.strip().lower() for c in crops or [] if c and c.strip()}):
        # crops are stored lowercased; match the quoted JSON element
        term = Case(
            When(crops__icontains=f'"{crop}"', then=Value(DISCOVER_CROP_WEIGHT)),
            default=Value(0),
            output_field=IntegerField(),
        )
        score = term if score is None else score + term
    return score


def discover_groups(*, user: Optional[User] = None) -> QuerySet[Group]:
    """
    Groups worth joining, best match first.

    Only active groups that admit join attempts (public or private) are
    offered. A signed-in user never sees groups where they are already
    active or waiting on a join request, and their results are ranked by
    shared crops and home region before member count. Anonymous callers
    get the most popular groups.
    """
    queryset = (
        Group.objects
        .filter(is_active=True)
        .exclude(privacy=GroupPrivacy.INVITE_ONLY)
        .select_related('owner')
    )
    if not _signed_in(user):
        return queryset.order_by('-member_count', '-created_at')

    queryset = queryset.exclude(
        id__in=GroupMembership.objects.filter(
            user=user,
            status__in=[MemberStatus.ACTIVE, MemberStatus.PENDING],
        ).values('group_id')
    )

    score = _crop_match_score(user.crops)
    if user.region:
        region_term = Case(
            When(region__iexact=user.region, then=Value(DISCOVER_REGION_WEIGHT)),
            default=Value(0),
            output_field=IntegerField(),
        )
        score = region_term if score is None else score + region_term
    if score is None:
        return queryset.order_by('-member_count', '-created_at')

    return (
        queryset
        .annotate(relevance=ExpressionWrapper(score, output_field=IntegerField()))
        .order_by('-relevance', '-member_count', '-created_at')
    )


def search_groups(
    *,
    query: str,
    user: Optional[User] = None,
    group_type: Optional[str] = None,
    privacy: Optional[str] = None,
    sort_by: str = SEARCH_SORT_RELEVANCE,
) -> QuerySet[Group]:
    """
    Case-insensitive text search over active groups.

    Matches the name, description, tags, crops and region. Invite-only
    groups only show up for their own active members.

    Args:
        query: Search text, at least two characters after trimming
        user: Caller, or None when anonymous
        group_type: Optional group type filter
        privacy: Optional privacy filter
        sort_by: ``relevance`` (name matches first, then popularity),
            ``member_count`` or ``created_at`` (newest first)

    Raises:
        InvalidSearchError: If the query is too short or ``sort_by`` is unknown
        InvalidGroupDataError: If a filter value is not a valid choice
    """
    query = (query or '').strip()
    if len(query) < SEARCH_MIN_QUERY_LENGTH:
        raise InvalidSearchError(
            f"Search query must be at least {SEARCH_MIN_QUERY_LENGTH} characters"
        )
    if sort_by not in SEARCH_SORTS:
        raise InvalidSearchError(f"Invalid sort. Must be one of: {', '.join(SEARCH_SORTS)}")

    queryset = Group.objects.filter(is_active=True).filter(
        Q(name__icontains=query)
        | Q(description__icontains=query)
        | Q(tags__icontains=query)
        | Q(crops__icontains=query)
        | Q(region__icontains=query)
    )

    if group_type:
        _check_choice(group_type, GroupType, 'group type')
        queryset = queryset.filter(group_type=group_type)
    if privacy:
        _check_choice(privacy, GroupPrivacy, 'privacy')
        queryset = queryset.filter(privacy=privacy)

    if _signed_in(user):
        member_of = GroupMembership.objects.filter(
            user=user,
            status=MemberStatus.ACTIVE,
        ).values('group_id')
        queryset = queryset.exclude(
            Q(privacy=GroupPrivacy.INVITE_ONLY) & ~Q(id__in=member_of)
        )
    else:
        queryset = queryset.exclude(privacy=GroupPrivacy.INVITE_ONLY)

    queryset = queryset.select_related('owner')
    if sort_by == SEARCH_SORT_MEMBER_COUNT:
        return queryset.order_by('-member_count', '-created_at')
    if sort_by == SEARCH_SORT_CREATED_AT:
        return queryset.order_by('-created_at')
    return (
        queryset
        .annotate(name_match=Case(
            When(name__icontains=query, then=Value(1)),
            default=Value(0),
            output_field=IntegerField(),
        ))
        .order_by('-name_match', '-member_count', '-created_at')
    )


# =============================================================================
# Slugs
# =============================================================================

def slugify_name(name: str) -> str:
    """Lowercase, drop non-word characters, collapse whitespace to hyphens."""
    return slugify(name, allow_unicode=True) or 'group'


def generate_unique_slug(name: str, *, exclude_id: Optional[UUID] = None) -> str:
    """
    Try ``base``, ``base-1``, ``base-2``... until a free slug is found.

    The result is only a candidate: callers must still handle the unique
    constraint at write time since another writer may take it first.
    """
    base = slugify_name(name)
    existing = Group.objects.all()
    if exclude_id is not None:
        existing = existing.exclude(id=exclude_id)

    slug = base
    counter = 1
    while existing.filter(slug=slug).exists():
        slug = f"{base}-{counter}"
        counter += 1
    return slug


# =============================================================================
# Counters and staff sets
# =============================================================================

def increment_member_count(group_id: UUID, delta: int) -> None:
    """Atomically shift ``member_count`` by ``delta``, never below zero."""
    Group.objects.filter(id=group_id).update(
        member_count=Greatest(F('member_count') + delta, 0),
        updated_at=timezone.now(),
    )


def sync_staff_sets(group: Group, user_id: UUID, role: str, *, active: bool) -> None:
    """Keep ``group.admins`` / ``group.moderators`` in step with a membership."""
    group.admins.remove(user_id)
    group.moderators.remove(user_id)
    if not active:
        return
    if role in (MemberRole.OWNER, MemberRole.ADMIN):
        group.admins.add(user_id)
    elif role == MemberRole.MODERATOR:
        group.moderators.add(user_id)


# =============================================================================
# Create / update / deactivate
# =============================================================================

def create_group(
    *,
    name: str,
    owner: User,
    description: str = '',
    privacy: str = GroupPrivacy.PUBLIC,
    group_type: str = GroupType.TOPIC,
    crops: Optional[list] = None,
    region: str = '',
    tags: Optional[list] = None,
    rules: Optional[list] = None,
) -> Group:
    """
    Create a new group and add the creator as owner.

    This is a multi-step operation wrapped in a transaction:
    1. Pick a free slug for the name
    2. Create the group (member_count=1)
    3. Create the owner membership and add the owner to the admins set
    4. Bump the owner's joined-groups counter

    A slug taken between the lookup and the insert triggers a retry with a
    freshly chosen slug.

    Raises:
        InvalidGroupDataError: If name, privacy or group type are invalid
        SlugUnavailableError: If no unique slug could be written after retries
    """
    name = _clean_name(name)
    _check_choice(privacy, GroupPrivacy, 'privacy')
    _check_choice(group_type, GroupType, 'group type')

    max_attempts = groups_setting('SLUG_MAX_ATTEMPTS')
    for attempt in range(max_attempts):
        slug = generate_unique_slug(name)

        try:
            with transaction.atomic():
                group = Group.objects.create(
                    name=name,
                    slug=slug,
                    description=description,
                    privacy=privacy,
                    group_type=group_type,
                    crops=[crop.strip().lower() for crop in (crops or []) if crop.strip()],
                    region=region,
                    tags=tags or [],
                    rules=rules or [],
                    owner=owner,
                    created_by=owner,
                    member_count=1,
                )
                GroupMembership.objects.create(
                    group=group,
                    user=owner,
                    role=MemberRole.OWNER,
                    status=MemberStatus.ACTIVE,
                )
                group.admins.add(owner)
                User.objects.adjust_groups_joined(owner.id, 1)
        except IntegrityError:
            logger.warning(
                "Slug %r taken during group creation (attempt %d/%d)",
                slug, attempt + 1, max_attempts,
            )
            continue

        logger.info("Group %s (%s) created by %s", group.id, group.slug, owner.id)
        return group

    raise SlugUnavailableError(
        f"Failed to assign a unique slug after {max_attempts} attempts"
    )


def _save_with_fresh_slug(group: Group, update_fields: list) -> None:
    max_attempts = groups_setting('SLUG_MAX_ATTEMPTS')
    for attempt in range(max_attempts):
        group.slug = generate_unique_slug(group.name, exclude_id=group.id)
        try:
            with transaction.atomic():
                group.save(update_fields=[*update_fields, 'slug'])
            return
        except IntegrityError:
            logger.warning(
                "Slug %r taken during rename of %s (attempt %d/%d)",
                group.slug, group.id, attempt + 1, max_attempts,
            )

    raise SlugUnavailableError(
        f"Failed to assign a unique slug after {max_attempts} attempts"
    )


@transaction.atomic
def update_group(
    *,
    group_ref: Union[UUID, str],
    user: User,
    name: Optional[str] = None,
    description: Optional[str] = None,
    privacy: Optional[str] = None,
    group_type: Optional[str] = None,
    region: Optional[str] = None,
    tags: Optional[list] = None,
    rules: Optional[list] = None,
) -> Group:
    """
    Update group details (admin only).

    Renaming re-derives the slug.

    Raises:
        GroupNotFoundError: If group doesn't exist
        NotMemberError / InsufficientPermissionsError: If user is not an admin
        InvalidGroupDataError: If a field value is invalid
        SlugUnavailableError: If the new name cannot get a unique slug
    """
    group = resolve_group(group_ref, for_update=True)
    require_role(group_id=group.id, user_id=user.id, min_role=MemberRole.ADMIN)

    update_fields = ['updated_at']

    if description is not None:
        group.description = description
        update_fields.append('description')

    if privacy is not None:
        _check_choice(privacy, GroupPrivacy, 'privacy')
        group.privacy = privacy
        update_fields.append('privacy')

    if group_type is not None:
        _check_choice(group_type, GroupType, 'group type')
        group.group_type = group_type
        update_fields.append('group_type')

    if region is not None:
        group.region = region
        update_fields.append('region')

    if tags is not None:
        group.tags = tags
        update_fields.append('tags')

    if rules is not None:
        group.rules = rules
        update_fields.append('rules')

    if name is not None and name.strip() != group.name:
        group.name = _clean_name(name)
        update_fields.append('name')
        _save_with_fresh_slug(group, update_fields)
    else:
        group.save(update_fields=update_fields)

    return group


@transaction.atomic
def deactivate_group(*, group_ref: Union[UUID, str], user: User) -> None:
    """
    Soft-delete a group (owner only).

    Memberships and invitations are kept; the group simply stops resolving.
    """
    group = resolve_group(group_ref, for_update=True)
    require_role(group_id=group.id, user_id=user.id, min_role=MemberRole.OWNER)

    group.is_active = False
    group.save(update_fields=['is_active', 'updated_at'])
    logger.info("Group %s deactivated by %s", group.id, user.id)
