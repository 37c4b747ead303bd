"""
Groups app services layer.

Services contain business logic and orchestrate operations across models.
All state-changing operations use transactions and concurrency protection.
"""

from .exceptions import (
    GroupsServiceError,
    NotFoundError,
    ConflictError,
    ForbiddenError,
    InvalidInputError,
    InternalError,
    GroupNotFoundError,
    InvitationNotFoundError,
    MemberNotFoundError,
    UserNotFoundError,
    AlreadyMemberError,
    PendingRequestExistsError,
    InvitationNotPendingError,
    InvitationExpiredError,
    InvitationExhaustedError,
    DuplicateInvitationError,
    InvalidStatusTransitionError,
    SlugUnavailableError,
    NotMemberError,
    InsufficientPermissionsError,
    BannedMemberError,
    InvitationRecipientMismatchError,
    InviteOnlyGroupError,
    OwnerActionError,
    SelfInvitationError,
    SelfActionError,
    InvalidExpiryError,
    InvalidMaxUsesError,
    InvalidRoleError,
    InvalidGroupDataError,
    InvalidSearchError,
    InviteCodeGenerationError,
    AcceptanceFailedError,
)

from .authorization import require_role

from .group_management import (
    resolve_group,
    get_user_groups,
    discover_groups,
    search_groups,
    generate_unique_slug,
    increment_member_count,
    create_group,
    update_group,
    deactivate_group,
)

from .membership_management import (
    find_membership,
    is_active_member,
    create_or_reactivate,
    set_status,
    list_members,
    list_staff,
    join_group,
    leave_group,
    remove_member,
    ban_member,
    unban_member,
    list_join_requests,
    approve_join_request,
    reject_join_request,
    update_notification_preferences,
)

from .role_management import (
    update_member_role,
    transfer_ownership,
)

from .invite_management import (
    generate_invite_code,
    issue_direct_invitation,
    issue_code_invitation,
    get_invitation_by_code,
    validate_invitation,
    consume_invitation,
    describe_invitation,
    list_group_invitations,
    cancel_invitation,
    decline_invitation,
)

from .acceptance import accept_invitation


__all__ = [
    # Exceptions
    'GroupsServiceError',
    'NotFoundError',
    'ConflictError',
    'ForbiddenError',
    'InvalidInputError',
    'InternalError',
    'GroupNotFoundError',
    'InvitationNotFoundError',
    'MemberNotFoundError',
    'UserNotFoundError',
    'AlreadyMemberError',
    'PendingRequestExistsError',
    'InvitationNotPendingError',
    'InvitationExpiredError',
    'InvitationExhaustedError',
    'DuplicateInvitationError',
    'InvalidStatusTransitionError',
    'SlugUnavailableError',
    'NotMemberError',
    'InsufficientPermissionsError',
    'BannedMemberError',
    'InvitationRecipientMismatchError',
    'InviteOnlyGroupError',
    'OwnerActionError',
    'SelfInvitationError',
    'SelfActionError',
    'InvalidExpiryError',
    'InvalidMaxUsesError',
    'InvalidRoleError',
    'InvalidGroupDataError',
    'InvalidSearchError',
    'InviteCodeGenerationError',
    'AcceptanceFailedError',

    # Authorization
    'require_role',

    # Group Management
    'resolve_group',
    'get_user_groups',
    'discover_groups',
    'search_groups',
    'generate_unique_slug',
    'increment_member_count',
    'create_group',
    'update_group',
    'deactivate_group',

    # Membership Management
    'find_membership',
    'is_active_member',
    'create_or_reactivate',
    'set_status',
    'list_members',
    'list_staff',
    'join_group',
    'leave_group',
    'remove_member',
    'ban_member',
    'unban_member',
    'list_join_requests',
    'approve_join_request',
    'reject_join_request',
    'update_notification_preferences',

    # Role Management
    'update_member_role',
    'transfer_ownership',

    # Invite Management
    'generate_invite_code',
    'issue_direct_invitation',
    'issue_code_invitation',
    'get_invitation_by_code',
    'validate_invitation',
    'consume_invitation',
    'describe_invitation',
    'list_group_invitations',
    'cancel_invitation',
    'decline_invitation',

    # Acceptance
    'accept_invitation',
]
