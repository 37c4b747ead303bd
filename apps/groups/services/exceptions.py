"""
Domain-specific exceptions for groups app.

These exceptions represent business rule violations and should be
caught in views and converted to appropriate HTTP responses.

Every concrete error belongs to exactly one category:

    NotFoundError      -> 404
    ConflictError      -> 409
    ForbiddenError     -> 403
    InvalidInputError  -> 400
    InternalError      -> 500 (logged, caller should retry)
"""


class GroupsServiceError(Exception):
    """Base exception for all groups service errors."""

    status_code = 400
    code = 'groups_error'
    default_message = 'Group operation failed'

    def __init__(self, message=None):
        super().__init__(message or self.default_message)


# =============================================================================
# Categories
# =============================================================================

class NotFoundError(GroupsServiceError):
    status_code = 404
    code = 'not_found'
    default_message = 'Not found'


class ConflictError(GroupsServiceError):
    status_code = 409
    code = 'conflict'
    default_message = 'Conflicting state'


class ForbiddenError(GroupsServiceError):
    status_code = 403
    code = 'forbidden'
    default_message = 'You do not have permission to perform this action'


class InvalidInputError(GroupsServiceError):
    status_code = 400
    code = 'invalid_input'
    default_message = 'Invalid input'


class InternalError(GroupsServiceError):
    status_code = 500
    code = 'internal_error'
    default_message = 'Internal error, please retry'


# =============================================================================
# Not found
# =============================================================================

class GroupNotFoundError(NotFoundError):
    """Raised when a group does not exist or has been deactivated."""
    code = 'group_not_found'
    default_message = 'Group not found'


class InvitationNotFoundError(NotFoundError):
    """Raised when an invitation code or id does not resolve."""
    code = 'invitation_not_found'
    default_message = 'Invitation not found'


class MemberNotFoundError(NotFoundError):
    """Raised when the target user has no matching membership."""
    code = 'member_not_found'
    default_message = 'Member not found in this group'


class UserNotFoundError(NotFoundError):
    code = 'user_not_found'
    default_message = 'User not found'


# =============================================================================
# Conflict
# =============================================================================

class AlreadyMemberError(ConflictError):
    """Raised when a user tries to join a group they're already in."""
    code = 'already_member'
    default_message = 'User is already a member of this group'


class PendingRequestExistsError(ConflictError):
    code = 'pending_request_exists'
    default_message = 'A membership request is already pending approval'


class InvitationNotPendingError(ConflictError):
    code = 'invitation_not_pending'
    default_message = 'Invitation is no longer pending'


class InvitationExpiredError(ConflictError):
    code = 'invitation_expired'
    default_message = 'Invitation has expired'


class InvitationExhaustedError(ConflictError):
    code = 'invitation_exhausted'
    default_message = 'Invitation has reached maximum uses'


class DuplicateInvitationError(ConflictError):
    code = 'duplicate_invitation'
    default_message = 'User already has a pending invitation to this group'


class InvalidStatusTransitionError(ConflictError):
    """Raised when a membership cannot move to the requested status."""
    code = 'invalid_status_transition'
    default_message = 'Membership status cannot be changed this way'


class SlugUnavailableError(ConflictError):
    code = 'slug_unavailable'
    default_message = 'Could not assign a unique slug for this group name'


# =============================================================================
# Forbidden
# =============================================================================

class NotMemberError(ForbiddenError):
    """Raised when a user tries to perform an action requiring membership."""
    code = 'not_member'
    default_message = 'You are not a member of this group'


class InsufficientPermissionsError(ForbiddenError):
    """Raised when a user lacks required role for an action."""
    code = 'insufficient_role'
    default_message = 'Insufficient role for this action'


class BannedMemberError(ForbiddenError):
    code = 'banned'
    default_message = 'You have been banned from this group'


class InvitationRecipientMismatchError(ForbiddenError):
    code = 'invitation_recipient_mismatch'
    default_message = 'This invitation was issued to another user'


class InviteOnlyGroupError(ForbiddenError):
    code = 'invite_only'
    default_message = 'This group is invite-only. You need an invitation to join.'


class OwnerActionError(ForbiddenError):
    """Raised for actions that would remove or demote the group owner."""
    code = 'owner_protected'
    default_message = 'This action cannot be applied to the group owner'


# =============================================================================
# Invalid input
# =============================================================================

class SelfInvitationError(InvalidInputError):
    code = 'self_invitation'
    default_message = 'You cannot invite yourself'


class SelfActionError(InvalidInputError):
    code = 'self_action'
    default_message = 'You cannot perform this action on yourself'


class InvalidExpiryError(InvalidInputError):
    code = 'invalid_expiry'
    default_message = 'Expiry must be in the future'


class InvalidMaxUsesError(InvalidInputError):
    code = 'invalid_max_uses'
    default_message = 'max_uses is out of range'


class InvalidRoleError(InvalidInputError):
    code = 'invalid_role'
    default_message = 'Invalid role'


class InvalidGroupDataError(InvalidInputError):
    code = 'invalid_group_data'
    default_message = 'Invalid group data'


class InvalidSearchError(InvalidInputError):
    code = 'invalid_search'
    default_message = 'Invalid search parameters'


# =============================================================================
# Internal
# =============================================================================

class InviteCodeGenerationError(InternalError):
    code = 'invite_code_generation_failed'
    default_message = 'Could not generate a unique invite code, please retry'


class AcceptanceFailedError(InternalError):
    code = 'acceptance_failed'
    default_message = 'Could not accept the invitation, please retry'
