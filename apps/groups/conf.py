"""Groups tunables, read from ``settings.GROUPS`` with defaults."""

from django.conf import settings


DEFAULTS = {
    'INVITATION_EXPIRY_DAYS': 7,
    'INVITE_CODE_LENGTH': 8,
    'INVITE_CODE_MAX_ATTEMPTS': 10,
    'SLUG_MAX_ATTEMPTS': 5,
    'CODE_INVITE_MAX_USES_LIMIT': 1000,
    'MEMBERS_PAGE_SIZE': 20,
    'MEMBERS_MAX_PAGE_SIZE': 50,
}


def groups_setting(name):
    overrides = getattr(settings, 'GROUPS', {})
    if name in overrides:
        return overrides[name]
    return DEFAULTS[name]
