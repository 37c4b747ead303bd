"""
Post-commit group events for the notification service.

Events are queued with ``transaction.on_commit`` so a rolled-back unit
never announces anything, and they are dispatched with ``send_robust`` so
a failing receiver cannot fail the request that produced the event.
"""

import logging
from functools import partial

from django.db import transaction
from django.dispatch import Signal, receiver

logger = logging.getLogger(__name__)


invitation_issued = Signal()
invitation_accepted = Signal()
join_request_submitted = Signal()
membership_approved = Signal()
member_role_changed = Signal()
member_banned = Signal()

ALL_SIGNALS = {
    'invitation_issued': invitation_issued,
    'invitation_accepted': invitation_accepted,
    'join_request_submitted': join_request_submitted,
    'membership_approved': membership_approved,
    'member_role_changed': member_role_changed,
    'member_banned': member_banned,
}


def _dispatch(signal, sender, payload):
    for handler, result in signal.send_robust(sender=sender, **payload):
        if isinstance(result, Exception):
            logger.error(
                "Group event receiver %r failed: %s",
                handler, result, exc_info=(type(result), result, result.__traceback__),
            )


def emit_after_commit(signal, *, sender, **payload):
    """Queue ``signal`` to fire once the current transaction commits."""
    transaction.on_commit(partial(_dispatch, signal, sender, payload))


def _event_name(signal):
    for name, candidate in ALL_SIGNALS.items():
        if candidate is signal:
            return name
    return 'unknown'


@receiver(list(ALL_SIGNALS.values()), dispatch_uid='groups.log_group_event')
def log_group_event(sender, signal, **payload):
    logger.info("group event %s: %s", _event_name(signal), payload)
