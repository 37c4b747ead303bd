import pytest
from django.db import connection

from apps.groups.models import GroupMembership, MemberStatus


requires_row_locks = pytest.mark.skipif(
    not connection.features.has_select_for_update,
    reason='Concurrent writers need a backend with row locks (not SQLite)',
)


def active_member_count(group):
    return GroupMembership.objects.filter(group=group, status=MemberStatus.ACTIVE).count()
