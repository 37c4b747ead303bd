# Generated manually for the groups app

import uuid
from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion
import django.utils.timezone


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='Group',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('name', models.CharField(max_length=100)),
                ('slug', models.SlugField(allow_unicode=True, max_length=120, unique=True)),
                ('description', models.TextField(blank=True)),
                ('group_type', models.CharField(choices=[('crop', 'Crop'), ('region', 'Region'), ('topic', 'Topic'), ('practice', 'Practice')], default='topic', max_length=20)),
                ('privacy', models.CharField(choices=[('public', 'Public'), ('private', 'Private'), ('invite-only', 'Invite only')], default='public', max_length=20)),
                ('crops', models.JSONField(blank=True, default=list)),
                ('region', models.CharField(blank=True, max_length=100)),
                ('tags', models.JSONField(blank=True, default=list)),
                ('rules', models.JSONField(blank=True, default=list)),
                ('member_count', models.PositiveIntegerField(default=0)),
                ('post_count', models.PositiveIntegerField(default=0)),
                ('is_active', models.BooleanField(default=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('created_by', models.ForeignKey(null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='created_groups', to=settings.AUTH_USER_MODEL)),
                ('owner', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='owned_groups', to=settings.AUTH_USER_MODEL)),
                ('admins', models.ManyToManyField(blank=True, related_name='administered_groups', to=settings.AUTH_USER_MODEL)),
                ('moderators', models.ManyToManyField(blank=True, related_name='moderated_groups', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'db_table': 'groups',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['is_active', '-member_count'], name='groups_active_members_idx'),
                    models.Index(fields=['owner', 'created_at'], name='groups_owner_created_idx'),
                    models.Index(fields=['group_type', 'is_active'], name='groups_type_active_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='GroupMembership',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('role', models.CharField(choices=[('member', 'Member'), ('moderator', 'Moderator'), ('admin', 'Admin'), ('owner', 'Owner')], default='member', max_length=20)),
                ('status', models.CharField(choices=[('active', 'Active'), ('pending', 'Pending'), ('banned', 'Banned'), ('left', 'Left')], default='active', max_length=20)),
                ('joined_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('ban_reason', models.CharField(blank=True, max_length=500)),
                ('banned_at', models.DateTimeField(blank=True, null=True)),
                ('last_activity_at', models.DateTimeField(blank=True, null=True)),
                ('notify_new_posts', models.BooleanField(default=True)),
                ('notify_mentions', models.BooleanField(default=True)),
                ('notify_announcements', models.BooleanField(default=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('group', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='memberships', to='groups.group')),
                ('user', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='group_memberships', to=settings.AUTH_USER_MODEL)),
                ('invited_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to=settings.AUTH_USER_MODEL)),
                ('banned_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'db_table': 'group_memberships',
                'ordering': ['joined_at'],
                'indexes': [
                    models.Index(fields=['group', 'status', 'role'], name='membership_group_status_idx'),
                    models.Index(fields=['user', 'status'], name='membership_user_status_idx'),
                    models.Index(fields=['group', 'status', '-created_at'], name='membership_group_recent_idx'),
                ],
                'constraints': [
                    models.UniqueConstraint(fields=('group', 'user'), name='unique_group_membership'),
                    models.UniqueConstraint(condition=models.Q(('role', 'owner')), fields=('group',), name='unique_group_owner'),
                    models.CheckConstraint(
                        condition=models.Q(
                            models.Q(('status', 'banned'), ('banned_at__isnull', False)),
                            models.Q(
                                models.Q(('status', 'banned'), _negated=True),
                                models.Q(('banned_at__isnull', True), ('banned_by__isnull', True), ('ban_reason', '')),
                            ),
                            _connector='OR',
                        ),
                        name='membership_ban_metadata_matches_status',
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name='GroupInvitation',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('invite_code', models.CharField(editable=False, max_length=16, unique=True)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('accepted', 'Accepted'), ('declined', 'Declined'), ('expired', 'Expired'), ('cancelled', 'Cancelled')], default='pending', max_length=20)),
                ('max_uses', models.PositiveIntegerField(default=1)),
                ('used_count', models.PositiveIntegerField(default=0)),
                ('expires_at', models.DateTimeField()),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('group', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='invitations', to='groups.group')),
                ('invited_by', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='sent_group_invitations', to=settings.AUTH_USER_MODEL)),
                ('invited_user', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.CASCADE, related_name='received_group_invitations', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'db_table': 'group_invitations',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['group', 'status', '-created_at'], name='invitation_group_status_idx'),
                    models.Index(fields=['group', 'invited_user', 'status'], name='invitation_group_user_idx'),
                    models.Index(fields=['invited_by', '-created_at'], name='invitation_issuer_recent_idx'),
                ],
                'constraints': [
                    models.CheckConstraint(condition=models.Q(('used_count__lte', models.F('max_uses'))), name='invitation_used_count_within_max_uses'),
                    models.CheckConstraint(condition=models.Q(('max_uses__gte', 1)), name='invitation_max_uses_positive'),
                    models.CheckConstraint(condition=models.Q(('invited_user__isnull', True), ('max_uses', 1), _connector='OR'), name='direct_invitation_single_use'),
                    models.UniqueConstraint(condition=models.Q(('status', 'pending'), ('invited_user__isnull', False)), fields=('group', 'invited_user'), name='unique_pending_direct_invitation'),
                ],
            },
        ),
    ]
