# ==========================================
# apps/groups/admin.py
# ==========================================

from django.contrib import admin
from apps.groups.models import Group, GroupInvitation, GroupMembership


class GroupMembershipInline(admin.TabularInline):
    """Inline admin for group memberships."""
    model = GroupMembership
    fk_name = 'group'
    extra = 0
    fields = ['user', 'role', 'status', 'joined_at']
    readonly_fields = ['joined_at']


@admin.register(Group)
class GroupAdmin(admin.ModelAdmin):
    """Admin interface for Groups."""

    list_display = [
        'name',
        'slug',
        'owner',
        'privacy',
        'group_type',
        'member_count',
        'is_active',
        'created_at'
    ]
    list_filter = ['privacy', 'group_type', 'is_active', 'created_at']
    search_fields = ['name', 'slug', 'description', 'owner__email']
    readonly_fields = ['slug', 'member_count', 'post_count', 'created_at', 'updated_at']
    inlines = [GroupMembershipInline]
    date_hierarchy = 'created_at'
    ordering = ['-created_at']

    fieldsets = (
        ('Basic Information', {
            'fields': ('name', 'slug', 'description', 'owner', 'privacy', 'group_type')
        }),
        ('Community', {
            'fields': ('crops', 'region', 'tags', 'rules')
        }),
        ('Counters', {
            'fields': ('member_count', 'post_count', 'is_active')
        }),
        ('Metadata', {
            'fields': ('created_at', 'updated_at'),
            'classes': ('collapse',)
        }),
    )


@admin.register(GroupMembership)
class GroupMembershipAdmin(admin.ModelAdmin):
    """Admin interface for Group Memberships."""

    list_display = ['user', 'group', 'role', 'status', 'joined_at']
    list_filter = ['role', 'status', 'joined_at']
    search_fields = ['user__email', 'group__name']
    readonly_fields = ['joined_at', 'banned_by', 'banned_at', 'last_activity_at']
    date_hierarchy = 'joined_at'
    ordering = ['-joined_at']

    def get_queryset(self, request):
        """Optimize query."""
        qs = super().get_queryset(request)
        return qs.select_related('user', 'group')


@admin.register(GroupInvitation)
class GroupInvitationAdmin(admin.ModelAdmin):
    list_display = ['invite_code', 'group', 'invited_by', 'invited_user', 'status', 'used_count', 'max_uses', 'expires_at']
    list_filter = ['status', 'expires_at']
    search_fields = ['invite_code', 'group__name', 'invited_user__email']
    readonly_fields = ['invite_code', 'used_count', 'created_at', 'updated_at']
    ordering = ['-created_at']

    def get_queryset(self, request):
        qs = super().get_queryset(request)
        return qs.select_related('group', 'invited_by', 'invited_user')
