# ==========================================
# apps/accounts/admin.py
# ==========================================

from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin
from .models import User


@admin.register(User)
class UserAdmin(BaseUserAdmin):
    """Admin interface for the email-based User model."""

    list_display = [
        'email',
        'display_name',
        'region',
        'groups_joined',
        'is_active',
        'is_staff',
        'created_at',
    ]

    list_filter = ['is_active', 'is_staff', 'is_superuser', 'created_at']
    search_fields = ['email', 'display_name']
    ordering = ['-created_at']
    date_hierarchy = 'created_at'

    # No username field on this model
    fieldsets = (
        ('Basic Information', {
            'fields': ('email', 'display_name', 'region', 'password')
        }),
        ('Groups', {
            'fields': ('groups_joined',),
        }),
        ('Permissions', {
            'fields': ('is_active', 'is_staff', 'is_superuser', 'groups', 'user_permissions'),
        }),
        ('Timestamps', {
            'fields': ('created_at', 'last_login'),
            'classes': ('collapse',),
        }),
    )

    add_fieldsets = (
        ('Create User', {
            'classes': ('wide',),
            'fields': ('email', 'display_name', 'password1', 'password2'),
        }),
    )

    readonly_fields = ['groups_joined', 'created_at', 'last_login']
    filter_horizontal = ['groups', 'user_permissions']

    @admin.action(description='Deactivate selected users')
    def deactivate_users(self, request, queryset):
        """Deactivate selected users (excludes superusers)."""
        safe_queryset = queryset.filter(is_superuser=False)
        count = safe_queryset.update(is_active=False)
        self.message_user(request, f'Deactivated {count} user(s).')

    actions = ['deactivate_users']
