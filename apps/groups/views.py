import logging

from rest_framework import serializers as drf_serializers, status, viewsets
from rest_framework.decorators import action
from rest_framework.pagination import PageNumberPagination
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView
from drf_spectacular.utils import OpenApiParameter, extend_schema

from apps.groups.conf import groups_setting
from apps.groups.models import MemberRole, MemberStatus
from apps.groups.services import (
    accept_invitation,
    approve_join_request,
    ban_member,
    cancel_invitation,
    create_group,
    deactivate_group,
    decline_invitation,
    describe_invitation,
    discover_groups,
    get_user_groups,
    issue_code_invitation,
    issue_direct_invitation,
    join_group,
    leave_group,
    list_group_invitations,
    list_join_requests,
    list_members,
    reject_join_request,
    remove_member,
    require_role,
    resolve_group,
    search_groups,
    transfer_ownership,
    unban_member,
    update_group,
    update_member_role,
    update_notification_preferences,
    # Exceptions
    GroupsServiceError,
    InternalError,
)
from .permissions import CanViewGroup
from .serializers import (
    BanMemberSerializer,
    CreateInvitationSerializer,
    GroupCreateSerializer,
    GroupListSerializer,
    GroupMemberSerializer,
    GroupSearchSerializer,
    GroupSerializer,
    GroupUpdateSerializer,
    InvitationFilterSerializer,
    InvitationPreviewSerializer,
    InvitationSerializer,
    JoinRequestDecisionSerializer,
    MemberFilterSerializer,
    NotificationPreferencesSerializer,
    TransferOwnershipSerializer,
    UpdateMemberRoleSerializer,
)

logger = logging.getLogger(__name__)

USER_ID_PATTERN = r'(?P<user_id>[0-9a-fA-F-]{32,36})'


class ErrorResponseSerializer(drf_serializers.Serializer):
    error = drf_serializers.CharField()
    code = drf_serializers.CharField()


class GroupPagination(PageNumberPagination):
    """Custom pagination for groups."""
    page_size = 20
    page_size_query_param = 'page_size'
    max_page_size = 100


class DiscoverPagination(GroupPagination):
    page_size = 10
    max_page_size = 20


class MemberPagination(PageNumberPagination):
    page_size = groups_setting('MEMBERS_PAGE_SIZE')
    page_size_query_param = 'page_size'
    max_page_size = groups_setting('MEMBERS_MAX_PAGE_SIZE')


def _parse_user_id(value):
    return drf_serializers.UUIDField().to_internal_value(value)


class ServiceErrorMixin:
    """Translate service errors into ``{"error", "code"}`` responses."""

    def handle_exception(self, exc):
        if isinstance(exc, GroupsServiceError):
            if isinstance(exc, InternalError):
                logger.error("Internal groups error on %s: %s", self.request.path, exc)
            return Response({'error': str(exc), 'code': exc.code}, status=exc.status_code)
        return super().handle_exception(exc)


class GroupViewSet(ServiceErrorMixin, viewsets.ViewSet):
    """
    Groups and everything scoped to one group.

    All business logic is handled by services.
    Views are thin HTTP handlers only.

    ``pk`` is either the group UUID or its slug.
    """

    permission_classes = [IsAuthenticated]

    def get_object(self):
        group = resolve_group(self.kwargs['pk'])
        self.check_object_permissions(self.request, group)
        return group

    def get_permissions(self):
        if self.action in ['discover', 'search']:
            return [AllowAny()]
        if self.action in ['retrieve', 'members']:
            return [IsAuthenticated(), CanViewGroup()]
        return [IsAuthenticated()]

    @extend_schema(responses={200: GroupListSerializer(many=True)}, tags=['groups'])
    def list(self, request):
        """Groups where the current user is an active member."""
        paginator = GroupPagination()
        page = paginator.paginate_queryset(get_user_groups(user=request.user), request, view=self)
        serializer = GroupListSerializer(page, many=True, context={'request': request})
        return paginator.get_paginated_response(serializer.data)

    @extend_schema(responses={200: GroupListSerializer(many=True)}, tags=['groups'])
    @action(detail=False, methods=['get'])
    def discover(self, request):
        """Recommended groups to join; anonymous callers see the most popular."""
        groups = discover_groups(user=request.user if request.user.is_authenticated else None)
        paginator = DiscoverPagination()
        page = paginator.paginate_queryset(groups, request, view=self)
        serializer = GroupListSerializer(page, many=True, context={'request': request})
        return paginator.get_paginated_response(serializer.data)

    @extend_schema(
        parameters=[
            OpenApiParameter('q', str, required=True, description='Search text, at least 2 characters'),
            OpenApiParameter('group_type', str, description='crop, region, topic or practice'),
            OpenApiParameter('privacy', str, description='public, private or invite-only'),
            OpenApiParameter('sort_by', str, description='relevance (default), member_count or created_at'),
        ],
        responses={200: GroupListSerializer(many=True), 400: ErrorResponseSerializer},
        tags=['groups'],
    )
    @action(detail=False, methods=['get'])
    def search(self, request):
        """Search active groups by name, description, tags, crops and region."""
        filters = GroupSearchSerializer(data=request.query_params)
        filters.is_valid(raise_exception=True)

        groups = search_groups(
            query=filters.validated_data['q'],
            user=request.user if request.user.is_authenticated else None,
            group_type=filters.validated_data.get('group_type'),
            privacy=filters.validated_data.get('privacy'),
            sort_by=filters.validated_data['sort_by'],
        )
        paginator = GroupPagination()
        page = paginator.paginate_queryset(groups, request, view=self)
        serializer = GroupListSerializer(page, many=True, context={'request': request})
        return paginator.get_paginated_response(serializer.data)

    @extend_schema(request=GroupCreateSerializer, responses={201: GroupSerializer}, tags=['groups'])
    def create(self, request):
        """Create a new group."""
        serializer = GroupCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        group = create_group(owner=request.user, **serializer.validated_data)

        output_serializer = GroupSerializer(group, context={'request': request})
        return Response(output_serializer.data, status=status.HTTP_201_CREATED)

    @extend_schema(responses={200: GroupSerializer, 404: ErrorResponseSerializer}, tags=['groups'])
    def retrieve(self, request, pk=None):
        group = self.get_object()
        return Response(GroupSerializer(group, context={'request': request}).data)

    @extend_schema(request=GroupUpdateSerializer, responses={200: GroupSerializer}, tags=['groups'])
    def partial_update(self, request, pk=None):
        """Update group details (admin only)."""
        serializer = GroupUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        group = update_group(group_ref=pk, user=request.user, **serializer.validated_data)
        return Response(GroupSerializer(group, context={'request': request}).data)

    @extend_schema(responses={204: None}, tags=['groups'])
    def destroy(self, request, pk=None):
        """Deactivate a group (owner only)."""
        deactivate_group(group_ref=pk, user=request.user)
        return Response(status=status.HTTP_204_NO_CONTENT)

    # -------------------------------------------------------------------------
    # Membership
    # -------------------------------------------------------------------------

    @extend_schema(
        parameters=[
            OpenApiParameter('status', str, description='active (default), pending, banned or left'),
            OpenApiParameter('role', str, description='Filter by role'),
        ],
        responses={200: GroupMemberSerializer(many=True)},
        tags=['groups'],
    )
    @action(detail=True, methods=['get'])
    def members(self, request, pk=None):
        """List members of the group. Non-active listings need moderator role."""
        group = self.get_object()

        filters = MemberFilterSerializer(data=request.query_params)
        filters.is_valid(raise_exception=True)
        member_status = filters.validated_data['status']
        if member_status != MemberStatus.ACTIVE:
            require_role(
                group_id=group.id,
                user_id=request.user.id,
                min_role=MemberRole.MODERATOR,
                record_activity=False,
            )

        memberships = list_members(
            group=group,
            status=member_status,
            role=filters.validated_data.get('role'),
        )
        paginator = MemberPagination()
        page = paginator.paginate_queryset(memberships, request, view=self)
        return paginator.get_paginated_response(GroupMemberSerializer(page, many=True).data)

    @extend_schema(request=None, responses={201: GroupMemberSerializer}, tags=['groups'])
    @action(detail=True, methods=['post'])
    def join(self, request, pk=None):
        """Join a public group, or request to join a private one."""
        membership = join_group(group_ref=pk, user=request.user)
        return Response(GroupMemberSerializer(membership).data, status=status.HTTP_201_CREATED)

    @extend_schema(request=None, responses={200: None}, tags=['groups'])
    @action(detail=True, methods=['post'])
    def leave(self, request, pk=None):
        """Leave a group."""
        leave_group(group_ref=pk, user=request.user)
        return Response({'message': 'Successfully left the group'})

    @extend_schema(request=None, responses={204: None}, tags=['groups'])
    @action(detail=True, methods=['delete'], url_path=rf'members/{USER_ID_PATTERN}', url_name='remove-member')
    def remove_member(self, request, pk=None, user_id=None):
        """Remove a member from the group (moderator and above)."""
        remove_member(group_ref=pk, user_id=_parse_user_id(user_id), removed_by=request.user)
        return Response(status=status.HTTP_204_NO_CONTENT)

    @extend_schema(request=UpdateMemberRoleSerializer, responses={200: GroupMemberSerializer}, tags=['groups'])
    @action(detail=True, methods=['post'], url_path=rf'members/{USER_ID_PATTERN}/role', url_name='member-role')
    def member_role(self, request, pk=None, user_id=None):
        """Change a member's role (admin and above)."""
        serializer = UpdateMemberRoleSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        membership = update_member_role(
            group_ref=pk,
            user_id=_parse_user_id(user_id),
            new_role=serializer.validated_data['role'],
            updated_by=request.user,
        )
        return Response(GroupMemberSerializer(membership).data)

    @extend_schema(request=BanMemberSerializer, responses={200: GroupMemberSerializer}, tags=['groups'])
    @action(detail=True, methods=['post'], url_path='members/ban', url_name='ban-member')
    def ban(self, request, pk=None):
        """Ban a member (moderator and above)."""
        serializer = BanMemberSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        membership = ban_member(
            group_ref=pk,
            user_id=serializer.validated_data['user_id'],
            banned_by=request.user,
            reason=serializer.validated_data['reason'],
        )
        return Response(GroupMemberSerializer(membership).data)

    @extend_schema(request=None, responses={200: GroupMemberSerializer}, tags=['groups'])
    @action(detail=True, methods=['post'], url_path=rf'members/{USER_ID_PATTERN}/unban', url_name='unban-member')
    def unban(self, request, pk=None, user_id=None):
        membership = unban_member(group_ref=pk, user_id=_parse_user_id(user_id), unbanned_by=request.user)
        return Response(GroupMemberSerializer(membership).data)

    @extend_schema(request=TransferOwnershipSerializer, responses={200: GroupSerializer}, tags=['groups'])
    @action(detail=True, methods=['post'], url_path='transfer-ownership')
    def transfer_ownership(self, request, pk=None):
        """Hand the group to another active member (owner only)."""
        serializer = TransferOwnershipSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        group = transfer_ownership(
            group_ref=pk,
            new_owner_id=serializer.validated_data['new_owner_id'],
            transferred_by=request.user,
        )
        return Response(GroupSerializer(group, context={'request': request}).data)

    @extend_schema(request=NotificationPreferencesSerializer, responses={200: GroupMemberSerializer}, tags=['groups'])
    @action(detail=True, methods=['patch'], url_path='notification-preferences')
    def notification_preferences(self, request, pk=None):
        serializer = NotificationPreferencesSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        membership = update_notification_preferences(
            group_ref=pk,
            user=request.user,
            **serializer.validated_data,
        )
        return Response(GroupMemberSerializer(membership).data)

    # -------------------------------------------------------------------------
    # Join requests
    # -------------------------------------------------------------------------

    @extend_schema(request=JoinRequestDecisionSerializer, responses={200: GroupMemberSerializer(many=True)}, tags=['groups'])
    @action(detail=True, methods=['get', 'post'], url_path='join-requests')
    def join_requests(self, request, pk=None):
        """
        GET: pending join requests (moderator and above).
        POST: approve or reject one request.
        """
        if request.method == 'GET':
            pending = list_join_requests(group_ref=pk, requested_by=request.user)
            return Response(GroupMemberSerializer(pending, many=True).data)

        serializer = JoinRequestDecisionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        user_id = serializer.validated_data['user_id']

        if serializer.validated_data['action'] == 'approve':
            membership = approve_join_request(group_ref=pk, user_id=user_id, approved_by=request.user)
            return Response(GroupMemberSerializer(membership).data)

        reject_join_request(group_ref=pk, user_id=user_id, rejected_by=request.user)
        return Response({'message': 'Join request rejected'})

    # -------------------------------------------------------------------------
    # Invitations
    # -------------------------------------------------------------------------

    @extend_schema(request=CreateInvitationSerializer, responses={200: InvitationSerializer(many=True), 201: InvitationSerializer}, tags=['invitations'])
    @action(detail=True, methods=['get', 'post'])
    def invitations(self, request, pk=None):
        """
        GET: invitations of the group, optionally filtered by status (admin).
        POST: issue a direct invitation or a shareable code (admin).
        """
        if request.method == 'GET':
            filters = InvitationFilterSerializer(data=request.query_params)
            filters.is_valid(raise_exception=True)
            invitations = list_group_invitations(
                group_ref=pk,
                requested_by=request.user,
                status=filters.validated_data.get('status'),
            )
            return Response(InvitationSerializer(invitations, many=True).data)

        serializer = CreateInvitationSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        if data.get('invited_user_id'):
            invitation = issue_direct_invitation(
                group_ref=pk,
                issued_by=request.user,
                invited_user_id=data['invited_user_id'],
                expires_at=data.get('expires_at'),
            )
        else:
            invitation = issue_code_invitation(
                group_ref=pk,
                issued_by=request.user,
                max_uses=data.get('max_uses', 1),
                expires_at=data.get('expires_at'),
            )
        return Response(InvitationSerializer(invitation).data, status=status.HTTP_201_CREATED)

    @extend_schema(request=None, responses={200: InvitationSerializer}, tags=['invitations'])
    @action(
        detail=True,
        methods=['delete'],
        url_path=r'invitations/(?P<invitation_id>[0-9a-fA-F-]{32,36})',
        url_name='cancel-invitation',
    )
    def cancel_invitation(self, request, pk=None, invitation_id=None):
        """Cancel a pending invitation (admin)."""
        invitation = cancel_invitation(
            group_ref=pk,
            invitation_id=drf_serializers.UUIDField().to_internal_value(invitation_id),
            cancelled_by=request.user,
        )
        return Response(InvitationSerializer(invitation).data)


class InviteView(ServiceErrorMixin, APIView):
    """
    GET: preview an invitation, no sign-in needed.
    POST: redeem it for the signed-in user.
    """

    def get_permissions(self):
        if self.request.method == 'GET':
            return [AllowAny()]
        return [IsAuthenticated()]

    @extend_schema(responses={200: InvitationPreviewSerializer, 404: ErrorResponseSerializer}, tags=['invitations'])
    def get(self, request, code):
        preview = describe_invitation(code)
        return Response(InvitationPreviewSerializer(preview, context={'request': request}).data)

    @extend_schema(request=None, responses={201: GroupMemberSerializer, 409: ErrorResponseSerializer}, tags=['invitations'])
    def post(self, request, code):
        membership = accept_invitation(invite_code=code, user=request.user)
        return Response(GroupMemberSerializer(membership).data, status=status.HTTP_201_CREATED)


class InviteDeclineView(ServiceErrorMixin, APIView):
    permission_classes = [IsAuthenticated]

    @extend_schema(request=None, responses={200: InvitationSerializer}, tags=['invitations'])
    def post(self, request, code):
        """Decline a direct invitation addressed to the caller."""
        invitation = decline_invitation(invite_code=code, user=request.user)
        return Response(InvitationSerializer(invitation).data)
