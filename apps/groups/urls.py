from django.urls import path, include
from rest_framework.routers import DefaultRouter
from . import views

app_name = 'groups'

# Router for ViewSets
router = DefaultRouter()
router.register(r'', views.GroupViewSet, basename='group')

urlpatterns = [
    # Invite links ({code} is case-insensitive)
    # GET    /api/groups/invite/{code}/          - Preview invitation (no auth)
    # POST   /api/groups/invite/{code}/          - Redeem invitation
    # POST   /api/groups/invite/{code}/decline/  - Decline direct invitation
    path('invite/<str:code>/', views.InviteView.as_view(), name='invite'),
    path('invite/<str:code>/decline/', views.InviteDeclineView.as_view(), name='invite-decline'),

    # Group ViewSet routes ({id} is a UUID or slug)
    # GET    /api/groups/                                  - List user's groups
    # GET    /api/groups/discover/                         - Recommended groups (no auth)
    # GET    /api/groups/search/?q=                        - Search groups (no auth)
    # POST   /api/groups/                                  - Create group
    # GET    /api/groups/{id}/                             - Get group details
    # PATCH  /api/groups/{id}/                             - Update group (admin)
    # DELETE /api/groups/{id}/                             - Deactivate group (owner)
    #
    # GET    /api/groups/{id}/members/                     - List members
    # POST   /api/groups/{id}/join/                        - Join or request to join
    # POST   /api/groups/{id}/leave/                       - Leave group
    # DELETE /api/groups/{id}/members/{user_id}/           - Remove member (moderator)
    # POST   /api/groups/{id}/members/{user_id}/role/      - Change role (admin)
    # POST   /api/groups/{id}/members/ban/                 - Ban member (moderator)
    # POST   /api/groups/{id}/members/{user_id}/unban/     - Unban member (moderator)
    # POST   /api/groups/{id}/transfer-ownership/          - Transfer ownership (owner)
    # PATCH  /api/groups/{id}/notification-preferences/    - Own notification toggles
    # GET    /api/groups/{id}/join-requests/               - Pending requests (moderator)
    # POST   /api/groups/{id}/join-requests/               - Approve/reject (moderator)
    # GET    /api/groups/{id}/invitations/                 - List invitations (admin)
    # POST   /api/groups/{id}/invitations/                 - Issue invitation (admin)
    # DELETE /api/groups/{id}/invitations/{invitation_id}/ - Cancel invitation (admin)
    path('', include(router.urls)),
]
