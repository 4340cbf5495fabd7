# accounts/urls.py
from django.urls import path, include
from rest_framework.routers import DefaultRouter

from .views import CredentialViewSet, LoginView, TokenRefreshViewCustom

router = DefaultRouter()
router.register(r'credentials', CredentialViewSet, basename='credential')

urlpatterns = [
    path('', include(router.urls)),

    # auth endpoints
    path('auth/token/', LoginView.as_view(), name='token_obtain_pair'),
    path('auth/token/refresh/', TokenRefreshViewCustom.as_view(), name='token_refresh'),
]
