from django.urls import path, include
from rest_framework.routers import DefaultRouter
from . import views


router = DefaultRouter()
router.register(r'servers', views.ServerViewSet, basename='server')
router.register(r'sites', views.SiteViewSet, basename='site')
router.register(r'events', views.EventViewSet, basename='event')

urlpatterns = [
    path('', include(router.urls)),
    path("dashboard/overview/", views.DashboardOverviewAPIView.as_view(), name="dashboard-overview"),
]
