# fleet/views.py
import logging
from datetime import timedelta

from django.db.models import Count
from django.utils import timezone
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import APIException, ValidationError
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from accounts.models import ProviderCredential
from accounts.services import get_credential, validate_credential

from .errors import ProviderError
from .models import HealthCheck, ResourceEvent, Server, Site
from .serializers import (
    HealthCheckSerializer,
    ResourceEventSerializer,
    ServerCreateSerializer,
    ServerSerializer,
    SiteCreateSerializer,
    SiteSerializer,
)
from .services import create_server, create_site, request_deletion, request_retry
from .states import ResourceStatus

logger = logging.getLogger(__name__)

EVENT_LIMIT = 100


class ProviderUnavailable(APIException):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = "Provider could not be reached, try again later."
    default_code = "provider_unavailable"


def require_valid_credential(owner_id, provider) -> ProviderCredential:
    """Credential must exist and pass validation; unchecked ones are validated now."""
    credential = get_credential(owner_id, provider)
    if credential is None:
        raise ValidationError({"detail": f"Add a {provider} credential first."})
    if credential.is_valid:
        return credential
    try:
        ok = validate_credential(credential)
    except ProviderError as e:
        logger.warning("Could not validate %s credential for owner=%s: %s", provider, owner_id, e)
        raise ProviderUnavailable(str(e))
    if not ok:
        raise ValidationError({"detail": f"The stored {provider} credential was rejected by the provider."})
    return credential


def _events_for(resource, limit=EVENT_LIMIT):
    qs = ResourceEvent.objects.filter(resource_kind=resource.kind, resource_id=resource.pk)
    return ResourceEventSerializer(qs[:limit], many=True).data


class ResourceViewSetMixin:
    """Shared destroy/retry/events handling for servers and sites."""

    def destroy(self, request, *args, **kwargs):
        resource = self.get_object()
        if resource.wants_deletion and resource.status != ResourceStatus.FAILED:
            return Response({"detail": "Deletion already in progress."}, status=status.HTTP_202_ACCEPTED)
        request_deletion(resource)
        logger.info("Deletion requested for %s %s by user=%s", resource.kind, resource.pk, request.user.pk)
        return Response({"detail": "Deletion scheduled"}, status=status.HTTP_202_ACCEPTED)

    @action(detail=True, methods=['post'])
    def retry(self, request, pk=None):
        resource = self.get_object()
        if not request_retry(resource):
            return Response({"detail": f"Only failed resources can be retried (status is {resource.status})."},
                            status=status.HTTP_400_BAD_REQUEST)
        return Response({"detail": "Retry scheduled"}, status=status.HTTP_202_ACCEPTED)

    @action(detail=True, methods=['get'])
    def events(self, request, pk=None):
        return Response(_events_for(self.get_object()), status=status.HTTP_200_OK)


class ServerViewSet(ResourceViewSetMixin,
                    mixins.ListModelMixin,
                    mixins.RetrieveModelMixin,
                    mixins.CreateModelMixin,
                    viewsets.GenericViewSet):
    permission_classes = [IsAuthenticated]

    def get_queryset(self):
        qs = Server.objects.filter(owner=self.request.user)
        status_filter = self.request.query_params.get('status')
        if status_filter:
            qs = qs.filter(status=status_filter)
        return qs

    def get_serializer_class(self):
        if self.action == 'create':
            return ServerCreateSerializer
        return ServerSerializer

    def create(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        require_valid_credential(request.user.pk, ProviderCredential.PROVIDER_HETZNER)

        server = create_server(request.user, **serializer.validated_data)
        logger.info("Server %s created by user=%s", server.pk, request.user.pk)
        return Response(ServerSerializer(server).data, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=['get'])
    def health(self, request, pk=None):
        server = self.get_object()
        qs = HealthCheck.objects.filter(resource_kind=server.kind, resource_id=server.pk)[:20]
        return Response(HealthCheckSerializer(qs, many=True).data, status=status.HTTP_200_OK)

    @action(detail=True, methods=['get'])
    def sites(self, request, pk=None):
        server = self.get_object()
        return Response(SiteSerializer(server.sites.all(), many=True).data, status=status.HTTP_200_OK)


class SiteViewSet(ResourceViewSetMixin,
                  mixins.ListModelMixin,
                  mixins.RetrieveModelMixin,
                  mixins.CreateModelMixin,
                  viewsets.GenericViewSet):
    permission_classes = [IsAuthenticated]

    def get_queryset(self):
        qs = Site.objects.filter(owner=self.request.user).select_related('server')
        server_id = self.request.query_params.get('server_id')
        if server_id:
            qs = qs.filter(server_id=server_id)
        return qs

    def get_serializer_class(self):
        if self.action == 'create':
            return SiteCreateSerializer
        return SiteSerializer

    def create(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        require_valid_credential(request.user.pk, ProviderCredential.PROVIDER_DOKPLOY)

        data = dict(serializer.validated_data)
        server = data.pop('server')
        site = create_site(request.user, server, **data)
        logger.info("Site %s on server %s created by user=%s", site.pk, server.pk, request.user.pk)
        return Response(SiteSerializer(site).data, status=status.HTTP_201_CREATED)


class EventViewSet(viewsets.ReadOnlyModelViewSet):
    permission_classes = [IsAuthenticated]
    serializer_class = ResourceEventSerializer

    def get_queryset(self):
        qs = ResourceEvent.objects.filter(owner=self.request.user)
        params = self.request.query_params
        if params.get('level'):
            qs = qs.filter(level=params['level'])
        if params.get('category'):
            qs = qs.filter(category=params['category'])
        if params.get('resource_kind'):
            qs = qs.filter(resource_kind=params['resource_kind'])
        return qs

    def list(self, request, *args, **kwargs):
        try:
            limit = min(int(request.query_params.get('limit', EVENT_LIMIT)), 500)
        except ValueError:
            raise ValidationError({"limit": "Must be an integer."})
        qs = self.get_queryset()[:limit]
        return Response(self.get_serializer(qs, many=True).data)


class DashboardOverviewAPIView(APIView):
    """
    Returns dashboard overview data:
      - servers / sites: counts per status
      - failures_last_30_days
      - recent_events (list)
    """
    permission_classes = [IsAuthenticated]

    RECENT_LIMIT = 10

    def get(self, request, *args, **kwargs):
        thirty_days_ago = timezone.now() - timedelta(days=30)
        user = request.user

        def per_status(model):
            rows = model.objects.filter(owner=user).values('status').annotate(n=Count('id'))
            counts = {s: 0 for s in ResourceStatus.values if s != ResourceStatus.DELETED}
            for row in rows:
                counts[row['status']] = row['n']
            counts['total'] = sum(counts.values())
            return counts

        recent = ResourceEvent.objects.filter(owner=user)[: self.RECENT_LIMIT]
        resp = {
            "servers": per_status(Server),
            "sites": per_status(Site),
            "failures_last_30_days": ResourceEvent.objects.filter(
                owner=user, level="error", created_at__gte=thirty_days_ago,
            ).count(),
            "recent_events": ResourceEventSerializer(recent, many=True).data,
        }
        return Response(resp, status=status.HTTP_200_OK)
