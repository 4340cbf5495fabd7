# accounts/views.py
import logging

from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import NotFound
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework_simplejwt.views import TokenObtainPairView, TokenRefreshView

from .models import ProviderCredential
from .serializers import CredentialUpsertSerializer, ProviderCredentialSerializer
from .services import get_credential, store_credential, validate_credential

logger = logging.getLogger(__name__)

PROVIDERS = [p for p, _ in ProviderCredential.PROVIDER_CHOICES]


class LoginView(TokenObtainPairView):
    """
    POST -> { "username": "...", "password": "..." }
    Response -> { "access": "...", "refresh": "..." }
    """
    permission_classes = [AllowAny]
    authentication_classes = []


class TokenRefreshViewCustom(TokenRefreshView):
    permission_classes = [AllowAny]


class CredentialViewSet(viewsets.ViewSet):
    """
    One credential per provider for the authenticated user.

    GET    /credentials/                    -> masked list
    PUT    /credentials/<provider>/         -> create or update
    DELETE /credentials/<provider>/
    POST   /credentials/<provider>/validate/
    """
    permission_classes = [IsAuthenticated]
    lookup_field = 'provider'
    lookup_value_regex = '|'.join(PROVIDERS)

    def _get(self, request, provider):
        credential = get_credential(request.user.pk, provider)
        if credential is None:
            raise NotFound(f"No {provider} credential stored.")
        return credential

    def list(self, request):
        qs = ProviderCredential.objects.filter(owner=request.user).order_by('provider')
        return Response(ProviderCredentialSerializer(qs, many=True).data)

    def retrieve(self, request, provider=None):
        return Response(ProviderCredentialSerializer(self._get(request, provider)).data)

    def update(self, request, provider=None):
        existing = get_credential(request.user.pk, provider)
        serializer = CredentialUpsertSerializer(data=request.data, context={'provider': provider, 'existing': existing})
        serializer.is_valid(raise_exception=True)

        credential = store_credential(
            request.user.pk,
            provider,
            token=serializer.validated_data.get('token', ''),
            base_url=serializer.validated_data.get('base_url', ''),
            ssh_key_ref=serializer.validated_data.get('ssh_key_ref'),
        )
        logger.info("Stored %s credential for user=%s", provider, request.user.pk)
        code = status.HTTP_200_OK if existing else status.HTTP_201_CREATED
        return Response(ProviderCredentialSerializer(credential).data, status=code)

    def destroy(self, request, provider=None):
        self._get(request, provider).delete()
        logger.info("Deleted %s credential for user=%s", provider, request.user.pk)
        return Response(status=status.HTTP_204_NO_CONTENT)

    @action(detail=True, methods=['post'])
    def validate(self, request, provider=None):
        from fleet.errors import ProviderError

        credential = self._get(request, provider)
        try:
            valid = validate_credential(credential)
        except ProviderError as e:
            return Response({"detail": str(e), "error_kind": e.kind}, status=status.HTTP_503_SERVICE_UNAVAILABLE)
        return Response(ProviderCredentialSerializer(credential).data,
                        status=status.HTTP_200_OK if valid else status.HTTP_400_BAD_REQUEST)
