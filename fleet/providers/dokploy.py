# fleet/providers/dokploy.py
import logging
from typing import Any, Dict, Iterable, Optional

from ..errors import ResourceConflictError, TransientNetworkError
from .base import ObservedResource, RestAdapter

logger = logging.getLogger(__name__)


WORDPRESS_COMPOSE = """\
services:
  db:
    image: mariadb:11
    restart: unless-stopped
    environment:
      MARIADB_DATABASE: wordpress
      MARIADB_USER: wordpress
      MARIADB_PASSWORD: ${DB_PASSWORD}
      MARIADB_RANDOM_ROOT_PASSWORD: "1"
    volumes:
      - db_data:/var/lib/mysql
  wordpress:
    image: wordpress:6-apache
    restart: unless-stopped
    depends_on:
      - db
    environment:
      WORDPRESS_DB_HOST: db
      WORDPRESS_DB_USER: wordpress
      WORDPRESS_DB_PASSWORD: ${DB_PASSWORD}
      WORDPRESS_DB_NAME: wordpress
    volumes:
      - wp_data:/var/www/html
  wpcli:
    image: wordpress:cli
    user: "33:33"
    depends_on:
      - wordpress
    restart: "no"
    environment:
      WORDPRESS_DB_HOST: db
      WORDPRESS_DB_USER: wordpress
      WORDPRESS_DB_PASSWORD: ${DB_PASSWORD}
      WORDPRESS_DB_NAME: wordpress
    volumes:
      - wp_data:/var/www/html
    command: >
      sh -c "sleep 30;
      wp core is-installed || wp core install --url=${SITE_URL} --title=${SITE_TITLE}
      --admin_user=${WP_ADMIN_USER} --admin_password=${WP_ADMIN_PASSWORD}
      --admin_email=${WP_ADMIN_EMAIL} --skip-email;
      wp plugin is-installed elementor || wp plugin install elementor --activate"
volumes:
  db_data:
  wp_data:
"""


def render_env(values: Dict[str, str]) -> str:
    return "\n".join(f"{k}={v}" for k, v in values.items())


class DokployAdapter(RestAdapter):
    """
    Dokploy REST API (``<base_url>/api/<router>.<procedure>``).

    Default capabilities operate on compose applications; remote server
    registration has its own find/register/setup/unregister calls.
    """

    name = "dokploy"

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        headers["x-api-key"] = self.token
        return headers

    def _api(self, method: str, procedure: str, **kwargs):
        return self._request(method, f"/api/{procedure}", **kwargs)

    def validate(self) -> None:
        self._api("GET", "project.all")

    # ---- projects ----

    def find_project(self, name: str) -> Optional[str]:
        for project in self._api("GET", "project.all") or []:
            if project.get("name") == name:
                return project.get("projectId")
        return None

    def create_project(self, name: str) -> str:
        resp = self._api("POST", "project.create", json={"name": name, "description": "Managed by PressFleet"})
        project = resp.get("project", resp) if isinstance(resp, dict) else {}
        project_id = project.get("projectId")
        if not project_id:
            raise TransientNetworkError(self.name, "project.create returned no projectId", {"resp": resp})
        return project_id

    # ---- compose applications ----

    def find(self, idempotency_token: str) -> Optional[ObservedResource]:
        matches = [
            c for c in _iter_composes(self._api("GET", "project.all") or [])
            if c.get("name") == idempotency_token or (c.get("appName") or "").startswith(idempotency_token)
        ]
        if len(matches) > 1:
            raise ResourceConflictError(self.name, f"{len(matches)} compose apps match {idempotency_token}")
        return _observed_compose(matches[0]) if matches else None

    def create(self, idempotency_token: str, spec: Dict[str, Any]) -> ObservedResource:
        payload = {
            "name": idempotency_token,
            "appName": idempotency_token,
            "description": spec.get("description", ""),
            "projectId": spec["project_id"],
            "composeType": "docker-compose",
        }
        if spec.get("server_id"):
            payload["serverId"] = spec["server_id"]
        logger.info("Creating Dokploy compose app=%s project=%s", idempotency_token, spec["project_id"])
        resp = self._api("POST", "compose.create", json=payload)
        if not isinstance(resp, dict) or not resp.get("composeId"):
            raise TransientNetworkError(self.name, "compose.create returned no composeId", {"resp": resp})
        return _observed_compose(resp)

    def describe(self, external_id: str) -> ObservedResource:
        return _observed_compose(self._api("GET", "compose.one", params={"composeId": external_id}) or {})

    def configure(self, external_id: str, step: str, spec: Dict[str, Any]) -> Dict[str, Any]:
        if step == "compose":
            self._api("POST", "compose.update", json={
                "composeId": external_id,
                "sourceType": "raw",
                "composeFile": spec["compose_file"],
                "env": spec.get("env", ""),
            })
            return {}
        if step == "domain":
            resp = self._api("POST", "domain.create", json={
                "host": spec["host"],
                "path": "/",
                "port": 80,
                "https": bool(spec.get("https")),
                "certificateType": "letsencrypt" if spec.get("https") else "none",
                "composeId": external_id,
                "serviceName": "wordpress",
                "domainType": "compose",
            })
            return {"domain_id": (resp or {}).get("domainId", "") if isinstance(resp, dict) else ""}
        if step == "deploy":
            self._api("POST", "compose.deploy", json={"composeId": external_id})
            return {}
        return super().configure(external_id, step, spec)

    def destroy(self, external_id: str) -> None:
        logger.info("Deleting Dokploy compose id=%s", external_id)
        self._api("POST", "compose.delete", json={"composeId": external_id, "deleteVolumes": True})

    # ---- remote servers ----

    def find_server(self, name: str) -> Optional[ObservedResource]:
        matches = [s for s in self._api("GET", "server.all") or [] if s.get("name") == name]
        if len(matches) > 1:
            raise ResourceConflictError(self.name, f"{len(matches)} Dokploy servers named {name}")
        return _observed_server(matches[0]) if matches else None

    def register_server(self, name: str, ip_address: str, ssh_key_id: str) -> ObservedResource:
        resp = self._api("POST", "server.create", json={
            "name": name,
            "description": "Hetzner server managed by PressFleet",
            "ipAddress": ip_address,
            "port": 22,
            "username": "root",
            "sshKeyId": ssh_key_id,
            "serverType": "deploy",
        })
        if not isinstance(resp, dict) or not resp.get("serverId"):
            raise TransientNetworkError(self.name, "server.create returned no serverId", {"resp": resp})
        return _observed_server(resp)

    def setup_server(self, server_id: str) -> None:
        self._api("POST", "server.setup", json={"serverId": server_id})

    def unregister_server(self, server_id: str) -> None:
        self._api("POST", "server.remove", json={"serverId": server_id})


def _iter_composes(projects: Iterable[Dict[str, Any]]):
    # older Dokploy releases nest compose apps under the project, newer under environments
    for project in projects:
        yield from project.get("compose") or []
        for env in project.get("environments") or []:
            yield from env.get("compose") or []


def latest_deployment(compose: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Newest entry of the ``deployments`` list that compose.one returns, if any."""
    deployments = compose.get("deployments") or []
    if not deployments:
        return None
    return max(deployments, key=lambda d: d.get("createdAt") or "")


def _observed_compose(compose: Dict[str, Any]) -> ObservedResource:
    return ObservedResource(
        external_id=compose.get("composeId", ""),
        state=compose.get("composeStatus") or "idle",
        raw=compose,
    )


def _observed_server(server: Dict[str, Any]) -> ObservedResource:
    return ObservedResource(
        external_id=server.get("serverId", ""),
        state=server.get("serverStatus") or "active",
        address=server.get("ipAddress"),
        raw=server,
    )
