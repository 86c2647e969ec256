from __future__ import annotations

import secrets
from typing import Any

import docker
from docker.errors import DockerException, NotFound

from . import db
from .collaborators import InstanceHandle
from .errors import ConflictError, TransientCollaboratorError
from .settings import settings


MANAGED_LABEL = "fleet.managed"
DOMAIN_LABEL = "fleet.domain"


def _client() -> docker.DockerClient:
    return docker.from_env()


def docker_available() -> bool:
    try:
        c = _client()
        c.ping()
        return True
    except DockerException:
        return False


def container_http_base(container_name: str, internal_port: int) -> str:
    """HTTP base URL usable from within the same docker network."""
    return f"http://{container_name}:{int(internal_port)}"


class DockerPlatform:
    """Platform collaborator backed by the local Docker daemon.

    A failure domain is a container label here; on a real platform it would map
    to a zone. Containers are labelled so a restarted controller can re-discover
    its fleet.
    """

    def __init__(
        self,
        image: str | None = None,
        network: str | None = None,
        internal_port: int | None = None,
        env: dict[str, str] | None = None,
    ):
        self.image = image or settings.image
        self.network = network or settings.docker_network
        self.internal_port = int(internal_port or settings.internal_port)
        self.env = env or {}

    def ensure_network(self) -> None:
        c = _client()
        try:
            c.networks.get(self.network)
        except NotFound:
            c.networks.create(self.network, driver="bridge")
            db.log_event("INFO", f"Created docker network '{self.network}'.")

    def _handle(self, container: Any) -> InstanceHandle:
        name = container.name
        return InstanceHandle(
            id=container.id,
            name=name,
            domain=container.labels.get(DOMAIN_LABEL, ""),
            address=container_http_base(name, self.internal_port),
        )

    def create_instance(self, domain: str) -> InstanceHandle:
        name = f"fleet-{domain}-{secrets.token_hex(3)}"
        labels = {MANAGED_LABEL: "true", DOMAIN_LABEL: domain}
        try:
            self.ensure_network()
            container = _client().containers.run(
                self.image,
                detach=True,
                name=name,
                environment={**self.env, "FLEET_DOMAIN": domain},
                network=self.network,
                labels=labels,
                # The controller heals; keep Docker's restart policy off to make behavior explicit.
                restart_policy={"Name": "no"},
            )
        except DockerException as e:
            raise TransientCollaboratorError(f"create in {domain} failed: {e}") from e
        return self._handle(container)

    def delete_instance(self, handle: InstanceHandle) -> None:
        try:
            _client().containers.get(handle.id).remove(force=True)
        except NotFound as e:
            raise ConflictError(f"{handle.name} already gone") from e
        except DockerException as e:
            raise TransientCollaboratorError(f"delete of {handle.name} failed: {e}") from e

    def list_instances(self) -> list[InstanceHandle]:
        """Every managed container, running or not; dead ones are caught by health checks."""
        try:
            containers = _client().containers.list(all=True, filters={"label": [f"{MANAGED_LABEL}=true"]})
        except DockerException as e:
            raise TransientCollaboratorError(f"listing containers failed: {e}") from e
        return [self._handle(c) for c in containers]
