"""
Container engine adapter (Docker Engine via the docker SDK).

Dedicated tenants run one runtime container each, named
``{container_prefix}-{subdomain}``. The data directory lives on a named volume
so a recreate (worker count change, failed live resize) keeps tenant state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import docker
from docker.errors import APIError, DockerException, NotFound
from requests.exceptions import RequestException

from app.config import settings
from app.exceptions import InfraUnavailable
from app.infra.base import run_blocking

logger = logging.getLogger(__name__)

ADAPTER = "container_engine"

MANAGED_LABEL = "rp9.managed"
TENANT_LABEL = "rp9.tenant_id"
DATA_MOUNT = "/home/node/.n8n"


@dataclass
class ContainerSpec:
    tenant_id: str
    subdomain: str
    name: str
    image: str
    cpu_cores: int
    memory_mb: int
    workers: int
    network: str
    port: int
    env: dict[str, str] = field(default_factory=dict)

    @property
    def volume_name(self) -> str:
        return f"{self.name}-data"

    @property
    def internal_url(self) -> str:
        return f"http://{self.name}:{self.port}"


@dataclass
class ContainerHealth:
    status: str  # running | stopped | failed | restarting
    healthy: bool


class LiveResizeUnsupported(Exception):
    """The engine refused an in-place resource update."""


def container_name_for(subdomain: str) -> str:
    return f"{settings.container_prefix}-{subdomain}"


def build_container_spec(tenant_id: str, subdomain: str, cpu_cores: int, memory_mb: int, workers: int) -> ContainerSpec:
    host = f"{subdomain}.{settings.proxy_domain}"
    return ContainerSpec(
        tenant_id=tenant_id,
        subdomain=subdomain,
        name=container_name_for(subdomain),
        image=settings.runtime_image,
        cpu_cores=cpu_cores,
        memory_mb=memory_mb,
        workers=workers,
        network=settings.runtime_network,
        port=settings.runtime_port,
        env={
            "N8N_PROTOCOL": "https",
            "N8N_HOST": host,
            "N8N_PORT": str(settings.runtime_port),
            "N8N_LISTEN_ADDRESS": "0.0.0.0",
            "WEBHOOK_URL": f"https://{host}/",
            "EXECUTIONS_MODE": "queue",
            "N8N_WORKERS": str(workers),
            "N8N_SECURE_COOKIE": "true",
            "N8N_LOG_LEVEL": "info",
            "N8N_TENANT_ID": subdomain,
        },
    )


def _state_of(attrs: dict) -> ContainerHealth:
    state = attrs.get("State") or {}
    if state.get("Running"):
        status = "running"
    elif state.get("Restarting"):
        status = "restarting"
    elif state.get("ExitCode", 0) != 0:
        status = "failed"
    else:
        status = "stopped"

    health = (state.get("Health") or {}).get("Status")
    # Containers without a healthcheck count as healthy while running
    healthy = status == "running" and health in (None, "healthy")
    return ContainerHealth(status=status, healthy=healthy)


class DockerContainerEngine:
    """Thin async facade over the blocking docker SDK."""

    def __init__(self, base_url: str | None = None):
        self._base_url = base_url
        self._client: docker.DockerClient | None = None

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = (
                docker.DockerClient(base_url=self._base_url) if self._base_url else docker.from_env()
            )
        return self._client

    async def _call(self, operation: str, func, *args, **kwargs):
        try:
            return await run_blocking(ADAPTER, operation, func, *args, **kwargs)
        except (DockerException, RequestException) as e:
            logger.error("Docker %s failed: %s", operation, e)
            raise InfraUnavailable(ADAPTER, f"Container engine {operation} failed: {e}") from e

    # -------------------------------------------------------------------------
    # Blocking implementations
    # -------------------------------------------------------------------------

    def _find(self, name_or_id: str):
        try:
            return self.client.containers.get(name_or_id)
        except NotFound:
            return None

    def _ensure(self, spec: ContainerSpec) -> str:
        container = self._find(spec.name)
        if container is not None:
            if container.status != "running":
                container.start()
            logger.info("Reusing container %s (%s)", spec.name, container.id)
            return container.id

        container = self.client.containers.run(
            spec.image,
            name=spec.name,
            detach=True,
            environment=spec.env,
            labels={MANAGED_LABEL: "true", TENANT_LABEL: spec.tenant_id},
            mem_limit=f"{spec.memory_mb}m",
            cpu_period=100_000,
            cpu_quota=spec.cpu_cores * 100_000,
            cpu_shares=spec.cpu_cores * 1024,
            restart_policy={"Name": "unless-stopped"},
            network=spec.network,
            volumes={spec.volume_name: {"bind": DATA_MOUNT, "mode": "rw"}},
            healthcheck={
                "test": ["CMD-SHELL", f"wget -qO- http://localhost:{spec.port}/healthz || exit 1"],
                "interval": 10_000_000_000,
                "timeout": 5_000_000_000,
                "retries": 3,
            },
        )
        logger.info("Created container %s (%s)", spec.name, container.id)
        return container.id

    def _update(self, container_id: str, cpu_cores: int, memory_mb: int) -> None:
        container = self.client.containers.get(container_id)
        try:
            container.update(
                cpu_period=100_000,
                cpu_quota=cpu_cores * 100_000,
                cpu_shares=cpu_cores * 1024,
                mem_limit=f"{memory_mb}m",
                memswap_limit=f"{memory_mb * 2}m",
            )
        except APIError as e:
            raise LiveResizeUnsupported(str(e)) from e

    def _remove(self, name_or_id: str) -> None:
        container = self._find(name_or_id)
        if container is None:
            return
        if container.status == "running":
            container.stop(timeout=30)
        # Named data volume is kept
        container.remove(v=False)

    def _recreate(self, spec: ContainerSpec) -> str:
        self._remove(spec.name)
        return self._ensure(spec)

    def _start(self, container_id: str) -> None:
        self.client.containers.get(container_id).start()

    def _stop(self, container_id: str) -> None:
        container = self._find(container_id)
        if container is not None and container.status == "running":
            container.stop(timeout=30)

    def _health(self, container_id: str) -> ContainerHealth:
        container = self._find(container_id)
        if container is None:
            return ContainerHealth(status="failed", healthy=False)
        container.reload()
        return _state_of(container.attrs)

    def _stats(self, container_id: str) -> dict:
        container = self.client.containers.get(container_id)
        stats = container.stats(stream=False)
        cpu = stats.get("cpu_stats", {})
        precpu = stats.get("precpu_stats", {})
        cpu_delta = cpu.get("cpu_usage", {}).get("total_usage", 0) - precpu.get("cpu_usage", {}).get("total_usage", 0)
        system_delta = cpu.get("system_cpu_usage", 0) - precpu.get("system_cpu_usage", 0)
        online_cpus = cpu.get("online_cpus") or 1
        cpu_percent = (cpu_delta / system_delta) * online_cpus * 100 if system_delta > 0 else 0.0

        memory = stats.get("memory_stats", {})
        usage = memory.get("usage", 0)
        limit = memory.get("limit") or 1
        return {
            "cpu_percent": round(cpu_percent, 2),
            "memory_bytes": usage,
            "memory_percent": round(usage / limit * 100, 2),
        }

    # -------------------------------------------------------------------------
    # Async API
    # -------------------------------------------------------------------------

    async def ensure_container(self, spec: ContainerSpec) -> str:
        """Create and start the container unless one with the same name exists."""
        return await self._call("ensure_container", self._ensure, spec)

    async def update_resources(self, container_id: str, cpu_cores: int, memory_mb: int) -> None:
        """Live resize; raises LiveResizeUnsupported if the engine refuses."""
        await self._call("update_resources", self._update, container_id, cpu_cores, memory_mb)

    async def recreate(self, spec: ContainerSpec) -> str:
        return await self._call("recreate", self._recreate, spec)

    async def start(self, container_id: str) -> None:
        await self._call("start", self._start, container_id)

    async def stop(self, container_id: str) -> None:
        await self._call("stop", self._stop, container_id)

    async def health(self, container_id: str) -> ContainerHealth:
        return await self._call("health", self._health, container_id)

    async def stats(self, container_id: str) -> dict:
        return await self._call("stats", self._stats, container_id)

    async def ping(self) -> bool:
        return await self._call("ping", lambda: self.client.ping())

    async def aclose(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
