"""
Reverse proxy adapter (Traefik file provider).

Each tenant gets one dynamic-configuration file named after its router. Traefik
watches the directory, so writing the file publishes the route and removing it
withdraws all inbound traffic for the tenant.
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from app.config import settings
from app.exceptions import InfraUnavailable
from app.infra.base import run_blocking

logger = logging.getLogger(__name__)

ADAPTER = "proxy"


@dataclass
class RoutingSpec:
    """Router rule, TLS resolver and backend for one tenant runtime."""

    router_name: str
    host: str
    backend_url: str
    entrypoint: str = "websecure"
    cert_resolver: str = "letsencrypt"
    throttled: bool = False
    throttle_average: int = 50
    throttle_burst: int = 100
    labels: dict[str, str] = field(default_factory=dict)

    @property
    def rule(self) -> str:
        return f"Host(`{self.host}`)"

    @property
    def middleware_name(self) -> str:
        return f"{self.router_name}-ratelimit"

    def to_dynamic_config(self) -> dict:
        router = {
            "rule": self.rule,
            "entryPoints": [self.entrypoint],
            "service": self.router_name,
            "tls": {"certResolver": self.cert_resolver},
        }
        config: dict = {
            "http": {
                "routers": {self.router_name: router},
                "services": {
                    self.router_name: {
                        "loadBalancer": {
                            "servers": [{"url": self.backend_url}],
                            "healthCheck": {"path": "/healthz", "interval": "30s"},
                        }
                    }
                },
            }
        }
        if self.throttled:
            router["middlewares"] = [self.middleware_name]
            config["http"]["middlewares"] = {
                self.middleware_name: {
                    "rateLimit": {"average": self.throttle_average, "burst": self.throttle_burst}
                }
            }
        return config


def router_name_for(subdomain: str) -> str:
    return f"{settings.container_prefix}-{subdomain}-router"


def build_routing_spec(subdomain: str, backend_url: str, throttled: bool = False) -> RoutingSpec:
    return RoutingSpec(
        router_name=router_name_for(subdomain),
        host=f"{subdomain}.{settings.proxy_domain}",
        backend_url=backend_url,
        entrypoint=settings.proxy_entrypoint,
        cert_resolver=settings.proxy_cert_resolver,
        throttled=throttled,
        throttle_average=settings.throttle_average,
        throttle_burst=settings.throttle_burst,
    )


class TraefikFileProvider:
    def __init__(self, config_dir: str):
        self.config_dir = Path(config_dir)

    def _path(self, router_name: str) -> Path:
        return self.config_dir / f"{router_name}.yml"

    def _write(self, spec: RoutingSpec) -> None:
        self.config_dir.mkdir(parents=True, exist_ok=True)
        target = self._path(spec.router_name)
        # Write-then-rename so Traefik never reads a half-written file
        fd, tmp_path = tempfile.mkstemp(dir=self.config_dir, prefix=".tmp-", suffix=".yml")
        try:
            with os.fdopen(fd, "w") as handle:
                yaml.safe_dump(spec.to_dynamic_config(), handle, sort_keys=False)
            os.replace(tmp_path, target)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _remove(self, router_name: str) -> None:
        self._path(router_name).unlink(missing_ok=True)

    def _read(self, router_name: str) -> dict | None:
        path = self._path(router_name)
        if not path.exists():
            return None
        with path.open() as handle:
            return yaml.safe_load(handle)

    def _ping(self) -> bool:
        self.config_dir.mkdir(parents=True, exist_ok=True)
        return os.access(self.config_dir, os.W_OK)

    async def _call(self, operation: str, func, *args):
        try:
            return await run_blocking(ADAPTER, operation, func, *args)
        except (OSError, yaml.YAMLError) as e:
            logger.error("Proxy %s failed: %s", operation, e)
            raise InfraUnavailable(ADAPTER, f"Proxy configuration {operation} failed: {e}") from e

    async def apply_route(self, spec: RoutingSpec) -> None:
        await self._call("apply_route", self._write, spec)
        logger.info("Route applied: %s -> %s (throttled=%s)", spec.rule, spec.backend_url, spec.throttled)

    async def remove_route(self, router_name: str) -> None:
        await self._call("remove_route", self._remove, router_name)
        logger.info("Route removed: %s", router_name)

    async def get_route(self, router_name: str) -> dict | None:
        return await self._call("get_route", self._read, router_name)

    async def ping(self) -> bool:
        return await self._call("ping", self._ping)
