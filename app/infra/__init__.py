"""Infrastructure adapters bundled for the application state."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastapi import Request

from app.infra.container_engine import DockerContainerEngine
from app.infra.entitlements import BillingEntitlementsClient
from app.infra.notifier import WebhookNotifier
from app.infra.object_storage import S3ObjectStorage
from app.infra.pool_capacity import RedisPoolCapacity
from app.infra.proxy import TraefikFileProvider
from app.infra.runtime import RuntimeClient

logger = logging.getLogger(__name__)


@dataclass
class Infrastructure:
    container_engine: Any
    proxy: Any
    storage: Any
    runtime: Any
    pool: Any
    entitlements: Any
    notifier: Any

    async def aclose(self) -> None:
        for adapter in (self.container_engine, self.runtime, self.pool, self.entitlements, self.notifier):
            close = getattr(adapter, "aclose", None)
            if close is not None:
                await close()


def build_infrastructure(settings) -> Infrastructure:
    infra = Infrastructure(
        container_engine=DockerContainerEngine(settings.docker_base_url),
        proxy=TraefikFileProvider(settings.proxy_config_dir),
        storage=S3ObjectStorage(
            bucket=settings.s3_bucket,
            endpoint_url=settings.s3_endpoint,
            access_key=settings.s3_access_key,
            secret_key=settings.s3_secret_key,
            region=settings.s3_region,
        ),
        runtime=RuntimeClient(settings.shared_runtime_base_url, settings.shared_runtime_api_key),
        pool=RedisPoolCapacity(settings.redis_url, settings.shared_pool_capacity),
        entitlements=BillingEntitlementsClient(settings.billing_api_url, settings.billing_api_key),
        notifier=WebhookNotifier(settings.notification_webhook_url, settings.notification_webhook_secret),
    )
    logger.info("Infrastructure adapters initialized")
    return infra


def get_infra(request: Request) -> Infrastructure:
    """FastAPI dependency returning the adapters built at startup."""
    return request.app.state.infra
