"""
Minimal async OpenSearch client: bulk indexing and a health check.

The uploader only depends on the ``BulkClient`` protocol, so tests can swap
in a fake store. The concrete client talks HTTP through httpx.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from src.config import OpenSearchConfig, settings

logger = logging.getLogger(__name__)

NDJSON_CONTENT_TYPE = "application/x-ndjson"


class BulkClient(Protocol):
    """The single store capability the uploader needs."""

    async def bulk(self, body: str) -> dict[str, Any]:
        """Send an NDJSON bulk body and return the parsed bulk response."""
        ...


class StoreClient(BulkClient, Protocol):
    """What the pipeline needs: bulk plus a startup health check."""

    async def check_connection(self) -> bool:
        ...


class OpenSearchClient:
    """
    Async HTTP client for the OpenSearch ``_bulk`` and ``_cluster/health`` APIs.

    Transport errors and non-2xx responses raise ``httpx.HTTPError``
    subclasses; callers decide whether that is fatal.
    """

    def __init__(
        self,
        config: OpenSearchConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config or settings.opensearch
        auth = None
        if self._config.username and self._config.password:
            auth = httpx.BasicAuth(self._config.username, self._config.password)

        self._client = httpx.AsyncClient(
            base_url=self._config.node.rstrip("/"),
            auth=auth,
            verify=self._config.verify_certs,
            timeout=httpx.Timeout(self._config.request_timeout_seconds),
            transport=transport,
        )

    async def check_connection(self) -> bool:
        """Return True if the cluster answers its health endpoint."""
        try:
            response = await self._client.get(
                "/_cluster/health",
                timeout=self._config.ping_timeout_seconds,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("OpenSearch connection failed (%s): %s", self._config.node, exc)
            return False

        health = response.json()
        logger.info(
            "OpenSearch connected: cluster=%s status=%s nodes=%s",
            health.get("cluster_name"),
            health.get("status"),
            health.get("number_of_nodes"),
        )
        return True

    async def bulk(self, body: str) -> dict[str, Any]:
        response = await self._client.post(
            "/_bulk",
            content=body.encode("utf-8"),
            params={"refresh": "false", "wait_for_active_shards": "1"},
            headers={"Content-Type": NDJSON_CONTENT_TYPE},
        )
        response.raise_for_status()
        return response.json()

    async def close(self) -> None:
        """Close the underlying connection pool."""
        await self._client.aclose()

    async def __aenter__(self) -> OpenSearchClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
