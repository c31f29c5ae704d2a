"""
Shared test fixtures: a log record factory and an in-memory bulk store.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable


def make_record(**overrides: Any) -> dict[str, Any]:
    """Factory for a valid log record; nested dicts are merged one level deep."""
    base: dict[str, Any] = {
        "id": "log-1",
        "timestamp": "2024-01-01T12:00:00.000Z",
        "service": {
            "name": "api-gateway",
            "version": "1.0.0",
            "environment": "production",
            "instance_id": "i-1234567890",
            "host": "ip-127-0-0-1.ec2.internal",
            "region": "us-east-1",
        },
        "level": "info",
        "category": "application",
        "message": "Request processed successfully",
        "metrics": {
            "cpu_usage": 12.5,
            "memory_mb": 512,
            "response_time_ms": 150,
            "db_query_time_ms": 20,
        },
        "tags": ["api-gateway"],
        "geo": {
            "country": "US",
            "city": "Seattle",
            "location": {"lat": 47.6062, "lon": -122.3321},
        },
    }
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = {**base[key], **value}
        else:
            base[key] = value
    return base


def docs_in(body: str) -> list[dict[str, Any]]:
    """Decode the document lines (every second line) of an NDJSON bulk body."""
    lines = body.rstrip("\n").split("\n")
    return [json.loads(line) for line in lines[1::2]]


def all_ok(call: int, body: str) -> dict[str, Any]:
    return {
        "errors": False,
        "items": [{"index": {"status": 201, "result": "created"}} for _ in docs_in(body)],
    }


def rejecting(positions: set[int], error_type: str = "mapper_parsing_exception") -> Callable[[int, str], dict[str, Any]]:
    """Response builder that rejects the items at ``positions`` of every batch."""

    def respond(call: int, body: str) -> dict[str, Any]:
        items = []
        for i, _ in enumerate(docs_in(body)):
            if i in positions:
                items.append({"index": {"status": 400, "error": {
                    "type": error_type, "reason": "failed to parse",
                }}})
            else:
                items.append({"index": {"status": 201}})
        return {"errors": bool(positions), "items": items}

    return respond


class FakeBulkClient:
    """
    In-memory stand-in for the OpenSearch client.

    ``respond(call_index, body)`` builds the bulk response (or raises to
    simulate a transport failure). ``gate`` holds every request until set;
    ``delays`` maps a call index to a sleep in seconds.
    """

    def __init__(
        self,
        respond: Callable[[int, str], dict[str, Any]] = all_ok,
        gate: asyncio.Event | None = None,
        delays: dict[int, float] | None = None,
        healthy: bool = True,
    ) -> None:
        self.bodies: list[str] = []
        self.completed: list[int] = []
        self.active = 0
        self.max_active = 0
        self.healthy = healthy
        self._respond = respond
        self._gate = gate
        self._delays = delays or {}

    async def check_connection(self) -> bool:
        return self.healthy

    async def bulk(self, body: str) -> dict[str, Any]:
        call = len(self.bodies)
        self.bodies.append(body)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self._gate is not None:
                await self._gate.wait()
            await asyncio.sleep(self._delays.get(call, 0))
            return self._respond(call, body)
        finally:
            self.active -= 1
            self.completed.append(call)

    @property
    def documents(self) -> list[dict[str, Any]]:
        return [doc for body in self.bodies for doc in docs_in(body)]
