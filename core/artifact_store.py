"""Artifact persistence adapters.

Only ``save(artifact)`` is part of the controller contract; the read helpers
exist for diagnostics and tests.

Updates:
    v0.1 - 2025-11-07 - Added Redis artifact store with in-memory fallback.
    v0.2 - 2025-11-08 - Added resilient reconnection mirroring the working memory store.
"""

from __future__ import annotations

import json
import logging
from threading import Lock
from typing import Any, Dict, List, Optional, Protocol, cast

import redis as redis_module

from config.settings import StoreConfig
from models.generation import Artifact

LOGGER = logging.getLogger("agc.store")


def artifact_payload(artifact: Artifact) -> Dict[str, object]:
    return {
        "artifact_id": artifact.artifact_id,
        "content": artifact.content,
        "tier": artifact.tier.value,
        "backend_id": artifact.backend_id,
        "metadata": dict(artifact.metadata),
        "created_at": artifact.created_at.isoformat(),
    }


class ArtifactStore(Protocol):
    def save(self, artifact: Artifact) -> None:
        ...


class InMemoryArtifactStore:
    """Process-local artifact store."""

    def __init__(self) -> None:
        self._items: Dict[str, Dict[str, object]] = {}
        self._lock = Lock()

    def save(self, artifact: Artifact) -> None:
        with self._lock:
            self._items[artifact.artifact_id] = artifact_payload(artifact)

    def get(self, artifact_id: str) -> Optional[Dict[str, object]]:
        with self._lock:
            return self._items.get(artifact_id)

    def list_ids(self) -> List[str]:
        with self._lock:
            return list(self._items)


class RedisArtifactStore:
    """Adapter around Redis for accepted artifacts."""

    def __init__(self, config: StoreConfig) -> None:
        self._host = config.host
        self._port = config.port
        self._db = config.db
        self._ttl_seconds = config.ttl_seconds
        self._prefix = config.key_prefix
        self._client: Optional[Any] = None
        self._fallback = InMemoryArtifactStore()
        self._logger = logging.getLogger("agc.store.redis")
        self._initialise_client()

    @property
    def connected(self) -> bool:
        return self._client is not None

    def save(self, artifact: Artifact) -> None:
        """Store an artifact, falling back to memory when Redis is unavailable."""
        if self._ensure_client():
            client = cast(Any, self._client)
            try:
                client.setex(
                    name=self._key(artifact.artifact_id),
                    time=self._ttl_seconds,
                    value=json.dumps(artifact_payload(artifact), default=str),
                )
                return
            except Exception as exc:  # pragma: no cover - client failure path
                self._logger.warning(
                    "Redis store failed (%s); switching to in-memory fallback.", exc
                )
                self._client = None

        self._fallback.save(artifact)

    def get(self, artifact_id: str) -> Optional[Dict[str, object]]:
        if self._ensure_client():
            client = cast(Any, self._client)
            try:
                payload_bytes = client.get(self._key(artifact_id))
                if payload_bytes is not None:
                    if isinstance(payload_bytes, bytes):
                        payload_bytes = payload_bytes.decode("utf-8")
                    return cast(Dict[str, object], json.loads(payload_bytes))
            except Exception as exc:  # pragma: no cover
                self._logger.warning(
                    "Redis retrieval failed (%s); falling back to in-memory store.", exc
                )
                self._client = None

        return self._fallback.get(artifact_id)

    def _key(self, artifact_id: str) -> str:
        return f"{self._prefix}{artifact_id}"

    def _initialise_client(self) -> None:
        try:
            self._client = self._attempt_connect()
        except Exception as exc:  # pragma: no cover - runtime environment dependent
            self._logger.error(
                "Redis connection failed during initialisation (%s); using in-memory fallback.",
                exc,
            )
            self._client = None

    def _attempt_connect(self) -> Optional[Any]:
        client = redis_module.Redis(
            host=self._host,
            port=self._port,
            db=self._db,
            socket_timeout=2,
        )
        client.ping()
        return client

    def _ensure_client(self) -> bool:
        """Ensure a live Redis client is available, reconnecting if needed."""
        if self._client is None:
            try:
                self._client = self._attempt_connect()
            except Exception as exc:  # pragma: no cover - runtime dependent
                self._logger.debug("Redis reconnect attempt failed: %s", exc)
                self._client = None
                return False
        return self._client is not None


def create_artifact_store(config: StoreConfig) -> ArtifactStore:
    if not config.enabled:
        LOGGER.info("Artifact store disabled in configuration; keeping artifacts in memory.")
        return InMemoryArtifactStore()
    return RedisArtifactStore(config)
