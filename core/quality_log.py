"""Append-only, hash-chained quality log.

Updates:
    v0.1 - 2025-11-07 - Added JSONL quality log with tamper-evident hashing.
    v0.2 - 2025-11-08 - Added verification and history helpers.
    v0.3 - 2025-11-09 - Surfaced write failures as StoreError without advancing the chain.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
from pathlib import Path
from threading import Lock
from typing import Dict, Iterator, List, Optional, Tuple, cast

from core.exceptions import StoreError
from models.generation import QualityLog

LOGGER = logging.getLogger("agc.quality_log")

PROJECT_ROOT = Path(__file__).resolve().parents[1]
QUALITY_LOG_ENV = "AGC_QUALITY_LOG_PATH"
DEFAULT_QUALITY_LOG = PROJECT_ROOT / "data" / "logs" / "quality_log.jsonl"


class QualityLogWriter:
    """Appends quality log records; each record chains the previous hash."""

    def __init__(self, path_override: Optional[Path] = None) -> None:
        log_path = self._resolve_log_path(path_override)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        self._path = log_path
        self._lock = Lock()
        self._sequence, self._tail_hash = self._load_log_tail()

    @property
    def path(self) -> Path:
        return self._path

    def append(self, entry: QualityLog) -> Dict[str, object]:
        """Append *entry* and return the stored record; raises StoreError on I/O failure."""
        with self._lock:
            record: Dict[str, object] = dict(entry.to_payload())
            record["sequence"] = self._sequence + 1
            record["prev_hash"] = self._tail_hash
            record["hash"] = self._calculate_hash(record)
            try:
                with self._path.open("a", encoding="utf-8") as handle:
                    handle.write(json.dumps(record, default=str))
                    handle.write("\n")
            except OSError as exc:
                raise StoreError(f"Unable to append to quality log {self._path}: {exc}") from exc
            self._sequence = cast(int, record["sequence"])
            self._tail_hash = cast(str, record["hash"])
        return record

    def history(self, limit: int = 20) -> List[Dict[str, object]]:
        """Return the most recent records up to *limit*."""
        records = list(self._iter_records())
        return records[-limit:] if limit > 0 else []

    def verify(self) -> bool:
        """Return True when every record hash and the chain are intact."""
        expected_prev: Optional[str] = None
        for record in self._iter_records():
            if record.get("prev_hash") != expected_prev:
                return False
            if self._calculate_hash(record) != record.get("hash"):
                return False
            expected_prev = cast(Optional[str], record.get("hash"))
        return True

    def _resolve_log_path(self, override: Optional[Path]) -> Path:
        if override is not None:
            return override
        env_value = os.getenv(QUALITY_LOG_ENV)
        if env_value:
            candidate = Path(env_value)
            if candidate.suffix:
                return candidate
            return candidate / DEFAULT_QUALITY_LOG.name
        return DEFAULT_QUALITY_LOG

    def _load_log_tail(self) -> Tuple[int, Optional[str]]:
        last_sequence = 0
        tail_hash: Optional[str] = None
        for record in self._iter_records():
            sequence = record.get("sequence")
            if isinstance(sequence, int) and sequence > last_sequence:
                last_sequence = sequence
                tail_hash = cast(Optional[str], record.get("hash"))
        return last_sequence, tail_hash

    def _iter_records(self) -> Iterator[Dict[str, object]]:
        if not self._path.exists():
            return
        try:
            with self._path.open("r", encoding="utf-8") as handle:
                for line in handle:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        yield cast(Dict[str, object], json.loads(line))
                    except json.JSONDecodeError:
                        LOGGER.debug("Skipping malformed quality log entry: %s", line)
        except OSError as exc:
            LOGGER.warning("Unable to read quality log %s: %s", self._path, exc)

    @staticmethod
    def _calculate_hash(record: Dict[str, object]) -> str:
        payload = dict(record)
        payload.pop("hash", None)
        canonical = json.dumps(payload, default=str, sort_keys=True)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
