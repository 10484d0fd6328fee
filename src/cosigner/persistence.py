"""
Local persistence for tracked operations.

Only plain metadata is stored: addresses, amounts, payload, status, execution
hash, confirming signer addresses and nonce. Signatures and signable objects
never reach storage; after a reload operations are rebuilt from this
metadata.

Storage failures are not fatal: they are logged as PersistenceUnavailableError
and the session continues with nothing persisted.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .exceptions import PersistenceUnavailableError
from .operations import normalize_address_list, parse_transaction_intent

logger = logging.getLogger(__name__)

STORAGE_KEY_PREFIX = "safe-txs-"
LEGACY_SIGNER_PREFIX = "legacy-"
# Stands in for the tx hash of executed records saved without one.
LEGACY_EXECUTION_TX_HASH = "legacy-unknown"


def storage_key(account_address: str) -> str:
    return f"{STORAGE_KEY_PREFIX}{account_address.lower()}"


# ============ Storage backends ============

class KeyValueStorage(ABC):
    """Client-side string key-value store."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...


class InMemoryStorage(KeyValueStorage):
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStorage(KeyValueStorage):
    """All keys in one JSON object on disk, replaced atomically on write."""

    def __init__(self, path: str | Path):
        self._path = Path(path).expanduser()

    @property
    def path(self) -> Path:
        return self._path

    def _read_all(self) -> Dict[str, str]:
        if not self._path.exists():
            return {}
        with open(self._path) as f:
            data = json.load(f)
        if not isinstance(data, dict):
            return {}
        return {str(k): v for k, v in data.items() if isinstance(v, str)}

    def _write_all(self, data: Dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self._path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self._path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def get(self, key: str) -> Optional[str]:
        return self._read_all().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._read_all()
        data[key] = value
        self._write_all(data)

    def delete(self, key: str) -> None:
        data = self._read_all()
        if key in data:
            del data[key]
            self._write_all(data)


# ============ Records ============

@dataclass
class PersistedOperation:
    """Storage form of a tracked operation."""
    operation_hash: str
    to: str
    value: str
    payload: str
    call_type: int = 0
    nonce: Optional[int] = None
    intent: str = "transfer"
    status: str = "pending"
    confirmations: int = 0
    confirmed_by: List[str] = field(default_factory=list)
    threshold: Optional[int] = None
    execution_tx_hash: Optional[str] = None
    substrate: str = "local"
    submitted_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["PersistedOperation"]:
        """Parse a stored record, accepting older record shapes.

        Returns None for records that cannot be rebuilt (missing hash,
        recipient, value or payload).
        """
        if not isinstance(raw, dict):
            return None

        operation_hash = raw.get("operation_hash") or raw.get("safeTxHash") or raw.get("id")
        to = raw.get("to")
        value = raw.get("value")
        payload = raw.get("payload", raw.get("data"))
        if not operation_hash or not to or value is None or payload is None:
            return None

        confirmed_by = raw.get("confirmed_by", raw.get("confirmedBy"))
        if not isinstance(confirmed_by, list):
            confirmed_by = []
        confirmed_by = normalize_address_list([str(s) for s in confirmed_by if s])

        count = _parse_int(raw.get("confirmations")) or 0
        if not confirmed_by and count > 0:
            # Older records kept only a count.
            confirmed_by = [f"{LEGACY_SIGNER_PREFIX}{i}" for i in range(count)]

        status = str(raw.get("status") or "pending").lower()
        status = "executed" if status == "executed" else "pending"
        execution_tx_hash = raw.get("execution_tx_hash") or raw.get("txHash")
        if status == "executed" and not execution_tx_hash:
            execution_tx_hash = LEGACY_EXECUTION_TX_HASH

        return cls(
            operation_hash=str(operation_hash).lower(),
            to=str(to),
            value=str(value),
            payload=str(payload) if payload else "0x",
            call_type=_parse_int(raw.get("call_type", raw.get("operation"))) or 0,
            nonce=_parse_int(raw.get("nonce")),
            intent=parse_transaction_intent(raw.get("intent")).value,
            status=status,
            confirmations=max(count, len(confirmed_by)),
            confirmed_by=confirmed_by,
            threshold=_parse_int(raw.get("threshold")),
            execution_tx_hash=execution_tx_hash,
            substrate=str(raw.get("substrate") or "local"),
            submitted_at=str(raw.get("submitted_at") or raw.get("submittedAt") or ""),
        )


def _parse_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


# ============ Adapter ============

class PersistenceAdapter:
    """Loads and saves an account's tracked operations."""

    def __init__(self, storage: KeyValueStorage):
        self._storage = storage

    def load(self, account_address: str) -> List[PersistedOperation]:
        key = storage_key(account_address)
        try:
            raw = self._storage.get(key)
            if not raw:
                return []
            items = json.loads(raw)
        except Exception as e:
            self._report(PersistenceUnavailableError(f"Failed to load {key}: {e}", operation="load"))
            return []

        if not isinstance(items, list):
            logger.warning(f"Ignoring malformed stored operations under {key}")
            return []

        records: Dict[str, PersistedOperation] = {}
        for item in items:
            record = PersistedOperation.from_dict(item)
            if record is None:
                logger.debug(f"Dropping unrecoverable stored operation under {key}")
                continue
            records[record.operation_hash] = record
        return list(records.values())

    def save(self, account_address: str, records: List[PersistedOperation]) -> bool:
        key = storage_key(account_address)
        try:
            self._storage.set(key, json.dumps([r.to_dict() for r in records]))
        except Exception as e:
            self._report(PersistenceUnavailableError(f"Failed to save {key}: {e}", operation="save"))
            return False
        return True

    def clear(self, account_address: str) -> bool:
        key = storage_key(account_address)
        try:
            self._storage.delete(key)
        except Exception as e:
            self._report(PersistenceUnavailableError(f"Failed to clear {key}: {e}", operation="clear"))
            return False
        return True

    def _report(self, error: PersistenceUnavailableError) -> None:
        logger.warning(f"{error.message} (continuing without persistence)")
