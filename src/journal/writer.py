"""
Audit journal: append-only JSON lines. One line per status transition,
settlement attempt, rejected replay and confirmed transaction that could
not be applied.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any


def _serialize(obj: Any) -> Any:
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, dict):
        return {k: _serialize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_serialize(x) for x in obj]
    return obj


class JournalWriter:
    """Append-only journal. Each line is a JSON object with event type and payload."""

    def __init__(self, path: str | Path, *, echo_stdout: bool = False) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._echo = echo_stdout

    @property
    def path(self) -> Path:
        return self._path

    def _write(self, event_type: str, payload: dict) -> None:
        record = {"ts_utc": datetime.now(timezone.utc).isoformat(), "event": event_type, **payload}
        line = json.dumps(_serialize(record)) + "\n"
        with open(self._path, "a") as f:
            f.write(line)
        if self._echo:
            print(line.rstrip())

    def transition(
        self,
        entity_kind: str,
        entity_id: str,
        from_status: Any,
        to_status: Any,
        reason: str | None = None,
        **extra: Any,
    ) -> None:
        self._write(
            "transition",
            {"entity_kind": entity_kind, "entity_id": entity_id, "from": from_status, "to": to_status, "reason": reason, **extra},
        )

    def settlement(
        self,
        entity_kind: str,
        entity_id: str,
        *,
        transfer_tx_hash: str | None = None,
        error: str | None = None,
        **extra: Any,
    ) -> None:
        self._write(
            "settlement",
            {"entity_kind": entity_kind, "entity_id": entity_id, "transfer_tx_hash": transfer_tx_hash, "error": error, **extra},
        )

    def unapplied_transaction(
        self,
        entity_kind: str,
        entity_id: str,
        local_id: str,
        tx_hash: str | None,
        reason: str,
        **extra: Any,
    ) -> None:
        """A confirmed ledger transaction that no longer matches its entity's state."""
        self._write(
            "unapplied_transaction",
            {"entity_kind": entity_kind, "entity_id": entity_id, "local_id": local_id, "tx_hash": tx_hash, "reason": reason, **extra},
        )

    def replay_rejected(self, reference_code: str, operation: str, **extra: Any) -> None:
        self._write("replay_rejected", {"reference_code": reference_code, "operation": operation, **extra})

    def read_all(self) -> list[dict]:
        """Return every journal entry in write order (empty if the file does not exist)."""
        if not self._path.exists():
            return []
        with open(self._path) as f:
            return [json.loads(line) for line in f if line.strip()]
