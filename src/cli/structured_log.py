"""
Structured JSON event logger for the reconciliation relay.

One JSON object per line on stderr, tagged with the service name, so a
log shipper can follow relay progress without parsing free text.

Optional webhook: when configured, events an operator must act on
(entity_failed, settlement_failed, error) are POSTed to the URL.

Never pass voucher payloads or private ids to these methods.
"""

from __future__ import annotations

import json
import logging
import sys
import urllib.request
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger("escrow.events")


class StructuredEventLogger:
    """Emit structured JSON events to stderr and optional webhook."""

    _ALERT_EVENTS = frozenset({"entity_failed", "settlement_failed", "error"})

    def __init__(
        self,
        service: str = "escrow-relay",
        *,
        enabled: bool = True,
        webhook_url: str = "",
        stream: Any = None,
    ) -> None:
        self._service = service
        self._enabled = enabled
        self._webhook_url = webhook_url.strip()
        self._stream = stream or sys.stderr

    def _emit(self, event_type: str, **fields: Any) -> dict:
        record = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "event": event_type,
            "service": self._service,
            **fields,
        }
        if self._enabled:
            self._stream.write(json.dumps(record) + "\n")
            self._stream.flush()

        if self._webhook_url and event_type in self._ALERT_EVENTS:
            self._post_webhook(record)

        return record

    def _post_webhook(self, record: dict) -> None:
        try:
            data = json.dumps(record).encode("utf-8")
            req = urllib.request.Request(
                self._webhook_url,
                data=data,
                headers={"Content-Type": "application/json"},
                method="POST",
            )
            urllib.request.urlopen(req, timeout=5)
        except Exception as exc:
            logger.warning("Webhook POST failed: %s", exc)

    def tick_start(self) -> dict:
        return self._emit("tick_start")

    def entity_advanced(self, entity_kind: str, entity_id: str, status: str, tx_hash: str) -> dict:
        return self._emit(
            "entity_advanced",
            entity_kind=entity_kind,
            entity_id=entity_id,
            status=status,
            tx_hash=tx_hash,
        )

    def entity_failed(self, entity_kind: str, entity_id: str, reason: str) -> dict:
        return self._emit("entity_failed", entity_kind=entity_kind, entity_id=entity_id, reason=reason)

    def settlement_submitted(self, entity_kind: str, entity_id: str, tx_hash: str) -> dict:
        return self._emit(
            "settlement_submitted",
            entity_kind=entity_kind,
            entity_id=entity_id,
            tx_hash=tx_hash,
        )

    def settlement_failed(self, entity_kind: str, entity_id: str, reason: str) -> dict:
        return self._emit("settlement_failed", entity_kind=entity_kind, entity_id=entity_id, reason=reason)

    def tick_complete(self, **counts: int) -> dict:
        return self._emit("tick_complete", **counts)

    def error(self, message: str, detail: str = "") -> dict:
        return self._emit("error", message=message, detail=detail)

    def shutdown(self, ticks: int) -> dict:
        return self._emit("shutdown", ticks=ticks)
