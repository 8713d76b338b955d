"""
Voucher validation and anti-replay.

A voucher is the JSON payload of a retail cash-in deposit code. Validation
runs in a fixed order, and the first failing check decides the error:

  1. deserialize and check structure (JSON Schema)
  2. operation type and issuer id match the policy
  3. amount inside the absolute band
  4. amount within +/- tolerance of the target (skipped without a target)
  5. expiration timestamp not strictly in the past
  6. reference code never consumed before

Consumption is a separate commit performed through ReplayGuard.claim(),
which holds a per-reference lock for the whole unit of work so that two
callers can never both validate and consume the same code.

Both the camelCase field names and the issuing network's own names
(TipoOperacion, EmisorQR, Monto, FechaCreacionQR, FechaExpiracionQR,
Operacion.CR) are accepted.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterator
from zoneinfo import ZoneInfo

import jsonschema

from config.policy import MarketPolicy
from market_core.contracts import Clock, ConsumedReference, Voucher, utc_now
from market_core.outcome import ErrorKind, Outcome
from store.repository import InMemoryRepository, Repository

logger = logging.getLogger("escrow.voucher")

FIELD_ALIASES = {
    "TipoOperacion": "operationType",
    "EmisorQR": "issuerId",
    "Monto": "amount",
    "FechaCreacionQR": "creationTimestamp",
    "FechaExpiracionQR": "expirationTimestamp",
    "Operacion": "operation",
}

OPERATION_ALIASES = {
    "CR": "referenceCode",
    "Mensaje": "message",
}

_DATE_PATTERN = r"^\d{2}/\d{2}/\d{2} \d{2}:\d{2}:\d{2}$"
_DATE_RE = re.compile(r"^(\d{2})/(\d{2})/(\d{2}) (\d{2}):(\d{2}):(\d{2})$")

VOUCHER_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": [
        "operationType",
        "issuerId",
        "amount",
        "creationTimestamp",
        "expirationTimestamp",
        "operation",
    ],
    "properties": {
        "operationType": {"type": "string"},
        "issuerId": {"type": "string"},
        "amount": {"type": ["number", "string"]},
        "creationTimestamp": {"type": "string", "pattern": _DATE_PATTERN},
        "expirationTimestamp": {"type": "string", "pattern": _DATE_PATTERN},
        "operation": {
            "type": "object",
            "required": ["referenceCode"],
            "properties": {
                "referenceCode": {"type": "string", "minLength": 1},
                "message": {"type": ["string", "null"]},
            },
        },
        "message": {"type": ["string", "null"]},
    },
}


def normalize_payload(data: dict[str, Any]) -> dict[str, Any]:
    """Map network field names onto canonical ones. Canonical keys win on conflict."""
    out: dict[str, Any] = {}
    for key, value in data.items():
        canonical = FIELD_ALIASES.get(key, key)
        if canonical in out and canonical != key:
            continue
        out[canonical] = value
    operation = out.get("operation")
    if isinstance(operation, dict):
        op: dict[str, Any] = {}
        for key, value in operation.items():
            canonical = OPERATION_ALIASES.get(key, key)
            if canonical in op and canonical != key:
                continue
            op[canonical] = value
        out["operation"] = op
    return out


def parse_voucher_date(text: str, tz: str | ZoneInfo = "America/Mexico_City") -> datetime:
    """Parse ``YY/MM/DD HH:MM:SS`` (year = 2000 + YY) in *tz*; return it as UTC.

    Raises ValueError for a malformed string or an impossible date.
    """
    m = _DATE_RE.match(text or "")
    if not m:
        raise ValueError(f"Invalid voucher date: {text!r}")
    yy, mo, dd, hh, mi, ss = (int(g) for g in m.groups())
    zone = tz if isinstance(tz, ZoneInfo) else ZoneInfo(tz)
    local = datetime(2000 + yy, mo, dd, hh, mi, ss, tzinfo=zone)
    return local.astimezone(timezone.utc)


def tolerance_bounds(target: float | Decimal, tolerance_percent: float | Decimal) -> tuple[Decimal, Decimal]:
    t = Decimal(str(target))
    p = Decimal(str(tolerance_percent)) / Decimal(100)
    return t * (Decimal(1) - p), t * (Decimal(1) + p)


# ---------------------------------------------------------------------------
# Anti-replay
# ---------------------------------------------------------------------------


class ReplayClaim:
    """Handle for one claimed reference code. Call commit() once the unit of work succeeded."""

    def __init__(self, reference_code: str, already_consumed: bool) -> None:
        self.reference_code = reference_code
        self.already_consumed = already_consumed
        self.committed = False
        self.operation = ""
        self.entity_id: str | None = None

    def commit(self, operation: str, entity_id: str | None = None) -> None:
        if self.already_consumed:
            raise RuntimeError(f"Reference {self.reference_code} was already consumed")
        self.committed = True
        self.operation = operation
        self.entity_id = entity_id


class ReplayGuard:
    """Consumed-reference set with a per-reference critical section.

    The set is process-wide and grows without bound; every consumed code is
    kept forever so it can never be reused.
    """

    def __init__(self, repository: Repository | None = None, *, clock: Clock = utc_now) -> None:
        self._repo = repository if repository is not None else InMemoryRepository()
        self._clock = clock
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, reference_code: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(reference_code)
            if lock is None:
                lock = threading.Lock()
                self._locks[reference_code] = lock
            return lock

    def is_consumed(self, reference_code: str) -> bool:
        return reference_code in self._repo

    def consumed(self) -> list[ConsumedReference]:
        return self._repo.values()

    @contextmanager
    def claim(self, reference_code: str) -> Iterator[ReplayClaim]:
        """Hold *reference_code* exclusively for the duration of the block.

        The consumed set is re-read after the lock is taken. The code is
        recorded only when the block calls ``claim.commit()`` and exits
        without raising.
        """
        with self._lock_for(reference_code):
            ticket = ReplayClaim(reference_code, already_consumed=self.is_consumed(reference_code))
            yield ticket
            if ticket.committed:
                self._repo.put(
                    reference_code,
                    ConsumedReference(
                        reference_code=reference_code,
                        consumed_at=self._clock(),
                        operation=ticket.operation,
                        entity_id=ticket.entity_id,
                    ),
                )
                logger.debug("Consumed reference %s (%s)", reference_code, ticket.operation)


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------


class VoucherValidator:
    """Validate raw voucher payloads against the market policy."""

    def __init__(
        self,
        policy: MarketPolicy | None = None,
        *,
        guard: ReplayGuard | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._policy = policy or MarketPolicy()
        self._guard = guard if guard is not None else ReplayGuard(clock=clock)
        self._clock = clock
        self._tz = ZoneInfo(self._policy.voucher.timezone)

    @property
    def guard(self) -> ReplayGuard:
        return self._guard

    def check(
        self,
        raw: str | bytes | dict[str, Any],
        target_amount: float | None = None,
        tolerance_percent: float | None = None,
    ) -> Outcome[Voucher]:
        """Steps 1-5. Does not look at the consumed set."""
        if isinstance(raw, dict):
            data = raw
        else:
            try:
                data = json.loads(raw)
            except (TypeError, ValueError):
                return Outcome.failure(ErrorKind.VALIDATION, "Voucher payload is not valid JSON")
        if not isinstance(data, dict):
            return Outcome.failure(ErrorKind.VALIDATION, "Voucher payload must be a JSON object")

        data = normalize_payload(data)
        try:
            jsonschema.validate(instance=data, schema=VOUCHER_SCHEMA)
        except jsonschema.ValidationError as exc:
            where = "/".join(str(p) for p in exc.absolute_path) or "payload"
            return Outcome.failure(
                ErrorKind.VALIDATION,
                f"Voucher payload is malformed at '{where}' ({exc.validator})",
                field=where,
            )

        rules = self._policy.voucher
        if data["operationType"] != rules.operation_type:
            return Outcome.failure(
                ErrorKind.VALIDATION,
                f"Unsupported voucher operation type; expected {rules.operation_type}",
                operation_type=data["operationType"],
            )
        if data["issuerId"] != rules.issuer_id:
            return Outcome.failure(
                ErrorKind.VALIDATION,
                f"Unsupported voucher issuer; expected {rules.issuer_id}",
                issuer_id=data["issuerId"],
            )

        try:
            amount = Decimal(str(data["amount"]).strip())
        except InvalidOperation:
            return Outcome.failure(ErrorKind.VALIDATION, "Voucher amount is not a number")
        if not amount.is_finite():
            return Outcome.failure(ErrorKind.VALIDATION, "Voucher amount is not a number")
        if amount < Decimal(str(rules.min_amount)) or amount > Decimal(str(rules.max_amount)):
            return Outcome.failure(
                ErrorKind.VALIDATION,
                f"Voucher amount must be between {rules.min_amount:g} and {rules.max_amount:g}",
                voucher_amount=float(amount),
            )

        if target_amount is not None:
            pct = self._policy.tolerance_percent if tolerance_percent is None else tolerance_percent
            low, high = tolerance_bounds(target_amount, pct)
            if amount < low or amount > high:
                return Outcome.failure(
                    ErrorKind.VALIDATION,
                    f"Voucher amount {float(amount):g} does not match target {float(target_amount):g} "
                    f"within {float(pct):g}%",
                    reason="amount_mismatch",
                    voucher_amount=float(amount),
                    target_amount=float(target_amount),
                    min_allowed=float(low),
                    max_allowed=float(high),
                )

        try:
            expires_at = parse_voucher_date(data["expirationTimestamp"], self._tz)
            parse_voucher_date(data["creationTimestamp"], self._tz)
        except ValueError:
            return Outcome.failure(ErrorKind.VALIDATION, "Voucher timestamps are not valid dates")
        if expires_at < self._clock():
            return Outcome.failure(
                ErrorKind.VALIDATION,
                "Voucher has expired",
                reason="expired",
                expired_at=expires_at.isoformat(),
            )

        operation = data["operation"]
        reference_code = operation["referenceCode"].strip()
        if not reference_code:
            return Outcome.failure(ErrorKind.VALIDATION, "Voucher reference code is empty")
        return Outcome.success(
            Voucher(
                operation_type=data["operationType"],
                issuer_id=data["issuerId"],
                amount=float(amount),
                reference_code=reference_code,
                created=data["creationTimestamp"],
                expiration=data["expirationTimestamp"],
                expires_at=expires_at,
                message=operation.get("message") or data.get("message"),
            )
        )

    def validate(
        self,
        raw: str | bytes | dict[str, Any],
        target_amount: float | None = None,
        tolerance_percent: float | None = None,
    ) -> Outcome[Voucher]:
        """All six steps. Read-only: a success does not consume the reference."""
        outcome = self.check(raw, target_amount, tolerance_percent)
        if not outcome.ok:
            return outcome
        ref = outcome.value.reference_code
        if self._guard.is_consumed(ref):
            return replay_failure(ref)
        return outcome


def replay_failure(reference_code: str) -> Outcome:
    return Outcome.failure(
        ErrorKind.REPLAY,
        "Voucher reference code has already been used",
        reference_code=reference_code,
    )
