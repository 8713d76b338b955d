"""
Settlement guard: kill switch and per-token daily transfer cap.

Checked before every escrow release. A blocked release is recorded on the
entity as a transfer error and retried later through manual
reconciliation; nothing is rolled back.

- kill_switch: immediately disables all escrow releases.
- max_daily_transfers: per token, resets at the start of each UTC day.
  0 disables the cap.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone


@dataclass
class SafetyResult:
    allowed: bool
    reason: str = ""


class SettlementGuard:
    """Pre-release safety checks.

    Parameters
    ----------
    kill_switch:
        If True, all releases are blocked unconditionally.
    max_daily_transfers:
        Maximum releases per token per day. 0 means unlimited.
    """

    def __init__(self, *, kill_switch: bool = False, max_daily_transfers: int = 0) -> None:
        self._kill_switch = kill_switch
        self._max_daily = max_daily_transfers
        self._counts: dict[str, int] = {}
        self._day: date | None = None

    @property
    def kill_switch(self) -> bool:
        return self._kill_switch

    def transfers_today(self, token: str) -> int:
        return self._counts.get(token, 0)

    def _reset_if_new_day(self, today: date) -> None:
        if self._day != today:
            self._counts = {}
            self._day = today

    def record_transfer(self, token: str, today: date | None = None) -> None:
        """Count one submitted release of *token*."""
        self._reset_if_new_day(today or datetime.now(timezone.utc).date())
        self._counts[token] = self._counts.get(token, 0) + 1

    def check(self, token: str, today: date | None = None) -> SafetyResult:
        """Returns SafetyResult(allowed=False, reason=...) when a release must not go out."""
        if self._kill_switch:
            return SafetyResult(allowed=False, reason="Kill switch is ON, settlements disabled")

        self._reset_if_new_day(today or datetime.now(timezone.utc).date())
        if self._max_daily > 0 and self._counts.get(token, 0) >= self._max_daily:
            return SafetyResult(
                allowed=False,
                reason=f"Daily settlement cap reached for {token} ({self._max_daily} per day)",
            )
        return SafetyResult(allowed=True)
