"""
Marketplace facade and its construction from config.yaml.
"""

from __future__ import annotations

import importlib
import logging
from typing import Any

from config.loader import AppConfig
from config.policy import MarketPolicy, load_policy
from journal.writer import JournalWriter
from ledger.client import LedgerClient, PaperLedgerClient
from ledger.safety import SettlementGuard
from marketplace.service import Marketplace
from store import memory_repositories, sqlite_repositories

logger = logging.getLogger("escrow.marketplace")


def load_ledger_client(cfg: AppConfig) -> LedgerClient:
    """Resolve ``ledger.client``: "paper", or "package.module:factory" called with the AppConfig."""
    spec = cfg.ledger.client.strip()
    if spec == "paper":
        return PaperLedgerClient()
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"ledger.client must be 'paper' or 'module:factory', got {spec!r}")
    factory = getattr(importlib.import_module(module_name), attr)
    return factory(cfg)


def build_marketplace(
    cfg: AppConfig,
    *,
    client: LedgerClient | None = None,
    policy: MarketPolicy | None = None,
    events: Any = None,
) -> Marketplace:
    """Wire a Marketplace from config: store backend, policy, journal, settlement guard."""
    if policy is None:
        policy = load_policy(cfg.policy.path or None, token=cfg.policy.token or None)
    repos = sqlite_repositories(cfg.store.path) if cfg.store.backend == "sqlite" else memory_repositories()
    journal = JournalWriter(cfg.journal.path, echo_stdout=cfg.journal.echo_stdout) if cfg.journal.path else None
    guard = SettlementGuard(
        kill_switch=cfg.settlement.kill_switch,
        max_daily_transfers=cfg.settlement.max_daily_transfers,
    )
    if guard.kill_switch:
        logger.warning("Settlement kill switch is ON; escrow releases will be recorded as errors")
    return Marketplace(
        client if client is not None else load_ledger_client(cfg),
        repositories=repos,
        policy=policy,
        escrow_address=cfg.escrow.address,
        chain=cfg.escrow.chain,
        settlement_guard=guard,
        journal=journal,
        events=events,
    )


__all__ = ["Marketplace", "build_marketplace", "load_ledger_client"]
