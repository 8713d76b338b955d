"""
Config loader: YAML file -> frozen dataclass tree.

The settlement signer key is resolved from the ESCROW_SIGNER_KEY environment
variable. Config file holds only non-secret values.
"""

import os
from dataclasses import dataclass
from pathlib import Path

import yaml

DEFAULT_ESCROW_ADDRESS = "0x9c77c6fafc1eb0821F1De12972Ef0199C97C6e45"


@dataclass(frozen=True)
class EscrowConfig:
    address: str = DEFAULT_ESCROW_ADDRESS
    chain: str = "base"
    signer_key: str = ""


@dataclass(frozen=True)
class StoreConfig:
    backend: str = "memory"  # "memory" | "sqlite"
    path: str = "data/escrow.db"


@dataclass(frozen=True)
class LedgerConfig:
    client: str = "paper"  # "paper" | "package.module:factory"


@dataclass(frozen=True)
class RelayConfig:
    interval_seconds: float = 30.0


@dataclass(frozen=True)
class PolicyConfig:
    path: str = ""  # empty -> docs/config/policy.default.json
    token: str = ""


@dataclass(frozen=True)
class SettlementConfig:
    kill_switch: bool = False
    max_daily_transfers: int = 0  # per token; 0 disables the cap


@dataclass(frozen=True)
class JournalConfig:
    path: str = "data/journal.jsonl"
    echo_stdout: bool = False


@dataclass(frozen=True)
class AlertingConfig:
    structured_logs: bool = True
    webhook_url: str = ""


@dataclass(frozen=True)
class AppConfig:
    escrow: EscrowConfig = EscrowConfig()
    store: StoreConfig = StoreConfig()
    ledger: LedgerConfig = LedgerConfig()
    relay: RelayConfig = RelayConfig()
    policy: PolicyConfig = PolicyConfig()
    settlement: SettlementConfig = SettlementConfig()
    journal: JournalConfig = JournalConfig()
    alerting: AlertingConfig = AlertingConfig()


def load_config(path: str | Path = "config.yaml") -> AppConfig:
    """
    Load configuration from a YAML file.

    The settlement signer key is resolved from the environment:
      - ESCROW_SIGNER_KEY
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict):
        raise ValueError(f"Config file must be a YAML mapping, got {type(raw).__name__}")

    e_raw = raw.get("escrow", {})
    escrow_cfg = EscrowConfig(
        address=str(e_raw.get("address", DEFAULT_ESCROW_ADDRESS)),
        chain=str(e_raw.get("chain", "base")),
        signer_key=os.environ.get("ESCROW_SIGNER_KEY", ""),
    )

    s_raw = raw.get("store", {})
    backend = str(s_raw.get("backend", "memory")).lower()
    if backend not in ("memory", "sqlite"):
        raise ValueError(f"store.backend must be 'memory' or 'sqlite', got {backend!r}")
    store_cfg = StoreConfig(backend=backend, path=str(s_raw.get("path", "data/escrow.db")))

    l_raw = raw.get("ledger", {})
    ledger_cfg = LedgerConfig(client=str(l_raw.get("client", "paper")))

    r_raw = raw.get("relay", {})
    relay_cfg = RelayConfig(interval_seconds=float(r_raw.get("interval_seconds", 30)))
    if relay_cfg.interval_seconds <= 0:
        raise ValueError("relay.interval_seconds must be positive")

    p_raw = raw.get("policy", {})
    policy_cfg = PolicyConfig(path=str(p_raw.get("path", "") or ""), token=str(p_raw.get("token", "") or ""))

    st_raw = raw.get("settlement", {})
    settlement_cfg = SettlementConfig(
        kill_switch=bool(st_raw.get("kill_switch", False)),
        max_daily_transfers=int(st_raw.get("max_daily_transfers", 0)),
    )

    j_raw = raw.get("journal", {})
    j_cfg = JournalConfig(
        path=j_raw.get("path", "data/journal.jsonl"),
        echo_stdout=bool(j_raw.get("echo_stdout", False)),
    )

    a_raw = raw.get("alerting", {})
    a_cfg = AlertingConfig(
        structured_logs=bool(a_raw.get("structured_logs", True)),
        webhook_url=str(a_raw.get("webhook_url", "")),
    )

    return AppConfig(
        escrow=escrow_cfg,
        store=store_cfg,
        ledger=ledger_cfg,
        relay=relay_cfg,
        policy=policy_cfg,
        settlement=settlement_cfg,
        journal=j_cfg,
        alerting=a_cfg,
    )
