"""
Market policy loader: JSON file -> frozen dataclass tree, validated against JSON Schema.

Default values: docs/config/policy.default.json
Schema:         docs/config/policy.schema.json

Per-token overrides: place a partial JSON file named ``policy.{TOKEN}.json``
next to the default policy (e.g. ``docs/config/policy.XOC.json``). Only the
keys you want to override need to be present; they are deep-merged on top
of the base policy before schema validation.

Usage:
    from config.policy import load_policy
    policy = load_policy()                   # loads default
    policy = load_policy(token="XOC")        # merges policy.XOC.json if present
    policy.tolerance_percent                 # -> 5.0

``MarketPolicy()`` with no arguments equals the shipped defaults, so the
market core runs without any files on disk.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import jsonschema

logger = logging.getLogger("escrow.config")


def _find_project_root() -> Path:
    """Walk up from this file looking for pyproject.toml, else use CWD."""
    candidate = Path(__file__).resolve().parent
    for _ in range(10):
        if (candidate / "pyproject.toml").exists():
            return candidate
        parent = candidate.parent
        if parent == candidate:
            break
        candidate = parent
    return Path.cwd()


_PROJECT_ROOT = _find_project_root()

DEFAULT_POLICY_PATH = _PROJECT_ROOT / "docs" / "config" / "policy.default.json"
DEFAULT_SCHEMA_PATH = _PROJECT_ROOT / "docs" / "config" / "policy.schema.json"


# ---------------------------------------------------------------------------
# Frozen dataclass tree mirroring policy.default.json
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VoucherRules:
    operation_type: str = "0004"
    issuer_id: str = "101"
    min_amount: float = 5.0
    max_amount: float = 10_000.0
    timezone: str = "America/Mexico_City"


@dataclass(frozen=True)
class Lifetimes:
    order_seconds: int = 7 * 24 * 60 * 60
    fill_seconds: int = 15 * 60


@dataclass(frozen=True)
class SellOrderRules:
    min_fiat_amount: float = 5.0
    max_fiat_amount: float = 100_000.0


@dataclass(frozen=True)
class MarketPolicy:
    voucher: VoucherRules = field(default_factory=VoucherRules)
    tolerance_percent: float = 5.0
    lifetimes: Lifetimes = field(default_factory=Lifetimes)
    sell_orders: SellOrderRules = field(default_factory=SellOrderRules)
    lazy_expiration: bool = True


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------


class PolicyConfigError(Exception):
    """Raised when policy loading or validation fails."""


def _deep_merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge *overrides* into a copy of *base* (override keys win)."""
    merged = dict(base)
    for key, val in overrides.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(val, dict):
            merged[key] = _deep_merge(merged[key], val)
        else:
            merged[key] = val
    return merged


def _read_json(path: Path, label: str) -> dict[str, Any]:
    try:
        with open(path) as f:
            return json.load(f)
    except json.JSONDecodeError as exc:
        raise PolicyConfigError(f"{label} {path.name} is not valid JSON: {exc}") from exc


def _validate_schema(data: dict[str, Any], schema_path: Path) -> None:
    if not schema_path.exists():
        raise PolicyConfigError(f"Schema file not found: {schema_path}")
    with open(schema_path) as f:
        schema = json.load(f)
    try:
        jsonschema.validate(instance=data, schema=schema)
    except jsonschema.ValidationError as exc:
        raise PolicyConfigError(f"Policy validation failed: {exc.message}") from exc


def _build_policy(data: dict[str, Any]) -> MarketPolicy:
    v = data["voucher"]
    if v["min_amount"] > v["max_amount"]:
        raise PolicyConfigError("voucher.min_amount must not exceed voucher.max_amount")
    s = data["sell_orders"]
    if s["min_fiat_amount"] > s["max_fiat_amount"]:
        raise PolicyConfigError("sell_orders.min_fiat_amount must not exceed sell_orders.max_fiat_amount")
    return MarketPolicy(
        voucher=VoucherRules(
            operation_type=v["operation_type"],
            issuer_id=v["issuer_id"],
            min_amount=float(v["min_amount"]),
            max_amount=float(v["max_amount"]),
            timezone=v["timezone"],
        ),
        tolerance_percent=float(data["matching"]["tolerance_percent"]),
        lifetimes=Lifetimes(
            order_seconds=int(data["lifetimes"]["order_seconds"]),
            fill_seconds=int(data["lifetimes"]["fill_seconds"]),
        ),
        sell_orders=SellOrderRules(
            min_fiat_amount=float(s["min_fiat_amount"]),
            max_fiat_amount=float(s["max_fiat_amount"]),
        ),
        lazy_expiration=bool(data["expiration"]["lazy"]),
    )


def load_policy(
    policy_path: str | Path | None = None,
    schema_path: str | Path | None = None,
    token: str | None = None,
) -> MarketPolicy:
    """Load and validate the market policy.

    Parameters
    ----------
    policy_path:
        Path to a policy JSON file.  Defaults to ``docs/config/policy.default.json``.
    schema_path:
        Path to the JSON Schema file.  Defaults to ``docs/config/policy.schema.json``.
    token:
        Optional token symbol.  When provided, ``policy.{TOKEN}.json`` in the
        same directory is deep-merged on top of the base policy if it exists.

    Returns
    -------
    MarketPolicy

    Raises
    ------
    PolicyConfigError
        If the file is missing, unparseable, or fails schema validation.
    """
    cfg_path = Path(policy_path) if policy_path else DEFAULT_POLICY_PATH
    sch_path = Path(schema_path) if schema_path else DEFAULT_SCHEMA_PATH

    if not cfg_path.exists():
        raise PolicyConfigError(f"Policy file not found: {cfg_path}")

    data = _read_json(cfg_path, "Policy")

    if token:
        override_path = cfg_path.parent / f"policy.{token.upper()}.json"
        if override_path.exists():
            data = _deep_merge(data, _read_json(override_path, "Per-token policy"))
            logger.info("Loaded per-token policy: %s", override_path.name)
        else:
            logger.debug("No per-token policy at %s, using defaults", override_path)

    _validate_schema(data, sch_path)
    return _build_policy(data)
