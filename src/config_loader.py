import os
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

import yaml

from recon_models import ConfigError


DEFAULTS = {
    "flows": {
        "purchase": {
            "tax_base_tolerance": 0.03,
            "vat_tolerance": 0.005,
            "mismatch_ceiling": 3,
            "standard_vat_rate": 0.20,
            "vat_ratio_tolerance": 0.05,
            "counterparty_suffix_match": True,
            "verifiable_document_types": [],
            "exclude_foreign_from_missing": False,
            "run_ledger_checks": False,
        },
        "sales": {
            "tax_base_tolerance": 0.03,
            "vat_tolerance": 0.03,
            "mismatch_ceiling": 4,
            "standard_vat_rate": 0.20,
            "vat_ratio_tolerance": 0.05,
            "counterparty_suffix_match": False,
            "verifiable_document_types": ["Ф-ра", "КИ", "ДИ"],
            "exclude_foreign_from_missing": True,
            "run_ledger_checks": True,
        },
    },
    "ledger_checks": {
        "tolerance": 0.02,
        "vat_rates": {"20": 0.20, "9": 0.09},
    },
    "pacing": {
        "delay_between_requests": 8.0,
        "escalation_delay": 2.0,
        "max_retries": 3,
        "base_backoff": 10.0,
        "backoff_factor": 3.0,
    },
    "extraction": {
        "server_url": "http://localhost:3001",
        "timeout": 120.0,
    },
    "logging": {"level": "INFO"},
}


@dataclass(frozen=True)
class LedgerCheckConfig:
    tolerance: float = 0.02
    vat_rates: Tuple[Tuple[str, float], ...] = (("20", 0.20), ("9", 0.09))


@dataclass(frozen=True)
class FlowPolicy:
    """Per-flow tolerances and matching limits."""

    name: str
    tax_base_tolerance: float
    vat_tolerance: float
    mismatch_ceiling: int
    standard_vat_rate: float = 0.20
    vat_ratio_tolerance: float = 0.05
    counterparty_suffix_match: bool = True
    verifiable_document_types: Tuple[str, ...] = ()
    exclude_foreign_from_missing: bool = False
    run_ledger_checks: bool = False
    ledger_checks: LedgerCheckConfig = field(default_factory=LedgerCheckConfig)

    @property
    def is_sales(self) -> bool:
        return self.name == "sales"


@dataclass(frozen=True)
class PacingConfig:
    delay_between_requests: float = 8.0
    escalation_delay: float = 2.0
    max_retries: int = 3
    base_backoff: float = 10.0
    backoff_factor: float = 3.0


def _config_path() -> str:
    default = os.path.join(os.path.dirname(os.path.dirname(__file__)), "config", "reconciliation.yml")
    return os.getenv("RECON_CONFIG_PATH", default)


def _merge(base: Dict, override: Dict) -> Dict:
    merged = dict(base)
    for k, v in (override or {}).items():
        if isinstance(v, dict) and isinstance(merged.get(k), dict):
            merged[k] = _merge(merged[k], v)
        else:
            merged[k] = v
    return merged


def load_reconciliation_config(path: Optional[str] = None) -> dict:
    path = path or _config_path()
    try:
        with open(path, "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
    except FileNotFoundError:
        return _merge(DEFAULTS, {})
    if not isinstance(cfg, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return _merge(DEFAULTS, cfg)


def _number(section: Dict, key: str, kind=float, minimum=0):
    value = section.get(key)
    try:
        number = kind(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be a number, got {value!r}") from exc
    if number < minimum:
        raise ConfigError(f"{key} must be >= {minimum}, got {number}")
    return number


def ledger_check_config(cfg: dict) -> LedgerCheckConfig:
    section = cfg.get("ledger_checks", {})
    rates = section.get("vat_rates") or {}
    return LedgerCheckConfig(
        tolerance=_number(section, "tolerance"),
        vat_rates=tuple((str(k), float(v)) for k, v in rates.items()),
    )


def flow_policy(cfg: dict, flow: str) -> FlowPolicy:
    flows = cfg.get("flows", {})
    if flow not in flows:
        raise ConfigError(f"unknown flow '{flow}' (known: {', '.join(sorted(flows))})")
    section = flows[flow]
    return FlowPolicy(
        name=flow,
        tax_base_tolerance=_number(section, "tax_base_tolerance"),
        vat_tolerance=_number(section, "vat_tolerance"),
        mismatch_ceiling=_number(section, "mismatch_ceiling", int, minimum=1),
        standard_vat_rate=_number(section, "standard_vat_rate"),
        vat_ratio_tolerance=_number(section, "vat_ratio_tolerance"),
        counterparty_suffix_match=bool(section.get("counterparty_suffix_match", True)),
        verifiable_document_types=tuple(section.get("verifiable_document_types") or ()),
        exclude_foreign_from_missing=bool(section.get("exclude_foreign_from_missing", False)),
        run_ledger_checks=bool(section.get("run_ledger_checks", False)),
        ledger_checks=ledger_check_config(cfg),
    )


def pacing_config(cfg: dict) -> PacingConfig:
    section = cfg.get("pacing", {})
    return PacingConfig(
        delay_between_requests=_number(section, "delay_between_requests"),
        escalation_delay=_number(section, "escalation_delay"),
        max_retries=_number(section, "max_retries", int),
        base_backoff=_number(section, "base_backoff"),
        backoff_factor=_number(section, "backoff_factor", minimum=1),
    )
