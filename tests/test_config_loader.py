import pytest

from config_loader import (
    DEFAULTS,
    flow_policy,
    ledger_check_config,
    load_reconciliation_config,
    pacing_config,
)
from recon_models import ConfigError


def test_defaults_when_file_is_missing(tmp_path):
    cfg = load_reconciliation_config(str(tmp_path / "nope.yml"))
    purchase = flow_policy(cfg, "purchase")
    sales = flow_policy(cfg, "sales")
    assert (purchase.tax_base_tolerance, purchase.vat_tolerance, purchase.mismatch_ceiling) == (0.03, 0.005, 3)
    assert (sales.tax_base_tolerance, sales.vat_tolerance, sales.mismatch_ceiling) == (0.03, 0.03, 4)
    assert purchase.counterparty_suffix_match and not sales.counterparty_suffix_match
    assert sales.is_sales and not purchase.is_sales


def test_repository_config_loads(monkeypatch):
    monkeypatch.delenv("RECON_CONFIG_PATH", raising=False)
    cfg = load_reconciliation_config()
    sales = flow_policy(cfg, "sales")
    assert sales.verifiable_document_types == ("Ф-ра", "КИ", "ДИ")
    assert sales.run_ledger_checks
    assert sales.ledger_checks.vat_rates == (("20", 0.20), ("9", 0.09))


def test_file_overrides_are_merged_over_defaults(tmp_path, monkeypatch):
    path = tmp_path / "recon.yml"
    path.write_text("flows:\n  purchase:\n    mismatch_ceiling: 5\npacing:\n  max_retries: 1\n", encoding="utf-8")
    monkeypatch.setenv("RECON_CONFIG_PATH", str(path))

    cfg = load_reconciliation_config()
    purchase = flow_policy(cfg, "purchase")
    assert purchase.mismatch_ceiling == 5
    assert purchase.vat_tolerance == 0.005
    pacing = pacing_config(cfg)
    assert pacing.max_retries == 1
    assert pacing.delay_between_requests == 8.0


def test_unquoted_rate_keys_become_strings():
    cfg = {"ledger_checks": {"tolerance": 0.01, "vat_rates": {20: 0.2}}}
    assert ledger_check_config(cfg).vat_rates == (("20", 0.2),)


@pytest.mark.parametrize("key, value", [
    ("tax_base_tolerance", "abc"),
    ("vat_tolerance", -0.1),
    ("mismatch_ceiling", 0),
])
def test_invalid_values_raise(key, value):
    cfg = {**DEFAULTS, "flows": {"purchase": {**DEFAULTS["flows"]["purchase"], key: value}}}
    with pytest.raises(ConfigError):
        flow_policy(cfg, "purchase")


def test_unknown_flow_raises():
    with pytest.raises(ConfigError):
        flow_policy(DEFAULTS, "trading")


def test_non_mapping_file_raises(tmp_path):
    path = tmp_path / "bad.yml"
    path.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_reconciliation_config(str(path))
