"""Tests unitaires pour le module config_loader."""

from pathlib import Path
from decimal import Decimal

import pytest

from compta_obra.config.loader import AppConfig, load_config
from compta_obra.models import ConfigError


VALID_SETTINGS = """\
reporting_currency: ARS
minor_unit: 2
database_path: ./data/test.sqlite3
provider:
  base_url: "https://api.argentinadatos.com/"
  casa: blue
  currency: USD
  timeout: 5
resolver:
  lookback_days: 5
  max_attempts: 4
backfill:
  max_requests_per_second: 1.5
plans:
  tolerance: 0.05
  obligations_horizon_days: 60
"""

VALID_RULES = """\
iva_conditions:
  gravado_21: 21.0
  gravado_10_5: 10.5
  exento: 0
iibb_jurisdictions:
  CABA: 3.0
withholdings:
  ganancias: 2
statutory_deadlines:
  - code: IVA
    label: "DDJJ IVA mensual"
    day_of_month: 18
  - code: SUSS
    day_of_month: 10
"""


def _write_configs(tmp_path: Path, settings: str = VALID_SETTINGS, rules: str = VALID_RULES) -> None:
    """Helper pour écrire les 2 fichiers de config."""
    (tmp_path / "settings.yaml").write_text(settings)
    (tmp_path / "tax_rules.yaml").write_text(rules)


class TestLoadConfigValid:
    def test_load_config_valid(self, tmp_path: Path) -> None:
        _write_configs(tmp_path)
        config = load_config(tmp_path)

        assert isinstance(config, AppConfig)
        assert config.reporting_currency == "ARS"
        assert config.provider.base_url == "https://api.argentinadatos.com"
        assert config.provider.timeout == 5.0
        assert config.resolver.lookback_days == 5
        assert config.resolver.max_attempts == 4
        assert config.resolver.backoff_base == 0.5
        assert config.backfill.max_requests_per_second == 1.5
        assert config.plans.tolerance == Decimal("0.05")
        assert config.plans.obligations_horizon_days == 60

    def test_rates_are_decimal(self, tmp_path: Path) -> None:
        _write_configs(tmp_path)
        rules = load_config(tmp_path).tax_rules
        assert rules.iva_conditions["gravado_10_5"] == Decimal("10.5")
        assert rules.iibb_jurisdictions == {"CABA": Decimal("3.0")}
        assert rules.withholdings == {"ganancias": Decimal("2")}

    def test_deadlines(self, tmp_path: Path) -> None:
        _write_configs(tmp_path)
        deadlines = load_config(tmp_path).tax_rules.statutory_deadlines
        assert [d.code for d in deadlines] == ["IVA", "SUSS"]
        assert deadlines[1].label == "SUSS"
        assert deadlines[0].day_of_month == 18

    def test_optional_sections_default(self, tmp_path: Path) -> None:
        _write_configs(
            tmp_path,
            settings="provider:\n  base_url: https://x.test\n",
            rules="iva_conditions:\n  exento: 0\n",
        )
        config = load_config(tmp_path)
        assert config.resolver.lookback_days == 7
        assert config.tax_rules.withholdings == {}
        assert config.tax_rules.statutory_deadlines == []

    def test_sample_config_shipped(self) -> None:
        config = load_config(Path(__file__).parent.parent.parent / "config")
        assert config.provider.casa == "blue"
        assert "CABA" in config.tax_rules.iibb_jurisdictions


class TestLoadConfigErrors:
    def test_missing_file(self, tmp_path: Path) -> None:
        (tmp_path / "settings.yaml").write_text(VALID_SETTINGS)
        with pytest.raises(ConfigError, match="tax_rules.yaml"):
            load_config(tmp_path)

    def test_malformed_yaml(self, tmp_path: Path) -> None:
        _write_configs(tmp_path, settings="provider: [unclosed")
        with pytest.raises(ConfigError, match="YAML malformé"):
            load_config(tmp_path)

    def test_missing_provider(self, tmp_path: Path) -> None:
        _write_configs(tmp_path, settings="reporting_currency: ARS\n")
        with pytest.raises(ConfigError, match="provider"):
            load_config(tmp_path)

    def test_invalid_base_url(self, tmp_path: Path) -> None:
        _write_configs(tmp_path, settings="provider:\n  base_url: ftp://x\n")
        with pytest.raises(ConfigError, match="base_url"):
            load_config(tmp_path)

    def test_same_currency_rejected(self, tmp_path: Path) -> None:
        _write_configs(tmp_path, settings="reporting_currency: USD\nprovider:\n  base_url: https://x.test\n")
        with pytest.raises(ConfigError, match="différer"):
            load_config(tmp_path)

    def test_negative_lookback(self, tmp_path: Path) -> None:
        settings = "provider:\n  base_url: https://x.test\nresolver:\n  lookback_days: -1\n"
        _write_configs(tmp_path, settings=settings)
        with pytest.raises(ConfigError, match="lookback_days"):
            load_config(tmp_path)

    def test_rate_out_of_range(self, tmp_path: Path) -> None:
        _write_configs(tmp_path, rules="iva_conditions:\n  gravado: 121\n")
        with pytest.raises(ConfigError, match="entre 0 et 100"):
            load_config(tmp_path)

    def test_rate_not_a_number(self, tmp_path: Path) -> None:
        _write_configs(tmp_path, rules="iva_conditions:\n  gravado: veintiuno\n")
        with pytest.raises(ConfigError, match="doit être un nombre"):
            load_config(tmp_path)

    def test_empty_iva_conditions(self, tmp_path: Path) -> None:
        _write_configs(tmp_path, rules="iva_conditions: {}\n")
        with pytest.raises(ConfigError, match="au moins une entrée"):
            load_config(tmp_path)

    def test_deadline_day_invalid(self, tmp_path: Path) -> None:
        rules = "iva_conditions:\n  exento: 0\nstatutory_deadlines:\n  - code: IVA\n    day_of_month: 32\n"
        _write_configs(tmp_path, rules=rules)
        with pytest.raises(ConfigError, match="day_of_month"):
            load_config(tmp_path)

    def test_deadline_duplicated(self, tmp_path: Path) -> None:
        rules = (
            "iva_conditions:\n  exento: 0\nstatutory_deadlines:\n"
            "  - code: IVA\n    day_of_month: 18\n  - code: IVA\n    day_of_month: 20\n"
        )
        _write_configs(tmp_path, rules=rules)
        with pytest.raises(ConfigError, match="dupliquée"):
            load_config(tmp_path)
