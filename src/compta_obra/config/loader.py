"""Chargement et validation de la configuration YAML."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path

import yaml

from compta_obra.models import ConfigError

logger = logging.getLogger(__name__)

SUPPORTED_CURRENCIES = {"ARS", "USD"}
DEFAULT_DATABASE = "./data/compta_obra.sqlite3"


@dataclass
class ProviderConfig:
    """Fournisseur de cotizaciones historiques (non frozen — dataclass technique)."""

    base_url: str
    casa: str = "blue"
    currency: str = "USD"
    timeout: float = 10.0


@dataclass
class ResolverConfig:
    """Paramètres de résolution : repli, retry, parallélisme."""

    lookback_days: int = 7
    max_attempts: int = 3
    backoff_base: float = 0.5
    backoff_max: float = 8.0
    max_workers: int = 4


@dataclass
class BackfillConfig:
    """Plafond de requêtes du backfill."""

    max_requests_per_second: float = 2.0


@dataclass
class PlansConfig:
    """Paramètres des plans de paiement."""

    tolerance: Decimal = Decimal("0.01")
    obligations_horizon_days: int = 90


@dataclass(frozen=True)
class StatutoryDeadline:
    """Échéance fiscale mensuelle récurrente (ex. DDJJ IVA le 18)."""

    code: str
    label: str
    day_of_month: int


@dataclass
class TaxRuleTable:
    """Table de règles fiscales externe (taux en pourcentage)."""

    iva_conditions: dict[str, Decimal]
    iibb_jurisdictions: dict[str, Decimal] = field(default_factory=dict)
    withholdings: dict[str, Decimal] = field(default_factory=dict)
    statutory_deadlines: list[StatutoryDeadline] = field(default_factory=list)


@dataclass
class AppConfig:
    """Configuration complète de l'application (non frozen — dataclass technique)."""

    provider: ProviderConfig
    tax_rules: TaxRuleTable
    reporting_currency: str = "ARS"
    minor_unit: int = 2
    database_path: str = DEFAULT_DATABASE
    resolver: ResolverConfig = field(default_factory=ResolverConfig)
    backfill: BackfillConfig = field(default_factory=BackfillConfig)
    plans: PlansConfig = field(default_factory=PlansConfig)


def _load_yaml(filepath: Path) -> dict[str, object]:
    """Charge un fichier YAML et retourne son contenu."""
    if not filepath.exists():
        raise ConfigError(f"Fichier de configuration manquant : {filepath}")
    try:
        with open(filepath, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"YAML malformé dans {filepath} : {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Le fichier {filepath} doit contenir un mapping YAML (reçu : {type(data).__name__})")
    return data


def _require_key(data: dict[str, object], key: str, context: str) -> object:
    """Vérifie qu'une clé existe dans un dictionnaire."""
    if key not in data:
        raise ConfigError(f"Clé obligatoire '{key}' manquante dans {context}")
    return data[key]


def _section(data: dict[str, object], key: str, context: str) -> dict[str, object]:
    """Retourne une section optionnelle (mapping vide si absente)."""
    raw = data.get(key, {})
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"'{key}' doit être un mapping dans {context}")
    return raw


def _positive_number(raw: object, label: str, context: str, *, allow_zero: bool = False) -> float:
    """Valide un nombre strictement positif (ou positif si allow_zero)."""
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise ConfigError(f"'{label}' doit être un nombre dans {context}")
    value = float(raw)
    if value < 0 or (value == 0 and not allow_zero):
        raise ConfigError(f"'{label}' doit être positif dans {context} (reçu : {raw})")
    return value


def _positive_int(raw: object, label: str, context: str) -> int:
    """Valide un entier strictement positif."""
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise ConfigError(f"'{label}' doit être un entier dans {context}")
    if raw <= 0:
        raise ConfigError(f"'{label}' doit être strictement positif dans {context} (reçu : {raw})")
    return raw


def _percent_table(raw: object, key: str, context: str) -> dict[str, Decimal]:
    """Valide un mapping code → taux (%) compris entre 0 et 100."""
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"'{key}' doit être un mapping dans {context}")

    table: dict[str, Decimal] = {}
    for code, rate in raw.items():
        code_str = str(code)
        if isinstance(rate, bool) or not isinstance(rate, (int, float)):
            raise ConfigError(f"Taux invalide pour '{code_str}' ({key}) dans {context} : doit être un nombre")
        try:
            rate_dec = Decimal(str(rate))
        except InvalidOperation as e:
            raise ConfigError(f"Taux invalide pour '{code_str}' ({key}) dans {context} : {rate!r}") from e
        if rate_dec < 0 or rate_dec > 100:
            raise ConfigError(
                f"Taux invalide pour '{code_str}' ({key}) dans {context} : "
                f"{rate_dec}% (doit être entre 0 et 100)"
            )
        table[code_str] = rate_dec
    return table


def _validate_settings(
    data: dict[str, object],
) -> tuple[ProviderConfig, ResolverConfig, BackfillConfig, PlansConfig, str, int, str]:
    """Valide et extrait settings.yaml."""
    context = "settings.yaml"

    provider_raw = _require_key(data, "provider", context)
    if not isinstance(provider_raw, dict):
        raise ConfigError(f"'provider' doit être un mapping dans {context}")
    base_url = str(_require_key(provider_raw, "base_url", f"{context}/provider")).rstrip("/")
    if not base_url.startswith(("http://", "https://")):
        raise ConfigError(f"'base_url' doit être une URL http(s) dans {context}/provider (reçu : {base_url!r})")
    provider_currency = str(provider_raw.get("currency", "USD")).upper()
    if provider_currency not in SUPPORTED_CURRENCIES:
        raise ConfigError(
            f"Devise '{provider_currency}' non supportée dans {context}/provider. "
            f"Devises acceptées : {', '.join(sorted(SUPPORTED_CURRENCIES))}"
        )
    provider = ProviderConfig(
        base_url=base_url,
        casa=str(provider_raw.get("casa", "blue")),
        currency=provider_currency,
        timeout=_positive_number(provider_raw.get("timeout", 10.0), "timeout", f"{context}/provider"),
    )

    resolver_raw = _section(data, "resolver", context)
    resolver = ResolverConfig(
        lookback_days=_positive_int(resolver_raw.get("lookback_days", 7), "lookback_days", f"{context}/resolver"),
        max_attempts=_positive_int(resolver_raw.get("max_attempts", 3), "max_attempts", f"{context}/resolver"),
        backoff_base=_positive_number(
            resolver_raw.get("backoff_base", 0.5), "backoff_base", f"{context}/resolver", allow_zero=True
        ),
        backoff_max=_positive_number(
            resolver_raw.get("backoff_max", 8.0), "backoff_max", f"{context}/resolver", allow_zero=True
        ),
        max_workers=_positive_int(resolver_raw.get("max_workers", 4), "max_workers", f"{context}/resolver"),
    )

    backfill_raw = _section(data, "backfill", context)
    backfill = BackfillConfig(
        max_requests_per_second=_positive_number(
            backfill_raw.get("max_requests_per_second", 2.0), "max_requests_per_second", f"{context}/backfill"
        ),
    )

    plans_raw = _section(data, "plans", context)
    tolerance = _positive_number(plans_raw.get("tolerance", 0.01), "tolerance", f"{context}/plans", allow_zero=True)
    plans = PlansConfig(
        tolerance=Decimal(str(tolerance)),
        obligations_horizon_days=_positive_int(
            plans_raw.get("obligations_horizon_days", 90), "obligations_horizon_days", f"{context}/plans"
        ),
    )

    reporting_currency = str(data.get("reporting_currency", "ARS")).upper()
    if reporting_currency not in SUPPORTED_CURRENCIES:
        raise ConfigError(
            f"Devise de reporting '{reporting_currency}' non supportée dans {context}. "
            f"Devises acceptées : {', '.join(sorted(SUPPORTED_CURRENCIES))}"
        )
    if reporting_currency == provider.currency:
        raise ConfigError(f"La devise du fournisseur doit différer de la devise de reporting dans {context}")

    minor_unit = data.get("minor_unit", 2)
    if isinstance(minor_unit, bool) or not isinstance(minor_unit, int) or not 0 <= minor_unit <= 4:
        raise ConfigError(f"'minor_unit' doit être un entier entre 0 et 4 dans {context} (reçu : {minor_unit!r})")

    database_path = str(data.get("database_path", DEFAULT_DATABASE))

    return provider, resolver, backfill, plans, reporting_currency, minor_unit, database_path


def _validate_deadlines(raw: object, context: str) -> list[StatutoryDeadline]:
    """Valide la liste des échéances fiscales récurrentes."""
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigError(f"'statutory_deadlines' doit être une liste dans {context}")

    deadlines: list[StatutoryDeadline] = []
    seen: set[str] = set()
    for item in raw:
        if not isinstance(item, dict):
            raise ConfigError(f"Chaque échéance doit être un mapping dans {context}")
        code = str(_require_key(item, "code", f"{context}/statutory_deadlines"))
        if code in seen:
            raise ConfigError(f"Échéance '{code}' dupliquée dans {context}")
        seen.add(code)
        day = item.get("day_of_month")
        if isinstance(day, bool) or not isinstance(day, int) or not 1 <= day <= 31:
            raise ConfigError(
                f"'day_of_month' invalide pour l'échéance '{code}' dans {context} : "
                f"doit être un entier entre 1 et 31 (reçu : {day!r})"
            )
        deadlines.append(StatutoryDeadline(code=code, label=str(item.get("label", code)), day_of_month=day))
    return deadlines


def _validate_tax_rules(data: dict[str, object]) -> TaxRuleTable:
    """Valide et extrait la table de règles fiscales."""
    context = "tax_rules.yaml"

    iva_conditions = _percent_table(_require_key(data, "iva_conditions", context), "iva_conditions", context)
    if len(iva_conditions) == 0:
        raise ConfigError(f"'iva_conditions' doit contenir au moins une entrée dans {context}")

    return TaxRuleTable(
        iva_conditions=iva_conditions,
        iibb_jurisdictions=_percent_table(data.get("iibb_jurisdictions"), "iibb_jurisdictions", context),
        withholdings=_percent_table(data.get("withholdings"), "withholdings", context),
        statutory_deadlines=_validate_deadlines(data.get("statutory_deadlines"), context),
    )


def load_config(config_dir: Path) -> AppConfig:
    """Charge et valide la configuration complète depuis un répertoire.

    Args:
        config_dir: Répertoire contenant settings.yaml et tax_rules.yaml.

    Returns:
        AppConfig validée.

    Raises:
        ConfigError: Si un fichier est manquant, malformé, ou contient des valeurs invalides.
    """
    logger.info("Chargement de la configuration depuis %s", config_dir)

    settings_data = _load_yaml(config_dir / "settings.yaml")
    rules_data = _load_yaml(config_dir / "tax_rules.yaml")

    provider, resolver, backfill, plans, reporting_currency, minor_unit, database_path = _validate_settings(
        settings_data
    )
    tax_rules = _validate_tax_rules(rules_data)

    config = AppConfig(
        provider=provider,
        tax_rules=tax_rules,
        reporting_currency=reporting_currency,
        minor_unit=minor_unit,
        database_path=database_path,
        resolver=resolver,
        backfill=backfill,
        plans=plans,
    )

    logger.debug(
        "lookback_days=%s, max_attempts=%s, plafond backfill=%s req/s",
        resolver.lookback_days,
        resolver.max_attempts,
        backfill.max_requests_per_second,
    )

    return config
