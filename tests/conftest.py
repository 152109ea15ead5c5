from __future__ import annotations

import datetime
import threading
import time
from collections.abc import Iterator
from decimal import Decimal
from pathlib import Path

import pytest

from compta_obra.config.loader import (
    AppConfig,
    PlansConfig,
    ProviderConfig,
    ResolverConfig,
    StatutoryDeadline,
    TaxRuleTable,
)
from compta_obra.models import RateProviderError
from compta_obra.rates.cache import RateCache
from compta_obra.rates.resolver import ExchangeRateResolver
from compta_obra.storage import Database

FIXED_NOW = datetime.datetime(2025, 8, 1, 12, 0, tzinfo=datetime.timezone.utc)


class FakeProvider:
    """Fournisseur en mémoire : ``rates`` par date, ``None`` pour un jour non coté.

    ``down`` : dates toujours en échec ; ``failures`` : nombre d'échecs avant succès.
    """

    def __init__(self, rates: dict[datetime.date, Decimal] | None = None, delay: float = 0.0) -> None:
        self.rates = dict(rates or {})
        self.down: set[datetime.date] = set()
        self.failures: dict[datetime.date, int] = {}
        self.delay = delay
        self.calls: list[datetime.date] = []
        self._lock = threading.Lock()

    def lookup(self, date: datetime.date) -> Decimal | None:
        with self._lock:
            self.calls.append(date)
            remaining = self.failures.get(date, 0)
            if remaining:
                self.failures[date] = remaining - 1
        if self.delay:
            time.sleep(self.delay)
        if remaining or date in self.down:
            raise RateProviderError(f"503 simulé pour le {date.isoformat()}")
        return self.rates.get(date)


def weekday_rates(start: datetime.date, end: datetime.date, value: str = "1300") -> dict[datetime.date, Decimal]:
    """Cotización fixe pour chaque jour ouvré de [start, end]."""
    rates = {}
    day = start
    while day <= end:
        if day.weekday() < 5:
            rates[day] = Decimal(value)
        day += datetime.timedelta(days=1)
    return rates


@pytest.fixture
def fixtures_dir() -> Path:
    """Chemin vers le répertoire de fixtures."""
    return Path(__file__).parent / "fixtures"


@pytest.fixture
def db() -> Iterator[Database]:
    """Base SQLite en mémoire, schéma initialisé."""
    database = Database()
    yield database
    database.close()


@pytest.fixture
def cache(db: Database) -> RateCache:
    return RateCache(db, clock=lambda: FIXED_NOW)


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def sleeps() -> list[float]:
    """Délais de backoff demandés par le résolveur (aucune attente réelle)."""
    return []


@pytest.fixture
def resolver(cache: RateCache, fake_provider: FakeProvider, sleeps: list[float]) -> ExchangeRateResolver:
    return ExchangeRateResolver(cache, fake_provider, ResolverConfig(), sleep=sleeps.append)


@pytest.fixture
def sample_rules() -> TaxRuleTable:
    """Table de règles fiscales d'exemple."""
    return TaxRuleTable(
        iva_conditions={
            "gravado_21": Decimal("21"),
            "gravado_10_5": Decimal("10.5"),
            "exento": Decimal("0"),
        },
        iibb_jurisdictions={"CABA": Decimal("3"), "Provincia": Decimal("3.5")},
        withholdings={"ganancias": Decimal("2"), "iva": Decimal("3"), "suss": Decimal("2")},
        statutory_deadlines=[
            StatutoryDeadline(code="IVA", label="DDJJ IVA mensual", day_of_month=18),
            StatutoryDeadline(code="IIBB", label="Anticipo IIBB", day_of_month=15),
            StatutoryDeadline(code="SUSS", label="F.931 cargas sociales", day_of_month=10),
        ],
    )


@pytest.fixture
def sample_config(sample_rules: TaxRuleTable, tmp_path: Path) -> AppConfig:
    """AppConfig valide minimale pour les tests."""
    return AppConfig(
        provider=ProviderConfig(base_url="https://api.example.test"),
        tax_rules=sample_rules,
        database_path=str(tmp_path / "data" / "test.sqlite3"),
        plans=PlansConfig(tolerance=Decimal("0.01"), obligations_horizon_days=90),
    )


@pytest.fixture
def config_dir(tmp_path: Path) -> Path:
    """Répertoire de configuration YAML valide (base SQLite dans tmp_path)."""
    directory = tmp_path / "config"
    directory.mkdir()
    (directory / "settings.yaml").write_text(f"""\
reporting_currency: ARS
minor_unit: 2
database_path: "{tmp_path / 'data' / 'cli.sqlite3'}"
provider:
  base_url: "https://api.example.test"
  casa: blue
  currency: USD
resolver:
  lookback_days: 7
  max_attempts: 2
  backoff_base: 0
""")
    (directory / "tax_rules.yaml").write_text("""\
iva_conditions:
  gravado_21: 21.0
  exento: 0
iibb_jurisdictions:
  CABA: 3.0
withholdings:
  ganancias: 2.0
statutory_deadlines:
  - code: IVA
    label: "DDJJ IVA mensual"
    day_of_month: 18
""")
    return directory


@pytest.fixture
def january_rates() -> dict[datetime.date, Decimal]:
    """Cotizaciones de janvier 2025 : 23 jours ouvrés, week-ends non cotés."""
    return weekday_rates(datetime.date(2025, 1, 1), datetime.date(2025, 1, 31))
