"""Contexte explicite d'un processus : configuration, connexion, composants."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from compta_obra.config.loader import AppConfig
from compta_obra.engine.classification import TaxClassifier
from compta_obra.engine.tax_aggregation import TaxAggregationEngine
from compta_obra.parsers.base import LedgerSource
from compta_obra.plans.tracker import PaymentPlanTracker
from compta_obra.rates.backfill import BackfillJob, RateLimiter
from compta_obra.rates.cache import RateCache
from compta_obra.rates.provider import ArgentinaDatosProvider, RateProvider
from compta_obra.rates.resolver import ExchangeRateResolver
from compta_obra.storage import Database

logger = logging.getLogger(__name__)


@dataclass
class FinanceContext:
    """Composants partagés, construits une fois par processus et passés aux appelants."""

    config: AppConfig
    db: Database
    provider: RateProvider
    cache: RateCache
    resolver: ExchangeRateResolver
    tracker: PaymentPlanTracker

    def build_engine(self, sources: Sequence[LedgerSource]) -> TaxAggregationEngine:
        return TaxAggregationEngine(
            sources,
            {self.config.provider.currency: self.resolver},
            TaxClassifier(self.config.tax_rules),
            reporting_currency=self.config.reporting_currency,
            minor_unit=self.config.minor_unit,
            max_workers=self.config.resolver.max_workers,
        )

    def build_backfill(self) -> BackfillJob:
        limiter = RateLimiter(self.config.backfill.max_requests_per_second)
        return BackfillJob(self.cache, self.resolver, limiter)

    def close(self) -> None:
        close = getattr(self.provider, "close", None)
        if close is not None:
            close()
        self.db.close()


def build_context(
    config: AppConfig,
    provider: RateProvider | None = None,
    database_path: str | None = None,
) -> FinanceContext:
    """Assemble le contexte ; ``provider`` et ``database_path`` remplacent ceux de la configuration."""
    db = Database(database_path or config.database_path)
    pair = f"{config.provider.currency}/{config.reporting_currency}"
    cache = RateCache(db, pair=pair)
    provider = provider or ArgentinaDatosProvider(config.provider)
    resolver = ExchangeRateResolver(cache, provider, config.resolver)
    tracker = PaymentPlanTracker(
        db,
        config.plans,
        deadlines=config.tax_rules.statutory_deadlines,
        currency=config.reporting_currency,
        minor_unit=config.minor_unit,
    )
    logger.info("Contexte initialisé (base %s, paire %s)", db.path, pair)
    return FinanceContext(
        config=config,
        db=db,
        provider=provider,
        cache=cache,
        resolver=resolver,
        tracker=tracker,
    )
