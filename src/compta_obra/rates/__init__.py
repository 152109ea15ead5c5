"""Taux de change historiques : cache, fournisseur, résolution, backfill."""

from __future__ import annotations

from compta_obra.rates.backfill import BackfillJob, BackfillReport, RateLimiter
from compta_obra.rates.cache import RateCache
from compta_obra.rates.provider import ArgentinaDatosProvider, RateProvider
from compta_obra.rates.resolver import ExchangeRateResolver

__all__ = [
    "ArgentinaDatosProvider",
    "BackfillJob",
    "BackfillReport",
    "ExchangeRateResolver",
    "RateCache",
    "RateLimiter",
    "RateProvider",
]
