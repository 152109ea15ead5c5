"""Remplissage par lots du cache des taux sur une plage de dates."""

from __future__ import annotations

import datetime
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from compta_obra.models import (
    SOURCE_FALLBACK,
    SOURCE_FETCHED,
    BackfillInterrupted,
    RateUnavailable,
)
from compta_obra.rates.cache import RateCache
from compta_obra.rates.resolver import ExchangeRateResolver

logger = logging.getLogger(__name__)


@dataclass
class BackfillReport:
    """Bilan d'un backfill (non frozen — rempli au fil de l'itération)."""

    fetched_count: int = 0
    skipped_count: int = 0
    failed_count: int = 0
    fallback_count: int = 0
    unavailable_dates: list[datetime.date] = field(default_factory=list)
    # fournisseur en échec : repli transitoire non persisté, date à reprendre
    provider_error_dates: list[datetime.date] = field(default_factory=list)


class RateLimiter:
    """Plafond fixe de requêtes par seconde (espacement minimal entre deux appels)."""

    def __init__(
        self,
        max_per_second: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_per_second <= 0:
            raise ValueError("max_per_second doit être strictement positif")
        self.interval = 1.0 / max_per_second
        self._clock = clock
        self._sleep = sleep
        self._next_slot: float | None = None

    def acquire(self) -> None:
        now = self._clock()
        if self._next_slot is not None and now < self._next_slot:
            self._sleep(self._next_slot - now)
            now = self._next_slot
        self._next_slot = now + self.interval


class BackfillJob:
    """Parcourt les dates manquantes d'une plage et les résout une à une.

    Idempotent : les dates déjà présentes sont comptées comme ignorées.
    Le limiteur s'applique à chaque appel au fournisseur, nouvelles
    tentatives comprises.
    Interruptible : l'annulation est vérifiée entre deux dates et lève
    BackfillInterrupted avec le bilan partiel ; une relance reprend les
    dates encore absentes.
    """

    def __init__(
        self,
        cache: RateCache,
        resolver: ExchangeRateResolver,
        limiter: RateLimiter,
    ) -> None:
        self.cache = cache
        self.resolver = resolver
        self.limiter = limiter

    def run(
        self,
        start: datetime.date,
        end: datetime.date,
        cancel_event: threading.Event | None = None,
    ) -> BackfillReport:
        if end < start:
            raise ValueError(f"Plage invalide : {start.isoformat()} > {end.isoformat()}")

        total_days = (end - start).days + 1
        report = BackfillReport()
        processed = 0
        logger.info("Backfill des taux du %s au %s (%d jours)", start.isoformat(), end.isoformat(), total_days)

        for day in self.cache.scan_missing(start, end):
            if cancel_event is not None and cancel_event.is_set():
                report.skipped_count = total_days - processed - self._remaining(day, end)
                logger.warning("Backfill interrompu avant le %s", day.isoformat())
                raise BackfillInterrupted(report)

            processed += 1
            try:
                resolved = self.resolver.resolve(day, throttle=self.limiter.acquire)
            except RateUnavailable as e:
                logger.warning("Backfill : %s", e)
                report.failed_count += 1
                report.unavailable_dates.append(day)
                continue

            if resolved.source == SOURCE_FETCHED and resolved.rate_date == day:
                report.fetched_count += 1
            elif resolved.source == SOURCE_FALLBACK:
                if self.cache.get(day) is not None:
                    report.fallback_count += 1
                else:
                    logger.warning("Backfill : le %s reste à remplir (fournisseur en échec)", day.isoformat())
                    report.failed_count += 1
                    report.provider_error_dates.append(day)

        report.skipped_count = total_days - processed
        logger.info(
            "Backfill terminé : %d récupérés, %d replis, %d ignorés, %d en échec",
            report.fetched_count,
            report.fallback_count,
            report.skipped_count,
            report.failed_count,
        )
        return report

    @staticmethod
    def _remaining(day: datetime.date, end: datetime.date) -> int:
        return (end - day).days + 1
