"""Résolution d'un taux exploitable pour une date quelconque."""

from __future__ import annotations

import datetime
import logging
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from decimal import Decimal

from compta_obra.config.loader import ResolverConfig
from compta_obra.models import (
    SOURCE_FALLBACK,
    SOURCE_FETCHED,
    ExchangeRate,
    RateConflict,
    RateError,
    RateProviderError,
    RateUnavailable,
    ResolvedRate,
)
from compta_obra.rates.cache import RateCache
from compta_obra.rates.provider import RateProvider

logger = logging.getLogger(__name__)


def _from_cached(requested: datetime.date, cached: ExchangeRate) -> ResolvedRate:
    warning = None
    if cached.source == SOURCE_FALLBACK:
        warning = (
            f"Taux du {cached.rate_date.isoformat()} utilisé pour le {requested.isoformat()} (jour non coté)"
        )
    return ResolvedRate(
        requested_date=requested,
        rate_date=cached.rate_date,
        rate=cached.rate,
        source=cached.source,
        fetched_at=cached.fetched_at,
        warning=warning,
        row_id=cached.row_id,
    )


class ExchangeRateResolver:
    """Cache → résolution en vol partagée → fournisseur (avec retry) → repli antérieur.

    Les appels concurrents pour une même date non cachée se partagent une seule
    ``Future`` : un seul appel au fournisseur, même résultat (ou même erreur)
    pour tous les appelants.
    """

    def __init__(
        self,
        cache: RateCache,
        provider: RateProvider,
        config: ResolverConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.cache = cache
        self.provider = provider
        self.config = config or ResolverConfig()
        self._sleep = sleep
        self._inflight: dict[datetime.date, Future[ResolvedRate]] = {}
        self._lock = threading.Lock()
        self._calls_lock = threading.Lock()
        self.provider_calls = 0

    def resolve(self, date: datetime.date, throttle: Callable[[], None] | None = None) -> ResolvedRate:
        """Retourne un taux pour ``date``.

        ``throttle`` est appelé avant chaque appel au fournisseur, nouvelles
        tentatives comprises (limiteur de débit du backfill).

        Raises:
            RateUnavailable: aucun taux, même dans la fenêtre de repli.
        """
        cached = self.cache.get(date)
        if cached is not None:
            return _from_cached(date, cached)

        with self._lock:
            future = self._inflight.get(date)
            owner = future is None
            if owner:
                future = Future()
                self._inflight[date] = future

        if not owner:
            logger.debug("Résolution déjà en vol pour le %s — attente", date.isoformat())
            return future.result()

        try:
            result = self._resolve_cold(date, throttle)
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            with self._lock:
                self._inflight.pop(date, None)

    def resolve_many(
        self,
        dates: Iterable[datetime.date],
        max_workers: int | None = None,
    ) -> dict[datetime.date, ResolvedRate | RateError]:
        """Résout des dates distinctes en parallèle.

        Les échecs de taux (RateError) sont retournés comme valeurs, pour que
        l'appelant décide quelle écriture signaler ; toute autre exception remonte.
        """
        distinct = sorted(set(dates))
        if not distinct:
            return {}
        workers = max_workers or self.config.max_workers

        def _safe(day: datetime.date) -> ResolvedRate | RateError:
            try:
                return self.resolve(day)
            except RateError as e:
                return e

        with ThreadPoolExecutor(max_workers=min(workers, len(distinct))) as pool:
            results = list(pool.map(_safe, distinct))
        return dict(zip(distinct, results))

    def _resolve_cold(self, date: datetime.date, throttle: Callable[[], None] | None = None) -> ResolvedRate:
        # un autre propriétaire a pu écrire entre la lecture du cache et la prise du verrou
        cached = self.cache.get(date)
        if cached is not None:
            return _from_cached(date, cached)

        try:
            rate = self._lookup_with_retry(date, throttle)
        except RateProviderError as e:
            logger.warning("Fournisseur indisponible pour le %s après %d tentatives : %s",
                           date.isoformat(), self.config.max_attempts, e)
            return self._fallback(date, reason=f"fournisseur indisponible : {e}", persist=False)

        if rate is None:
            return self._fallback(date, reason="jour non coté", persist=True)

        try:
            stored = self.cache.put(date, rate, SOURCE_FETCHED)
        except RateConflict:
            stored = self.cache.get(date)
            if stored is None:
                raise
            logger.info("Taux du %s déjà écrit par un autre processus — valeur existante conservée", date.isoformat())
        return _from_cached(date, stored)

    def _lookup_with_retry(
        self,
        date: datetime.date,
        throttle: Callable[[], None] | None = None,
    ) -> Decimal | None:
        last_error: RateProviderError | None = None
        for attempt in range(self.config.max_attempts):
            if throttle is not None:
                throttle()
            with self._calls_lock:
                self.provider_calls += 1
            try:
                return self.provider.lookup(date)
            except RateProviderError as e:
                last_error = e
                if attempt < self.config.max_attempts - 1:
                    delay = min(self.config.backoff_max, self.config.backoff_base * (2**attempt))
                    logger.warning(
                        "Tentative %d/%d échouée pour le %s (%s) — nouvel essai dans %.1fs",
                        attempt + 1,
                        self.config.max_attempts,
                        date.isoformat(),
                        e,
                        delay,
                    )
                    self._sleep(delay)
        raise last_error or RateProviderError(f"Aucune tentative effectuée pour le {date.isoformat()}")

    def _fallback(self, date: datetime.date, *, reason: str, persist: bool) -> ResolvedRate:
        prior = self.cache.latest_before(date, self.config.lookback_days)
        if prior is None:
            raise RateUnavailable(
                date, f"{reason}, aucun taux dans les {self.config.lookback_days} jours précédents"
            )

        if persist:
            marker = self.cache.put(date, prior.rate, SOURCE_FALLBACK, rate_date=prior.date)
            return _from_cached(date, marker)

        logger.warning("Taux périmé du %s utilisé pour le %s", prior.date.isoformat(), date.isoformat())
        return ResolvedRate(
            requested_date=date,
            rate_date=prior.date,
            rate=prior.rate,
            source=SOURCE_FALLBACK,
            fetched_at=prior.fetched_at,
            warning=f"Taux du {prior.date.isoformat()} utilisé pour le {date.isoformat()} ({reason})",
            row_id=prior.row_id,
        )
