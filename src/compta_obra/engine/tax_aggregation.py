"""Agrégation fiscale d'une période : IVA, IIBB, retenciones en devise de reporting."""

from __future__ import annotations

import datetime
import hashlib
import logging
import threading
from collections import defaultdict
from collections.abc import Iterator, Mapping, Sequence
from decimal import ROUND_HALF_UP, Decimal

from compta_obra.engine.classification import (
    CATEGORIES,
    IIBB,
    IVA_CREDITO,
    IVA_DEBITO,
    RETENCIONES,
    TaxClassifier,
    parse_period,
)
from compta_obra.models import (
    Anomaly,
    LedgerEntry,
    LedgerError,
    MissingRateError,
    RateError,
    ResolvedRate,
    TaxPeriodSummary,
)
from compta_obra.parsers.base import ALL_SCOPES, LedgerSource, in_period, scope_matches
from compta_obra.rates.resolver import ExchangeRateResolver

logger = logging.getLogger(__name__)

ONE = Decimal("1")


class TaxAggregationEngine:
    """Calcule des TaxPeriodSummary déterministes.

    Le calcul est une fonction pure des écritures lues et de l'état du cache de
    taux : les écritures sont traitées par identifiant, les montants accumulés
    en Decimal non arrondis puis arrondis une seule fois par catégorie.
    Toute écriture sans taux fait échouer la période entière (MissingRateError).
    """

    def __init__(
        self,
        sources: Sequence[LedgerSource],
        resolvers: Mapping[str, ExchangeRateResolver],
        classifier: TaxClassifier,
        reporting_currency: str = "ARS",
        minor_unit: int = 2,
        max_workers: int = 4,
    ) -> None:
        self.sources = list(sources)
        self.resolvers = dict(resolvers)
        self.classifier = classifier
        self.reporting_currency = reporting_currency
        self.quantum = ONE.scaleb(-minor_unit)
        self.max_workers = max_workers
        self._cache: dict[tuple[str, str], tuple[str, TaxPeriodSummary]] = {}
        self._cache_lock = threading.Lock()

    def compute(self, period_id: str, scope: str | None = None) -> TaxPeriodSummary:
        """Synthèse de la période ``period_id`` (YYYY-MM) pour une obra ou toutes."""
        summary, _digest = self._compute(period_id, scope)
        return summary

    def invalidate(self, period_id: str | None = None) -> None:
        """Oublie les synthèses en cache (toutes, ou celles d'une période)."""
        with self._cache_lock:
            if period_id is None:
                self._cache.clear()
            else:
                for key in [k for k in self._cache if k[0] == period_id]:
                    del self._cache[key]

    def subscribe(
        self,
        period_id: str,
        scope: str | None = None,
        poll_interval: float = 5.0,
    ) -> SummarySubscription:
        """Abonnement explicite : un nouvel instantané à chaque changement des entrées."""
        return SummarySubscription(self, period_id, scope, poll_interval)

    # --- étapes du calcul ---

    def _compute(self, period_id: str, scope: str | None) -> tuple[TaxPeriodSummary, str]:
        period_range = parse_period(period_id)
        scope_key = scope or ALL_SCOPES

        entries = self._collect(period_range, scope)
        rates = self._convert(entries)
        digest = _digest(period_id, scope_key, entries, rates)

        with self._cache_lock:
            cached = self._cache.get((period_id, scope_key))
        if cached is not None and cached[0] == digest:
            logger.debug("Synthèse %s/%s inchangée, cache réutilisé", period_id, scope_key)
            return cached[1], digest

        summary = self._aggregate(period_id, scope_key, entries, rates)
        with self._cache_lock:
            self._cache[(period_id, scope_key)] = (digest, summary)

        logger.info(
            "Synthèse %s/%s : %d écritures, net=%s %s%s",
            period_id,
            scope_key,
            len(entries),
            summary.net_amount,
            summary.currency,
            " (provisoire)" if summary.provisional else "",
        )
        return summary, digest

    def _collect(self, period_range: tuple[datetime.date, datetime.date], scope: str | None) -> list[LedgerEntry]:
        by_id: dict[str, LedgerEntry] = {}
        for source in self.sources:
            for entry in source.query(period_range, scope):
                if not in_period(entry.transaction_date, period_range) or not scope_matches(entry.scope_ref, scope):
                    continue
                if entry.status != "active":
                    continue
                if entry.id in by_id:
                    raise LedgerError(f"Écriture {entry.id} présente dans plusieurs sources (dont {source.name})")
                by_id[entry.id] = entry
        return [by_id[k] for k in sorted(by_id)]

    def _convert(self, entries: list[LedgerEntry]) -> dict[str, ResolvedRate]:
        """Taux par identifiant d'écriture, pour les écritures en devise étrangère."""
        foreign = [e for e in entries if e.currency != self.reporting_currency]
        by_currency: dict[str, list[LedgerEntry]] = defaultdict(list)
        for entry in foreign:
            if entry.currency not in self.resolvers:
                raise MissingRateError(entry.id, entry.transaction_date, f"devise {entry.currency} non configurée")
            by_currency[entry.currency].append(entry)

        resolved_by_currency: dict[str, dict[datetime.date, ResolvedRate | RateError]] = {}
        for currency in sorted(by_currency):
            resolver = self.resolvers[currency]
            dates = {e.transaction_date for e in by_currency[currency]}
            resolved_by_currency[currency] = resolver.resolve_many(dates, self.max_workers)

        rates: dict[str, ResolvedRate] = {}
        for entry in foreign:
            result = resolved_by_currency[entry.currency][entry.transaction_date]
            if isinstance(result, RateError):
                logger.error("Calcul abandonné : %s", result)
                raise MissingRateError(entry.id, entry.transaction_date, str(result)) from result
            rates[entry.id] = result
        return rates

    def _aggregate(
        self,
        period_id: str,
        scope_key: str,
        entries: list[LedgerEntry],
        rates: dict[str, ResolvedRate],
    ) -> TaxPeriodSummary:
        totals: dict[str, Decimal] = {c: Decimal("0") for c in CATEGORIES}
        details: dict[str, dict[str, Decimal]] = {c: defaultdict(Decimal) for c in CATEGORIES}
        warnings: list[Anomaly] = []

        for entry in entries:
            rate = rates.get(entry.id)
            fx = rate.rate if rate is not None else ONE
            for contribution in self.classifier.classify(entry, fx):
                totals[contribution.category] += contribution.amount
                details[contribution.category][contribution.detail] += contribution.amount
            if rate is not None and rate.is_fallback:
                warnings.append(
                    Anomaly(
                        type="stale_rate",
                        severity="warning",
                        reference=entry.id,
                        detail=rate.warning or "Taux de repli utilisé",
                        expected_value=rate.requested_date.isoformat(),
                        actual_value=rate.rate_date.isoformat(),
                    )
                )

        rounded = {c: self._round(v) for c, v in totals.items()}
        net_amount = rounded[IVA_DEBITO] - rounded[IVA_CREDITO] + rounded[IIBB] + rounded[RETENCIONES]
        breakdown = {
            c: {k: self._round(v) for k, v in sorted(details[c].items())}
            for c in CATEGORIES
        }
        fetched_ats = [r.fetched_at for r in rates.values()]

        return TaxPeriodSummary(
            period_id=period_id,
            scope=scope_key,
            iva_debito=rounded[IVA_DEBITO],
            iva_credito=rounded[IVA_CREDITO],
            iibb=rounded[IIBB],
            retenciones=rounded[RETENCIONES],
            net_amount=net_amount,
            currency=self.reporting_currency,
            generated_at=max(fetched_ats) if fetched_ats else None,
            source_entry_ids=tuple(e.id for e in entries),
            provisional=bool(warnings),
            breakdown=breakdown,
            warnings=tuple(warnings),
        )

    def _round(self, value: Decimal) -> Decimal:
        return value.quantize(self.quantum, rounding=ROUND_HALF_UP)


def _digest(
    period_id: str,
    scope_key: str,
    entries: list[LedgerEntry],
    rates: dict[str, ResolvedRate],
) -> str:
    """Empreinte des entrées d'un calcul (écritures + lignes de taux utilisées)."""
    h = hashlib.sha256()
    h.update(f"{period_id}|{scope_key}\n".encode())
    for entry in entries:
        h.update(repr(entry).encode())
        rate = rates.get(entry.id)
        if rate is not None:
            h.update(f"|{rate.row_id}|{rate.source}|{rate.rate}|{rate.rate_date}".encode())
        h.update(b"\n")
    return h.hexdigest()


class SummarySubscription:
    """Suite paresseuse d'instantanés, à durée de vie contrôlée par l'appelant.

    S'utilise comme context manager ; chaque itération repart de zéro et
    produit immédiatement l'instantané courant, puis un nouvel instantané
    dès que l'empreinte des entrées change.
    """

    def __init__(
        self,
        engine: TaxAggregationEngine,
        period_id: str,
        scope: str | None,
        poll_interval: float,
    ) -> None:
        self.engine = engine
        self.period_id = period_id
        self.scope = scope
        self.poll_interval = poll_interval
        self._closed = threading.Event()

    def __enter__(self) -> SummarySubscription:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def close(self) -> None:
        self._closed.set()

    def __iter__(self) -> Iterator[TaxPeriodSummary]:
        last_digest: str | None = None
        while not self._closed.is_set():
            summary, digest = self.engine._compute(self.period_id, self.scope)
            if digest != last_digest:
                last_digest = digest
                yield summary
                if self._closed.is_set():
                    return
            self._closed.wait(self.poll_interval)
