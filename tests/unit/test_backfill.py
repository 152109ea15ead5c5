"""Tests unitaires pour BackfillJob et RateLimiter."""

from __future__ import annotations

import datetime
import threading
from decimal import Decimal

import pytest

from compta_obra.models import SOURCE_FETCHED, BackfillInterrupted
from compta_obra.rates.backfill import BackfillJob, RateLimiter
from compta_obra.rates.cache import RateCache
from compta_obra.rates.resolver import ExchangeRateResolver

D = datetime.date

JAN_1 = D(2025, 1, 1)
JAN_31 = D(2025, 1, 31)


class _FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class _CancelAfter:
    """Limiteur factice qui déclenche l'annulation après ``n`` requêtes."""

    def __init__(self, event: threading.Event, n: int) -> None:
        self.event = event
        self.n = n
        self.count = 0

    def acquire(self) -> None:
        self.count += 1
        if self.count >= self.n:
            self.event.set()


def _make_job(cache: RateCache, resolver: ExchangeRateResolver, limiter=None) -> BackfillJob:
    clock = _FakeClock()
    return BackfillJob(cache, resolver, limiter or RateLimiter(2.0, clock=clock, sleep=clock.sleep))


class TestRateLimiter:
    def test_spacing(self) -> None:
        clock = _FakeClock()
        limiter = RateLimiter(2.0, clock=clock, sleep=clock.sleep)
        limiter.acquire()
        clock.now = 0.1
        limiter.acquire()
        assert clock.sleeps == pytest.approx([0.4])
        clock.now = 2.0
        limiter.acquire()
        assert clock.sleeps == pytest.approx([0.4])

    def test_invalid_rate(self) -> None:
        with pytest.raises(ValueError):
            RateLimiter(0)


class TestBackfillRun:
    def test_january_on_empty_cache(self, cache: RateCache, resolver: ExchangeRateResolver, fake_provider, january_rates) -> None:
        fake_provider.rates.update(january_rates)
        report = _make_job(cache, resolver).run(JAN_1, JAN_31)

        assert report.fetched_count == 23
        assert report.fallback_count == 8
        assert report.failed_count == 0
        assert report.skipped_count == 0
        assert report.unavailable_dates == []
        assert cache.count_present(JAN_1, JAN_31) == 31
        assert len(fake_provider.calls) == 31

    def test_rerun_is_idempotent(self, cache: RateCache, resolver: ExchangeRateResolver, fake_provider, january_rates) -> None:
        fake_provider.rates.update(january_rates)
        _make_job(cache, resolver).run(JAN_1, JAN_31)
        calls_before = len(fake_provider.calls)

        report = _make_job(cache, resolver).run(JAN_1, JAN_31)
        assert report.fetched_count == 0
        assert report.skipped_count == 31
        assert report.fallback_count == 0
        assert len(fake_provider.calls) == calls_before

    def test_unavailable_dates_reported(self, cache: RateCache, resolver: ExchangeRateResolver, fake_provider) -> None:
        # aucun jour coté avant le 3 : les 1er et 2 janvier n'ont pas de repli possible
        fake_provider.rates[D(2025, 1, 3)] = Decimal("1000")
        report = _make_job(cache, resolver).run(JAN_1, D(2025, 1, 4))

        assert report.unavailable_dates == [JAN_1, D(2025, 1, 2)]
        assert report.failed_count == 2
        assert report.fetched_count == 1
        assert report.fallback_count == 1
        assert cache.get(JAN_1) is None

    def test_partially_filled_range(self, cache: RateCache, resolver: ExchangeRateResolver, fake_provider, january_rates) -> None:
        fake_provider.rates.update(january_rates)
        cache.put(D(2025, 1, 2), Decimal("999"), "manual")
        report = _make_job(cache, resolver).run(JAN_1, D(2025, 1, 3))
        assert report.skipped_count == 1
        assert report.fetched_count == 2
        assert D(2025, 1, 2) not in fake_provider.calls

    def test_invalid_range(self, cache: RateCache, resolver: ExchangeRateResolver) -> None:
        with pytest.raises(ValueError, match="Plage invalide"):
            _make_job(cache, resolver).run(JAN_31, JAN_1)

    def test_rate_limiter_applied(self, cache: RateCache, resolver: ExchangeRateResolver, fake_provider, january_rates) -> None:
        fake_provider.rates.update(january_rates)
        clock = _FakeClock()
        job = BackfillJob(cache, resolver, RateLimiter(2.0, clock=clock, sleep=clock.sleep))
        job.run(JAN_1, D(2025, 1, 5))
        # 5 requêtes à 2 req/s sur une horloge figée : 4 attentes d'une demi-seconde
        assert clock.sleeps == pytest.approx([0.5, 0.5, 0.5, 0.5])

    def test_rate_limiter_covers_retries(self, cache: RateCache, resolver: ExchangeRateResolver, fake_provider) -> None:
        """Deux échecs puis succès : trois appels au fournisseur, trois passages par le limiteur."""
        fake_provider.rates[JAN_1] = Decimal("1000")
        fake_provider.failures[JAN_1] = 2
        clock = _FakeClock()
        report = BackfillJob(cache, resolver, RateLimiter(2.0, clock=clock, sleep=clock.sleep)).run(JAN_1, JAN_1)

        assert report.fetched_count == 1
        assert fake_provider.calls == [JAN_1, JAN_1, JAN_1]
        assert clock.sleeps == pytest.approx([0.5, 0.5])

    def test_provider_error_is_not_a_fallback(self, cache: RateCache, resolver: ExchangeRateResolver, fake_provider) -> None:
        cache.put(D(2025, 1, 2), Decimal("1000"), SOURCE_FETCHED)
        fake_provider.down.add(D(2025, 1, 3))
        report = _make_job(cache, resolver).run(D(2025, 1, 3), D(2025, 1, 3))

        assert report.fallback_count == 0
        assert report.failed_count == 1
        assert report.provider_error_dates == [D(2025, 1, 3)]
        assert report.unavailable_dates == []
        assert cache.get(D(2025, 1, 3)) is None

        # la relance reprend la date une fois le fournisseur rétabli
        fake_provider.down.clear()
        fake_provider.rates[D(2025, 1, 3)] = Decimal("1010")
        rerun = _make_job(cache, resolver).run(D(2025, 1, 3), D(2025, 1, 3))
        assert rerun.fetched_count == 1
        assert cache.get(D(2025, 1, 3)).rate == Decimal("1010")


class TestBackfillCancellation:
    def test_interrupt_then_resume(self, cache: RateCache, resolver: ExchangeRateResolver, fake_provider, january_rates) -> None:
        fake_provider.rates.update(january_rates)
        cancel = threading.Event()
        job = _make_job(cache, resolver, limiter=_CancelAfter(cancel, 5))

        with pytest.raises(BackfillInterrupted) as exc_info:
            job.run(JAN_1, JAN_31, cancel_event=cancel)

        partial = exc_info.value.report
        assert partial.fetched_count == 3
        assert partial.fallback_count == 2
        assert partial.skipped_count == 0
        assert cache.count_present(JAN_1, JAN_31) == 5

        report = _make_job(cache, resolver).run(JAN_1, JAN_31)
        assert report.skipped_count == 5
        assert report.fetched_count == 20
        assert report.fallback_count == 6
        assert cache.count_present(JAN_1, JAN_31) == 31

    def test_cancelled_before_start(self, cache: RateCache, resolver: ExchangeRateResolver, fake_provider) -> None:
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(BackfillInterrupted) as exc_info:
            _make_job(cache, resolver).run(JAN_1, JAN_31, cancel_event=cancel)
        assert exc_info.value.report.fetched_count == 0
        assert fake_provider.calls == []
