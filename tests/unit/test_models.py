"""Tests unitaires pour les modèles et la hiérarchie d'exceptions."""

from __future__ import annotations

import dataclasses
import datetime
from decimal import Decimal

import pytest

from compta_obra.models import (
    BackfillInterrupted,
    ClassificationError,
    ComptaObraError,
    ConfigError,
    Installment,
    MissingRateError,
    PaymentPlan,
    PlanNotFoundError,
    PlanValidationError,
    RateConflict,
    RateError,
    RateProviderError,
    RateUnavailable,
    ResolvedRate,
    TaxClassification,
)
from compta_obra.rates.backfill import BackfillReport

D = datetime.date


class TestExceptions:
    @pytest.mark.parametrize(
        "exc_class",
        [ConfigError, ClassificationError, PlanValidationError, PlanNotFoundError, RateError, RateProviderError],
    )
    def test_inherit_from_base(self, exc_class: type) -> None:
        assert issubclass(exc_class, ComptaObraError)

    def test_rate_errors_share_parent(self) -> None:
        assert issubclass(RateUnavailable, RateError)
        assert issubclass(RateConflict, RateError)
        assert issubclass(RateProviderError, RateError)

    def test_rate_unavailable_carries_date(self) -> None:
        e = RateUnavailable(D(2025, 7, 12), "jour non coté")
        assert e.date == D(2025, 7, 12)
        assert "2025-07-12" in str(e)
        assert "jour non coté" in str(e)

    def test_missing_rate_carries_entry(self) -> None:
        e = MissingRateError("V-1", D(2025, 7, 10))
        assert e.entry_id == "V-1"
        assert e.date == D(2025, 7, 10)
        assert "V-1" in str(e)

    def test_backfill_interrupted_carries_report(self) -> None:
        report = BackfillReport(fetched_count=3, skipped_count=1)
        e = BackfillInterrupted(report)
        assert e.report is report
        assert "3 taux récupérés" in str(e)


class TestTaxClassification:
    def test_factura_sign_positive(self) -> None:
        assert TaxClassification(iva_condition="gravado_21").sign == 1

    def test_credit_note_sign_negative(self) -> None:
        assert TaxClassification(iva_condition="gravado_21", document_type="nota_credito").sign == -1

    def test_frozen(self) -> None:
        classification = TaxClassification(iva_condition="exento")
        with pytest.raises(dataclasses.FrozenInstanceError):
            classification.iva_condition = "gravado_21"  # type: ignore[misc]


class TestResolvedRate:
    def test_is_fallback(self) -> None:
        now = datetime.datetime(2025, 8, 1, tzinfo=datetime.timezone.utc)
        fetched = ResolvedRate(D(2025, 7, 4), D(2025, 7, 4), Decimal("1250"), "fetched", now)
        fallback = ResolvedRate(D(2025, 7, 5), D(2025, 7, 4), Decimal("1250"), "fallback", now, "périmé")
        assert not fetched.is_fallback
        assert fallback.is_fallback


class TestInstallmentAndPlan:
    def test_effective_status(self) -> None:
        installment = Installment(index=1, due_date=D(2025, 7, 10), amount=Decimal("100"))
        assert installment.effective_status(D(2025, 7, 10)) == "pending"
        assert installment.effective_status(D(2025, 7, 11)) == "overdue"

    def test_paid_never_overdue(self) -> None:
        installment = Installment(1, D(2025, 7, 10), Decimal("100"), "paid", D(2025, 7, 9))
        assert installment.effective_status(D(2026, 1, 1)) == "paid"

    def test_paid_amount_and_next_due(self) -> None:
        plan = PaymentPlan(
            id="p1",
            authority_ref="AFIP",
            total_amount=Decimal("300"),
            installments=(
                Installment(1, D(2025, 7, 10), Decimal("100"), "paid", D(2025, 7, 10)),
                Installment(2, D(2025, 8, 10), Decimal("100")),
                Installment(3, D(2025, 9, 10), Decimal("100")),
            ),
        )
        assert plan.paid_amount == Decimal("100")
        assert plan.next_due is not None
        assert plan.next_due.index == 2

    def test_next_due_none_when_completed(self) -> None:
        plan = PaymentPlan(
            id="p1",
            authority_ref="AFIP",
            total_amount=Decimal("100"),
            installments=(Installment(1, D(2025, 7, 10), Decimal("100"), "paid", D(2025, 7, 10)),),
            status="completed",
        )
        assert plan.next_due is None
