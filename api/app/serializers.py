"""Conversion des dataclasses métier vers les structures JSON de l'API."""

from __future__ import annotations

from decimal import Decimal

from compta_obra.models import (
    Anomaly,
    ExchangeRate,
    Obligation,
    PaymentPlan,
    ResolvedRate,
    TaxPeriodSummary,
)
from compta_obra.rates.backfill import BackfillReport


def _money(value: Decimal | None) -> str | None:
    """Montants en chaîne décimale : pas de float dans les réponses."""
    return None if value is None else str(value)


def serialize_anomaly(anomaly: Anomaly) -> dict[str, object]:
    """Sérialise une Anomaly vers le format JSON de l'API."""
    return {
        "type": anomaly.type,
        "severity": anomaly.severity,
        "reference": anomaly.reference,
        "detail": anomaly.detail,
        "expected_value": anomaly.expected_value,
        "actual_value": anomaly.actual_value,
    }


def serialize_resolved(resolved: ResolvedRate) -> dict[str, object]:
    return {
        "date": resolved.requested_date.isoformat(),
        "rate_date": resolved.rate_date.isoformat(),
        "rate": _money(resolved.rate),
        "source": resolved.source,
        "fetched_at": resolved.fetched_at.isoformat(),
        "warning": resolved.warning,
    }


def serialize_rate(rate: ExchangeRate) -> dict[str, object]:
    return {
        "date": rate.date.isoformat(),
        "rate_date": rate.rate_date.isoformat(),
        "rate": _money(rate.rate),
        "source": rate.source,
        "fetched_at": rate.fetched_at.isoformat(),
    }


def serialize_backfill(report: BackfillReport) -> dict[str, object]:
    return {
        "fetched_count": report.fetched_count,
        "skipped_count": report.skipped_count,
        "failed_count": report.failed_count,
        "fallback_count": report.fallback_count,
        "unavailable_dates": [d.isoformat() for d in report.unavailable_dates],
        "provider_error_dates": [d.isoformat() for d in report.provider_error_dates],
    }


def serialize_summary(summary: TaxPeriodSummary) -> dict[str, object]:
    """Sérialise une TaxPeriodSummary (montants en chaînes décimales)."""
    return {
        "period_id": summary.period_id,
        "scope": summary.scope,
        "iva_debito": _money(summary.iva_debito),
        "iva_credito": _money(summary.iva_credito),
        "iibb": _money(summary.iibb),
        "retenciones": _money(summary.retenciones),
        "net_amount": _money(summary.net_amount),
        "currency": summary.currency,
        "generated_at": summary.generated_at.isoformat() if summary.generated_at else None,
        "source_entry_ids": list(summary.source_entry_ids),
        "provisional": summary.provisional,
        "breakdown": {
            category: {detail: _money(amount) for detail, amount in details.items()}
            for category, details in summary.breakdown.items()
        },
        "warnings": [serialize_anomaly(a) for a in summary.warnings],
    }


def serialize_plan(plan: PaymentPlan) -> dict[str, object]:
    return {
        "id": plan.id,
        "authority_ref": plan.authority_ref,
        "name": plan.name,
        "tax": plan.tax,
        "total_amount": _money(plan.total_amount),
        "paid_amount": _money(plan.paid_amount),
        "status": plan.status,
        "created_from": plan.created_from,
        "installments": [
            {
                "index": i.index,
                "due_date": i.due_date.isoformat(),
                "amount": _money(i.amount),
                "status": i.status,
                "paid_on": i.paid_on.isoformat() if i.paid_on else None,
            }
            for i in plan.installments
        ],
    }


def serialize_obligation(obligation: Obligation) -> dict[str, object]:
    return {
        "due_date": obligation.due_date.isoformat(),
        "kind": obligation.kind,
        "reference": obligation.reference,
        "label": obligation.label,
        "amount": _money(obligation.amount),
        "currency": obligation.currency,
        "overdue": obligation.overdue,
    }
