"""Export Excel multi-onglets et résumé console."""

from __future__ import annotations

import io
from collections.abc import Iterable
from pathlib import Path

import pandas as pd

from compta_obra.models import Obligation, PaymentPlan, TaxPeriodSummary

SUMMARY_COLUMNS = ["periodo", "obra", "concepto", "monto", "moneda"]

DETAIL_COLUMNS = ["concepto", "detalle", "monto"]

WARNINGS_COLUMNS = ["type", "severity", "reference", "detail", "expected_value", "actual_value"]

OBLIGATIONS_COLUMNS = ["fecha", "tipo", "referencia", "concepto", "monto", "moneda", "vencida"]

CONCEPT_LABELS = {
    "iva_debito": "IVA Débito Fiscal",
    "iva_credito": "IVA Crédito Fiscal",
    "iibb": "Ingresos Brutos",
    "retenciones": "Retenciones",
    "net_amount": "Saldo neto",
}


def _summary_frame(summary: TaxPeriodSummary) -> pd.DataFrame:
    rows = [
        {
            "periodo": summary.period_id,
            "obra": summary.scope,
            "concepto": label,
            "monto": float(getattr(summary, field)),
            "moneda": summary.currency,
        }
        for field, label in CONCEPT_LABELS.items()
    ]
    return pd.DataFrame(rows, columns=SUMMARY_COLUMNS)


def _detail_frame(summary: TaxPeriodSummary) -> pd.DataFrame:
    rows = [
        {"concepto": CONCEPT_LABELS.get(category, category), "detalle": detail, "monto": float(amount)}
        for category, details in summary.breakdown.items()
        for detail, amount in details.items()
    ]
    return pd.DataFrame(rows, columns=DETAIL_COLUMNS)


def _obligations_frame(obligations: Iterable[Obligation]) -> pd.DataFrame:
    rows = [
        {
            "fecha": o.due_date,
            "tipo": o.kind,
            "referencia": o.reference,
            "concepto": o.label,
            "monto": float(o.amount) if o.amount is not None else None,
            "moneda": o.currency,
            "vencida": o.overdue,
        }
        for o in obligations
    ]
    return pd.DataFrame(rows, columns=OBLIGATIONS_COLUMNS)


def _write(writer: pd.ExcelWriter, summary: TaxPeriodSummary, obligations: Iterable[Obligation]) -> None:
    _summary_frame(summary).to_excel(writer, sheet_name="Résumé", index=False)
    _detail_frame(summary).to_excel(writer, sheet_name="Détail", index=False)
    _obligations_frame(obligations).to_excel(writer, sheet_name="Échéances", index=False)
    if summary.warnings:
        warnings = pd.DataFrame(
            [
                {
                    "type": a.type,
                    "severity": a.severity,
                    "reference": a.reference,
                    "detail": a.detail,
                    "expected_value": a.expected_value,
                    "actual_value": a.actual_value,
                }
                for a in summary.warnings
            ],
            columns=WARNINGS_COLUMNS,
        )
        warnings.to_excel(writer, sheet_name="Anomalies", index=False)


def export(
    summary: TaxPeriodSummary,
    obligations: Iterable[Obligation],
    output_path: Path,
) -> None:
    """Exporte la synthèse et l'échéancier dans un fichier Excel multi-onglets."""
    with pd.ExcelWriter(output_path, engine="openpyxl") as writer:
        _write(writer, summary, obligations)


def export_to_bytes(summary: TaxPeriodSummary, obligations: Iterable[Obligation]) -> io.BytesIO:
    """Même classeur qu'``export``, en mémoire (téléchargement API)."""
    buffer = io.BytesIO()
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        _write(writer, summary, obligations)
    buffer.seek(0)
    return buffer


def print_summary(summary: TaxPeriodSummary, plans: list[PaymentPlan] | None = None) -> None:
    """Affiche un résumé en console."""
    print(f"=== Période {summary.period_id} ({summary.scope}) ===")
    print(f"Écritures prises en compte : {len(summary.source_entry_ids)}")
    for field, label in CONCEPT_LABELS.items():
        print(f"  {label:<20s}: {getattr(summary, field):>16} {summary.currency}")

    for category in ("iibb", "retenciones"):
        details = summary.breakdown.get(category, {})
        if details:
            print(f"  Détail {CONCEPT_LABELS[category]} :")
            for detail, amount in details.items():
                print(f"    {detail:<18s}: {amount:>16}")

    if summary.provisional:
        print(f"Synthèse PROVISOIRE : {len(summary.warnings)} taux de repli utilisés")
        for warning in summary.warnings:
            print(f"  {warning.reference} : {warning.detail}")
    else:
        print("Aucun taux de repli utilisé")

    if plans:
        print(f"Plans de paiement : {len(plans)}")
        for plan in plans:
            print(f"  {plan.name or plan.id} [{plan.status}] : {plan.paid_amount}/{plan.total_amount}")
