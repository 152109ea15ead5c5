"""Tests pour exporters/excel.py — export Excel et résumé console."""

from __future__ import annotations

import datetime
from decimal import Decimal
from pathlib import Path

import openpyxl
import pandas as pd
import pytest

from compta_obra.exporters.excel import (
    OBLIGATIONS_COLUMNS,
    SUMMARY_COLUMNS,
    export,
    export_to_bytes,
    print_summary,
)
from compta_obra.models import Anomaly, Installment, Obligation, PaymentPlan, TaxPeriodSummary


def _make_summary(**overrides: object) -> TaxPeriodSummary:
    """Helper pour construire une TaxPeriodSummary."""
    defaults: dict[str, object] = {
        "period_id": "2025-07",
        "scope": "all",
        "iva_debito": Decimal("136500.00"),
        "iva_credito": Decimal("0.00"),
        "iibb": Decimal("300.00"),
        "retenciones": Decimal("0.00"),
        "net_amount": Decimal("136800.00"),
        "currency": "ARS",
        "generated_at": None,
        "source_entry_ids": ("G-1", "V-1"),
        "provisional": False,
        "breakdown": {
            "iva_debito": {"gravado_21": Decimal("136500.00")},
            "iva_credito": {},
            "iibb": {"CABA": Decimal("300.00")},
            "retenciones": {},
        },
    }
    defaults.update(overrides)
    return TaxPeriodSummary(**defaults)  # type: ignore[arg-type]


def _make_obligations() -> list[Obligation]:
    return [
        Obligation(datetime.date(2025, 7, 1), "installment", "p1#001", "Moratoria : cuota 1/3",
                   Decimal("100"), "ARS", overdue=True),
        Obligation(datetime.date(2025, 7, 18), "statutory", "IVA", "DDJJ IVA mensual", None, "ARS"),
    ]


class TestExportNominal:
    """Tests de l'export Excel nominal."""

    def test_three_sheets_created(self, tmp_path: Path) -> None:
        """Sans anomalie : Résumé, Détail et Échéances."""
        output = tmp_path / "output.xlsx"
        export(_make_summary(), _make_obligations(), output)

        wb = openpyxl.load_workbook(output)
        assert wb.sheetnames == ["Résumé", "Détail", "Échéances"]

    def test_summary_sheet(self, tmp_path: Path) -> None:
        output = tmp_path / "output.xlsx"
        export(_make_summary(), [], output)

        ws = openpyxl.load_workbook(output)["Résumé"]
        rows = list(ws.iter_rows(values_only=True))
        assert list(rows[0]) == SUMMARY_COLUMNS
        assert len(rows) == 6
        assert rows[1][2] == "IVA Débito Fiscal"
        assert rows[1][3] == pytest.approx(136500.0)
        assert rows[5][2] == "Saldo neto"
        assert rows[5][3] == pytest.approx(136800.0)

    def test_detail_sheet(self, tmp_path: Path) -> None:
        output = tmp_path / "output.xlsx"
        export(_make_summary(), [], output)

        df = pd.read_excel(output, sheet_name="Détail")
        assert list(df["detalle"]) == ["gravado_21", "CABA"]
        assert list(df["monto"]) == pytest.approx([136500.0, 300.0])

    def test_obligations_sheet(self, tmp_path: Path) -> None:
        output = tmp_path / "output.xlsx"
        export(_make_summary(), _make_obligations(), output)

        ws = openpyxl.load_workbook(output)["Échéances"]
        rows = list(ws.iter_rows(values_only=True))
        assert list(rows[0]) == OBLIGATIONS_COLUMNS
        assert rows[1][2] == "p1#001"
        assert rows[1][6] is True
        assert rows[2][4] is None


class TestExportWarnings:
    def test_anomalies_sheet_when_provisional(self) -> None:
        summary = _make_summary(
            provisional=True,
            warnings=(
                Anomaly("stale_rate", "warning", "V-1", "Taux de repli", "2025-07-12", "2025-07-11"),
            ),
        )
        sheets = pd.read_excel(export_to_bytes(summary, []), sheet_name=None)
        assert list(sheets) == ["Résumé", "Détail", "Échéances", "Anomalies"]
        anomalies = sheets["Anomalies"]
        assert anomalies.loc[0, "reference"] == "V-1"
        assert anomalies.loc[0, "expected_value"] == "2025-07-12"


class TestExportToBytes:
    def test_readable_workbook(self) -> None:
        buffer = export_to_bytes(_make_summary(), _make_obligations())
        assert buffer.tell() == 0
        wb = openpyxl.load_workbook(buffer)
        assert "Échéances" in wb.sheetnames

    def test_accepts_lazy_iterable(self) -> None:
        buffer = export_to_bytes(_make_summary(), iter(_make_obligations()))
        df = pd.read_excel(buffer, sheet_name="Échéances")
        assert len(df) == 2


class TestPrintSummary:
    def test_final_summary(self, capsys: pytest.CaptureFixture[str]) -> None:
        print_summary(_make_summary())
        out = capsys.readouterr().out
        assert "=== Période 2025-07 (all) ===" in out
        assert "Écritures prises en compte : 2" in out
        assert "136800.00" in out
        assert "CABA" in out
        assert "Aucun taux de repli utilisé" in out

    def test_provisional_summary(self, capsys: pytest.CaptureFixture[str]) -> None:
        summary = _make_summary(
            provisional=True,
            warnings=(Anomaly("stale_rate", "warning", "V-1", "Taux du 2025-07-11 utilisé"),),
        )
        print_summary(summary)
        out = capsys.readouterr().out
        assert "Synthèse PROVISOIRE : 1 taux de repli utilisés" in out
        assert "V-1 : Taux du 2025-07-11 utilisé" in out

    def test_with_plans(self, capsys: pytest.CaptureFixture[str]) -> None:
        plan = PaymentPlan(
            id="p1",
            authority_ref="AFIP-1",
            total_amount=Decimal("200"),
            installments=(
                Installment(1, datetime.date(2025, 7, 1), Decimal("100"), "paid", datetime.date(2025, 7, 1)),
                Installment(2, datetime.date(2025, 8, 1), Decimal("100")),
            ),
            name="Moratoria",
        )
        print_summary(_make_summary(), [plan])
        out = capsys.readouterr().out
        assert "Plans de paiement : 1" in out
        assert "Moratoria [current] : 100/200" in out
