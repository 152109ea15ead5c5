"""Classification fiscale des écritures selon la table de règles externe."""

from __future__ import annotations

import datetime
import re
from dataclasses import dataclass
from decimal import Decimal

from compta_obra.config.loader import TaxRuleTable
from compta_obra.models import ClassificationError, LedgerEntry, PeriodError

IVA_DEBITO = "iva_debito"
IVA_CREDITO = "iva_credito"
IIBB = "iibb"
RETENCIONES = "retenciones"
CATEGORIES = (IVA_DEBITO, IVA_CREDITO, IIBB, RETENCIONES)

HUNDRED = Decimal("100")
_PERIOD_RE = re.compile(r"^(\d{4})-(\d{2})$")


def parse_period(period_id: str) -> tuple[datetime.date, datetime.date]:
    """« 2025-07 » → (2025-07-01, 2025-08-01), intervalle semi-ouvert.

    Examples:
        >>> parse_period("2025-12")
        (datetime.date(2025, 12, 1), datetime.date(2026, 1, 1))
    """
    match = _PERIOD_RE.match(period_id or "")
    if not match:
        raise PeriodError(f"Période invalide {period_id!r} (attendu : YYYY-MM)")
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        raise PeriodError(f"Mois invalide dans la période {period_id!r}")
    start = datetime.date(year, month, 1)
    end = datetime.date(year + 1, 1, 1) if month == 12 else datetime.date(year, month + 1, 1)
    return start, end


@dataclass(frozen=True)
class Contribution:
    """Montant non arrondi d'une écriture dans une catégorie (et sa ventilation)."""

    category: str
    detail: str
    amount: Decimal


class TaxClassifier:
    """Applique la table de règles à une écriture convertie en devise de reporting.

    Le montant de l'écriture est la base imposable (neto). Un montant déclaré sur
    le document source (``declared_taxes``) prime sur le calcul par taux.
    Les notes de crédit contribuent avec un signe négatif.
    """

    def __init__(self, rules: TaxRuleTable) -> None:
        self.rules = rules

    def _rate(self, table: dict[str, Decimal], code: str, label: str, entry: LedgerEntry) -> Decimal:
        if code not in table:
            raise ClassificationError(
                f"{label} '{code}' absent de la table de règles (écriture {entry.id})"
            )
        return table[code]

    def classify(self, entry: LedgerEntry, fx_rate: Decimal) -> list[Contribution]:
        """Contributions de l'écriture ; ``fx_rate`` vaut 1 pour la devise de reporting."""
        classification = entry.tax_classification
        sign = classification.sign
        base = entry.amount * fx_rate * sign
        declared = entry.declared_taxes

        def _amount(key: str, rate: Decimal) -> Decimal:
            if key in declared:
                return declared[key] * fx_rate * sign
            return base * rate / HUNDRED

        contributions: list[Contribution] = []

        iva_rate = self._rate(self.rules.iva_conditions, classification.iva_condition, "Condition IVA", entry)
        if entry.kind == "income":
            contributions.append(Contribution(IVA_DEBITO, classification.iva_condition, _amount("iva", iva_rate)))
        elif entry.kind == "expense":
            contributions.append(Contribution(IVA_CREDITO, classification.iva_condition, _amount("iva", iva_rate)))

        if classification.iibb_jurisdiction:
            jurisdiction = classification.iibb_jurisdiction
            rate = self._rate(self.rules.iibb_jurisdictions, jurisdiction, "Juridiction IIBB", entry)
            contributions.append(Contribution(IIBB, jurisdiction, _amount("iibb", rate)))

        codes = set(classification.withholdings)
        codes.update(k.split(":", 1)[1] for k in declared if k.startswith("retencion:"))
        for code in sorted(codes):
            rate = self._rate(self.rules.withholdings, code, "Retención", entry)
            contributions.append(Contribution(RETENCIONES, code, _amount(f"retencion:{code}", rate)))

        return contributions
