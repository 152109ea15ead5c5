"""Modèles de données métier et hiérarchie d'exceptions."""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from compta_obra.rates.backfill import BackfillReport


# --- Exceptions métier ---


class ComptaObraError(Exception):
    """Erreur de base pour l'application compta-obra."""


class ConfigError(ComptaObraError):
    """YAML malformé, clé manquante, valeur invalide."""


class ParseError(ComptaObraError):
    """Colonne manquante, fichier d'export illisible."""


class LedgerError(ComptaObraError):
    """Écritures du registre incohérentes (identifiant dupliqué, etc.)."""


class PeriodError(ComptaObraError):
    """Identifiant de période invalide (attendu : YYYY-MM)."""


class ClassificationError(ComptaObraError):
    """Code fiscal absent de la table de règles."""


class RateError(ComptaObraError):
    """Erreur de base pour la résolution des taux de change."""


class RateUnavailable(RateError):
    """Aucun taux exploitable pour la date, même dans la fenêtre de repli."""

    def __init__(self, date: datetime.date, detail: str = "") -> None:
        self.date = date
        message = f"Aucun taux disponible pour le {date.isoformat()}"
        if detail:
            message = f"{message} : {detail}"
        super().__init__(message)


class RateProviderError(RateError):
    """Échec transitoire du fournisseur de taux (timeout, 429, 5xx, réseau)."""


class RateConflict(RateError):
    """Tentative d'écraser un taux « fetched » déjà enregistré."""

    def __init__(self, date: datetime.date) -> None:
        self.date = date
        super().__init__(f"Un taux récupéré existe déjà pour le {date.isoformat()} (immuable)")


class MissingRateError(ComptaObraError):
    """Taux introuvable pour une écriture — le calcul de la période est abandonné."""

    def __init__(self, entry_id: str, date: datetime.date, detail: str = "") -> None:
        self.entry_id = entry_id
        self.date = date
        message = f"Taux manquant pour l'écriture {entry_id} du {date.isoformat()}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class PlanValidationError(ComptaObraError):
    """Plan de paiement invalide — rien n'est persisté."""


class PlanNotFoundError(ComptaObraError):
    """Plan de paiement inconnu."""


class BackfillInterrupted(ComptaObraError):
    """Backfill interrompu — le cache reste valide, une relance reprend où il s'est arrêté."""

    def __init__(self, report: BackfillReport) -> None:
        self.report = report
        super().__init__(
            f"Backfill interrompu après {report.fetched_count} taux récupérés "
            f"({report.skipped_count} ignorés, {report.failed_count} en échec)"
        )


# --- Constantes de domaine ---

SOURCE_FETCHED = "fetched"
SOURCE_FALLBACK = "fallback"
SOURCE_MANUAL = "manual"
RATE_SOURCES = (SOURCE_FETCHED, SOURCE_FALLBACK, SOURCE_MANUAL)

ENTRY_KINDS = ("expense", "income", "payroll")
ENTRY_STATUSES = ("active", "void", "pending")
DOCUMENT_TYPES = ("factura", "nota_credito")


# --- Dataclasses métier (frozen) ---


@dataclass(frozen=True)
class ExchangeRate:
    """Taux de change d'une date (ARS pour 1 USD)."""

    date: datetime.date
    rate: Decimal
    source: str
    fetched_at: datetime.datetime
    rate_date: datetime.date  # date de l'observation d'origine (≠ date pour un repli)
    row_id: int | None = None


@dataclass(frozen=True)
class ResolvedRate:
    """Résultat d'une résolution de taux, avec avertissement éventuel de donnée périmée."""

    requested_date: datetime.date
    rate_date: datetime.date
    rate: Decimal
    source: str
    fetched_at: datetime.datetime
    warning: str | None = None
    row_id: int | None = None

    @property
    def is_fallback(self) -> bool:
        return self.source == SOURCE_FALLBACK


@dataclass(frozen=True)
class TaxClassification:
    """Classification fiscale d'une écriture (codes de la table de règles)."""

    iva_condition: str
    iibb_jurisdiction: str | None = None
    withholdings: tuple[str, ...] = ()
    document_type: str = "factura"

    @property
    def sign(self) -> int:
        """-1 pour une note de crédit, +1 sinon."""
        return -1 if self.document_type == "nota_credito" else 1


@dataclass(frozen=True)
class LedgerEntry:
    """Écriture du registre (dépense, recette ou paie), en lecture seule."""

    id: str
    kind: str  # "expense" | "income" | "payroll"
    amount: Decimal
    currency: str
    transaction_date: datetime.date
    tax_classification: TaxClassification
    scope_ref: str
    status: str = "active"
    declared_taxes: dict[str, Decimal] = field(default_factory=dict)


@dataclass(frozen=True)
class Anomaly:
    """Anomalie détectée lors du traitement."""

    type: str
    severity: str
    reference: str
    detail: str
    expected_value: str | None = None
    actual_value: str | None = None


@dataclass(frozen=True)
class TaxPeriodSummary:
    """Synthèse fiscale d'une période, recalculable à l'identique.

    ``generated_at`` est la date de fraîcheur des données (``fetched_at`` le plus
    récent parmi les taux utilisés), pas l'heure du calcul : deux calculs sur les
    mêmes entrées produisent une synthèse strictement égale.
    """

    period_id: str
    scope: str
    iva_debito: Decimal
    iva_credito: Decimal
    iibb: Decimal
    retenciones: Decimal
    net_amount: Decimal
    currency: str
    generated_at: datetime.datetime | None
    source_entry_ids: tuple[str, ...]
    provisional: bool
    breakdown: dict[str, dict[str, Decimal]] = field(default_factory=dict)
    warnings: tuple[Anomaly, ...] = ()


@dataclass(frozen=True)
class Installment:
    """Cuota d'un plan de paiement."""

    index: int
    due_date: datetime.date
    amount: Decimal
    status: str = "pending"  # "pending" | "paid" | "overdue"
    paid_on: datetime.date | None = None

    def effective_status(self, as_of: datetime.date) -> str:
        """Statut à une date donnée : une cuota non payée échue est « overdue »."""
        if self.status == "paid":
            return "paid"
        return "overdue" if self.due_date < as_of else "pending"


@dataclass(frozen=True)
class PaymentPlan:
    """Plan de paiement (moratoria / plan de facilidades)."""

    id: str
    authority_ref: str
    total_amount: Decimal
    installments: tuple[Installment, ...]
    status: str = "current"  # "current" | "overdue" | "completed"
    name: str = ""
    tax: str = ""
    created_from: str | None = None

    @property
    def paid_amount(self) -> Decimal:
        return sum((i.amount for i in self.installments if i.status == "paid"), Decimal("0"))

    @property
    def next_due(self) -> Installment | None:
        for installment in self.installments:
            if installment.status != "paid":
                return installment
        return None


@dataclass(frozen=True)
class Obligation:
    """Échéance à venir : cuota impayée ou échéance fiscale récurrente."""

    due_date: datetime.date
    kind: str  # "installment" | "statutory"
    reference: str
    label: str
    amount: Decimal | None
    currency: str
    overdue: bool = False
