"""Plans de paiement (moratorias) et calendrier des échéances à venir."""

from __future__ import annotations

import calendar
import dataclasses
import datetime
import heapq
import logging
import sqlite3
import uuid
from collections.abc import Callable, Iterator, Sequence
from decimal import ROUND_DOWN, Decimal

import pandas as pd

from compta_obra.config.loader import PlansConfig, StatutoryDeadline
from compta_obra.models import (
    Installment,
    Obligation,
    PaymentPlan,
    PlanNotFoundError,
    PlanValidationError,
    TaxPeriodSummary,
)
from compta_obra.storage import Database

logger = logging.getLogger(__name__)

PLAN_CURRENT = "current"
PLAN_OVERDUE = "overdue"
PLAN_COMPLETED = "completed"

KIND_INSTALLMENT = "installment"
KIND_STATUTORY = "statutory"

InstallmentSpec = tuple[datetime.date, Decimal]


def add_months(day: datetime.date, months: int) -> datetime.date:
    """Même jour ``months`` mois plus tard, ramené au dernier jour si besoin (31/01 → 28/02)."""
    return (pd.Timestamp(day) + pd.DateOffset(months=months)).date()


def split_installments(
    total: Decimal,
    count: int,
    first_due: datetime.date,
    minor_unit: int = 2,
) -> list[InstallmentSpec]:
    """Découpe ``total`` en ``count`` cuotas mensuelles égales.

    Chaque cuota est arrondie à l'unité mineure par défaut ; le reliquat
    d'arrondi est porté par la dernière cuota.

    Examples:
        >>> [str(a) for _, a in split_installments(Decimal("100"), 3, datetime.date(2025, 1, 10))]
        ['33.33', '33.33', '33.34']
    """
    if count < 1:
        raise PlanValidationError(f"Nombre de cuotas invalide : {count}")
    total = Decimal(total)
    if total <= 0:
        raise PlanValidationError(f"Montant total non positif : {total}")

    quantum = Decimal("1").scaleb(-minor_unit)
    base = (total / count).quantize(quantum, rounding=ROUND_DOWN)
    if base <= 0:
        raise PlanValidationError(f"Montant {total} trop faible pour {count} cuotas")

    amounts = [base] * (count - 1) + [total - base * (count - 1)]
    return [(add_months(first_due, i), amount) for i, amount in enumerate(amounts)]


def plan_status(installments: Sequence[Installment], as_of: datetime.date) -> str:
    """completed si tout est payé, overdue si une cuota impayée est échue, current sinon."""
    if all(i.status == "paid" for i in installments):
        return PLAN_COMPLETED
    if any(i.effective_status(as_of) == "overdue" for i in installments):
        return PLAN_OVERDUE
    return PLAN_CURRENT


def deadline_date(year: int, month: int, day_of_month: int) -> datetime.date:
    """Jour d'échéance du mois, borné à la longueur du mois."""
    last_day = calendar.monthrange(year, month)[1]
    return datetime.date(year, month, min(day_of_month, last_day))


def _obligation_key(obligation: Obligation) -> tuple[datetime.date, str, str]:
    return obligation.due_date, obligation.kind, obligation.reference


class PaymentPlanTracker:
    """Plans de paiement persistés en SQLite.

    Un plan n'évolue que par le paiement de ses cuotas ; sa création est
    validée entièrement avant toute écriture. Les statuts (plan et cuotas)
    sont recalculés à chaque lecture à la date ``as_of`` (aujourd'hui par
    défaut) : un plan passe « overdue » dès qu'une cuota impayée est échue,
    sans qu'aucun paiement ne soit enregistré.
    """

    def __init__(
        self,
        db: Database,
        config: PlansConfig | None = None,
        deadlines: Sequence[StatutoryDeadline] = (),
        currency: str = "ARS",
        minor_unit: int = 2,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
        today: Callable[[], datetime.date] = datetime.date.today,
    ) -> None:
        self.db = db
        self.config = config or PlansConfig()
        self.deadlines = list(deadlines)
        self.currency = currency
        self.minor_unit = minor_unit
        self._new_id = id_factory
        self._today = today

    # --- création ---

    def _validate(
        self,
        total_amount: Decimal,
        installments: Sequence[InstallmentSpec],
    ) -> list[InstallmentSpec]:
        if total_amount <= 0:
            raise PlanValidationError(f"Montant total non positif : {total_amount}")
        if not installments:
            raise PlanValidationError("Un plan doit comporter au moins une cuota")

        previous: datetime.date | None = None
        for position, (due_date, amount) in enumerate(installments, start=1):
            if amount <= 0:
                raise PlanValidationError(f"Cuota {position} : montant non positif ({amount})")
            if previous is not None and due_date <= previous:
                raise PlanValidationError(
                    f"Cuota {position} : échéance {due_date.isoformat()} non postérieure "
                    f"à la précédente ({previous.isoformat()})"
                )
            previous = due_date

        total_installments = sum((a for _, a in installments), Decimal("0"))
        gap = total_amount - total_installments
        if abs(gap) > self.config.tolerance:
            raise PlanValidationError(
                f"Somme des cuotas ({total_installments}) différente du total ({total_amount}) "
                f"au-delà de la tolérance de {self.config.tolerance}"
            )

        # l'écart toléré est absorbé par la dernière cuota
        adjusted = list(installments)
        last_date, last_amount = adjusted[-1]
        if last_amount + gap <= 0:
            raise PlanValidationError("La dernière cuota deviendrait non positive après ajustement")
        adjusted[-1] = (last_date, last_amount + gap)
        return adjusted

    def create_plan(
        self,
        total_amount: Decimal,
        installments: Sequence[InstallmentSpec],
        authority_ref: str,
        name: str = "",
        tax: str = "",
        created_from: str | None = None,
    ) -> PaymentPlan:
        """Crée un plan validé ; en cas d'erreur rien n'est persisté.

        Raises:
            PlanValidationError: ordre, chevauchement, montant non positif ou somme hors tolérance.
        """
        total_amount = Decimal(total_amount)
        specs = self._validate(total_amount, [(d, Decimal(a)) for d, a in installments])
        if not authority_ref:
            raise PlanValidationError("Référence de l'organisme obligatoire")

        plan_id = self._new_id()
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT INTO payment_plans (id, authority_ref, name, tax, total_amount, status, created_from) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (plan_id, authority_ref, name, tax, str(total_amount), PLAN_CURRENT, created_from),
            )
            conn.executemany(
                "INSERT INTO plan_installments (plan_id, idx, due_date, amount, status, paid_on) "
                "VALUES (?, ?, ?, ?, 'pending', NULL)",
                [(plan_id, i, d.isoformat(), str(a)) for i, (d, a) in enumerate(specs, start=1)],
            )

        logger.info(
            "Plan %s créé (%s) : %s en %d cuotas", plan_id, authority_ref, total_amount, len(specs)
        )
        return self.get_plan(plan_id)

    def create_plan_from_summary(
        self,
        summary: TaxPeriodSummary,
        count: int,
        first_due: datetime.date,
        authority_ref: str,
        name: str = "",
    ) -> PaymentPlan:
        """Plan dont le total est le solde net d'une synthèse de période."""
        if summary.net_amount <= 0:
            raise PlanValidationError(
                f"Solde net de la période {summary.period_id} non positif ({summary.net_amount}) : aucun plan à créer"
            )
        specs = split_installments(summary.net_amount, count, first_due, self.minor_unit)
        return self.create_plan(
            summary.net_amount,
            specs,
            authority_ref,
            name=name or f"Plan {summary.period_id}",
            tax="IVA/IIBB",
            created_from=f"{summary.period_id}/{summary.scope}",
        )

    # --- lecture ---

    @staticmethod
    def _row_to_installment(row: sqlite3.Row, as_of: datetime.date) -> Installment:
        installment = Installment(
            index=row["idx"],
            due_date=datetime.date.fromisoformat(row["due_date"]),
            amount=Decimal(row["amount"]),
            status=row["status"],
            paid_on=datetime.date.fromisoformat(row["paid_on"]) if row["paid_on"] else None,
        )
        return dataclasses.replace(installment, status=installment.effective_status(as_of))

    def _build_plan(self, row: sqlite3.Row, as_of: datetime.date) -> PaymentPlan:
        installment_rows = self.db.query(
            "SELECT * FROM plan_installments WHERE plan_id = ? ORDER BY idx", (row["id"],)
        )
        installments = tuple(self._row_to_installment(r, as_of) for r in installment_rows)
        return PaymentPlan(
            id=row["id"],
            authority_ref=row["authority_ref"],
            total_amount=Decimal(row["total_amount"]),
            installments=installments,
            status=plan_status(installments, as_of),
            name=row["name"],
            tax=row["tax"],
            created_from=row["created_from"],
        )

    def get_plan(self, plan_id: str, as_of: datetime.date | None = None) -> PaymentPlan:
        """Plan ``plan_id`` avec ses statuts évalués à ``as_of`` (aujourd'hui par défaut).

        Raises:
            PlanNotFoundError: identifiant inconnu.
        """
        rows = self.db.query("SELECT * FROM payment_plans WHERE id = ?", (plan_id,))
        if not rows:
            raise PlanNotFoundError(f"Plan de paiement inconnu : {plan_id}")
        return self._build_plan(rows[0], as_of or self._today())

    def list_plans(self, as_of: datetime.date | None = None) -> list[PaymentPlan]:
        as_of = as_of or self._today()
        rows = self.db.query("SELECT * FROM payment_plans ORDER BY created_at, id")
        return [self._build_plan(r, as_of) for r in rows]

    # --- transitions ---

    def mark_installment_paid(
        self,
        plan_id: str,
        index: int,
        payment_date: datetime.date,
    ) -> PaymentPlan:
        """Passe la cuota ``index`` à « paid » et recalcule le statut du plan à ``payment_date``."""
        with self.db.transaction() as conn:
            plan = self.get_plan(plan_id, as_of=payment_date)
            target = next((i for i in plan.installments if i.index == index), None)
            if target is None:
                raise PlanValidationError(f"Cuota {index} inexistante dans le plan {plan_id}")
            if target.status == "paid":
                raise PlanValidationError(f"Cuota {index} du plan {plan_id} déjà payée")

            conn.execute(
                "UPDATE plan_installments SET status = 'paid', paid_on = ? WHERE plan_id = ? AND idx = ?",
                (payment_date.isoformat(), plan_id, index),
            )
            updated = [
                Installment(i.index, i.due_date, i.amount, "paid", payment_date) if i.index == index else i
                for i in plan.installments
            ]
            # instantané ; les lectures recalculent le statut à leur propre date
            status = plan_status(updated, payment_date)
            conn.execute("UPDATE payment_plans SET status = ? WHERE id = ?", (status, plan_id))

        logger.info("Cuota %d du plan %s payée le %s (plan %s)", index, plan_id, payment_date.isoformat(), status)
        return self.get_plan(plan_id, as_of=payment_date)

    # --- échéances ---

    def list_upcoming_obligations(
        self,
        as_of: datetime.date,
        until: datetime.date | None = None,
    ) -> ObligationsView:
        """Cuotas impayées et échéances fiscales jusqu'à ``until``, par date croissante."""
        if until is None:
            until = as_of + datetime.timedelta(days=self.config.obligations_horizon_days)
        if until < as_of:
            raise ValueError(f"Horizon invalide : {until.isoformat()} < {as_of.isoformat()}")
        return ObligationsView(self, as_of, until)

    def _installment_obligations(self, as_of: datetime.date, until: datetime.date) -> Iterator[Obligation]:
        rows = self.db.query(
            "SELECT i.plan_id, i.idx, i.due_date, i.amount, p.name, p.authority_ref, "
            "(SELECT COUNT(*) FROM plan_installments c WHERE c.plan_id = i.plan_id) AS n "
            "FROM plan_installments i JOIN payment_plans p ON p.id = i.plan_id "
            "WHERE i.status != 'paid' AND i.due_date <= ?",
            (until.isoformat(),),
        )
        obligations = []
        for row in rows:
            due_date = datetime.date.fromisoformat(row["due_date"])
            obligations.append(
                Obligation(
                    due_date=due_date,
                    kind=KIND_INSTALLMENT,
                    reference=f"{row['plan_id']}#{row['idx']:03d}",
                    label=f"{row['name'] or row['authority_ref']} : cuota {row['idx']}/{row['n']}",
                    amount=Decimal(row["amount"]),
                    currency=self.currency,
                    overdue=due_date < as_of,
                )
            )
        obligations.sort(key=_obligation_key)
        yield from obligations

    def _statutory_obligations(self, as_of: datetime.date, until: datetime.date) -> Iterator[Obligation]:
        year, month = as_of.year, as_of.month
        while (year, month) <= (until.year, until.month):
            month_items = []
            for deadline in self.deadlines:
                due_date = deadline_date(year, month, deadline.day_of_month)
                if as_of <= due_date <= until:
                    month_items.append(
                        Obligation(
                            due_date=due_date,
                            kind=KIND_STATUTORY,
                            reference=deadline.code,
                            label=deadline.label,
                            amount=None,
                            currency=self.currency,
                        )
                    )
            month_items.sort(key=_obligation_key)
            yield from month_items
            year, month = (year + 1, 1) if month == 12 else (year, month + 1)


class ObligationsView:
    """Vue paresseuse et ré-itérable : chaque itération relit l'état courant."""

    def __init__(self, tracker: PaymentPlanTracker, as_of: datetime.date, until: datetime.date) -> None:
        self.tracker = tracker
        self.as_of = as_of
        self.until = until

    def __iter__(self) -> Iterator[Obligation]:
        return heapq.merge(
            self.tracker._installment_obligations(self.as_of, self.until),
            self.tracker._statutory_obligations(self.as_of, self.until),
            key=_obligation_key,
        )
