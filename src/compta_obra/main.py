"""Point d'entrée CLI de compta-obra."""

from __future__ import annotations

import argparse
import datetime
import logging
import signal
import sys
import threading
from decimal import Decimal, InvalidOperation
from pathlib import Path

from compta_obra.config.loader import load_config
from compta_obra.context import FinanceContext, build_context
from compta_obra.exporters.excel import export, print_summary
from compta_obra.models import (
    SOURCE_MANUAL,
    BackfillInterrupted,
    ComptaObraError,
    ConfigError,
    MissingRateError,
    RateUnavailable,
)
from compta_obra.parsers.spreadsheet import SpreadsheetLedgerSource
from compta_obra.plans.tracker import split_installments

logger = logging.getLogger("compta_obra.main")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s — %(message)s"
VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def _date(raw: str) -> datetime.date:
    try:
        return datetime.date.fromisoformat(raw)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"date invalide '{raw}' (attendu : YYYY-MM-DD)") from e


def _decimal(raw: str) -> Decimal:
    try:
        value = Decimal(raw.replace(",", "."))
    except InvalidOperation as e:
        raise argparse.ArgumentTypeError(f"montant invalide '{raw}'") from e
    if not value.is_finite():
        raise argparse.ArgumentTypeError(f"montant invalide '{raw}'")
    return value


def parse_args(args: list[str] | None = None) -> argparse.Namespace:
    """Parse les arguments CLI."""
    parser = argparse.ArgumentParser(
        prog="compta-obra",
        description="Synthèse fiscale multi-devises, taux de change et plans de paiement",
    )
    parser.add_argument(
        "--config-dir",
        default="./config/",
        help="Répertoire de configuration YAML (défaut : ./config/)",
    )
    parser.add_argument("--database", default=None, help="Fichier SQLite (défaut : database_path de settings.yaml)")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=VALID_LOG_LEVELS,
        help="Niveau de log (défaut : INFO)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("resolve", help="Taux de change d'une date")
    p.add_argument("date", type=_date)

    p = sub.add_parser("override", help="Correction manuelle d'un taux")
    p.add_argument("date", type=_date)
    p.add_argument("rate", type=_decimal)

    p = sub.add_parser("backfill", help="Remplit le cache des taux sur une plage")
    p.add_argument("start", type=_date)
    p.add_argument("end", type=_date)

    p = sub.add_parser("summary", help="Synthèse fiscale d'une période")
    p.add_argument("period", help="Période YYYY-MM")
    p.add_argument("ledger", nargs="+", help="Exports du registre (.csv / .xlsx)")
    p.add_argument("--scope", default=None, help="Obra (défaut : toutes)")
    p.add_argument("--output", default=None, help="Fichier Excel de sortie")

    p = sub.add_parser("plan-create", help="Crée un plan de paiement en cuotas mensuelles")
    p.add_argument("authority_ref")
    p.add_argument("total", type=_decimal)
    p.add_argument("count", type=int)
    p.add_argument("first_due", type=_date)
    p.add_argument("--name", default="")
    p.add_argument("--tax", default="")

    p = sub.add_parser("plan-pay", help="Marque une cuota comme payée")
    p.add_argument("plan_id")
    p.add_argument("index", type=int)
    p.add_argument("--date", type=_date, default=None, help="Date de paiement (défaut : aujourd'hui)")

    p = sub.add_parser("obligations", help="Échéances à venir")
    p.add_argument("--as-of", type=_date, default=None, help="Date de référence (défaut : aujourd'hui)")
    p.add_argument("--until", type=_date, default=None)

    return parser.parse_args(args)


def _cmd_resolve(context: FinanceContext, parsed: argparse.Namespace) -> None:
    resolved = context.resolver.resolve(parsed.date)
    print(f"{parsed.date.isoformat()} : {resolved.rate} ({resolved.source}, cotización du {resolved.rate_date})")
    if resolved.warning:
        print(f"ATTENTION : {resolved.warning}")


def _cmd_override(context: FinanceContext, parsed: argparse.Namespace) -> None:
    stored = context.cache.put(parsed.date, parsed.rate, SOURCE_MANUAL)
    print(f"{stored.date.isoformat()} : {stored.rate} (manual)")


def _cmd_backfill(context: FinanceContext, parsed: argparse.Namespace) -> None:
    cancel = threading.Event()
    previous = signal.signal(signal.SIGINT, lambda *_: cancel.set())
    try:
        report = context.build_backfill().run(parsed.start, parsed.end, cancel)
    finally:
        signal.signal(signal.SIGINT, previous)
    print(
        f"Backfill : {report.fetched_count} récupérés, {report.fallback_count} replis, "
        f"{report.skipped_count} ignorés, {report.failed_count} en échec"
    )
    for day in report.unavailable_dates:
        print(f"  indisponible : {day.isoformat()}")
    for day in report.provider_error_dates:
        print(f"  fournisseur en échec : {day.isoformat()}")


def _cmd_summary(context: FinanceContext, parsed: argparse.Namespace) -> None:
    files = {Path(f).name: Path(f) for f in parsed.ledger}
    engine = context.build_engine([SpreadsheetLedgerSource(files)])
    summary = engine.compute(parsed.period, parsed.scope)
    print_summary(summary, context.tracker.list_plans())
    if parsed.output:
        obligations = context.tracker.list_upcoming_obligations(datetime.date.today())
        export(summary, obligations, Path(parsed.output))
        logger.info("Classeur écrit : %s", parsed.output)


def _cmd_plan_create(context: FinanceContext, parsed: argparse.Namespace) -> None:
    specs = split_installments(parsed.total, parsed.count, parsed.first_due, context.config.minor_unit)
    plan = context.tracker.create_plan(parsed.total, specs, parsed.authority_ref, name=parsed.name, tax=parsed.tax)
    print(f"Plan {plan.id} créé : {plan.total_amount} en {len(plan.installments)} cuotas")
    for installment in plan.installments:
        print(f"  {installment.index:>3} {installment.due_date.isoformat()} {installment.amount:>14}")


def _cmd_plan_pay(context: FinanceContext, parsed: argparse.Namespace) -> None:
    plan = context.tracker.mark_installment_paid(parsed.plan_id, parsed.index, parsed.date or datetime.date.today())
    print(f"Plan {plan.id} : {plan.status} ({plan.paid_amount}/{plan.total_amount} payés)")


def _cmd_obligations(context: FinanceContext, parsed: argparse.Namespace) -> None:
    as_of = parsed.as_of or datetime.date.today()
    for obligation in context.tracker.list_upcoming_obligations(as_of, parsed.until):
        amount = f"{obligation.amount} {obligation.currency}" if obligation.amount is not None else "-"
        flag = "  VENCIDA" if obligation.overdue else ""
        print(f"{obligation.due_date.isoformat()}  {obligation.label:<40s} {amount}{flag}")


COMMANDS = {
    "resolve": _cmd_resolve,
    "override": _cmd_override,
    "backfill": _cmd_backfill,
    "summary": _cmd_summary,
    "plan-create": _cmd_plan_create,
    "plan-pay": _cmd_plan_pay,
    "obligations": _cmd_obligations,
}


def main(args: list[str] | None = None) -> None:
    """Point d'entrée principal."""
    parsed = parse_args(args)

    logging.basicConfig(
        level=getattr(logging, parsed.log_level),
        format=LOG_FORMAT,
    )

    config_dir = Path(parsed.config_dir)
    try:
        config = load_config(config_dir)
    except ConfigError as e:
        logger.error("Erreur de configuration : %s", e)
        sys.exit(2)

    context = build_context(config, database_path=parsed.database)
    try:
        COMMANDS[parsed.command](context, parsed)
    except BackfillInterrupted as e:
        print(f"INTERROMPU : {e}")
        sys.exit(3)
    except (MissingRateError, RateUnavailable) as e:
        print(f"ERREUR : {e}")
        sys.exit(3)
    except (ComptaObraError, ValueError) as e:
        logger.error("%s", e)
        sys.exit(2)
    except Exception:
        logger.exception("Erreur inattendue")
        sys.exit(1)
    finally:
        context.close()


if __name__ == "__main__":
    main()
