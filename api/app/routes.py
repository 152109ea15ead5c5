"""Endpoints de l'API : taux, backfill, synthèse, export, plans, échéances, santé."""

from __future__ import annotations

import datetime
import io
import json
import logging
from collections.abc import Callable
from typing import TypeVar

from fastapi import APIRouter, Form, HTTPException, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from compta_obra.context import FinanceContext
from compta_obra.engine.classification import TaxClassifier
from compta_obra.exporters.excel import export_to_bytes
from compta_obra.models import (
    SOURCE_MANUAL,
    ClassificationError,
    ConfigError,
    LedgerError,
    MissingRateError,
    ParseError,
    PaymentPlan,
    PeriodError,
    PlanNotFoundError,
    PlanValidationError,
    RateConflict,
    RateUnavailable,
    TaxPeriodSummary,
)
from compta_obra.parsers.spreadsheet import SpreadsheetLedgerSource
from compta_obra.plans.tracker import split_installments

from .overrides import (
    BackfillRequest,
    PaymentRequest,
    PlanCreateRequest,
    RateOverrideRequest,
    apply_overrides,
)
from .serializers import (
    serialize_backfill,
    serialize_obligation,
    serialize_plan,
    serialize_rate,
    serialize_resolved,
    serialize_summary,
)

logger = logging.getLogger(__name__)

router = APIRouter()

MAX_FILE_SIZE = 10 * 1024 * 1024  # 10 MB
MAX_FILES = 20
ACCEPTED_EXTENSIONS = (".csv", ".xlsx")

T = TypeVar("T")


def _context(request: Request) -> FinanceContext:
    return request.app.state.context


def _guard(call: Callable[[], T]) -> T:
    """Traduit les erreurs métier en codes HTTP."""
    try:
        return call()
    except PlanNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RateConflict as e:
        raise HTTPException(status_code=409, detail=str(e))
    except (RateUnavailable, MissingRateError) as e:
        raise HTTPException(status_code=503, detail=str(e))
    except (ParseError, PeriodError, LedgerError, ClassificationError, PlanValidationError, ValueError) as e:
        raise HTTPException(status_code=422, detail=str(e))
    except ConfigError as e:
        logger.error("Erreur de configuration : %s", e)
        raise HTTPException(status_code=500, detail="Erreur de configuration interne")


async def _validate_and_read_files(
    files: list[UploadFile],
) -> dict[str, io.BytesIO]:
    """Valide les uploads et retourne un dict {filename: buffer}."""
    if len(files) > MAX_FILES:
        raise HTTPException(
            status_code=422,
            detail=f"Trop de fichiers : {len(files)} (maximum {MAX_FILES}).",
        )

    files_dict: dict[str, io.BytesIO] = {}
    for f in files:
        filename = f.filename or "unknown"
        if not filename.lower().endswith(ACCEPTED_EXTENSIONS):
            raise HTTPException(
                status_code=422,
                detail=f"Extension invalide pour '{filename}' : seuls les fichiers .csv et .xlsx sont acceptés.",
            )
        content = await f.read()
        if len(content) > MAX_FILE_SIZE:
            raise HTTPException(
                status_code=413,
                detail=f"Fichier '{filename}' trop volumineux : {len(content)} octets (maximum {MAX_FILE_SIZE}).",
            )
        files_dict[filename] = io.BytesIO(content)

    return files_dict


def _parse_overrides(overrides_json: str | None) -> dict[str, object] | None:
    if not overrides_json:
        return None
    try:
        overrides = json.loads(overrides_json)
    except json.JSONDecodeError as e:
        raise HTTPException(status_code=422, detail=f"JSON overrides invalide : {e}")
    if not isinstance(overrides, dict):
        raise HTTPException(status_code=422, detail="Overrides invalides : un objet JSON est attendu")
    return overrides


def _compute_summary(
    context: FinanceContext,
    files: dict[str, io.BytesIO],
    period: str,
    scope: str | None,
    overrides: dict[str, object] | None,
) -> TaxPeriodSummary:
    engine = context.build_engine([SpreadsheetLedgerSource(files)])
    if overrides:
        try:
            engine.classifier = TaxClassifier(apply_overrides(context.config.tax_rules, overrides))
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=f"Overrides invalides : {e}")
    return engine.compute(period, scope)


# --- taux ---


@router.get("/api/rates/{day}")
def get_rate(request: Request, day: datetime.date) -> dict[str, object]:
    """Taux exploitable pour une date (cache, fournisseur ou repli)."""
    resolved = _guard(lambda: _context(request).resolver.resolve(day))
    return serialize_resolved(resolved)


@router.get("/api/rates/{day}/history")
def get_rate_history(request: Request, day: datetime.date) -> dict[str, object]:
    """Historique complet (récupéré, repli, corrections manuelles) d'une date."""
    history = _context(request).cache.history(day)
    return {"date": day.isoformat(), "history": [serialize_rate(r) for r in history]}


@router.post("/api/rates/{day}/override")
def override_rate(request: Request, day: datetime.date, body: RateOverrideRequest) -> dict[str, object]:
    """Correction manuelle auditée : s'ajoute à l'historique."""
    stored = _guard(lambda: _context(request).cache.put(day, body.rate, SOURCE_MANUAL))
    return serialize_rate(stored)


@router.post("/api/rates/backfill")
def backfill(request: Request, body: BackfillRequest) -> JSONResponse:
    """Remplit le cache des taux sur la plage demandée."""
    job = _context(request).build_backfill()
    report = _guard(lambda: job.run(body.start, body.end))
    return JSONResponse(content=serialize_backfill(report))


# --- synthèse ---


@router.post("/api/summary")
async def summary(
    request: Request,
    files: list[UploadFile],
    period: str = Form(...),
    scope: str | None = Form(None),
    overrides: str | None = Form(None),
) -> JSONResponse:
    """Upload des exports du registre → synthèse fiscale JSON."""
    files_dict = await _validate_and_read_files(files)
    overrides_dict = _parse_overrides(overrides)
    context = _context(request)

    result = await run_in_threadpool(
        _guard, lambda: _compute_summary(context, files_dict, period, scope, overrides_dict)
    )
    return JSONResponse(content=serialize_summary(result))


@router.post("/api/download/excel")
async def download_excel(
    request: Request,
    files: list[UploadFile],
    period: str = Form(...),
    scope: str | None = Form(None),
    overrides: str | None = Form(None),
) -> StreamingResponse:
    """Upload des exports → classeur .xlsx (Résumé, Détail, Échéances)."""
    files_dict = await _validate_and_read_files(files)
    overrides_dict = _parse_overrides(overrides)
    context = _context(request)

    result = await run_in_threadpool(
        _guard, lambda: _compute_summary(context, files_dict, period, scope, overrides_dict)
    )
    obligations = context.tracker.list_upcoming_obligations(datetime.date.today())
    buffer = await run_in_threadpool(export_to_bytes, result, obligations)
    filename = f"sintesis-{result.period_id}.xlsx"

    return StreamingResponse(
        buffer,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# --- plans ---


@router.get("/api/plans")
def list_plans(request: Request, as_of: datetime.date | None = None) -> dict[str, object]:
    """Plans enregistrés, statuts évalués à ``as_of`` (aujourd'hui par défaut)."""
    return {"plans": [serialize_plan(p) for p in _context(request).tracker.list_plans(as_of)]}


@router.post("/api/plans", status_code=201)
def create_plan(request: Request, body: PlanCreateRequest) -> dict[str, object]:
    """Plan manuel ou découpé en cuotas mensuelles égales."""
    context = _context(request)

    def _create() -> PaymentPlan:
        if body.installments is not None:
            specs = [(i.due_date, i.amount) for i in body.installments]
        else:
            specs = split_installments(body.total_amount, body.count, body.first_due, context.config.minor_unit)
        return context.tracker.create_plan(
            body.total_amount, specs, body.authority_ref, name=body.name, tax=body.tax
        )

    return serialize_plan(_guard(_create))


@router.get("/api/plans/{plan_id}")
def get_plan(request: Request, plan_id: str, as_of: datetime.date | None = None) -> dict[str, object]:
    return serialize_plan(_guard(lambda: _context(request).tracker.get_plan(plan_id, as_of)))


@router.post("/api/plans/{plan_id}/installments/{index}/pay")
def pay_installment(request: Request, plan_id: str, index: int, body: PaymentRequest) -> dict[str, object]:
    plan = _guard(lambda: _context(request).tracker.mark_installment_paid(plan_id, index, body.payment_date))
    return serialize_plan(plan)


@router.get("/api/obligations")
def obligations(
    request: Request,
    as_of: datetime.date | None = None,
    until: datetime.date | None = None,
) -> dict[str, object]:
    """Cuotas impayées et échéances fiscales, par date croissante."""
    start = as_of or datetime.date.today()
    view = _guard(lambda: _context(request).tracker.list_upcoming_obligations(start, until))
    return {"as_of": start.isoformat(), "obligations": [serialize_obligation(o) for o in view]}


@router.get("/api/health")
async def health() -> dict[str, str]:
    """Health check pour Render."""
    return {"status": "ok"}
