"""Source d'écritures lue depuis des exports CSV / Excel du registre."""

from __future__ import annotations

import datetime
import logging
import re
from decimal import Decimal, InvalidOperation
from io import BytesIO
from pathlib import Path

import pandas as pd

from compta_obra.models import (
    DOCUMENT_TYPES,
    LedgerEntry,
    ParseError,
    TaxClassification,
)
from compta_obra.parsers.base import LedgerSource, PeriodRange, in_period, scope_matches

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ["id", "tipo", "monto", "moneda", "fecha", "condicion_iva", "obra"]
OPTIONAL_COLUMNS = ["estado", "jurisdiccion_iibb", "tipo_documento", "retenciones", "iva", "iibb"]
CANONICAL_COLUMNS = frozenset(REQUIRED_COLUMNS + OPTIONAL_COLUMNS)

COLUMN_ALIASES: dict[str, list[str]] = {
    "tipo": ["kind", "type"],
    "monto": ["amount", "importe"],
    "moneda": ["currency"],
    "fecha": ["date", "transaction_date"],
    "condicion_iva": ["iva_condition", "condicionIVA"],
    "obra": ["scope", "proyecto", "projectId"],
    "estado": ["status"],
    "jurisdiccion_iibb": ["iibbJurisdiction", "iibb_jurisdiction"],
    "tipo_documento": ["documentType", "document_type"],
}

KIND_ALIASES = {
    "gasto": "expense",
    "expense": "expense",
    "venta": "income",
    "ingreso": "income",
    "income": "income",
    "sueldo": "payroll",
    "nomina": "payroll",
    "payroll": "payroll",
}

STATUS_ALIASES = {
    "": "active",
    "activo": "active",
    "active": "active",
    "anulado": "void",
    "cancelado": "void",
    "void": "void",
    "pendiente": "pending",
    "borrador": "pending",
    "pending": "pending",
}

DOCUMENT_ALIASES = {
    "": "factura",
    "factura": "factura",
    "nota de crédito": "nota_credito",
    "nota de credito": "nota_credito",
    "nota_credito": "nota_credito",
}

RETENCION_PREFIX = "retencion_"


# « 1.234 », « 12.500.000 » : le point y sépare les milliers
_DOT_THOUSANDS = re.compile(r"^-?[1-9]\d{0,2}(\.\d{3})+$")


def parse_decimal(raw: object, context: str) -> Decimal:
    """Convertit un montant texte en Decimal.

    Formats acceptés : « 1.234,56 », « 1,234.56 », « 1234.56 », « 12,5 » et
    les milliers à points sans décimales (« 1.234 », « 1.234.567 »). Un point
    unique suivi d'exactement trois chiffres est lu comme séparateur de
    milliers ; « 0.125 » reste décimal. Plusieurs points mal groupés
    (« 1.23.4 ») sont refusés.
    """
    text = str(raw).strip().replace("$", "").replace(" ", "")
    if not text:
        raise ParseError(f"Montant vide ({context})")
    if "," in text and "." in text:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        text = text.replace(",", ".")
    elif _DOT_THOUSANDS.match(text):
        text = text.replace(".", "")
    elif text.count(".") > 1:
        raise ParseError(f"Montant invalide {raw!r} : séparateurs de milliers mal placés ({context})")
    try:
        value = Decimal(text)
    except InvalidOperation as e:
        raise ParseError(f"Montant invalide {raw!r} ({context})") from e
    if not value.is_finite():
        raise ParseError(f"Montant invalide {raw!r} ({context})")
    return value


def parse_date(raw: object, context: str) -> datetime.date:
    """Date ISO (YYYY-MM-DD) ou jour/mois/année ; une cellule vide est une erreur."""
    text = str(raw).strip()
    if not text:
        raise ParseError(f"Date vide ({context})")
    try:
        return datetime.date.fromisoformat(text[:10])
    except ValueError:
        pass
    try:
        parsed = pd.to_datetime(text, dayfirst=True)
    except (ValueError, TypeError) as e:
        raise ParseError(f"Date invalide {raw!r} ({context})") from e
    if pd.isna(parsed):
        raise ParseError(f"Date invalide {raw!r} ({context})")
    return parsed.date()


class SpreadsheetLedgerSource(LedgerSource):
    """Lit des exports .csv / .xlsx et expose leurs écritures comme source du registre."""

    def __init__(self, files: dict[str, Path | BytesIO], name: str = "exports") -> None:
        self.name = name
        self._entries: list[LedgerEntry] = []
        for filename, source in sorted(files.items(), key=lambda kv: kv[0]):
            self._entries.extend(self._parse_file(filename, source))
        logger.info("Source %s : %d écritures chargées depuis %d fichier(s)", name, len(self._entries), len(files))

    @property
    def entries(self) -> list[LedgerEntry]:
        return list(self._entries)

    def query(self, period_range: PeriodRange, scope: str | None) -> list[LedgerEntry]:
        return [
            e
            for e in self._entries
            if in_period(e.transaction_date, period_range) and scope_matches(e.scope_ref, scope)
        ]

    @staticmethod
    def _read(filename: str, source: Path | BytesIO) -> pd.DataFrame:
        lower = filename.lower()
        try:
            if lower.endswith((".xlsx", ".xls")):
                return pd.read_excel(source, dtype=str, engine="openpyxl").fillna("")
            if lower.endswith(".csv"):
                header = _first_line(source)
                separator = ";" if header.count(";") > header.count(",") else ","
                if isinstance(source, BytesIO):
                    source.seek(0)
                return pd.read_csv(source, sep=separator, dtype=str, keep_default_na=False, encoding="utf-8-sig")
        except (ValueError, OSError) as e:
            raise ParseError(f"Fichier illisible '{filename}' : {e}") from e
        raise ParseError(f"Extension non supportée pour '{filename}' (attendu : .csv ou .xlsx)")

    def _parse_file(self, filename: str, source: Path | BytesIO) -> list[LedgerEntry]:
        df = self._read(filename, source)
        df.columns = df.columns.str.strip()
        df = df.rename(columns=_canonical_headers(list(df.columns)))

        missing = [col for col in REQUIRED_COLUMNS if col not in df.columns]
        if missing:
            raise ParseError(f"Colonnes manquantes dans '{filename}' : {', '.join(missing)}")

        retencion_columns = [c for c in df.columns if c.startswith(RETENCION_PREFIX)]

        entries: list[LedgerEntry] = []
        for position, row in enumerate(df.to_dict(orient="records"), start=2):
            context = f"{filename}, ligne {position}"
            entries.append(self._parse_row(row, retencion_columns, context))
        return entries

    @staticmethod
    def _parse_row(row: dict[str, str], retencion_columns: list[str], context: str) -> LedgerEntry:
        entry_id = str(row["id"]).strip()
        if not entry_id:
            raise ParseError(f"Identifiant vide ({context})")

        kind_raw = str(row["tipo"]).strip().lower()
        if kind_raw not in KIND_ALIASES:
            raise ParseError(f"Type d'écriture inconnu {row['tipo']!r} ({context})")

        status_raw = str(row.get("estado", "")).strip().lower()
        if status_raw not in STATUS_ALIASES:
            raise ParseError(f"Statut inconnu {row.get('estado')!r} ({context})")

        document_raw = str(row.get("tipo_documento", "")).strip().lower()
        document_type = DOCUMENT_ALIASES.get(document_raw)
        if document_type not in DOCUMENT_TYPES:
            raise ParseError(f"Type de document inconnu {row.get('tipo_documento')!r} ({context})")

        withholdings_raw = str(row.get("retenciones", "")).strip()
        withholdings = tuple(sorted(w.strip() for w in withholdings_raw.split(";") if w.strip()))
        jurisdiction = str(row.get("jurisdiccion_iibb", "")).strip() or None

        declared: dict[str, Decimal] = {}
        for category in ("iva", "iibb"):
            value = str(row.get(category, "")).strip()
            if value:
                declared[category] = parse_decimal(value, context)
        for column in retencion_columns:
            value = str(row.get(column, "")).strip()
            if value:
                declared[f"retencion:{column[len(RETENCION_PREFIX):]}"] = parse_decimal(value, context)

        return LedgerEntry(
            id=entry_id,
            kind=KIND_ALIASES[kind_raw],
            amount=parse_decimal(row["monto"], context),
            currency=str(row["moneda"]).strip().upper(),
            transaction_date=parse_date(row["fecha"], context),
            tax_classification=TaxClassification(
                iva_condition=str(row["condicion_iva"]).strip(),
                iibb_jurisdiction=jurisdiction,
                withholdings=withholdings,
                document_type=document_type,
            ),
            scope_ref=str(row["obra"]).strip(),
            status=STATUS_ALIASES[status_raw],
            declared_taxes=declared,
        )


def _first_line(source: Path | BytesIO) -> str:
    if isinstance(source, BytesIO):
        pos = source.tell()
        line = source.readline().decode("utf-8-sig", errors="replace")
        source.seek(pos)
        return line
    with open(source, encoding="utf-8-sig") as f:
        return f.readline()


def _canonical_headers(columns: list[str]) -> dict[str, str]:
    """Correspondance en-tête → nom canonique, sans tenir compte de la casse.

    « Monto », « MONTO » et l'alias « Importe » donnent tous ``monto``. Un
    en-tête déjà canonique prime sur les alias de la même colonne ; un
    en-tête dont la cible est déjà prise reste inchangé.
    """
    aliases = {alt.lower(): canonical for canonical, alts in COLUMN_ALIASES.items() for alt in alts}
    rename: dict[str, str] = {}
    taken: set[str] = set()
    for column in columns:
        key = column.lower()
        if (key in CANONICAL_COLUMNS or key.startswith(RETENCION_PREFIX)) and key not in taken:
            rename[column] = key
            taken.add(key)
    for column in columns:
        target = aliases.get(column.lower())
        if column not in rename and target is not None and target not in taken:
            rename[column] = target
            taken.add(target)
    return rename
