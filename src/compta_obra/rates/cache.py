"""Cache persistant des taux de change, indexé par date."""

from __future__ import annotations

import datetime
import logging
import sqlite3
from collections.abc import Callable, Iterator
from decimal import Decimal

from compta_obra.models import (
    RATE_SOURCES,
    SOURCE_FALLBACK,
    SOURCE_FETCHED,
    SOURCE_MANUAL,
    ExchangeRate,
    RateConflict,
)
from compta_obra.storage import Database

logger = logging.getLogger(__name__)

DEFAULT_PAIR = "USD/ARS"
SCAN_CHUNK_DAYS = 31

# priorité de la valeur effective d'une date
_PRIORITY = {SOURCE_MANUAL: 2, SOURCE_FETCHED: 1, SOURCE_FALLBACK: 0}


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _row_to_rate(row: sqlite3.Row) -> ExchangeRate:
    return ExchangeRate(
        date=datetime.date.fromisoformat(row["rate_date"]),
        rate=Decimal(row["rate"]),
        source=row["source"],
        fetched_at=datetime.datetime.fromisoformat(row["fetched_at"]),
        rate_date=datetime.date.fromisoformat(row["observed_date"]),
        row_id=row["id"],
    )


def _effective(rows: list[sqlite3.Row]) -> ExchangeRate | None:
    """Valeur effective : dernière correction manuelle > fetched > repli."""
    if not rows:
        return None
    best = max(rows, key=lambda r: (_PRIORITY[r["source"]], r["id"]))
    return _row_to_rate(best)


def iter_days(start: datetime.date, end: datetime.date) -> Iterator[datetime.date]:
    """Jours calendaires de start à end inclus."""
    day = start
    while day <= end:
        yield day
        day += datetime.timedelta(days=1)


class RateCache:
    """Correspondance date → taux, append-only pour les taux récupérés.

    - un seul taux ``fetched`` par date, immuable (index unique partiel) ;
    - les corrections ``manual`` s'ajoutent à l'historique ;
    - un marqueur ``fallback`` n'est posé que sur une date encore vide.
    """

    def __init__(
        self,
        db: Database,
        pair: str = DEFAULT_PAIR,
        clock: Callable[[], datetime.datetime] = _utcnow,
    ) -> None:
        self.db = db
        self.pair = pair
        self._clock = clock

    def get(self, date: datetime.date) -> ExchangeRate | None:
        """Lecture ponctuelle de la valeur effective d'une date."""
        rows = self.db.query(
            "SELECT * FROM exchange_rates WHERE pair = ? AND rate_date = ? ORDER BY id",
            (self.pair, date.isoformat()),
        )
        return _effective(rows)

    def history(self, date: datetime.date) -> list[ExchangeRate]:
        """Historique complet d'une date, du plus ancien au plus récent."""
        rows = self.db.query(
            "SELECT * FROM exchange_rates WHERE pair = ? AND rate_date = ? ORDER BY id",
            (self.pair, date.isoformat()),
        )
        return [_row_to_rate(r) for r in rows]

    def put(
        self,
        date: datetime.date,
        rate: Decimal,
        source: str,
        rate_date: datetime.date | None = None,
    ) -> ExchangeRate:
        """Enregistre un taux.

        Raises:
            RateConflict: si ``source == "fetched"`` et qu'un taux récupéré existe déjà.
            ValueError: source inconnue ou taux non strictement positif.
        """
        if source not in RATE_SOURCES:
            raise ValueError(f"Source de taux inconnue : {source!r}")
        rate = Decimal(rate)
        if not rate.is_finite() or rate <= 0:
            raise ValueError(f"Taux invalide pour le {date.isoformat()} : {rate}")
        observed = rate_date or date

        with self.db.lock:
            if source == SOURCE_FALLBACK:
                existing = self.get(date)
                if existing is not None:
                    return existing
            try:
                cursor = self.db.execute(
                    "INSERT INTO exchange_rates (pair, rate_date, rate, source, observed_date, fetched_at) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        self.pair,
                        date.isoformat(),
                        str(rate),
                        source,
                        observed.isoformat(),
                        self._clock().isoformat(),
                    ),
                )
            except sqlite3.IntegrityError as e:
                if source == SOURCE_FETCHED:
                    raise RateConflict(date) from e
                # repli concurrent déjà posé par un autre processus
                existing = self.get(date)
                if existing is None:
                    raise
                return existing
            row = self.db.query("SELECT * FROM exchange_rates WHERE id = ?", (cursor.lastrowid,))[0]

        if source == SOURCE_MANUAL:
            logger.warning("Correction manuelle du taux du %s : %s", date.isoformat(), rate)
        else:
            logger.debug("Taux %s enregistré pour le %s : %s", source, date.isoformat(), rate)
        return _row_to_rate(row)

    def _present_dates(self, start: datetime.date, end: datetime.date) -> set[str]:
        rows = self.db.query(
            "SELECT DISTINCT rate_date FROM exchange_rates WHERE pair = ? AND rate_date BETWEEN ? AND ?",
            (self.pair, start.isoformat(), end.isoformat()),
        )
        return {r["rate_date"] for r in rows}

    def scan_missing(
        self,
        start: datetime.date,
        end: datetime.date,
        chunk_days: int = SCAN_CHUNK_DAYS,
    ) -> Iterator[datetime.date]:
        """Dates de [start, end] absentes du cache, évaluées paresseusement par tranches.

        Chaque appel repart de l'état courant du cache : relancer après une
        interruption ne reproduit que les dates encore manquantes.
        """
        chunk_start = start
        while chunk_start <= end:
            chunk_end = min(end, chunk_start + datetime.timedelta(days=chunk_days - 1))
            present = self._present_dates(chunk_start, chunk_end)
            for day in iter_days(chunk_start, chunk_end):
                if day.isoformat() not in present:
                    yield day
            chunk_start = chunk_end + datetime.timedelta(days=1)

    def count_present(self, start: datetime.date, end: datetime.date) -> int:
        return len(self._present_dates(start, end))

    def latest_before(self, date: datetime.date, lookback_days: int) -> ExchangeRate | None:
        """Date antérieure la plus proche (fenêtre de lookback_days jours) portant un taux réel.

        Les marqueurs de repli sont ignorés : un repli ne s'appuie jamais sur un autre repli.
        """
        window_start = date - datetime.timedelta(days=lookback_days)
        rows = self.db.query(
            "SELECT * FROM exchange_rates WHERE pair = ? AND rate_date >= ? AND rate_date < ? "
            "AND source IN (?, ?) ORDER BY rate_date DESC, id",
            (self.pair, window_start.isoformat(), date.isoformat(), SOURCE_FETCHED, SOURCE_MANUAL),
        )
        if not rows:
            return None
        nearest = rows[0]["rate_date"]
        return _effective([r for r in rows if r["rate_date"] == nearest])
