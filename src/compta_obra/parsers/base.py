"""Sources d'écritures du registre (lecture seule)."""

from __future__ import annotations

import datetime
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable

from compta_obra.models import LedgerEntry

logger = logging.getLogger(__name__)

ALL_SCOPES = "all"

PeriodRange = tuple[datetime.date, datetime.date]


def scope_matches(entry_scope: str, scope: str | None) -> bool:
    """``None`` ou ``"all"`` couvrent toutes les obras."""
    return scope is None or scope == ALL_SCOPES or entry_scope == scope


def in_period(day: datetime.date, period_range: PeriodRange) -> bool:
    """Intervalle semi-ouvert [début, fin)."""
    start, end = period_range
    return start <= day < end


class LedgerSource(ABC):
    """Interface commune des modules externes (gastos, ventas, sueldos)."""

    name: str = "ledger"

    @abstractmethod
    def query(self, period_range: PeriodRange, scope: str | None) -> Iterable[LedgerEntry]:
        """Écritures dont la date tombe dans [début, fin) et l'obra correspond."""


class InMemoryLedgerSource(LedgerSource):
    """Source en mémoire (instantané fourni par l'appelant, tests)."""

    def __init__(self, entries: Iterable[LedgerEntry], name: str = "memoire") -> None:
        self.entries = list(entries)
        self.name = name

    def query(self, period_range: PeriodRange, scope: str | None) -> list[LedgerEntry]:
        return [
            e
            for e in self.entries
            if in_period(e.transaction_date, period_range) and scope_matches(e.scope_ref, scope)
        ]
