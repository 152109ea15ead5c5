"""Sources d'écritures du registre."""

from compta_obra.parsers.base import InMemoryLedgerSource, LedgerSource
from compta_obra.parsers.spreadsheet import SpreadsheetLedgerSource

__all__ = ["InMemoryLedgerSource", "LedgerSource", "SpreadsheetLedgerSource"]
