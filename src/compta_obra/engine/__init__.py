"""Moteur d'agrégation fiscale."""

from __future__ import annotations

from compta_obra.engine.classification import TaxClassifier, parse_period
from compta_obra.engine.tax_aggregation import SummarySubscription, TaxAggregationEngine

__all__ = [
    "SummarySubscription",
    "TaxAggregationEngine",
    "TaxClassifier",
    "parse_period",
]
