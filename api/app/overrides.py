"""Schémas des corps de requête et overrides de la table de règles fiscales."""

from __future__ import annotations

import dataclasses
import datetime
import re
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, field_validator, model_validator

from compta_obra.config.loader import TaxRuleTable

# --- Regex de validation ---
RE_TAX_CODE = re.compile(r"^[A-Za-z0-9_]{2,30}$")
RE_AUTHORITY = re.compile(r"^[A-Za-z0-9 ._/-]{2,60}$")

HUNDRED = Decimal("100")


def _check_rates(values: dict[str, Decimal] | None, label: str) -> dict[str, Decimal] | None:
    """Valide codes et taux (%) d'un dict optionnel."""
    if values is None:
        return None
    for code, rate in values.items():
        if not RE_TAX_CODE.match(code):
            raise ValueError(f"{label} : code invalide '{code}'")
        if rate < 0 or rate > HUNDRED:
            raise ValueError(f"{label} '{code}' : taux {rate}% hors de [0, 100]")
    return values


class TaxRulesOverride(BaseModel):
    """Override partiel de la table de règles (simulation de taux)."""

    iva_conditions: dict[str, Decimal] | None = None
    iibb_jurisdictions: dict[str, Decimal] | None = None
    withholdings: dict[str, Decimal] | None = None

    @field_validator("iva_conditions", "iibb_jurisdictions", "withholdings")
    @classmethod
    def validate_rates(cls, v: dict[str, Decimal] | None) -> dict[str, Decimal] | None:
        return _check_rates(v, "Taux")


class RateOverrideRequest(BaseModel):
    """Correction manuelle d'un taux."""

    rate: Decimal

    @field_validator("rate")
    @classmethod
    def validate_rate(cls, v: Decimal) -> Decimal:
        if not v.is_finite() or v <= 0:
            raise ValueError(f"Taux invalide : {v}")
        return v


class BackfillRequest(BaseModel):
    """Plage de dates à remplir."""

    start: datetime.date
    end: datetime.date

    @model_validator(mode="after")
    def validate_range(self) -> BackfillRequest:
        if self.end < self.start:
            raise ValueError(f"Plage invalide : {self.start} > {self.end}")
        return self


class InstallmentSchema(BaseModel):
    due_date: datetime.date
    amount: Decimal


class PlanCreateRequest(BaseModel):
    """Plan manuel (cuotas explicites) ou découpé (count + first_due)."""

    authority_ref: str
    total_amount: Decimal
    name: str = ""
    tax: str = ""
    installments: list[InstallmentSchema] | None = None
    count: int | None = None
    first_due: datetime.date | None = None

    @field_validator("authority_ref")
    @classmethod
    def validate_authority(cls, v: str) -> str:
        if not RE_AUTHORITY.match(v):
            raise ValueError(f"Référence d'organisme invalide : '{v}'")
        return v

    @model_validator(mode="after")
    def validate_schedule(self) -> PlanCreateRequest:
        if self.installments is None and (self.count is None or self.first_due is None):
            raise ValueError("Fournir 'installments' ou bien 'count' et 'first_due'")
        if self.installments is not None and self.count is not None:
            raise ValueError("'installments' et 'count' sont exclusifs")
        return self


class PaymentRequest(BaseModel):
    payment_date: datetime.date


def apply_overrides(rules: TaxRuleTable, overrides: dict[str, Any]) -> TaxRuleTable:
    """Applique les overrides à la table de règles — merge partiel, retourne une copie."""
    schema = TaxRulesOverride.model_validate(overrides)

    replacements: dict[str, Any] = {}

    if schema.iva_conditions:
        replacements["iva_conditions"] = {**rules.iva_conditions, **schema.iva_conditions}

    if schema.iibb_jurisdictions:
        replacements["iibb_jurisdictions"] = {**rules.iibb_jurisdictions, **schema.iibb_jurisdictions}

    if schema.withholdings:
        replacements["withholdings"] = {**rules.withholdings, **schema.withholdings}

    if not replacements:
        return rules

    return dataclasses.replace(rules, **replacements)
