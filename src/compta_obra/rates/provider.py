"""Fournisseur externe de cotizaciones historiques (api.argentinadatos.com)."""

from __future__ import annotations

import datetime
import logging
from decimal import Decimal, InvalidOperation
from typing import Protocol

import httpx

from compta_obra.config.loader import ProviderConfig
from compta_obra.models import RateProviderError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {408, 425, 429, 500, 502, 503, 504}


class RateProvider(Protocol):
    """Interface minimale d'un fournisseur : ``None`` si la date n'a pas de cotización."""

    def lookup(self, date: datetime.date) -> Decimal | None: ...


class ArgentinaDatosProvider:
    """Cotización « venta » du dólar pour une date, via HTTP.

    ``GET {base_url}/v1/cotizaciones/dolares/{casa}/{YYYY}/{MM}/{DD}`` :
    404 signifie jour non coté (week-end, férié) ; timeouts, 429/5xx et erreurs
    réseau lèvent RateProviderError (transitoires, rejouées par le résolveur).
    """

    def __init__(self, config: ProviderConfig, client: httpx.Client | None = None) -> None:
        self.config = config
        self._client = client or httpx.Client(timeout=config.timeout)
        self._owns_client = client is None

    def _url(self, date: datetime.date) -> str:
        return (
            f"{self.config.base_url}/v1/cotizaciones/dolares/{self.config.casa}/"
            f"{date.year:04d}/{date.month:02d}/{date.day:02d}"
        )

    def lookup(self, date: datetime.date) -> Decimal | None:
        url = self._url(date)
        try:
            response = self._client.get(url)
        except httpx.HTTPError as e:
            raise RateProviderError(f"Erreur réseau pour le {date.isoformat()} : {e}") from e

        if response.status_code == 404:
            logger.debug("Pas de cotización le %s (jour non coté)", date.isoformat())
            return None
        if response.status_code in RETRYABLE_STATUS:
            raise RateProviderError(f"Réponse {response.status_code} du fournisseur pour le {date.isoformat()}")
        if response.status_code != 200:
            raise RateProviderError(
                f"Réponse inattendue {response.status_code} du fournisseur pour le {date.isoformat()}"
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise RateProviderError(f"JSON invalide pour le {date.isoformat()} : {e}") from e

        return _parse_sell_rate(payload, date)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


def _parse_sell_rate(payload: object, date: datetime.date) -> Decimal | None:
    """Extrait « venta » d'une réponse objet (ou liste d'un élément)."""
    if isinstance(payload, list):
        if not payload:
            return None
        payload = payload[-1]
    if not isinstance(payload, dict) or payload.get("venta") is None:
        raise RateProviderError(f"Réponse sans champ 'venta' pour le {date.isoformat()}")
    try:
        rate = Decimal(str(payload["venta"]))
    except InvalidOperation as e:
        raise RateProviderError(f"Valeur 'venta' invalide pour le {date.isoformat()} : {payload['venta']!r}") from e
    if not rate.is_finite() or rate <= 0:
        raise RateProviderError(f"Valeur 'venta' non positive pour le {date.isoformat()} : {rate}")
    return rate
