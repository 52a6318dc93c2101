"""
INPI client: RNE company lookup and PDF export.

Authenticated by a bearer token supplied through ``INPI_API_TOKEN``.
"""

import json
import logging
from typing import Any, Dict, List, Optional

import requests

from config import Settings
from errors import ErrorKind, RegistryError, error_kind_for_status
from models import Company, Source
from normalizer import detect_kind, normalize, siren_from_query

logger = logging.getLogger(__name__)


class InpiClient:
    source = Source.INPI

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.session = session or requests.Session()

    def _get(self, url: str, params: Optional[Dict[str, Any]] = None, accept: str = "application/json"):
        if not self.settings.inpi_configured:
            raise RegistryError(ErrorKind.NOT_CONFIGURED, "INPI_API_TOKEN non configuré", self.source.value)
        try:
            resp = self.session.get(
                url,
                params=params,
                headers={
                    "Authorization": f"Bearer {self.settings.inpi_token}",
                    "Accept": accept,
                    "User-Agent": self.settings.user_agent,
                },
                timeout=self.settings.timeouts["inpi"],
            )
        except requests.Timeout as exc:
            raise RegistryError(ErrorKind.TIMEOUT, f"INPI timeout: {exc}", self.source.value) from exc
        except requests.RequestException as exc:
            raise RegistryError(ErrorKind.UPSTREAM_ERROR, f"INPI non accessible: {exc}", self.source.value) from exc

        if resp.status_code != 200:
            raise RegistryError(
                error_kind_for_status(resp.status_code),
                f"INPI API error: {resp.status_code}",
                self.source.value,
            )
        return resp

    def fetch_records(self, query: str, kind: str = "auto") -> List[Dict[str, Any]]:
        kind = detect_kind(query) if kind == "auto" else kind
        siren = siren_from_query(query)
        if kind != "siren" or len(siren) != 9:
            # The RNE API is only queried by exact SIREN.
            return []
        resp = self._get(f"{self.settings.inpi_api_url}/companies/{siren}")
        try:
            data = resp.json()
        except ValueError as exc:
            raise RegistryError(ErrorKind.UPSTREAM_ERROR, "INPI: réponse non JSON", self.source.value) from exc
        return [data] if isinstance(data, dict) and data else []

    def lookup(self, query: str, kind: str = "auto") -> List[Company]:
        return normalize(self.source, self.fetch_records(query, kind))

    def download_pdf(self, siren: str) -> bytes:
        params = {"format": "pdf", "ids": json.dumps([siren]), "est": "all"}
        resp = self._get(self.settings.inpi_export_url, params=params, accept="application/pdf")
        logger.info("INPI export for %s: %d bytes", siren, len(resp.content))
        return resp.content
