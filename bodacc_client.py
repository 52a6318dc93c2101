"""
BODACC client (OpenDataSoft v2 "annonces-commerciales" dataset).

Public API, no authentication. Filters use the ODSQL ``where`` syntax.
"""

import logging
from typing import Any, Dict, List, Optional

import requests

from config import Settings
from errors import ErrorKind, RegistryError, error_kind_for_status
from models import Company, Source
from normalizer import detect_kind, normalize, siren_from_query

logger = logging.getLogger(__name__)

SEARCH_LIMIT = 20
REPORT_LIMIT = 100


def build_where(query: str, kind: str) -> str:
    """Translate a user query into an ODSQL filter."""
    if kind == "siren":
        return f'registre like "{siren_from_query(query)}%"'
    name = query.replace('"', " ").strip()
    return f'commercant like "%{name}%"'


class BodaccClient:
    source = Source.BODACC

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.session = session or requests.Session()

    def _records(self, where: str, limit: int) -> Dict[str, Any]:
        params = {
            "where": where,
            "limit": limit,
            "order_by": "dateparution desc",
            "timezone": "Europe/Paris",
        }
        try:
            resp = self.session.get(
                self.settings.bodacc_api_url,
                params=params,
                headers={"User-Agent": self.settings.user_agent, "Accept": "application/json"},
                timeout=self.settings.timeouts["bodacc"],
            )
        except requests.Timeout as exc:
            raise RegistryError(ErrorKind.TIMEOUT, f"BODACC API timeout: {exc}", self.source.value) from exc
        except requests.RequestException as exc:
            raise RegistryError(ErrorKind.UPSTREAM_ERROR, f"BODACC API non accessible: {exc}", self.source.value) from exc

        if resp.status_code != 200:
            raise RegistryError(
                error_kind_for_status(resp.status_code),
                f"BODACC API error: {resp.status_code}",
                self.source.value,
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise RegistryError(ErrorKind.UPSTREAM_ERROR, "BODACC: réponse non JSON", self.source.value) from exc

    def fetch_records(self, query: str, kind: str = "auto") -> List[Dict[str, Any]]:
        kind = detect_kind(query) if kind == "auto" else kind
        data = self._records(build_where(query, kind), SEARCH_LIMIT)
        records = data.get("records") or []
        logger.info("BODACC %s lookup %r: %d record(s) / %s", kind, query, len(records), data.get("total_count", 0))
        return records

    def lookup(self, query: str, kind: str = "auto") -> List[Company]:
        return normalize(self.source, self.fetch_records(query, kind))

    def fetch_announcements(self, siren: str, limit: int = REPORT_LIMIT) -> Dict[str, Any]:
        """Raw announcements for one SIREN, newest first."""
        data = self._records(build_where(siren, "siren"), limit)
        return {"records": data.get("records") or [], "total_count": data.get("total_count", 0)}
