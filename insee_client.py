"""
INSEE SIRENE API client.

Authentication is OAuth2 client-credentials: the consumer key/secret are
exchanged for a bearer token which is cached until shortly before it
expires. Concurrent callers hitting an expired token share one refresh.
"""

import logging
import threading
import time
from typing import Any, Dict, List, Optional

import requests

from config import Settings
from errors import ErrorKind, RegistryError, error_kind_for_status
from models import Company, Source
from normalizer import detect_kind, normalize, siren_from_query

logger = logging.getLogger(__name__)

TOKEN_EXPIRY_MARGIN = 60  # seconds
SEARCH_PAGE_SIZE = 20


class InseeTokenCache:
    """Client-credentials token, refreshed once per expiry."""

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.session = session or requests.Session()
        # (token, monotonic expiry) swapped as a whole
        self._cached = (None, 0.0)
        self._lock = threading.Lock()

    def _current(self) -> Optional[str]:
        token, expires_at = self._cached
        if token is not None and time.monotonic() < expires_at:
            return token
        return None

    def get_token(self) -> str:
        if not self.settings.insee_configured:
            raise RegistryError(
                ErrorKind.NOT_CONFIGURED,
                "INSEE_CONSUMER_KEY / INSEE_CONSUMER_SECRET non configurés",
                Source.INSEE.value,
            )
        token = self._current()
        if token:
            return token
        with self._lock:
            # Another thread may have refreshed while we waited.
            token = self._current()
            if token:
                return token
            self._cached = self._request_token()
            return self._cached[0]

    def _request_token(self):
        logger.info("Requesting new INSEE access token")
        try:
            resp = self.session.post(
                self.settings.insee_token_url,
                data={"grant_type": "client_credentials"},
                auth=(self.settings.insee_consumer_key, self.settings.insee_consumer_secret),
                headers={"User-Agent": self.settings.user_agent},
                timeout=self.settings.timeouts["insee"],
            )
        except requests.Timeout as exc:
            raise RegistryError(ErrorKind.TIMEOUT, f"INSEE token timeout: {exc}", Source.INSEE.value) from exc
        except requests.RequestException as exc:
            raise RegistryError(ErrorKind.AUTH_ERROR, f"INSEE OAuth failed: {exc}", Source.INSEE.value) from exc

        if resp.status_code != 200:
            raise RegistryError(
                ErrorKind.AUTH_ERROR,
                f"INSEE OAuth failed: {resp.status_code}",
                Source.INSEE.value,
            )
        try:
            data = resp.json()
            token = data["access_token"]
            ttl = float(data.get("expires_in", 0))
        except (ValueError, KeyError, TypeError) as exc:
            raise RegistryError(
                ErrorKind.AUTH_ERROR, "INSEE OAuth: malformed token response", Source.INSEE.value
            ) from exc

        logger.info("INSEE token obtained, valid for %ds", int(ttl))
        return token, time.monotonic() + max(ttl - TOKEN_EXPIRY_MARGIN, 0)

    def invalidate(self) -> None:
        self._cached = (None, 0.0)


class InseeClient:
    source = Source.INSEE

    def __init__(
        self,
        settings: Settings,
        session: Optional[requests.Session] = None,
        token_cache: Optional[InseeTokenCache] = None,
    ):
        self.settings = settings
        self.session = session or requests.Session()
        self.tokens = token_cache or InseeTokenCache(settings, self.session)

    @property
    def timeout(self) -> float:
        return self.settings.timeouts["insee"]

    def _get(self, url: str, params: Optional[Dict[str, Any]] = None, accept: str = "application/json"):
        token = self.tokens.get_token()
        try:
            resp = self.session.get(
                url,
                params=params,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Accept": accept,
                    "User-Agent": self.settings.user_agent,
                },
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            raise RegistryError(ErrorKind.TIMEOUT, f"INSEE timeout: {exc}", self.source.value) from exc
        except requests.RequestException as exc:
            raise RegistryError(ErrorKind.UPSTREAM_ERROR, f"INSEE non accessible: {exc}", self.source.value) from exc

        if resp.status_code == 401:
            self.tokens.invalidate()
        if resp.status_code != 200:
            kind = error_kind_for_status(resp.status_code)
            raise RegistryError(kind, f"INSEE API error: {resp.status_code}", self.source.value)
        return resp

    def _json(self, resp) -> Dict[str, Any]:
        try:
            return resp.json()
        except ValueError as exc:
            raise RegistryError(ErrorKind.UPSTREAM_ERROR, "INSEE: réponse non JSON", self.source.value) from exc

    def fetch_records(self, query: str, kind: str = "auto") -> List[Dict[str, Any]]:
        kind = detect_kind(query) if kind == "auto" else kind

        if kind == "siren":
            digits = siren_from_query(query)
            if len(digits) == 9:
                data = self._json(self._get(f"{self.settings.insee_api_url}/siren/{digits}"))
                unite = data.get("uniteLegale")
                records = [unite] if unite else []
            else:
                params = {"q": f"siren:{digits}*", "nombre": SEARCH_PAGE_SIZE}
                data = self._json(self._get(f"{self.settings.insee_api_url}/siret", params))
                records = data.get("etablissements") or []
        else:
            name = query.replace('"', " ").strip()
            params = {"q": f'denominationUniteLegale:"{name}"', "nombre": SEARCH_PAGE_SIZE}
            data = self._json(self._get(f"{self.settings.insee_api_url}/siret", params))
            records = data.get("etablissements") or []

        if not records:
            raise RegistryError(ErrorKind.NOT_FOUND, f"Aucun résultat INSEE pour {query!r}", self.source.value)
        logger.info("INSEE %s lookup %r: %d record(s)", kind, query, len(records))
        return records

    def lookup(self, query: str, kind: str = "auto") -> List[Company]:
        return normalize(self.source, self.fetch_records(query, kind))

    def get_siege_siret(self, siren: str) -> str:
        """Head office SIRET for a SIREN."""
        for company in self.lookup(siren, "siren"):
            if company.siren == siren and company.siret:
                return company.siret
        raise RegistryError(ErrorKind.NOT_FOUND, f"SIRET du siège introuvable pour {siren}", self.source.value)

    def download_pdf(self, siret: str) -> bytes:
        """Fetch the "avis de situation" PDF for an establishment."""
        resp = self._get(f"{self.settings.insee_pdf_url}/{siret}", accept="application/pdf")
        return resp.content
