"""
Multi-source company search.

One query is fanned out to the local table and the enabled registry
clients at the same time; each source gets its own deadline and its own
result slot. Source failures end up in the envelope's ``errors`` list,
only an invalid query raises.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from typing import Callable, Dict, List, Optional, Protocol, Tuple

import requests

from bodacc_client import BodaccClient
from config import Settings
from errors import ErrorKind, RegistryError, ValidationError
from inpi_client import InpiClient
from insee_client import InseeClient
from local_lookup import LocalLookup
from models import SOURCE_PRECEDENCE, Company, SearchEnvelope, Source
from normalizer import detect_kind, merge_results, sanitize_query

logger = logging.getLogger(__name__)

MIN_QUERY_LENGTH = 3
TIMEOUT_GRACE = 0.5  # seconds on top of each source timeout


class RegistryLookup(Protocol):
    source: Source

    def lookup(self, query: str, kind: str = "auto") -> List[Company]:
        ...


def build_clients(settings: Settings, session: Optional[requests.Session] = None) -> Dict[Source, RegistryLookup]:
    session = session or requests.Session()
    return {
        Source.LOCAL: LocalLookup(settings.db_path, limit=settings.max_results),
        Source.INSEE: InseeClient(settings, session),
        Source.BODACC: BodaccClient(settings, session),
        Source.INPI: InpiClient(settings, session),
    }


class SearchCache:
    """Remote lookup results kept in memory for ``ttl`` seconds.

    Keyed by (source, sanitized query, kind). Only successful lookups are
    stored; the local table is never cached.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self._entries: Dict[Tuple[str, str, str], Tuple[float, List[Company]]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def key(source: Source, query: str, kind: str) -> Tuple[str, str, str]:
        return (source.value, query.lower(), kind)

    def get(self, source: Source, query: str, kind: str) -> Optional[List[Company]]:
        if self.ttl <= 0:
            return None
        key = self.key(source, query, kind)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, companies = entry
            if self.clock() >= expires_at:
                del self._entries[key]
                return None
        return list(companies)

    def put(self, source: Source, query: str, kind: str, companies: List[Company]) -> None:
        if self.ttl <= 0:
            return
        with self._lock:
            self._entries[self.key(source, query, kind)] = (self.clock() + self.ttl, list(companies))

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def validate_query(query: Optional[str]) -> str:
    """Return the sanitized query or raise ``ValidationError``."""
    sanitized = sanitize_query(query or "")
    if len(sanitized) < MIN_QUERY_LENGTH:
        raise ValidationError(f"La recherche doit contenir au moins {MIN_QUERY_LENGTH} caractères")
    return sanitized


def _page_option(value: Optional[int], name: str, default: int) -> int:
    if value is None:
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Paramètre {name} invalide: {value}")
    if number < 0:
        raise ValidationError(f"Le paramètre {name} doit être positif")
    return number


class SearchOrchestrator:
    def __init__(
        self,
        settings: Settings,
        clients: Optional[Dict[Source, RegistryLookup]] = None,
        cache: Optional[SearchCache] = None,
    ):
        self.settings = settings
        self.clients = clients if clients is not None else build_clients(settings)
        self.cache = cache if cache is not None else SearchCache(settings.search_cache_ttl)

    def enabled_sources(self) -> List[Source]:
        return [
            s for s in SOURCE_PRECEDENCE
            if self.settings.enabled.get(s.value, False) and s in self.clients
        ]

    def _selected(self, source: str) -> List[Source]:
        enabled = self.enabled_sources()
        if source in (None, "", "all"):
            return enabled
        try:
            wanted = Source(source)
        except ValueError:
            raise ValidationError(f"Source inconnue: {source}")
        return [s for s in enabled if s == wanted]

    def _timeout(self, source: Source) -> float:
        return self.settings.timeouts.get(source.value, 10.0)

    def search(
        self,
        query: str,
        source: str = "all",
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        active_only: bool = False,
    ) -> SearchEnvelope:
        """
        Run one search on the selected sources and merge the slots.

        ``offset`` and ``limit`` page through the merged, deduplicated list;
        ``active_only`` drops companies known to have ceased activity.
        """
        sanitized = validate_query(query)
        selected = self._selected(source)
        kind = detect_kind(sanitized)
        limit = _page_option(limit, "limit", self.settings.max_results)
        offset = _page_option(offset, "offset", 0)

        slots: Dict[Source, List[Company]] = {s: [] for s in selected}
        failures: Dict[Source, RegistryError] = {}
        cached: List[Source] = []

        for s in selected:
            if s == Source.LOCAL:
                continue
            hit = self.cache.get(s, sanitized, kind)
            if hit is not None:
                slots[s] = hit
                cached.append(s)
        pending = [s for s in selected if s not in cached]

        logger.info(
            "Search %r (%s) on %s, cached %s",
            sanitized, kind, [s.value for s in pending], [s.value for s in cached],
        )

        if pending:
            executor = ThreadPoolExecutor(max_workers=len(pending), thread_name_prefix="search")
            started = time.monotonic()
            try:
                futures = {s: executor.submit(self.clients[s].lookup, sanitized, kind) for s in pending}
                for s in sorted(pending, key=self._timeout):
                    remaining = started + self._timeout(s) + TIMEOUT_GRACE - time.monotonic()
                    try:
                        slots[s] = futures[s].result(timeout=max(remaining, 0))
                    except FuturesTimeout:
                        failures[s] = RegistryError(
                            ErrorKind.TIMEOUT, f"Pas de réponse après {self._timeout(s):.0f}s", s.value
                        )
                        continue
                    except RegistryError as exc:
                        if exc.kind != ErrorKind.NOT_FOUND:
                            exc.source = exc.source or s.value
                            failures[s] = exc
                            continue
                    except Exception as exc:
                        kind_for_source = ErrorKind.DATABASE_ERROR if s == Source.LOCAL else ErrorKind.UPSTREAM_ERROR
                        failures[s] = RegistryError(kind_for_source, str(exc), s.value)
                        continue
                    if s != Source.LOCAL:
                        self.cache.put(s, sanitized, kind, slots[s])
            finally:
                # Sources still running past their deadline are abandoned.
                executor.shutdown(wait=False, cancel_futures=True)

        for s, exc in failures.items():
            logger.warning("Search source %s failed: %s (%s)", s.value, exc.kind.value, exc.message)

        merged = merge_results(slots)
        if active_only:
            merged = [c for c in merged if c.active]
        results = merged[offset:offset + limit]
        counts = {s.value: len(slots.get(s, [])) for s in self.enabled_sources()}
        errors = [failures[s].to_dict() for s in SOURCE_PRECEDENCE if s in failures]

        logger.info(
            "Search %r: %d of %d merged result(s), %d error(s)",
            sanitized, len(results), len(merged), len(errors),
        )
        return SearchEnvelope(
            original_query=query,
            query=sanitized,
            results=results,
            sources=counts,
            errors=errors,
            total=len(merged),
            offset=offset,
            cached=[s.value for s in cached],
        )
