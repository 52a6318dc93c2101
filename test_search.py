"""Tests for the multi-source search orchestrator."""
import threading
import time
from unittest.mock import MagicMock

import pytest

from config import Settings
from errors import ErrorKind, RegistryError, ValidationError
from local_lookup import LocalLookup, init_db, save_company
from models import Announcement, Company, Source
from search import SearchCache, SearchOrchestrator, validate_query


def _carrefour(source, **kwargs):
    return Company("652014051", "CARREFOUR", source, **kwargs)


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "companies.db")
    init_db(path)
    save_company(path, Company(
        "652014051", "CARREFOUR", Source.LOCAL,
        siret="65201405100033", legal_form="SA à conseil d'administration", address="93 AV DE PARIS 91300 MASSY",
    ))
    save_company(path, Company("552032534", "DANONE", Source.LOCAL))
    return path


@pytest.fixture
def settings(db_path):
    return Settings(db_path=db_path)


def _remote(companies=None, side_effect=None):
    client = MagicMock()
    client.lookup.return_value = companies or []
    if side_effect is not None:
        client.lookup.side_effect = side_effect
    return client


def _orchestrator(settings, insee=None, bodacc=None):
    clients = {
        Source.LOCAL: LocalLookup(settings.db_path),
        Source.INSEE: insee or _remote(),
        Source.BODACC: bodacc or _remote(),
        Source.INPI: _remote(),
    }
    return SearchOrchestrator(settings, clients), clients


class TestValidation:
    """Tests for query validation before any I/O."""

    def test_short_query_rejected_without_io(self, settings):
        orchestrator, clients = _orchestrator(settings)
        with pytest.raises(ValidationError) as excinfo:
            orchestrator.search("ab")
        assert excinfo.value.kind == ErrorKind.VALIDATION_ERROR
        clients[Source.INSEE].lookup.assert_not_called()
        clients[Source.BODACC].lookup.assert_not_called()

    def test_markup_only_query_rejected(self):
        with pytest.raises(ValidationError):
            validate_query("<<a>>")

    def test_whitespace_padded_query_rejected(self):
        with pytest.raises(ValidationError):
            validate_query("   ab   ")

    def test_unknown_source_rejected(self, settings):
        orchestrator, _ = _orchestrator(settings)
        with pytest.raises(ValidationError):
            orchestrator.search("carrefour", source="pappers")


class TestCarrefourScenario:
    """One company seen by three sources comes back once, local first."""

    def test_merged_single_result(self, settings):
        insee = _remote([_carrefour(Source.INSEE, siret="65201405100033")])
        bodacc = _remote([_carrefour(
            Source.BODACC,
            last_announcement=Announcement("Dépôts des comptes", "2024-05-02", "Évry"),
        )])
        orchestrator, _ = _orchestrator(settings, insee, bodacc)

        envelope = orchestrator.search("carrefour")

        assert len(envelope.results) == 1
        company = envelope.results[0]
        assert company.siren == "652014051"
        assert company.source == Source.LOCAL
        assert company.address == "93 AV DE PARIS 91300 MASSY"
        assert company.matched_sources == ["insee", "bodacc"]
        assert company.last_announcement.date == "2024-05-02"
        assert envelope.sources == {"local": 1, "insee": 1, "bodacc": 1}
        assert envelope.errors == []

    def test_envelope_serialization(self, settings):
        orchestrator, _ = _orchestrator(settings)
        data = orchestrator.search("carrefour").to_dict()
        assert data["success"] is True
        assert data["originalQuery"] == "carrefour"
        assert data["results"][0]["source"] == "local"
        assert set(data) == {
            "success", "originalQuery", "query", "results", "total", "offset",
            "sources", "cached", "errors", "timestamp",
        }

    def test_lookup_by_siret_uses_siren(self, settings):
        orchestrator, clients = _orchestrator(settings)
        envelope = orchestrator.search("65201405100033")
        assert [c.siren for c in envelope.results] == ["652014051"]
        clients[Source.INSEE].lookup.assert_called_once_with("65201405100033", "siren")


class TestSourceFailures:
    """Source failures are returned as data next to the other sources' results."""

    def test_auth_error_reported(self, settings):
        insee = _remote(side_effect=RegistryError(ErrorKind.AUTH_ERROR, "INSEE OAuth failed: 401", "insee"))
        orchestrator, _ = _orchestrator(settings, insee=insee)

        envelope = orchestrator.search("carrefour")

        assert [c.siren for c in envelope.results] == ["652014051"]
        assert envelope.errors == [
            {"source": "insee", "type": "AUTH_ERROR", "message": "INSEE OAuth failed: 401"}
        ]
        assert envelope.sources["insee"] == 0

    def test_not_found_is_empty_slot(self, settings):
        insee = _remote(side_effect=RegistryError(ErrorKind.NOT_FOUND, "Aucun résultat", "insee"))
        orchestrator, _ = _orchestrator(settings, insee=insee)
        envelope = orchestrator.search("carrefour")
        assert envelope.errors == []
        assert envelope.sources["insee"] == 0

    def test_unexpected_exception_is_upstream_error(self, settings):
        bodacc = _remote(side_effect=KeyError("records"))
        orchestrator, _ = _orchestrator(settings, bodacc=bodacc)
        envelope = orchestrator.search("carrefour")
        assert envelope.errors[0]["source"] == "bodacc"
        assert envelope.errors[0]["type"] == "UPSTREAM_ERROR"

    def test_missing_database(self, tmp_path):
        settings = Settings(db_path=str(tmp_path / "missing.db"))
        insee = _remote([_carrefour(Source.INSEE)])
        orchestrator, _ = _orchestrator(settings, insee=insee)

        envelope = orchestrator.search("carrefour")

        assert envelope.errors[0]["source"] == "local"
        assert envelope.errors[0]["type"] == "DATABASE_ERROR"
        assert envelope.results[0].source == Source.INSEE

    def test_slow_source_times_out(self, db_path):
        settings = Settings(
            db_path=db_path,
            timeouts={"local": 5.0, "insee": 0.1, "bodacc": 5.0, "inpi": 5.0},
        )
        release = threading.Event()

        def slow_lookup(query, kind):
            release.wait(5)
            return [_carrefour(Source.INSEE)]

        insee = _remote(side_effect=slow_lookup)
        orchestrator, _ = _orchestrator(settings, insee=insee)
        started = time.monotonic()
        try:
            envelope = orchestrator.search("carrefour")
        finally:
            release.set()

        assert time.monotonic() - started < 3
        assert {"source": "insee", "type": "TIMEOUT"}.items() <= envelope.errors[0].items()
        assert envelope.sources["insee"] == 0
        assert [c.source for c in envelope.results] == [Source.LOCAL]


class TestSourceSelection:
    def test_local_only(self, settings):
        orchestrator, clients = _orchestrator(settings)
        envelope = orchestrator.search("carrefour", source="local")
        clients[Source.INSEE].lookup.assert_not_called()
        clients[Source.BODACC].lookup.assert_not_called()
        assert envelope.sources == {"local": 1, "insee": 0, "bodacc": 0}

    def test_disabled_source_not_called(self, db_path):
        settings = Settings(db_path=db_path, enabled={"local": True, "insee": False, "bodacc": True, "inpi": False})
        orchestrator, clients = _orchestrator(settings)
        envelope = orchestrator.search("carrefour")
        clients[Source.INSEE].lookup.assert_not_called()
        assert "insee" not in envelope.sources

    def test_sanitized_query_sent_to_sources(self, settings):
        orchestrator, clients = _orchestrator(settings)
        envelope = orchestrator.search("<carrefour>")
        assert envelope.original_query == "<carrefour>"
        assert envelope.query == "carrefour"
        clients[Source.BODACC].lookup.assert_called_once_with("carrefour", "name")

    def test_limit(self, settings):
        insee = _remote([Company(f"1000000{i:02d}", f"SOCIETE {i}", Source.INSEE) for i in range(30)])
        orchestrator, _ = _orchestrator(settings, insee=insee)
        envelope = orchestrator.search("societe")
        assert len(envelope.results) == settings.max_results

    def test_offset_pages_through_merged_results(self, settings):
        insee = _remote([Company(f"1000000{i:02d}", f"SOCIETE {i}", Source.INSEE) for i in range(30)])
        orchestrator, _ = _orchestrator(settings, insee=insee)
        envelope = orchestrator.search("societe", offset=20)
        assert [c.siren for c in envelope.results] == [f"1000000{i:02d}" for i in range(20, 30)]
        assert envelope.total == 30
        assert envelope.to_dict()["offset"] == 20

    def test_offset_past_the_end(self, settings):
        orchestrator, _ = _orchestrator(settings)
        envelope = orchestrator.search("carrefour", offset=5)
        assert envelope.results == []
        assert envelope.total == 1

    def test_negative_offset_rejected(self, settings):
        orchestrator, clients = _orchestrator(settings)
        with pytest.raises(ValidationError):
            orchestrator.search("carrefour", offset=-1)
        clients[Source.INSEE].lookup.assert_not_called()

    def test_active_only(self, settings):
        insee = _remote([
            Company("100000001", "SOCIETE ACTIVE", Source.INSEE, active=True),
            Company("100000002", "SOCIETE CESSEE", Source.INSEE, active=False),
        ])
        orchestrator, _ = _orchestrator(settings, insee=insee)

        envelope = orchestrator.search("societe", active_only=True)

        assert [c.siren for c in envelope.results] == ["100000001"]
        assert envelope.total == 1
        assert envelope.sources["insee"] == 2


class TestConcurrency:
    def test_slow_sources_run_in_parallel(self, settings):
        def slow(companies):
            def lookup(query, kind):
                time.sleep(1)
                return companies
            return _remote(side_effect=lookup)

        clients = {
            Source.LOCAL: slow([_carrefour(Source.LOCAL)]),
            Source.INSEE: slow([_carrefour(Source.INSEE)]),
            Source.BODACC: slow([]),
        }
        orchestrator = SearchOrchestrator(settings, clients)

        started = time.monotonic()
        envelope = orchestrator.search("carrefour")
        elapsed = time.monotonic() - started

        assert elapsed < 2
        assert envelope.sources == {"local": 1, "insee": 1, "bodacc": 0}
        assert envelope.errors == []


class TestEmptyLocalTable:
    def test_remote_hit_with_empty_local_table(self, tmp_path):
        path = str(tmp_path / "companies.db")
        init_db(path)
        settings = Settings(db_path=path)
        insee = _remote([_carrefour(Source.INSEE, siret="65201405100033")])
        bodacc = _remote([])
        orchestrator, _ = _orchestrator(settings, insee=insee, bodacc=bodacc)

        envelope = orchestrator.search("carrefour")

        assert envelope.sources == {"local": 0, "insee": 1, "bodacc": 0}
        assert envelope.errors == []
        assert [(c.siren, c.source) for c in envelope.results] == [("652014051", Source.INSEE)]


class TestSearchCache:
    """Remote slots are reused for a few minutes; the local table never is."""

    def _cached_orchestrator(self, settings, insee, now):
        local = MagicMock(wraps=LocalLookup(settings.db_path))
        clients = {Source.LOCAL: local, Source.INSEE: insee, Source.BODACC: _remote()}
        cache = SearchCache(300, clock=lambda: now[0])
        return SearchOrchestrator(settings, clients, cache=cache), clients

    def test_second_search_served_from_cache(self, settings):
        now = [1000.0]
        insee = _remote([_carrefour(Source.INSEE)])
        orchestrator, clients = self._cached_orchestrator(settings, insee, now)

        first = orchestrator.search("carrefour")
        second = orchestrator.search("Carrefour")

        assert insee.lookup.call_count == 1
        assert clients[Source.BODACC].lookup.call_count == 1
        assert clients[Source.LOCAL].lookup.call_count == 2
        assert first.cached == []
        assert second.cached == ["insee", "bodacc"]
        assert second.sources == first.sources
        assert [c.siren for c in second.results] == ["652014051"]

    def test_entries_expire(self, settings):
        now = [1000.0]
        insee = _remote([_carrefour(Source.INSEE)])
        orchestrator, _ = self._cached_orchestrator(settings, insee, now)

        orchestrator.search("carrefour")
        now[0] += 301
        envelope = orchestrator.search("carrefour")

        assert insee.lookup.call_count == 2
        assert envelope.cached == []

    def test_failures_not_cached(self, settings):
        now = [1000.0]
        insee = _remote(side_effect=[
            RegistryError(ErrorKind.RATE_LIMITED, "Quota INSEE atteint", "insee"),
            [_carrefour(Source.INSEE)],
        ])
        orchestrator, _ = self._cached_orchestrator(settings, insee, now)

        first = orchestrator.search("carrefour")
        second = orchestrator.search("carrefour")

        assert first.errors[0]["type"] == "RATE_LIMITED"
        assert second.errors == []
        assert second.sources["insee"] == 1
        assert insee.lookup.call_count == 2

    def test_not_found_cached_as_empty(self, settings):
        now = [1000.0]
        insee = _remote(side_effect=RegistryError(ErrorKind.NOT_FOUND, "Aucun résultat", "insee"))
        orchestrator, _ = self._cached_orchestrator(settings, insee, now)

        orchestrator.search("carrefour")
        envelope = orchestrator.search("carrefour")

        assert insee.lookup.call_count == 1
        assert envelope.sources["insee"] == 0
        assert "insee" in envelope.cached

    def test_zero_ttl_disables_cache(self):
        cache = SearchCache(0)
        cache.put(Source.INSEE, "carrefour", "name", [_carrefour(Source.INSEE)])
        assert cache.get(Source.INSEE, "carrefour", "name") is None
        assert len(cache) == 0

    def test_key_includes_kind(self):
        cache = SearchCache(300)
        cache.put(Source.INSEE, "652014051", "siren", [_carrefour(Source.INSEE)])
        assert cache.get(Source.INSEE, "652014051", "name") is None
        assert len(cache.get(Source.INSEE, "652014051", "siren")) == 1
