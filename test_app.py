"""Tests for the helpers of the Streamlit front end."""
import os
import sys
import tempfile
from pathlib import Path

import pandas as pd
from unittest.mock import MagicMock, patch

from batch_download import BatchResult, CartStore
from config import Settings
from errors import ValidationError
from local_lookup import LocalLookup, init_db
from models import Announcement, Company, DocumentType, DownloadProgress, DownloadState, SearchEnvelope, Source


def _context_manager():
    cm = MagicMock()
    cm.__enter__ = MagicMock(return_value=cm)
    cm.__exit__ = MagicMock(return_value=False)
    return cm


def _import_app():
    """Import app module while mocking Streamlit to avoid UI initialization."""
    mock_st = MagicMock()
    mock_st.session_state = {}
    mock_st.sidebar = _context_manager()
    mock_st.text_input = MagicMock(return_value="")
    mock_st.selectbox = MagicMock(return_value="all")
    mock_st.button = MagicMock(return_value=False)
    mock_st.spinner = MagicMock(return_value=_context_manager())
    mock_st.expander = MagicMock(return_value=_context_manager())
    mock_st.tabs = MagicMock(return_value=[_context_manager(), _context_manager()])
    mock_st.columns = MagicMock(side_effect=lambda n: [_context_manager() for _ in range(n if isinstance(n, int) else len(n))])

    workdir = Path(tempfile.mkdtemp())
    env = {"COMPANY_DB_PATH": str(workdir / "companies.db"), "UPLOADS_DIR": str(workdir / "uploads")}
    with patch.dict(sys.modules, {'streamlit': mock_st}), patch.dict(os.environ, env):
        if 'app' in sys.modules:
            del sys.modules['app']
        import app
        return app, mock_st


app, mock_st = _import_app()


def _carrefour(**kwargs):
    defaults = dict(
        siret="65201405100033",
        legal_form="SA à conseil d'administration",
        creation_date="1965-01-01",
        address="93 AV DE PARIS 91300 MASSY",
        activity_code="70.10Z",
        capital=1000000.0,
        matched_sources=["insee", "bodacc"],
        last_announcement=Announcement("Dépôts des comptes", "2024-05-02", "Évry"),
    )
    defaults.update(kwargs)
    return Company("652014051", "CARREFOUR", Source.LOCAL, **defaults)


class TestStartup:
    def test_cart_created_in_session(self):
        assert isinstance(mock_st.session_state["cart"], CartStore)

    def test_nothing_searched_without_click(self):
        assert "envelope" not in mock_st.session_state

    def test_local_table_created_at_startup(self):
        assert Path(app.SETTINGS.db_path).exists()
        assert LocalLookup(app.SETTINGS.db_path).lookup("carrefour", "name") == []


class TestCompaniesToRows:
    """Tests for result table rows."""

    def test_row_fields(self):
        [row] = app.companies_to_rows([_carrefour()])
        assert row["SIREN"] == "652014051"
        assert row["État administratif"] == "Active"
        assert row["Source"] == "local"
        assert row["Autres sources"] == "insee, bodacc"
        assert row["Dernière annonce"] == "Dépôts des comptes (2024-05-02)"
        assert "1,000,000" in row["Capital"]

    def test_missing_values(self):
        company = Company("552032534", "DANONE", Source.BODACC, active=False)
        [row] = app.companies_to_rows([company])
        assert row["SIRET"] == "N/A"
        assert row["État administratif"] == "Cessée"
        assert row["Autres sources"] == "-"
        assert row["Dernière annonce"] == "-"
        assert row["Capital"] == "N/A"

    def test_dataframe_export(self):
        df = pd.DataFrame(app.companies_to_rows([_carrefour()]))
        assert list(df["SIREN"]) == ["652014051"]


class TestCartItems:
    def test_item_id_and_description(self):
        item = app.cart_item_for(_carrefour(), "insee", Settings(insee_consumer_key="k", insee_consumer_secret="s"))
        assert item.id == "insee-652014051"
        assert item.siret == "65201405100033"
        assert item.available is True
        assert item.description == app.DOCUMENT_LABELS[DocumentType.INSEE]

    def test_unconfigured_source_unavailable(self):
        item = app.cart_item_for(_carrefour(), "inpi", Settings())
        assert item.available is False

    def test_bodacc_always_available(self):
        assert app.available_documents(Settings())[DocumentType.BODACC] is True


class TestDownloadButtons:
    def test_csv_button(self):
        mock_st.download_button.reset_mock()
        df = pd.DataFrame(app.companies_to_rows([_carrefour()]))
        app.create_download_button(df, "CSV", "t")
        kwargs = mock_st.download_button.call_args[1]
        assert kwargs["mime"] == "text/csv"
        assert kwargs["data"].decode("utf-8").startswith("SIREN,")

    def test_xlsx_button(self):
        mock_st.download_button.reset_mock()
        df = pd.DataFrame(app.companies_to_rows([_carrefour()]))
        app.create_download_button(df, "XLSX", "t")
        kwargs = mock_st.download_button.call_args[1]
        assert kwargs["file_name"] == "entreprises.xlsx"


class TestDisplay:
    def test_no_results(self):
        mock_st.info.reset_mock()
        envelope = SearchEnvelope("xyz", "xyz", [], {"local": 0}, [])
        app.display_results(envelope, CartStore())
        mock_st.info.assert_called_with("Aucun résultat.")

    def test_source_errors_shown(self):
        mock_st.warning.reset_mock()
        envelope = SearchEnvelope("xyz", "xyz", [], {"insee": 0}, [
            {"source": "insee", "type": "TIMEOUT", "message": "Pas de réponse après 15s"},
        ])
        app.display_results(envelope, CartStore())
        assert "INSEE SIRENE" in mock_st.warning.call_args[0][0]


class TestLocalDatabase:
    """Tests for preparing and filling the local companies table."""

    def test_prepare_creates_table(self, tmp_path):
        settings = Settings(db_path=str(tmp_path / "data" / "companies.db"))
        assert app.prepare_local_db(settings) is True
        assert LocalLookup(settings.db_path).lookup("carrefour", "name") == []

    def test_prepare_failure_warns(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        mock_st.warning.reset_mock()
        assert app.prepare_local_db(Settings(db_path=str(blocker / "companies.db"))) is False
        assert "Base locale indisponible" in mock_st.warning.call_args[0][0]

    def test_save_registry_result(self, tmp_path):
        settings = Settings(db_path=str(tmp_path / "companies.db"))
        init_db(settings.db_path)
        mock_st.success.reset_mock()

        company = Company(
            "652014051", "CARREFOUR", Source.INSEE, siret="65201405100033", address="93 AV DE PARIS 91300 MASSY",
        )
        assert app.save_to_local(company, settings) is True

        [company] = LocalLookup(settings.db_path).lookup("652014051", "siren")
        assert company.source == Source.LOCAL
        assert company.siret == "65201405100033"
        assert company.address == "93 AV DE PARIS 91300 MASSY"
        mock_st.success.assert_called_once()

    def test_save_without_table_shows_error(self, tmp_path):
        settings = Settings(db_path=str(tmp_path / "empty.db"))
        mock_st.error.reset_mock()
        assert app.save_to_local(Company("652014051", "CARREFOUR", Source.INSEE), settings) is False
        assert mock_st.error.call_args[0][0].startswith("❌")


class TestRunCartDownload:
    """Tests for the cart batch download."""

    def test_successful_items_leave_cart(self):
        cart = CartStore()
        cart.add(app.cart_item_for(_carrefour(), "bodacc"))
        cart.add(app.cart_item_for(_carrefour(), "inpi"))
        result = BatchResult(
            successful=[{"item": {"id": "bodacc-652014051"}, "artifact": {}}],
            failed=[{"item": {"id": "inpi-652014051"}, "error": {"type": "NOT_CONFIGURED"}}],
        )
        with patch.object(app, "BatchDownloadManager") as manager_cls, patch.object(app, "DocumentMaterializer"):
            manager_cls.return_value.run_batch.return_value = result
            returned = app.run_cart_download(cart)

        assert returned is result
        assert [i.id for i in cart.items] == ["inpi-652014051"]

    def test_progress_callback_updates_cart(self):
        cart = CartStore()
        cart.add(app.cart_item_for(_carrefour(), "bodacc"))

        def fake_run(items):
            callback = manager_cls.call_args[1]["on_progress"]
            callback(DownloadProgress("bodacc-652014051", DownloadState.DOWNLOADING, 50))
            return BatchResult()

        with patch.object(app, "BatchDownloadManager") as manager_cls, patch.object(app, "DocumentMaterializer"):
            manager_cls.return_value.run_batch.side_effect = fake_run
            app.run_cart_download(cart)

        assert cart.progress["bodacc-652014051"].progress == 50

    def test_empty_cart_error(self):
        mock_st.error.reset_mock()
        with patch.object(app, "BatchDownloadManager") as manager_cls, patch.object(app, "DocumentMaterializer"):
            manager_cls.return_value.run_batch.side_effect = ValidationError("Aucun document à télécharger")
            assert app.run_cart_download(CartStore()) is None
        mock_st.error.assert_called_once()
