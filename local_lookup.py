"""
Local company table (SQLite).

Search only reads; ``save_company`` is used when a company is synced from a
registry so that later searches find it locally.
"""

import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional

from errors import ErrorKind, RegistryError
from models import Company, Source
from normalizer import detect_kind, normalize

logger = logging.getLogger(__name__)

DB_SCHEMA = """
CREATE TABLE IF NOT EXISTS companies (
    id INTEGER PRIMARY KEY,
    siren TEXT NOT NULL UNIQUE,
    siret TEXT,
    denomination TEXT NOT NULL,
    legal_form TEXT,
    legal_form_code TEXT,
    active INTEGER NOT NULL DEFAULT 1,
    creation_date TEXT,
    address TEXT,
    activity_code TEXT,
    activity_label TEXT,
    capital REAL,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_companies_denomination ON companies(denomination);
"""

UPSERT_SQL = """
INSERT INTO companies (
    siren, siret, denomination, legal_form, legal_form_code, active,
    creation_date, address, activity_code, activity_label, capital, updated_at
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
ON CONFLICT(siren) DO UPDATE SET
    siret = excluded.siret,
    denomination = excluded.denomination,
    legal_form = excluded.legal_form,
    legal_form_code = excluded.legal_form_code,
    active = excluded.active,
    creation_date = excluded.creation_date,
    address = excluded.address,
    activity_code = excluded.activity_code,
    activity_label = excluded.activity_label,
    capital = excluded.capital,
    updated_at = CURRENT_TIMESTAMP
"""

SEARCH_COLUMNS = (
    "siren, siret, denomination, legal_form, legal_form_code, active, "
    "creation_date, address, activity_code, activity_label, capital"
)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def init_db(db_path: str) -> None:
    """Create the companies table if needed."""
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    try:
        conn.executescript(DB_SCHEMA)
        conn.commit()
    finally:
        conn.close()


def save_company(db_path: str, company: Company) -> None:
    """Insert or refresh a company row keyed by SIREN."""
    conn = sqlite3.connect(db_path)
    try:
        conn.execute(
            UPSERT_SQL,
            (
                company.siren,
                company.siret,
                company.denomination,
                company.legal_form,
                company.legal_form_code,
                1 if company.active else 0,
                company.creation_date,
                company.address,
                company.activity_code,
                company.activity_label,
                company.capital,
            ),
        )
        conn.commit()
    except sqlite3.Error as exc:
        raise RegistryError(ErrorKind.DATABASE_ERROR, str(exc), Source.LOCAL.value) from exc
    finally:
        conn.close()


class LocalLookup:
    """Substring / prefix match over the local companies table."""

    source = Source.LOCAL

    def __init__(self, db_path: str, limit: int = 10):
        self.db_path = db_path
        self.limit = limit

    def _connect(self) -> sqlite3.Connection:
        path = Path(self.db_path)
        if not path.exists():
            raise RegistryError(
                ErrorKind.DATABASE_ERROR,
                f"Base locale introuvable: {self.db_path}",
                self.source.value,
            )
        conn = sqlite3.connect(f"file:{path}?mode=ro", uri=True)
        conn.row_factory = sqlite3.Row
        return conn

    def fetch_rows(self, query: str, kind: str = "auto") -> List[Dict[str, Any]]:
        kind = detect_kind(query) if kind == "auto" else kind
        term = _escape_like(query.strip().replace(" ", "") if kind == "siren" else query.strip())

        if kind == "siren":
            # SIRET queries are matched on their SIREN part.
            sql = f"SELECT {SEARCH_COLUMNS} FROM companies WHERE siren LIKE ? ESCAPE '\\' LIMIT ?"
            params = (term[:9] + "%", self.limit)
        else:
            sql = (
                f"SELECT {SEARCH_COLUMNS} FROM companies "
                "WHERE denomination LIKE ? ESCAPE '\\' OR siren LIKE ? ESCAPE '\\' "
                "ORDER BY denomination LIMIT ?"
            )
            params = (f"%{term}%", f"%{term}%", self.limit)

        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise RegistryError(ErrorKind.DATABASE_ERROR, str(exc), self.source.value) from exc

        try:
            rows = [dict(r) for r in conn.execute(sql, params).fetchall()]
        except sqlite3.Error as exc:
            logger.warning("SQLite error for %r: %s", query, exc)
            raise RegistryError(ErrorKind.DATABASE_ERROR, str(exc), self.source.value) from exc
        finally:
            conn.close()

        logger.info("Local lookup %r: %d row(s)", query, len(rows))
        return rows

    def lookup(self, query: str, kind: str = "auto") -> List[Company]:
        return normalize(self.source, self.fetch_rows(query, kind))

    def get(self, siren: str) -> Optional[Company]:
        companies = self.lookup(siren, "siren")
        for company in companies:
            if company.siren == siren:
                return company
        return None
