"""
Runtime configuration, read from the environment (and a local .env file).

Every component receives a ``Settings`` instance explicitly; nothing below
reads the environment after ``Settings.from_env()`` has run.
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict

from dotenv import load_dotenv

load_dotenv()

# ---------- Defaults ----------

INSEE_TOKEN_URL = "https://api.insee.fr/token"
INSEE_API_URL = "https://api.insee.fr/entreprises/sirene/V3.11"
INSEE_PDF_URL = "https://api-avis-situation-sirene.insee.fr/identification/pdf"
BODACC_API_URL = (
    "https://bodacc-datadila.opendatasoft.com/api/v2/catalog/datasets/"
    "annonces-commerciales/records"
)
INPI_EXPORT_URL = "https://data.inpi.fr/export/companies"
INPI_API_URL = "https://registre-national-entreprises.inpi.fr/api"

# Placeholders shipped in .env templates, treated as "not configured".
_PLACEHOLDERS = {"", "your-insee-consumer-key", "your-insee-consumer-secret", "votre_cle_api_ici"}


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(key: str, default: float) -> float:
    try:
        return float(os.getenv(key, default))
    except ValueError:
        return default


def _secret(key: str) -> str:
    value = os.getenv(key, "").strip()
    return "" if value in _PLACEHOLDERS else value


@dataclass(frozen=True)
class Settings:
    db_path: str = "companies.db"
    uploads_dir: str = "uploads"
    user_agent: str = "RegistrySearch/1.0"

    insee_consumer_key: str = ""
    insee_consumer_secret: str = ""
    insee_token_url: str = INSEE_TOKEN_URL
    insee_api_url: str = INSEE_API_URL
    insee_pdf_url: str = INSEE_PDF_URL

    inpi_token: str = ""
    inpi_export_url: str = INPI_EXPORT_URL
    inpi_api_url: str = INPI_API_URL

    bodacc_api_url: str = BODACC_API_URL

    # Per-source enable flags and timeouts (seconds)
    enabled: Dict[str, bool] = field(
        default_factory=lambda: {"local": True, "insee": True, "bodacc": True, "inpi": False}
    )
    timeouts: Dict[str, float] = field(
        default_factory=lambda: {"local": 5.0, "insee": 15.0, "bodacc": 8.0, "inpi": 15.0}
    )

    max_results: int = 20
    document_cache_ttl: float = 300.0
    search_cache_ttl: float = 300.0
    batch_item_delay: float = 0.5

    @classmethod
    def from_env(cls) -> "Settings":
        sources = ("local", "insee", "bodacc", "inpi")
        defaults = cls()
        return cls(
            db_path=os.getenv("COMPANY_DB_PATH", defaults.db_path),
            uploads_dir=os.getenv("UPLOADS_DIR", defaults.uploads_dir),
            user_agent=os.getenv("USER_AGENT", defaults.user_agent),
            insee_consumer_key=_secret("INSEE_CONSUMER_KEY"),
            insee_consumer_secret=_secret("INSEE_CONSUMER_SECRET"),
            insee_token_url=os.getenv("INSEE_TOKEN_URL", INSEE_TOKEN_URL),
            insee_api_url=os.getenv("INSEE_API_URL", INSEE_API_URL),
            insee_pdf_url=os.getenv("INSEE_PDF_URL", INSEE_PDF_URL),
            inpi_token=_secret("INPI_API_TOKEN"),
            inpi_export_url=os.getenv("INPI_EXPORT_URL", INPI_EXPORT_URL),
            inpi_api_url=os.getenv("INPI_API_URL", INPI_API_URL),
            bodacc_api_url=os.getenv("BODACC_API_URL", BODACC_API_URL),
            enabled={
                s: _env_bool(f"{s.upper()}_SEARCH_ENABLED", defaults.enabled[s]) for s in sources
            },
            timeouts={
                s: _env_float(f"{s.upper()}_TIMEOUT", defaults.timeouts[s]) for s in sources
            },
            max_results=int(_env_float("SEARCH_MAX_RESULTS", defaults.max_results)),
            document_cache_ttl=_env_float("DOCUMENT_CACHE_TTL", defaults.document_cache_ttl),
            search_cache_ttl=_env_float("SEARCH_CACHE_TTL", defaults.search_cache_ttl),
            batch_item_delay=_env_float("BATCH_ITEM_DELAY", defaults.batch_item_delay),
        )

    def with_overrides(self, **changes) -> "Settings":
        """Return a copy with some fields replaced (handy in tests)."""
        return replace(self, **changes)

    @property
    def insee_configured(self) -> bool:
        return bool(self.insee_consumer_key and self.insee_consumer_secret)

    @property
    def inpi_configured(self) -> bool:
        return bool(self.inpi_token)

    @property
    def uploads_path(self) -> Path:
        return Path(self.uploads_dir)
