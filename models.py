"""
Canonical data model: companies, search envelopes, cart items, progress.
"""

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

SIREN_RE = re.compile(r"^\d{9}$")
SIRET_RE = re.compile(r"^\d{14}$")


class Source(str, Enum):
    LOCAL = "local"
    INSEE = "insee"
    BODACC = "bodacc"
    INPI = "inpi"


# Merge precedence: earlier wins on SIREN conflicts.
SOURCE_PRECEDENCE = [Source.LOCAL, Source.INSEE, Source.BODACC, Source.INPI]


class DocumentType(str, Enum):
    INSEE = "insee"
    INPI = "inpi"
    BODACC = "bodacc"


def is_siren(value: Any) -> bool:
    return bool(SIREN_RE.match(str(value or "").strip()))


def is_siret(value: Any) -> bool:
    return bool(SIRET_RE.match(str(value or "").strip()))


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Announcement:
    type: Optional[str] = None
    date: Optional[str] = None
    court: Optional[str] = None


@dataclass
class Company:
    siren: str
    denomination: str
    source: Source
    siret: Optional[str] = None
    legal_form: Optional[str] = None
    legal_form_code: Optional[str] = None
    active: bool = True
    creation_date: Optional[str] = None
    address: Optional[str] = None
    activity_code: Optional[str] = None
    activity_label: Optional[str] = None
    capital: Optional[float] = None
    last_announcement: Optional[Announcement] = None
    matched_sources: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["source"] = Source(self.source).value
        return data


@dataclass
class SearchEnvelope:
    original_query: str
    query: str
    results: List[Company]
    sources: Dict[str, int]
    errors: List[Dict[str, Any]]
    total: Optional[int] = None
    offset: int = 0
    cached: List[str] = field(default_factory=list)
    timestamp: str = field(default_factory=utc_now_iso)
    success: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "originalQuery": self.original_query,
            "query": self.query,
            "results": [c.to_dict() for c in self.results],
            "total": len(self.results) if self.total is None else self.total,
            "offset": self.offset,
            "sources": dict(self.sources),
            "cached": list(self.cached),
            "errors": list(self.errors),
            "timestamp": self.timestamp,
        }


@dataclass
class CartItem:
    id: str
    type: str
    siren: str
    name: str = ""
    siret: Optional[str] = None
    description: str = ""
    url: Optional[str] = None
    available: bool = True
    added_at: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CartItem":
        return cls(
            id=str(data["id"]),
            type=str(data.get("type", "")).lower(),
            siren=str(data.get("siren", "")).strip(),
            name=data.get("name") or "",
            siret=data.get("siret") or None,
            description=data.get("description") or "",
            url=data.get("url") or None,
            available=bool(data.get("available", True)),
            added_at=data.get("added_at") or data.get("addedAt"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class DownloadState(str, Enum):
    QUEUED = "queued"
    DOWNLOADING = "downloading"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class DownloadProgress:
    item_id: str
    state: DownloadState = DownloadState.QUEUED
    progress: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.item_id,
            "state": DownloadState(self.state).value,
            "progress": self.progress,
            "error": self.error,
        }


@dataclass
class Artifact:
    path: str
    filename: str
    content_type: str
    size: int
    doc_type: str
    siren: str
    record_count: Optional[int] = None
    cached: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
