"""
Batch document downloads over a cart of document requests.

Items are processed one after the other. Each item moves forward through
``queued -> downloading -> uploading -> completed`` (or ends in ``error``),
and a failure on one item never stops the others.
"""

import json
import logging
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, MutableMapping, Optional, Union

from config import Settings
from documents import DocumentMaterializer
from errors import ErrorKind, RegistryError, ValidationError
from models import Artifact, CartItem, Company, DownloadProgress, DownloadState, Source, utc_now_iso

logger = logging.getLogger(__name__)

ProgressListener = Callable[[DownloadProgress], None]

_TRANSITIONS = {
    DownloadState.QUEUED: {DownloadState.DOWNLOADING},
    DownloadState.DOWNLOADING: {DownloadState.DOWNLOADING, DownloadState.UPLOADING, DownloadState.ERROR},
    DownloadState.UPLOADING: {DownloadState.UPLOADING, DownloadState.COMPLETED, DownloadState.ERROR},
    DownloadState.COMPLETED: set(),
    DownloadState.ERROR: set(),
}


class ProgressTracker:
    """Per-item progress records; only forward transitions are accepted."""

    def __init__(self, listener: Optional[ProgressListener] = None):
        self.listener = listener
        self.records: Dict[str, DownloadProgress] = {}

    def _emit(self, record: DownloadProgress) -> None:
        if self.listener:
            self.listener(replace(record))

    def start(self, item_ids: Iterable[str]) -> None:
        for item_id in item_ids:
            self.records[item_id] = DownloadProgress(item_id)
            self._emit(self.records[item_id])

    def update(self, item_id: str, state: DownloadState, progress: int, error: Optional[str] = None) -> None:
        record = self.records[item_id]
        if state not in _TRANSITIONS[record.state]:
            raise ValueError(f"{item_id}: transition {record.state.value} -> {state.value} refusée")
        record.state = state
        if state != DownloadState.ERROR:
            record.progress = max(record.progress, min(int(progress), 100))
        record.error = error
        self._emit(record)

    def fail(self, item_id: str, message: str) -> None:
        record = self.records[item_id]
        if record.state == DownloadState.QUEUED:
            self.update(item_id, DownloadState.DOWNLOADING, record.progress)
        self.update(item_id, DownloadState.ERROR, record.progress, error=message)


@dataclass
class BatchResult:
    successful: List[Dict[str, Any]] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)
    progress: Dict[str, DownloadProgress] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "successful": self.successful,
            "failed": self.failed,
            "progress": {k: v.to_dict() for k, v in self.progress.items()},
        }


def company_for_item(item: CartItem) -> Company:
    try:
        source = Source(item.type)
    except ValueError:
        source = Source.LOCAL
    return Company(siren=item.siren, siret=item.siret, denomination=item.name or item.siren, source=source)


def _coerce_items(items: Any) -> List[CartItem]:
    if not isinstance(items, (list, tuple)) or not items:
        raise ValidationError("Aucun document à télécharger")
    coerced = []
    for raw in items:
        if isinstance(raw, CartItem):
            coerced.append(raw)
        elif isinstance(raw, dict) and raw.get("id"):
            coerced.append(CartItem.from_dict(raw))
        else:
            raise ValidationError(f"Document invalide: {raw!r}")
    ids = [item.id for item in coerced]
    if len(set(ids)) != len(ids):
        raise ValidationError("Identifiants de documents en double")
    return coerced


class BatchDownloadManager:
    def __init__(
        self,
        settings: Settings,
        materializer: Optional[DocumentMaterializer] = None,
        on_progress: Optional[ProgressListener] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.materializer = materializer or DocumentMaterializer(settings)
        self.on_progress = on_progress
        self.sleep = sleep

    def _process(self, tracker: ProgressTracker, item: CartItem, force: bool) -> Artifact:
        company = company_for_item(item)
        doc_type = self.materializer.parse_type(item.type)

        tracker.update(item.id, DownloadState.DOWNLOADING, 10)
        cached = None if force else self.materializer.find_cached(doc_type, item.siren)
        payload = None if cached else self.materializer.fetch(company, doc_type)
        tracker.update(item.id, DownloadState.DOWNLOADING, 50)

        tracker.update(item.id, DownloadState.UPLOADING, 60)
        artifact = cached or self.materializer.store(payload)
        tracker.update(item.id, DownloadState.COMPLETED, 100)
        return artifact

    def run_batch(self, items: List[Union[CartItem, Dict[str, Any]]], force: bool = False) -> BatchResult:
        cart = _coerce_items(items)
        tracker = ProgressTracker(self.on_progress)
        tracker.start(item.id for item in cart)
        result = BatchResult(progress=tracker.records)

        logger.info("Batch download started: %d document(s)", len(cart))
        for idx, item in enumerate(cart):
            try:
                artifact = self._process(tracker, item, force)
                result.successful.append({"item": item.to_dict(), "artifact": artifact.to_dict()})
            except RegistryError as exc:
                logger.warning("Document %s (%s/%s) failed: %s", item.id, item.type, item.siren, exc.message)
                tracker.fail(item.id, exc.message)
                result.failed.append({"item": item.to_dict(), "error": exc.to_dict()})
            except Exception as exc:
                logger.exception("Unexpected error on document %s", item.id)
                tracker.fail(item.id, str(exc))
                error = RegistryError(ErrorKind.UPSTREAM_ERROR, str(exc), item.type)
                result.failed.append({"item": item.to_dict(), "error": error.to_dict()})

            if idx < len(cart) - 1 and self.settings.batch_item_delay > 0:
                self.sleep(self.settings.batch_item_delay)

        logger.info(
            "Batch download finished: %d ok, %d failed", len(result.successful), len(result.failed)
        )
        return result


# ---------- Cart ----------


class JsonFileCartBackend:
    """Persists a cart as a JSON list on disk."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def load(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Could not read cart %s: %s", self.path, exc)
            return []
        return data if isinstance(data, list) else []

    def save(self, items: List[Dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(items, ensure_ascii=False, indent=2), encoding="utf-8")


class SessionCartBackend:
    """Keeps the cart in a mapping such as ``st.session_state``."""

    def __init__(self, state: MutableMapping, key: str = "cart_items"):
        self.state = state
        self.key = key

    def load(self) -> List[Dict[str, Any]]:
        return list(self.state.get(self.key) or [])

    def save(self, items: List[Dict[str, Any]]) -> None:
        self.state[self.key] = items


class CartStore:
    """Session-scoped document cart.

    ``load`` is called once by ``init()``; ``save`` after every mutation.
    Download progress lives in memory only.
    """

    def __init__(
        self,
        load: Optional[Callable[[], List[Dict[str, Any]]]] = None,
        save: Optional[Callable[[List[Dict[str, Any]]], None]] = None,
    ):
        self._load = load
        self._save = save
        self.items: List[CartItem] = []
        self.progress: Dict[str, DownloadProgress] = {}

    @classmethod
    def with_backend(cls, backend: Union[JsonFileCartBackend, SessionCartBackend]) -> "CartStore":
        return cls(load=backend.load, save=backend.save)

    def init(self) -> "CartStore":
        raw = self._load() if self._load else []
        self.items = []
        for entry in raw:
            try:
                self.items.append(CartItem.from_dict(entry))
            except (KeyError, TypeError) as exc:
                logger.warning("Skipping malformed cart entry %r: %s", entry, exc)
        return self

    def _persist(self) -> None:
        if self._save:
            self._save([item.to_dict() for item in self.items])

    def __len__(self) -> int:
        return len(self.items)

    def contains(self, item_id: str) -> bool:
        return any(item.id == item_id for item in self.items)

    def add(self, item: Union[CartItem, Dict[str, Any]]) -> bool:
        item = item if isinstance(item, CartItem) else CartItem.from_dict(item)
        if self.contains(item.id):
            return False
        self.items.append(replace(item, added_at=item.added_at or utc_now_iso()))
        self._persist()
        return True

    def remove(self, item_id: str) -> None:
        self.items = [item for item in self.items if item.id != item_id]
        self.progress.pop(item_id, None)
        self._persist()

    def clear(self) -> None:
        self.items = []
        self.progress = {}
        self._persist()

    def update_progress(self, record: DownloadProgress) -> None:
        self.progress[record.item_id] = record
