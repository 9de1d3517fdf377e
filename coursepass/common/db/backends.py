"""Key/document persistence backends shared by every engine store.

A backend stores one serialized document per collection ("orders",
"memberships", ...). Stores load their collection once at construction and
overwrite it after each mutating call.
"""

from __future__ import annotations

import copy
import json
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List

from sqlalchemy.exc import SQLAlchemyError

from ..errors import PersistenceFailure
from ..models.document import StoredDocument
from ..services.logging import log_event
from ..utils.timeutils import utcnow
from .session import make_session_factory


class PersistenceBackend(ABC):
    @abstractmethod
    def load(self, collection: str) -> List[dict]:
        """Return every record of ``collection`` (empty list when absent)."""

    @abstractmethod
    def save(self, collection: str, records: List[dict]) -> None:
        """Overwrite ``collection`` with ``records``."""


class MemoryBackend(PersistenceBackend):
    """Process-local backend, used by tests and throwaway runs."""

    def __init__(self) -> None:
        self._documents: Dict[str, List[dict]] = {}
        self._lock = threading.Lock()

    def load(self, collection: str) -> List[dict]:
        with self._lock:
            return copy.deepcopy(self._documents.get(collection, []))

    def save(self, collection: str, records: List[dict]) -> None:
        with self._lock:
            self._documents[collection] = copy.deepcopy(records)


class JsonFileBackend(PersistenceBackend):
    """One ``<collection>.json`` array per collection under ``data_dir``."""

    def __init__(self, data_dir: Path) -> None:
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, collection: str) -> Path:
        return self._data_dir / f"{collection}.json"

    def load(self, collection: str) -> List[dict]:
        path = self._path(collection)
        if not path.exists():
            return []
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise PersistenceFailure(f"cannot read {path.name}: {exc}", collection=collection) from exc
        if not text.strip():
            return []
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise PersistenceFailure(f"{path.name} is not valid JSON", collection=collection) from exc
        if not isinstance(payload, list):
            raise PersistenceFailure(f"{path.name} must hold a JSON array", collection=collection)
        return [item for item in payload if isinstance(item, dict)]

    def save(self, collection: str, records: List[dict]) -> None:
        path = self._path(collection)
        tmp_path = path.with_suffix(".json.tmp")
        content = json.dumps(records, ensure_ascii=False, indent=2)
        try:
            tmp_path.write_text(content + "\n", encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as exc:
            raise PersistenceFailure(f"cannot write {path.name}: {exc}", collection=collection) from exc


class SqlDocumentBackend(PersistenceBackend):
    """Stores each collection as a JSON payload row through SQLAlchemy."""

    def __init__(self, database_url: str, session_factory=None) -> None:
        self._session_factory = session_factory or make_session_factory(database_url)

    def load(self, collection: str) -> List[dict]:
        try:
            with self._session_factory() as session:
                row = session.get(StoredDocument, collection)
                if row is None:
                    return []
                payload = json.loads(row.payload)
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"cannot load {collection}: {exc}", collection=collection) from exc
        return [item for item in payload if isinstance(item, dict)]

    def save(self, collection: str, records: List[dict]) -> None:
        payload = json.dumps(records, ensure_ascii=False)
        try:
            with self._session_factory() as session:
                row = session.get(StoredDocument, collection)
                if row is None:
                    row = StoredDocument(collection=collection)
                    session.add(row)
                row.payload = payload
                row.record_count = len(records)
                row.updated_at = utcnow()
                session.flush()
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"cannot save {collection}: {exc}", collection=collection) from exc


def build_backend(config) -> PersistenceBackend:
    """Pick the concrete backend once, at startup."""
    storage = (config.storage or "file").lower()
    if storage == "memory":
        backend: PersistenceBackend = MemoryBackend()
    elif storage == "file":
        backend = JsonFileBackend(config.data_dir)
    elif storage == "sql":
        backend = SqlDocumentBackend(config.database_url)
    else:
        raise ValueError(f"unknown storage backend: {config.storage}")
    log_event("info", "persistence.backend_selected", storage=storage)
    return backend
