"""生命週期儲存庫共用的基礎元件。"""

from __future__ import annotations

import dataclasses
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Generic, Iterator, List, Optional, Sequence, TypeVar

from ..common.db.backends import PersistenceBackend
from ..common.errors import NotFound, PersistenceFailure
from ..common.services.events import EventChannel
from ..common.services.logging import log_event
from ..common.utils.timeutils import Clock, utcnow
from ..common.utils.validators import optional_str


R = TypeVar("R")


@dataclass(frozen=True)
class UserRef:
    """購買者或座位持有人的明確參照（登入會員或訪客）。"""

    user_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    company_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "UserRef":
        data = data or {}
        return cls(
            user_id=optional_str(data.get("user_id")),
            email=optional_str(data.get("email")),
            name=optional_str(data.get("name")),
            company_id=optional_str(data.get("company_id")),
        )

    def is_empty(self) -> bool:
        return not (self.user_id or self.email)

    def same_person(self, other: "UserRef") -> bool:
        if self.user_id and other.user_id:
            return self.user_id == other.user_id
        if self.email and other.email:
            return self.email.lower() == other.email.lower()
        return False


def money_to_str(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


class RecordStore(Generic[R]):
    """儲存庫基底類別：一個集合、一把可重入鎖，每次變更後立即寫入。

    紀錄視為不可變，更新時以 ``dataclasses.replace`` 取代整個實例，
    因此淺層快照即足以還原寫入失敗的變更。
    """

    collection: str = ""
    entity: str = "record"

    def __init__(
        self,
        backend: PersistenceBackend,
        *,
        clock: Clock = utcnow,
        events: Optional[EventChannel] = None,
        retry_delays: Sequence[float] = (0.1, 0.5, 1.0),
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._backend = backend
        self._clock = clock
        self._events = events or EventChannel()
        self._retry_delays = tuple(retry_delays)
        self._sleep = sleep
        self._lock = threading.RLock()
        self._records: Dict[int, R] = {}
        self._load()

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def _now(self) -> datetime:
        return self._clock()

    def _record_from_dict(self, data: dict) -> R:
        raise NotImplementedError

    def _record_to_dict(self, record: R) -> dict:
        raise NotImplementedError

    def _load(self) -> None:
        raw = self._with_retry("load", lambda: self._backend.load(self.collection))
        records: Dict[int, R] = {}
        for item in raw:
            record = self._record_from_dict(item)
            records[record.id] = record  # type: ignore[attr-defined]
        with self._lock:
            self._records = records
        log_event("debug", "store.loaded", collection=self.collection, records=len(records))

    def _flush(self) -> None:
        payload = [self._record_to_dict(self._records[key]) for key in sorted(self._records)]
        self._with_retry("save", lambda: self._backend.save(self.collection, payload))

    def _with_retry(self, operation: str, fn: Callable[[], Any]) -> Any:
        attempts = len(self._retry_delays) + 1
        for attempt in range(1, attempts + 1):
            try:
                return fn()
            except PersistenceFailure as exc:
                if attempt >= attempts:
                    log_event(
                        "error",
                        "persistence.retries_exhausted",
                        collection=self.collection,
                        operation=operation,
                        attempts=attempt,
                        error=exc.message,
                    )
                    raise
                delay = self._retry_delays[attempt - 1]
                log_event(
                    "warning",
                    "persistence.retry",
                    collection=self.collection,
                    operation=operation,
                    attempt=attempt,
                    delay=delay,
                    error=exc.message,
                )
                self._sleep(delay)
        return None  # pragma: no cover

    @contextmanager
    def _mutation(self) -> Iterator[None]:
        """套用記憶體內變更後寫入後端；任何失敗都會還原快照。"""
        with self._lock:
            snapshot = dict(self._records)
            try:
                yield
                self._flush()
            except Exception:
                self._records = snapshot
                raise

    def _next_id(self) -> int:
        return max(self._records, default=0) + 1

    def _require(self, record_id: int) -> R:
        record = self._records.get(int(record_id))
        if record is None:
            raise NotFound(f"{self.entity} {record_id} not found", id=record_id)
        return record

    def _publish(self, name: str, **payload) -> None:
        self._events.publish(name, **payload)

    def _all(self) -> List[R]:
        with self._lock:
            return [dataclasses.replace(r) for _, r in sorted(self._records.items())]  # type: ignore[type-var]

    def count(self) -> int:
        return len(self._records)
