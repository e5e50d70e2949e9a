"""In-memory upload intent store.

The store is the only owner of intent state; ``issue``, ``resolve`` and
``expire`` are its only mutation points. Expired intents are swept lazily on
every ``issue`` and on demand through ``sweep``. Storage keys left behind by
expired intents are never referenced and are reclaimed by bucket lifecycle
rules, not here.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Optional

from media_pipeline.modules.uploads.errors import UnknownOrExpiredIntent
from media_pipeline.modules.uploads.models import IntentState, UploadIntent

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IntentStore:
    """Thread-safe map of upload id to issued intent."""

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or utcnow
        self._intents: dict[str, UploadIntent] = {}
        self._lock = threading.Lock()

    def now(self) -> datetime:
        return self._clock()

    def issue(self, intent: UploadIntent) -> UploadIntent:
        with self._lock:
            self._sweep_locked(self._clock())
            if intent.upload_id in self._intents:
                raise ValueError(f"Upload id already issued: {intent.upload_id}")
            intent.state = IntentState.ISSUED
            self._intents[intent.upload_id] = intent
        return intent

    def resolve(self, upload_id: str, key: str) -> UploadIntent:
        """Consume an issued intent. Each intent resolves at most once.

        Raises:
            UnknownOrExpiredIntent: If the id is unknown, already finalized,
                expired, or was issued for another key
        """
        with self._lock:
            intent = self._intents.get(upload_id)
            if intent is None:
                raise UnknownOrExpiredIntent(f"Unknown upload id: {upload_id}")
            if intent.key != key:
                raise UnknownOrExpiredIntent(f"Key does not match upload {upload_id}")
            if intent.is_expired(self._clock()):
                intent.state = IntentState.EXPIRED
                del self._intents[upload_id]
                raise UnknownOrExpiredIntent(f"Upload {upload_id} expired")

            intent.state = IntentState.FINALIZED
            del self._intents[upload_id]
            return intent

    def release(self, intent: UploadIntent) -> bool:
        """Return a resolved intent to the issued state if it has not expired."""
        with self._lock:
            if intent.is_expired(self._clock()) or intent.upload_id in self._intents:
                return False
            intent.state = IntentState.ISSUED
            self._intents[intent.upload_id] = intent
            return True

    def expire(self, upload_id: str) -> bool:
        with self._lock:
            intent = self._intents.pop(upload_id, None)
        if intent is None:
            return False
        intent.state = IntentState.EXPIRED
        return True

    def sweep(self, now: Optional[datetime] = None) -> list[str]:
        """Drop every intent past its expiry. Returns the dropped upload ids."""
        with self._lock:
            return self._sweep_locked(now or self._clock())

    def _sweep_locked(self, now: datetime) -> list[str]:
        expired = [uid for uid, intent in self._intents.items() if intent.is_expired(now)]
        for uid in expired:
            self._intents.pop(uid).state = IntentState.EXPIRED
        if expired:
            logger.debug(f"Swept {len(expired)} expired upload intent(s)")
        return expired

    def get(self, upload_id: str) -> Optional[UploadIntent]:
        with self._lock:
            return self._intents.get(upload_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._intents)
