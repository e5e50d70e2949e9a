"""Upload intent types."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from media_pipeline.modules.derivatives.models import AssetDerivativeSet


class IntentState(str, Enum):
    """Lifecycle of an upload intent."""
    ISSUED = "issued"
    FINALIZED = "finalized"
    EXPIRED = "expired"


@dataclass
class UploadIntent:
    """A scoped, short-lived permission to upload one object."""
    upload_id: str
    key: str
    content_type: str
    max_size: int
    declared_size: int
    file_name: str
    upload_url: str
    expires_at: datetime
    method: str = "PUT"
    headers: dict = field(default_factory=dict)
    state: IntentState = IntentState.ISSUED

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class FinalizeResult:
    """Outcome of a finalize call.

    ``derivatives`` is set when processing ran inline; ``task_id`` when it was
    handed to a background worker.
    """
    accepted: bool
    upload_id: str
    base_id: str
    derivatives: Optional[AssetDerivativeSet] = None
    task_id: Optional[str] = None
    metadata: Optional[dict] = None
