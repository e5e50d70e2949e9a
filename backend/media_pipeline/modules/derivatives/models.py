"""Value types for derivative generation and storage lifecycle."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from media_pipeline.modules.derivatives.errors import PartialDeleteError


class Tier(str, Enum):
    """Resolution tier of a derivative."""
    THUMBNAIL = "thumbnail"
    SMALL = "small"
    REGULAR = "regular"
    ORIGINAL = "original"


class Encoding(str, Enum):
    """Delivery encoding of a derivative."""
    WEBP = "webp"
    AVIF = "avif"

    @property
    def extension(self) -> str:
        return ENCODING_FORMATS[self].extension

    @property
    def content_type(self) -> str:
        return ENCODING_FORMATS[self].content_type

    @property
    def pil_format(self) -> str:
        return ENCODING_FORMATS[self].pil_format


@dataclass(frozen=True)
class EncodingFormat:
    """How an encoding maps onto files and the codec library."""
    extension: str
    content_type: str
    pil_format: str


ENCODING_FORMATS = {
    Encoding.WEBP: EncodingFormat(extension="webp", content_type="image/webp", pil_format="WEBP"),
    Encoding.AVIF: EncodingFormat(extension="avif", content_type="image/avif", pil_format="AVIF"),
}


@dataclass(frozen=True)
class DerivativeSpec:
    """One derivative to produce.

    ``target_width`` of None keeps the natural width; height is always
    derived from the source aspect ratio.
    """
    tier: Tier
    encoding: Encoding
    target_width: Optional[int]
    quality: int


@dataclass
class EncodedDerivative:
    """Encoded bytes for one spec."""
    spec: DerivativeSpec
    data: bytes
    width: int
    height: int

    @property
    def content_type(self) -> str:
        return self.spec.encoding.content_type

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class DerivativeDescriptor:
    """Resolved, publicly fetchable URL of one stored derivative."""
    tier: Tier
    encoding: Encoding
    url: str
    key: str
    width: Optional[int] = None
    height: Optional[int] = None
    size: Optional[int] = None


@dataclass
class AssetDerivativeSet:
    """Every derivative of one asset, in plan order."""
    base_id: str
    derivatives: list[DerivativeDescriptor] = field(default_factory=list)

    def get(self, tier: Tier, encoding: Encoding) -> Optional[DerivativeDescriptor]:
        for descriptor in self.derivatives:
            if descriptor.tier == tier and descriptor.encoding == encoding:
                return descriptor
        return None

    def urls(self) -> dict[str, dict[str, str]]:
        """URLs grouped as ``{tier: {encoding: url}}``."""
        grouped: dict[str, dict[str, str]] = {}
        for descriptor in self.derivatives:
            grouped.setdefault(descriptor.tier.value, {})[descriptor.encoding.value] = descriptor.url
        return grouped

    def __len__(self) -> int:
        return len(self.derivatives)


class DeleteStatus(str, Enum):
    """Outcome of deleting one key."""
    DELETED = "deleted"
    NOT_FOUND = "not_found"
    ERROR = "error"


@dataclass(frozen=True)
class KeyDeleteOutcome:
    key: str
    status: DeleteStatus
    error: Optional[str] = None


@dataclass
class DeleteReport:
    """Per-key outcomes of a fan-out delete."""
    base_id: str
    outcomes: list[KeyDeleteOutcome] = field(default_factory=list)

    def keys_with(self, status: DeleteStatus) -> list[str]:
        return [o.key for o in self.outcomes if o.status == status]

    @property
    def deleted(self) -> list[str]:
        return self.keys_with(DeleteStatus.DELETED)

    @property
    def not_found(self) -> list[str]:
        return self.keys_with(DeleteStatus.NOT_FOUND)

    @property
    def errors(self) -> list[KeyDeleteOutcome]:
        return [o for o in self.outcomes if o.status == DeleteStatus.ERROR]

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    @property
    def partial_error(self) -> Optional[PartialDeleteError]:
        """A ``PartialDeleteError`` describing failed keys, or None."""
        if not self.has_errors:
            return None
        return PartialDeleteError(self.base_id, [o.key for o in self.errors])


class IngestState(str, Enum):
    """Per-ingestion state machine."""
    DECODING = "decoding"
    ENCODING = "encoding"
    PERSISTING = "persisting"
    COMPLETE = "complete"
    FAILED = "failed"
