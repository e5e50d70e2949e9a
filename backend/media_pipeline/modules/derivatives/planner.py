"""Derivative planner.

The tier/encoding matrix is a table: adding a tier or an encoding means adding
a row here, never a new branch in the pipeline.
"""

import re
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from media_pipeline.core.config import settings
from media_pipeline.modules.derivatives.errors import InvalidBaseIdError, InvalidPlanError
from media_pipeline.modules.derivatives.models import DerivativeSpec, Encoding, Tier

BASE_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,127}$")

MIN_QUALITY = 1
MAX_QUALITY = 100


@dataclass(frozen=True)
class TierProfile:
    """Width cap and encoder quality for one tier."""
    tier: Tier
    target_width: Optional[int]
    quality: int


DEFAULT_TIER_PROFILES: tuple[TierProfile, ...] = (
    TierProfile(Tier.THUMBNAIL, target_width=200, quality=60),
    TierProfile(Tier.SMALL, target_width=800, quality=80),
    TierProfile(Tier.REGULAR, target_width=1080, quality=85),
    TierProfile(Tier.ORIGINAL, target_width=None, quality=85),
)

DEFAULT_ENCODINGS: tuple[Encoding, ...] = (Encoding.WEBP, Encoding.AVIF)


def validate_base_id(base_id: str) -> str:
    if not isinstance(base_id, str) or not BASE_ID_PATTERN.match(base_id):
        raise InvalidBaseIdError(f"Invalid base id: {base_id!r}")
    return base_id


def storage_key(folder: str, base_id: str, tier: Tier, encoding: Encoding) -> str:
    """Deterministic storage key ``<folder>/<base_id>-<tier>.<ext>``."""
    validate_base_id(base_id)
    return f"{folder}/{base_id}-{Tier(tier).value}.{Encoding(encoding).extension}"


def validate_spec(spec: DerivativeSpec) -> None:
    if not MIN_QUALITY <= spec.quality <= MAX_QUALITY:
        raise InvalidPlanError(
            f"Quality for {spec.tier.value}/{spec.encoding.value} must be in "
            f"[{MIN_QUALITY}, {MAX_QUALITY}], got {spec.quality}"
        )
    if spec.target_width is not None and spec.target_width < 1:
        raise InvalidPlanError(
            f"Target width for {spec.tier.value} must be positive, got {spec.target_width}"
        )
    if spec.tier == Tier.ORIGINAL and spec.target_width is not None:
        raise InvalidPlanError("The original tier is never resized")


def validate_plan(plan: Sequence[DerivativeSpec]) -> None:
    """Reject empty plans, bad specs and duplicate (tier, encoding) pairs."""
    if not plan:
        raise InvalidPlanError("Derivative plan is empty")

    seen: set[tuple[Tier, Encoding]] = set()
    tier_widths: dict[Tier, Optional[int]] = {}
    for spec in plan:
        validate_spec(spec)
        pair = (spec.tier, spec.encoding)
        if pair in seen:
            raise InvalidPlanError(f"Duplicate derivative {spec.tier.value}/{spec.encoding.value}")
        seen.add(pair)
        # One resized base per tier, so every encoding of a tier shares its width
        if tier_widths.setdefault(spec.tier, spec.target_width) != spec.target_width:
            raise InvalidPlanError(f"Tier {spec.tier.value} has conflicting target widths")


class DerivativePlanner:
    """Produces the ordered list of derivatives for an asset.

    The order is tier-major (tiers in profile order, then encodings), which is
    also the order of the descriptors handed back to callers.
    """

    def __init__(
        self,
        profiles: Iterable[TierProfile] = DEFAULT_TIER_PROFILES,
        encodings: Iterable[Encoding] = DEFAULT_ENCODINGS,
        folder: Optional[str] = None,
    ):
        self.profiles = tuple(profiles)
        self.encodings = tuple(Encoding(e) for e in encodings)
        self.folder = (folder or settings.DERIVATIVE_FOLDER).strip("/")

        if not self.encodings:
            raise InvalidPlanError("At least one encoding is required")
        if len(set(self.encodings)) != len(self.encodings):
            raise InvalidPlanError("Duplicate encoding in planner configuration")
        if len({p.tier for p in self.profiles}) != len(self.profiles):
            raise InvalidPlanError("Duplicate tier in planner configuration")

        self._plan = [
            DerivativeSpec(
                tier=profile.tier,
                encoding=encoding,
                target_width=profile.target_width,
                quality=profile.quality,
            )
            for profile in self.profiles
            for encoding in self.encodings
        ]
        validate_plan(self._plan)

    def plan(self) -> list[DerivativeSpec]:
        return list(self._plan)

    def key(self, base_id: str, tier: Tier, encoding: Encoding) -> str:
        return storage_key(self.folder, base_id, tier, encoding)

    def keys(self, base_id: str, plan: Optional[Sequence[DerivativeSpec]] = None) -> list[str]:
        """Every key of an asset's derivative set, in plan order."""
        specs = self._plan if plan is None else plan
        return [self.key(base_id, spec.tier, spec.encoding) for spec in specs]
