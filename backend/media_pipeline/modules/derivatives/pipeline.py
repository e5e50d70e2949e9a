"""Transcode pipeline.

Runs codec work on a bounded thread pool. Every tier is decoded and resized
once; each encoding of that tier then works on its own copy of the resized
base. The whole batch succeeds or fails together, under one wall-clock
timeout per asset.

A timeout cancels jobs still waiting for a thread, and a job that reaches a
thread after the deadline fails without running. Python cannot interrupt a
thread, so a job already inside the codec keeps its worker until it returns.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence

from PIL import Image

from media_pipeline.core.config import settings
from media_pipeline.core.metrics import DERIVATIVES_GENERATED_TOTAL, TRANSCODE_JOBS_IN_PROGRESS
from media_pipeline.modules.derivatives import codec
from media_pipeline.modules.derivatives.errors import TranscodeError, TranscodeTimeout
from media_pipeline.modules.derivatives.models import (
    DerivativeSpec,
    EncodedDerivative,
    IngestState,
    Tier,
)
from media_pipeline.modules.derivatives.planner import validate_plan

logger = logging.getLogger(__name__)

StateCallback = Callable[[IngestState], None]


def group_by_tier(plan: Sequence[DerivativeSpec]) -> "OrderedDict[Tier, list[DerivativeSpec]]":
    """Group specs by tier, keeping first-seen tier order."""
    groups: "OrderedDict[Tier, list[DerivativeSpec]]" = OrderedDict()
    for spec in plan:
        groups.setdefault(spec.tier, []).append(spec)
    return groups


def _encode_copy(base: Image.Image, spec: DerivativeSpec) -> EncodedDerivative:
    image = base.copy()
    data = codec.encode(image, spec.encoding, spec.quality)
    return EncodedDerivative(spec=spec, data=data, width=image.width, height=image.height)


async def _gather_or_cancel(awaitables: Iterable[Awaitable[Any]]) -> list[Any]:
    """Await all; on the first failure cancel whatever has not finished."""
    tasks = [asyncio.ensure_future(a) for a in awaitables]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class TranscodePipeline:
    """Generates encoded derivatives for a source image."""

    def __init__(
        self,
        max_workers: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        max_pixels: Optional[int] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        """Initialize pipeline.

        Args:
            max_workers: Worker pool size (defaults to settings)
            timeout_seconds: Wall-clock budget per asset, decode plus all encodes
            max_pixels: Decompression-bomb ceiling for sources
            executor: Externally owned pool; not shut down by this pipeline
        """
        self.max_workers = max_workers or settings.TRANSCODE_WORKERS
        self.timeout_seconds = timeout_seconds or settings.TRANSCODE_TIMEOUT_SECONDS
        self.max_pixels = max_pixels or settings.MAX_IMAGE_PIXELS
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=self.max_workers,
            thread_name_prefix="transcode",
        )

    async def _run(self, deadline: float, func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self._guarded, func, args, deadline)

    @staticmethod
    def _guarded(func: Callable[..., Any], args: tuple, deadline: Optional[float] = None) -> Any:
        if deadline is not None and time.monotonic() >= deadline:
            raise TranscodeTimeout(f"{func.__name__} skipped: asset deadline already passed")
        TRANSCODE_JOBS_IN_PROGRESS.inc()
        try:
            return func(*args)
        except TranscodeError:
            raise
        except Exception as e:
            raise TranscodeError(f"{func.__name__} failed: {e}") from e
        finally:
            TRANSCODE_JOBS_IN_PROGRESS.dec()

    async def generate(
        self,
        source_bytes: bytes,
        plan: Sequence[DerivativeSpec],
        on_state: Optional[StateCallback] = None,
    ) -> list[EncodedDerivative]:
        """Generate every derivative in ``plan``.

        Args:
            source_bytes: Encoded source image
            plan: Derivatives to produce
            on_state: Called on entering the decoding and encoding stages

        Returns:
            list[EncodedDerivative]: One entry per spec, in plan order

        Raises:
            DecodeError: If the source cannot be decoded
            TranscodeError: If any resize or encode fails
            TranscodeTimeout: If the batch exceeds the time budget
        """
        validate_plan(plan)
        deadline = time.monotonic() + self.timeout_seconds
        try:
            return await asyncio.wait_for(
                self._generate(source_bytes, list(plan), on_state, deadline),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise TranscodeTimeout(
                f"Transcoding exceeded {self.timeout_seconds:g}s for {len(plan)} derivatives"
            ) from e

    def submit(
        self,
        source_bytes: bytes,
        plan: Sequence[DerivativeSpec],
        on_state: Optional[StateCallback] = None,
    ) -> "asyncio.Future[list[EncodedDerivative]]":
        """Schedule ``generate`` on the running loop and return its future."""
        return asyncio.ensure_future(self.generate(source_bytes, plan, on_state))

    async def _generate(
        self,
        source_bytes: bytes,
        plan: list[DerivativeSpec],
        on_state: Optional[StateCallback],
        deadline: float,
    ) -> list[EncodedDerivative]:
        groups = group_by_tier(plan)

        if on_state:
            on_state(IngestState.DECODING)
        started = time.perf_counter()
        bases = await _gather_or_cancel(
            self._run(deadline, codec.build_tier_base, source_bytes, specs[0].target_width, self.max_pixels)
            for specs in groups.values()
        )
        base_by_tier = dict(zip(groups.keys(), bases))
        logger.debug(
            f"Built {len(bases)} tier bases in {time.perf_counter() - started:.3f}s"
        )

        if on_state:
            on_state(IngestState.ENCODING)
        started = time.perf_counter()
        encoded = await _gather_or_cancel(
            self._run(deadline, _encode_copy, base_by_tier[spec.tier], spec) for spec in plan
        )
        logger.debug(
            f"Encoded {len(encoded)} derivatives in {time.perf_counter() - started:.3f}s"
        )

        for derivative in encoded:
            DERIVATIVES_GENERATED_TOTAL.labels(
                tier=derivative.spec.tier.value,
                encoding=derivative.spec.encoding.value,
            ).inc()
        return encoded

    def shutdown(self, wait: bool = True) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=wait, cancel_futures=True)
