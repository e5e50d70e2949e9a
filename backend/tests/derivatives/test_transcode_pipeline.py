"""Tests for the transcode pipeline: fan-out, all-or-nothing, timeouts."""

import asyncio
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest
from PIL import features

from media_pipeline.modules.derivatives import codec
from media_pipeline.modules.derivatives.errors import (
    DecodeError,
    InvalidPlanError,
    TranscodeError,
    TranscodeTimeout,
)
from media_pipeline.modules.derivatives.models import DerivativeSpec, Encoding, IngestState, Tier
from media_pipeline.modules.derivatives.pipeline import TranscodePipeline, group_by_tier
from media_pipeline.modules.derivatives.planner import DerivativePlanner

from support import is_blue, is_red, make_image, open_image

SCENARIO_PLAN = [
    DerivativeSpec(Tier.THUMBNAIL, Encoding.WEBP, target_width=200, quality=60),
    DerivativeSpec(Tier.REGULAR, Encoding.WEBP, target_width=1080, quality=85),
    DerivativeSpec(Tier.ORIGINAL, Encoding.WEBP, target_width=None, quality=85),
]


class TestGenerate:
    """generate returns exactly one derivative per planned spec."""

    @pytest.mark.asyncio
    async def test_landscape_4000x3000_scenario(self, pipeline, planner) -> None:
        source = make_image(4000, 3000)

        derivatives = await pipeline.generate(source, SCENARIO_PLAN)

        assert [d.width for d in derivatives] == [200, 1080, 4000]
        assert [d.height for d in derivatives] == [150, 810, 3000]
        for derivative in derivatives:
            stored = open_image(derivative.data)
            assert stored.size == (derivative.width, derivative.height)
            assert stored.width > stored.height

        keys = {planner.key("image-1-abcdef12", d.spec.tier, d.spec.encoding) for d in derivatives}
        assert len(keys) == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("size", [(50, 40), (640, 480), (1500, 900), (300, 1200)])
    async def test_widths_bounded_by_target_and_source(self, pipeline, planner, size) -> None:
        plan = planner.plan()
        derivatives = await pipeline.generate(make_image(*size), plan)

        assert len(derivatives) == len(plan)
        assert [d.spec for d in derivatives] == plan
        for derivative in derivatives:
            assert derivative.width <= size[0]
            if derivative.spec.target_width is not None:
                assert derivative.width <= derivative.spec.target_width
            assert derivative.content_type == "image/webp"

    @pytest.mark.asyncio
    async def test_orientation_is_upright_for_every_tier(self, pipeline, planner) -> None:
        """A sideways-stored camera image comes out upright in every derivative."""
        source = make_image(1600, 1200, orientation=6)

        derivatives = await pipeline.generate(source, planner.plan())

        for derivative in derivatives:
            image = open_image(derivative.data).convert("RGB")
            assert image.height > image.width, derivative.spec.tier
            assert is_red(image.getpixel((image.width // 2, image.height // 4)))
            assert is_blue(image.getpixel((image.width // 2, 3 * image.height // 4)))

    @pytest.mark.asyncio
    async def test_state_callbacks(self, pipeline, planner, photo) -> None:
        states = []
        await pipeline.generate(photo, planner.plan(), on_state=states.append)
        assert states == [IngestState.DECODING, IngestState.ENCODING]

    @pytest.mark.asyncio
    async def test_submit_returns_future(self, pipeline, planner, photo) -> None:
        future = pipeline.submit(photo, planner.plan())
        assert isinstance(future, asyncio.Future)
        assert len(await future) == 4

    @pytest.mark.asyncio
    @pytest.mark.skipif(not features.check("avif"), reason="Pillow built without AVIF")
    async def test_avif_and_webp(self, pipeline, photo) -> None:
        plan = DerivativePlanner().plan()
        derivatives = await pipeline.generate(photo, plan)

        formats = {(d.spec.tier, open_image(d.data).format) for d in derivatives}
        assert (Tier.SMALL, "AVIF") in formats
        assert (Tier.SMALL, "WEBP") in formats


class TestTierBaseReuse:
    """Each tier is decoded and resized once, then cloned per encoding."""

    @pytest.mark.asyncio
    async def test_one_base_per_tier(self, pipeline, photo, monkeypatch) -> None:
        base_calls = []
        encoded_images = []
        real_build = codec.build_tier_base

        def counting_build(source, target_width, max_pixels=None):
            base_calls.append(target_width)
            return real_build(source, target_width, max_pixels)

        def fake_encode(image, encoding, quality):
            encoded_images.append(image)
            return encoding.value.encode()

        monkeypatch.setattr(codec, "build_tier_base", counting_build)
        monkeypatch.setattr(codec, "encode", fake_encode)

        plan = DerivativePlanner().plan()
        derivatives = await pipeline.generate(photo, plan)

        assert len(base_calls) == 4
        assert len(derivatives) == 8
        # Every encode got its own image object
        assert len({id(image) for image in encoded_images}) == 8

    def test_group_by_tier_keeps_order(self) -> None:
        groups = group_by_tier(DerivativePlanner().plan())
        assert list(groups) == [Tier.THUMBNAIL, Tier.SMALL, Tier.REGULAR, Tier.ORIGINAL]
        assert all(len(specs) == 2 for specs in groups.values())


class TestAllOrNothing:
    """Any failure fails the whole batch."""

    @pytest.mark.asyncio
    async def test_corrupt_source(self, pipeline, planner) -> None:
        with pytest.raises(DecodeError):
            await pipeline.generate(b"definitely not a jpeg", planner.plan())

    @pytest.mark.asyncio
    async def test_single_encode_failure_fails_batch(self, pipeline, planner, photo, monkeypatch) -> None:
        real_encode = codec.encode

        def flaky_encode(image, encoding, quality):
            if quality == 80:  # small tier
                raise TranscodeError("simulated encoder crash")
            return real_encode(image, encoding, quality)

        monkeypatch.setattr(codec, "encode", flaky_encode)

        with pytest.raises(TranscodeError, match="simulated encoder crash"):
            await pipeline.generate(photo, planner.plan())

    @pytest.mark.asyncio
    async def test_unexpected_error_is_wrapped(self, pipeline, planner, photo, monkeypatch) -> None:
        def exploding_encode(image, encoding, quality):
            raise MemoryError("out of memory")

        monkeypatch.setattr(codec, "encode", exploding_encode)

        with pytest.raises(TranscodeError):
            await pipeline.generate(photo, planner.plan())

    @pytest.mark.asyncio
    async def test_empty_plan_rejected(self, pipeline, photo) -> None:
        with pytest.raises(InvalidPlanError):
            await pipeline.generate(photo, [])


class TestTimeout:
    """One slow asset cannot hold the pool past its budget."""

    @pytest.mark.asyncio
    async def test_timeout(self, planner, photo, monkeypatch) -> None:
        release = threading.Event()

        def stuck_build(source, target_width, max_pixels=None):
            release.wait(5)
            raise TranscodeError("released")

        monkeypatch.setattr(codec, "build_tier_base", stuck_build)
        pipeline = TranscodePipeline(max_workers=2, timeout_seconds=0.2)
        try:
            started = time.perf_counter()
            with pytest.raises(TranscodeTimeout):
                await pipeline.generate(photo, planner.plan())
            assert time.perf_counter() - started < 2
        finally:
            release.set()
            pipeline.shutdown()

    def test_timeout_is_transcode_error(self) -> None:
        assert issubclass(TranscodeTimeout, TranscodeError)
        assert TranscodeTimeout("x").status_code == 504

    def test_job_past_deadline_does_not_start(self) -> None:
        calls = []

        with pytest.raises(TranscodeTimeout):
            TranscodePipeline._guarded(calls.append, ("late",), time.monotonic() - 1)

        assert calls == []
        assert TranscodePipeline._guarded(calls.append, ("on time",), time.monotonic() + 60) is None
        assert calls == ["on time"]

    @pytest.mark.asyncio
    async def test_queued_jobs_never_run_after_timeout(self, photo, monkeypatch) -> None:
        release = threading.Event()
        started = []

        def stuck_build(source, target_width, max_pixels=None):
            started.append(target_width)
            release.wait(5)
            raise TranscodeError("released")

        monkeypatch.setattr(codec, "build_tier_base", stuck_build)
        executor = ThreadPoolExecutor(max_workers=1)
        pipeline = TranscodePipeline(timeout_seconds=0.2, executor=executor)
        try:
            with pytest.raises(TranscodeTimeout):
                await pipeline.generate(photo, SCENARIO_PLAN)
        finally:
            release.set()
            executor.shutdown(wait=True)

        assert started == [200]
