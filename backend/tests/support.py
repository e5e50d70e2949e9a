"""Test helpers: synthetic images and a fault-injecting storage backend."""

import io
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from PIL import Image

from media_pipeline.core.retry import RetryConfig
from media_pipeline.core.storage import LocalStorage, Storage, StorageBackend, StorageConfig
from media_pipeline.modules.derivatives.gateway import StorageGateway
from media_pipeline.modules.derivatives.planner import DerivativePlanner

EXIF_ORIENTATION_TAG = 0x0112
RED = (220, 20, 20)
BLUE = (20, 20, 220)


def make_image(
    width: int,
    height: int,
    fmt: str = "JPEG",
    mode: str = "RGB",
    orientation: Optional[int] = None,
) -> bytes:
    """Left half red, right half blue, optionally tagged with an EXIF orientation."""
    image = Image.new("RGB", (width, height), BLUE)
    image.paste(RED, (0, 0, width // 2, height))
    if mode != "RGB":
        image = image.convert(mode)

    save_kwargs = {}
    if orientation is not None:
        exif = Image.Exif()
        exif[EXIF_ORIENTATION_TAG] = orientation
        save_kwargs["exif"] = exif.tobytes()

    buffer = io.BytesIO()
    image.save(buffer, format=fmt, **save_kwargs)
    return buffer.getvalue()


def open_image(data: bytes) -> Image.Image:
    image = Image.open(io.BytesIO(data))
    image.load()
    return image


def is_red(pixel) -> bool:
    r, g, b = pixel[:3]
    return r > 150 and b < 100


def is_blue(pixel) -> bool:
    r, g, b = pixel[:3]
    return b > 150 and r < 100


async def no_sleep(delay: float) -> None:
    return None


def local_config(path, **overrides) -> StorageConfig:
    values = dict(
        backend="local",
        local_path=str(path),
        public_base_url="http://testserver",
        api_prefix="/api/v1",
        signing_key="test-signing-key",
    )
    values.update(overrides)
    return StorageConfig(**values)


def make_gateway(storage: Storage, planner: DerivativePlanner) -> StorageGateway:
    return StorageGateway(
        storage,
        planner,
        retry_config=RetryConfig(max_attempts=3, initial_delay=0.0, max_delay=0.0),
        sleep=no_sleep,
    )


class FaultyBackend(StorageBackend):
    """Delegates to a real backend, failing operations on chosen keys.

    ``put_failures[key]`` is a queue consumed one error per call;
    ``always_fail_puts[key]`` fails every call.
    """

    def __init__(self, inner: StorageBackend):
        self.inner = inner
        self.put_failures: dict[str, list[Exception]] = {}
        self.delete_failures: dict[str, list[Exception]] = {}
        self.always_fail_puts: dict[str, Exception] = {}
        self.always_fail_deletes: dict[str, Exception] = {}
        self.put_calls: list[str] = []
        self.delete_calls: list[str] = []

    @staticmethod
    def _maybe_fail(queued: dict, always: dict, key: str) -> None:
        if key in always:
            raise always[key]
        queue = queued.get(key)
        if queue:
            raise queue.pop(0)

    def put_object(self, key, data, content_type="application/octet-stream", cache_control=None):
        self.put_calls.append(key)
        self._maybe_fail(self.put_failures, self.always_fail_puts, key)
        return self.inner.put_object(key, data, content_type, cache_control)

    def get_object(self, key):
        return self.inner.get_object(key)

    def open_object(self, key, chunk_size=64 * 1024):
        return self.inner.open_object(key, chunk_size)

    def delete_object(self, key):
        self.delete_calls.append(key)
        self._maybe_fail(self.delete_failures, self.always_fail_deletes, key)
        return self.inner.delete_object(key)

    def head_object(self, key):
        return self.inner.head_object(key)

    def object_url(self, key):
        return self.inner.object_url(key)

    def key_from_url(self, url):
        return self.inner.key_from_url(url)

    def presigned_put(self, key, content_type, expires_in):
        return self.inner.presigned_put(key, content_type, expires_in)


class FakeClock:
    """Controllable UTC clock for intent expiry."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def stored_keys(storage: Storage, prefix: str = "") -> list[str]:
    """Keys currently on disk under a local store, sorted, without sidecars."""
    root = Path(storage.config.local_path)
    return sorted(
        path.relative_to(root).as_posix()
        for path in root.rglob("*")
        if path.is_file()
        and not path.name.endswith(LocalStorage.META_SUFFIX)
        and path.relative_to(root).as_posix().startswith(prefix)
    )
