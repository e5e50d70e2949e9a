"""Storage gateway.

The only component that talks to the object store. Blocking backend calls run
on worker threads; transient faults are retried with exponential backoff a
bounded number of times before they surface.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Sequence

from media_pipeline.core.config import settings
from media_pipeline.core.logging import log_warning
from media_pipeline.core.metrics import DELETE_OUTCOMES_TOTAL, STORAGE_OPERATIONS_TOTAL
from media_pipeline.core.retry import RETRY_CONFIGS, RetryConfig, retry_async
from media_pipeline.core.storage import ObjectInfo, ObjectStream, PresignedUpload, Storage, StoredObject
from media_pipeline.modules.derivatives.errors import (
    ObjectNotFoundError,
    StorageError,
    StorageUnavailableError,
)
from media_pipeline.modules.derivatives.models import (
    AssetDerivativeSet,
    DeleteReport,
    DeleteStatus,
    DerivativeDescriptor,
    DerivativeSpec,
    EncodedDerivative,
    KeyDeleteOutcome,
)
from media_pipeline.modules.derivatives.planner import DerivativePlanner

logger = logging.getLogger(__name__)


def is_transient(error: Exception) -> bool:
    return isinstance(error, StorageError) and error.transient


class StorageGateway:
    """Object store access for derivative sets."""

    def __init__(
        self,
        storage: Storage,
        planner: Optional[DerivativePlanner] = None,
        retry_config: Optional[RetryConfig] = None,
        cache_control: Optional[str] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.storage = storage
        self.planner = planner or DerivativePlanner()
        self.retry_config = retry_config or RETRY_CONFIGS["storage"]
        self.cache_control = cache_control or settings.DERIVATIVE_CACHE_CONTROL
        self._sleep = sleep

    async def _call(self, operation: str, key: str, func: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking storage call with retries and outcome metrics."""

        async def attempt() -> Any:
            try:
                return await asyncio.to_thread(func, *args)
            except StorageError:
                raise
            except Exception as e:
                raise StorageError(f"{operation} {key} failed: {e}", key=key, transient=False) from e

        try:
            result = await retry_async(
                attempt,
                self.retry_config,
                is_retryable=is_transient,
                description=f"storage {operation} {key}",
                sleep=self._sleep,
            )
        except ObjectNotFoundError:
            STORAGE_OPERATIONS_TOTAL.labels(operation=operation, outcome="not_found").inc()
            raise
        except StorageError:
            STORAGE_OPERATIONS_TOTAL.labels(operation=operation, outcome="error").inc()
            raise
        STORAGE_OPERATIONS_TOTAL.labels(operation=operation, outcome="success").inc()
        return result

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        """Write an immutable object and return its public URL."""
        await self._call(
            "put", key, self.storage.put_object, key, data, content_type, self.cache_control
        )
        return self.resolve_url(key)

    async def put_derivative(self, base_id: str, derivative: EncodedDerivative) -> DerivativeDescriptor:
        spec = derivative.spec
        key = self.planner.key(base_id, spec.tier, spec.encoding)
        url = await self.put(key, derivative.data, derivative.content_type)
        return DerivativeDescriptor(
            tier=spec.tier,
            encoding=spec.encoding,
            url=url,
            key=key,
            width=derivative.width,
            height=derivative.height,
            size=derivative.size,
        )

    async def put_raw(self, key: str, data: bytes, content_type: str) -> str:
        """Write a raw upload without the immutable cache directive."""
        await self._call("put", key, self.storage.put_object, key, data, content_type, None)
        return self.resolve_url(key)

    async def get(self, key_or_url: str) -> StoredObject:
        """Read an object by key or by any URL this gateway handed out.

        Raises:
            ObjectNotFoundError: If the key does not exist
        """
        key = self.storage.key_from_url(key_or_url)
        return await self._call("get", key, self.storage.get_object, key)

    async def open_stream(self, key_or_url: str) -> ObjectStream:
        """Open an object for chunked reading without loading its body.

        Only opening the object is retried; a fault while the chunks are
        being read surfaces to the consumer.
        """
        key = self.storage.key_from_url(key_or_url)
        return await self._call("get", key, self.storage.open_object, key)

    async def head(self, key: str) -> Optional[ObjectInfo]:
        return await self._call("head", key, self.storage.head_object, key)

    async def delete(self, key: str) -> DeleteStatus:
        """Delete one key. A missing key is a success, not an error."""
        existed = await self._call("delete", key, self.storage.delete_object, key)
        return DeleteStatus.DELETED if existed else DeleteStatus.NOT_FOUND

    async def presign_upload(self, key: str, content_type: str, expires_in: int) -> PresignedUpload:
        return await self._call(
            "presign", key, self.storage.presigned_put, key, content_type, expires_in
        )

    def resolve_url(self, key: str) -> str:
        return self.storage.get_url(key)

    def describe(self, base_id: str, plan: Optional[Sequence[DerivativeSpec]] = None) -> AssetDerivativeSet:
        """Descriptor set of an asset computed from its keys alone, without I/O."""
        specs = self.planner.plan() if plan is None else plan
        return AssetDerivativeSet(
            base_id=base_id,
            derivatives=[
                DerivativeDescriptor(
                    tier=spec.tier,
                    encoding=spec.encoding,
                    url=self.resolve_url(key),
                    key=key,
                )
                for spec, key in zip(specs, self.planner.keys(base_id, specs))
            ],
        )

    async def delete_asset_derivatives(
        self,
        base_id: str,
        plan: Optional[Sequence[DerivativeSpec]] = None,
    ) -> DeleteReport:
        """Delete every key of an asset's plan.

        Keys are recomputed from the plan, never listed. Per-key failures are
        recorded in the report; the call itself only raises when the store
        could not be reached for any key.

        Raises:
            StorageUnavailableError: If every key failed because the store is unreachable
        """
        specs = self.planner.plan() if plan is None else plan
        return await self.delete_keys(base_id, self.planner.keys(base_id, specs))

    async def delete_keys(self, base_id: str, keys: Sequence[str]) -> DeleteReport:
        results = await asyncio.gather(*(self._delete_outcome(key) for key in keys))
        outcomes = [outcome for outcome, _ in results]
        failures = [error for _, error in results if error is not None]

        for outcome in outcomes:
            DELETE_OUTCOMES_TOTAL.labels(status=outcome.status.value).inc()

        if failures and len(failures) == len(keys) and all(
            isinstance(error, StorageUnavailableError) for error in failures
        ):
            raise StorageUnavailableError(
                f"Object store unreachable while deleting derivatives of {base_id}"
            ) from failures[0]

        report = DeleteReport(base_id=base_id, outcomes=outcomes)
        partial = report.partial_error
        if partial is not None:
            for failed in report.errors:
                log_warning(
                    logger,
                    f"Failed to delete {failed.key}: {failed.error}",
                    base_id=base_id,
                    key=failed.key,
                )
            log_warning(logger, str(partial), base_id=base_id, failed_keys=partial.failed_keys)
        return report

    async def _delete_outcome(self, key: str) -> tuple[KeyDeleteOutcome, Optional[StorageError]]:
        try:
            status = await self.delete(key)
        except StorageError as e:
            return KeyDeleteOutcome(key=key, status=DeleteStatus.ERROR, error=e.message), e
        return KeyDeleteOutcome(key=key, status=status), None
