"""Tests for the storage gateway and its backends."""

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from media_pipeline.core.retry import RetryConfig
from media_pipeline.core.storage import S3Storage, Storage, StorageConfig
from media_pipeline.modules.derivatives.errors import (
    ObjectNotFoundError,
    StorageError,
    StorageUnavailableError,
)
from media_pipeline.modules.derivatives.gateway import StorageGateway
from media_pipeline.modules.derivatives.models import DeleteStatus

from support import local_config, make_gateway, no_sleep

IMMUTABLE = "public, max-age=31536000, immutable"


def client_error(code: str, status: int, operation: str = "HeadObject") -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


def s3_storage(client: MagicMock, **overrides) -> Storage:
    values = dict(backend="s3", bucket="photos", region="eu-west-1")
    values.update(overrides)
    config = StorageConfig(**values)
    return Storage(config, backend=S3Storage(config, client=client))


class TestPutAndGet:
    """Objects round-trip through put and get."""

    @pytest.mark.asyncio
    async def test_put_returns_resolvable_url(self, gateway) -> None:
        url = await gateway.put("photo-app-images/a1-small.webp", b"webp-bytes", "image/webp")

        assert url == "http://testserver/api/v1/media/photo-app-images/a1-small.webp"
        by_url = await gateway.get(url)
        by_key = await gateway.get("photo-app-images/a1-small.webp")
        assert by_url.data == by_key.data == b"webp-bytes"
        assert by_url.content_type == "image/webp"
        assert by_url.length == len(b"webp-bytes")

    @pytest.mark.asyncio
    async def test_get_missing_key(self, gateway) -> None:
        with pytest.raises(ObjectNotFoundError):
            await gateway.get("photo-app-images/missing-small.webp")

    @pytest.mark.asyncio
    async def test_put_overwrites(self, gateway) -> None:
        await gateway.put("k/x.webp", b"one", "image/webp")
        await gateway.put("k/x.webp", b"two", "image/webp")
        assert (await gateway.get("k/x.webp")).data == b"two"

    @pytest.mark.asyncio
    async def test_key_cannot_escape_root(self, gateway) -> None:
        with pytest.raises(StorageError):
            await gateway.put("../outside.webp", b"x", "image/webp")

    def test_open_object_reads_in_chunks(self, storage) -> None:
        storage.put_object("k/blob.bin", b"abcdefghij")

        stream = storage.open_object("k/blob.bin", chunk_size=4)

        assert stream.length == 10
        assert stream.content_type == "application/octet-stream"
        assert list(stream.chunks) == [b"abcd", b"efgh", b"ij"]

    def test_open_missing_object(self, storage) -> None:
        with pytest.raises(ObjectNotFoundError):
            storage.open_object("k/missing.bin")

    @pytest.mark.asyncio
    async def test_head_reports_size_and_type(self, gateway) -> None:
        await gateway.put("k/x.webp", b"12345", "image/webp")

        info = await gateway.head("k/x.webp")

        assert (info.length, info.content_type) == (5, "image/webp")
        assert await gateway.head("k/missing.webp") is None


class TestUrlResolution:
    """URLs are CDN-rewritten when a CDN is configured."""

    def test_cdn_rewrite(self, tmp_path, planner) -> None:
        storage = Storage(local_config(tmp_path, cdn_domain="cdn.example.com", cdn_enabled=True))
        gateway = make_gateway(storage, planner)

        url = gateway.resolve_url("photo-app-images/a1-thumbnail.webp")

        assert url == "https://cdn.example.com/photo-app-images/a1-thumbnail.webp"
        assert storage.key_from_url(url) == "photo-app-images/a1-thumbnail.webp"

    def test_cdn_domain_without_flag_is_ignored(self, tmp_path) -> None:
        storage = Storage(local_config(tmp_path, cdn_domain="cdn.example.com", cdn_enabled=False))
        assert storage.get_url("a/b.webp").startswith("http://testserver/")

    def test_s3_native_url(self) -> None:
        storage = s3_storage(MagicMock())
        url = storage.get_url("photo-app-images/a1-small.avif")

        assert url == "https://photos.s3.eu-west-1.amazonaws.com/photo-app-images/a1-small.avif"
        assert storage.key_from_url(url) == "photo-app-images/a1-small.avif"

    def test_s3_compatible_endpoint_url(self) -> None:
        storage = s3_storage(MagicMock(), endpoint_url="http://minio:9000")
        url = storage.get_url("photo-app-images/a1-small.avif")

        assert url == "http://minio:9000/photos/photo-app-images/a1-small.avif"
        assert storage.key_from_url(url) == "photo-app-images/a1-small.avif"

    def test_describe_needs_no_io(self, planner) -> None:
        client = MagicMock()
        gateway = make_gateway(s3_storage(client), planner)

        described = gateway.describe("a1")

        assert [d.key for d in described.derivatives] == planner.keys("a1")
        assert described.urls()["original"]["webp"].endswith("/photo-app-images/a1-original.webp")
        assert client.method_calls == []


class TestS3Backend:
    """boto3 calls carry the cache policy and map errors onto the taxonomy."""

    @pytest.mark.asyncio
    async def test_put_sets_immutable_cache_control(self, planner) -> None:
        client = MagicMock()
        client.put_object.return_value = {"ETag": '"abc"'}
        gateway = make_gateway(s3_storage(client), planner)

        await gateway.put("photo-app-images/a1-small.webp", b"data", "image/webp")

        kwargs = client.put_object.call_args.kwargs
        assert kwargs["Bucket"] == "photos"
        assert kwargs["Key"] == "photo-app-images/a1-small.webp"
        assert kwargs["ContentType"] == "image/webp"
        assert kwargs["CacheControl"] == IMMUTABLE

    @pytest.mark.asyncio
    async def test_raw_put_has_no_cache_control(self, planner) -> None:
        client = MagicMock()
        client.put_object.return_value = {}
        gateway = make_gateway(s3_storage(client), planner)

        await gateway.put_raw("photo-app-raw/image-1-abcdef12.jpg", b"raw", "image/jpeg")

        assert "CacheControl" not in client.put_object.call_args.kwargs

    @pytest.mark.asyncio
    async def test_delete_missing_key_is_not_found(self, planner) -> None:
        client = MagicMock()
        client.head_object.side_effect = client_error("404", 404)
        gateway = make_gateway(s3_storage(client), planner)

        status = await gateway.delete("photo-app-images/a1-small.webp")

        assert status == DeleteStatus.NOT_FOUND
        client.delete_object.assert_not_called()

    @pytest.mark.asyncio
    async def test_delete_existing_key(self, planner) -> None:
        client = MagicMock()
        gateway = make_gateway(s3_storage(client), planner)

        status = await gateway.delete("photo-app-images/a1-small.webp")

        assert status == DeleteStatus.DELETED
        client.delete_object.assert_called_once_with(Bucket="photos", Key="photo-app-images/a1-small.webp")

    @pytest.mark.asyncio
    async def test_head_maps_response(self, planner) -> None:
        client = MagicMock()
        client.head_object.return_value = {"ContentType": "image/jpeg", "ContentLength": 19547}
        gateway = make_gateway(s3_storage(client), planner)

        info = await gateway.head("photo-app-raw/image-1-abcdef12.jpg")

        assert (info.length, info.content_type) == (19547, "image/jpeg")
        client.head_object.assert_called_once_with(Bucket="photos", Key="photo-app-raw/image-1-abcdef12.jpg")

    @pytest.mark.asyncio
    async def test_open_stream_does_not_buffer_body(self, planner) -> None:
        body = MagicMock()
        body.iter_chunks.return_value = iter([b"abc", b"def"])
        client = MagicMock()
        client.get_object.return_value = {"Body": body, "ContentType": "image/webp", "ContentLength": 6}
        gateway = make_gateway(s3_storage(client), planner)

        stream = await gateway.open_stream("photo-app-images/a1-small.webp")

        assert (stream.length, stream.content_type) == (6, "image/webp")
        body.close.assert_not_called()
        assert list(stream.chunks) == [b"abc", b"def"]
        body.read.assert_not_called()
        body.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_throttling_is_retried(self, planner) -> None:
        client = MagicMock()
        client.put_object.side_effect = [client_error("SlowDown", 503, "PutObject"), {"ETag": '"e"'}]
        gateway = make_gateway(s3_storage(client), planner)

        await gateway.put("k/a.webp", b"x", "image/webp")

        assert client.put_object.call_count == 2

    @pytest.mark.asyncio
    async def test_access_denied_is_not_retried(self, planner) -> None:
        client = MagicMock()
        client.put_object.side_effect = client_error("AccessDenied", 403, "PutObject")
        gateway = make_gateway(s3_storage(client), planner)

        with pytest.raises(StorageError) as exc_info:
            await gateway.put("k/a.webp", b"x", "image/webp")

        assert exc_info.value.transient is False
        assert client.put_object.call_count == 1

    @pytest.mark.asyncio
    async def test_unreachable_endpoint(self, planner) -> None:
        client = MagicMock()
        client.get_object.side_effect = EndpointConnectionError(endpoint_url="https://s3.example")
        gateway = make_gateway(s3_storage(client), planner)

        with pytest.raises(StorageUnavailableError):
            await gateway.get("k/a.webp")
        assert client.get_object.call_count == 3

    @pytest.mark.asyncio
    async def test_presigned_put_is_scoped(self, planner) -> None:
        client = MagicMock()
        client.generate_presigned_url.return_value = "https://photos.s3/presigned"
        gateway = make_gateway(s3_storage(client), planner)

        presigned = await gateway.presign_upload("photo-app-raw/image-1-abcdef12.jpg", "image/jpeg", 300)

        client.generate_presigned_url.assert_called_once_with(
            "put_object",
            Params={"Bucket": "photos", "Key": "photo-app-raw/image-1-abcdef12.jpg", "ContentType": "image/jpeg"},
            ExpiresIn=300,
            HttpMethod="PUT",
        )
        assert presigned.method == "PUT"
        assert presigned.headers == {"Content-Type": "image/jpeg"}


class TestRetry:
    """Transient faults are retried a bounded number of times."""

    @pytest.mark.asyncio
    async def test_transient_fault_recovers(self, faulty_storage, faulty_backend, planner) -> None:
        faulty_backend.put_failures["k/a.webp"] = [StorageError("blip"), StorageError("blip")]
        gateway = make_gateway(faulty_storage, planner)

        await gateway.put("k/a.webp", b"x", "image/webp")

        assert faulty_backend.put_calls == ["k/a.webp"] * 3

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, faulty_storage, faulty_backend, planner) -> None:
        faulty_backend.always_fail_puts["k/a.webp"] = StorageError("down")
        gateway = make_gateway(faulty_storage, planner)

        with pytest.raises(StorageError):
            await gateway.put("k/a.webp", b"x", "image/webp")

        assert len(faulty_backend.put_calls) == 3

    @pytest.mark.asyncio
    async def test_backoff_delays(self, faulty_storage, faulty_backend, planner) -> None:
        delays = []

        async def record_sleep(delay: float) -> None:
            delays.append(delay)

        faulty_backend.always_fail_puts["k/a.webp"] = StorageError("down")
        gateway = StorageGateway(
            faulty_storage,
            planner,
            retry_config=RetryConfig(max_attempts=4, initial_delay=0.1, max_delay=0.3, backoff_multiplier=2),
            sleep=record_sleep,
        )

        with pytest.raises(StorageError):
            await gateway.put("k/a.webp", b"x", "image/webp")

        assert delays == pytest.approx([0.1, 0.2, 0.3])


class TestFanOutDelete:
    """Fan-out delete is idempotent and best-effort."""

    async def _store_all(self, gateway, base_id: str) -> list[str]:
        keys = gateway.planner.keys(base_id)
        for key in keys:
            await gateway.put(key, b"x", "image/webp")
        return keys

    @pytest.mark.asyncio
    async def test_delete_then_delete_again(self, gateway) -> None:
        keys = await self._store_all(gateway, "a1")

        first = await gateway.delete_asset_derivatives("a1")
        second = await gateway.delete_asset_derivatives("a1")

        assert sorted(first.deleted) == sorted(keys)
        assert not first.has_errors
        assert sorted(second.not_found) == sorted(keys)
        assert not second.has_errors
        assert second.partial_error is None

    @pytest.mark.asyncio
    async def test_partial_failure_is_reported_not_raised(self, faulty_storage, faulty_backend, planner) -> None:
        gateway = make_gateway(faulty_storage, planner)
        keys = await self._store_all(gateway, "a1")
        faulty_backend.always_fail_deletes[keys[1]] = StorageError("denied", transient=False)

        report = await gateway.delete_asset_derivatives("a1")

        assert [o.key for o in report.errors] == [keys[1]]
        assert sorted(report.deleted) == sorted(set(keys) - {keys[1]})
        assert report.partial_error.failed_keys == [keys[1]]

    @pytest.mark.asyncio
    async def test_unreachable_store_fails_whole_call(self, faulty_storage, faulty_backend, planner) -> None:
        gateway = make_gateway(faulty_storage, planner)
        for key in planner.keys("a1"):
            faulty_backend.always_fail_deletes[key] = StorageUnavailableError("no route")

        with pytest.raises(StorageUnavailableError):
            await gateway.delete_asset_derivatives("a1")

    @pytest.mark.asyncio
    async def test_deletion_recomputes_keys_from_plan(self, faulty_storage, faulty_backend, planner) -> None:
        gateway = make_gateway(faulty_storage, planner)

        report = await gateway.delete_asset_derivatives("a1")

        assert sorted(faulty_backend.delete_calls) == sorted(planner.keys("a1"))
        assert sorted(report.not_found) == sorted(planner.keys("a1"))
