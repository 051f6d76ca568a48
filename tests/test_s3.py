import tempfile
import threading
import time
import unittest
from datetime import datetime, timezone
from pathlib import Path

from botocore.exceptions import ClientError

from s3nav.errors import ErrorKind, StorageError, TransferCancelled
from s3nav.cache import ListingCache
from s3nav.models import ROOT, Container, Loaded, ObjectEntry, ObjectVersion, SubContainer
from s3nav.s3 import S3Gateway, console_url, display_segment

MODIFIED = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)


class _Body:
    def __init__(self, data: bytes, chunk_size: int = 4) -> None:
        self._data = data
        self._chunk_size = chunk_size
        self.closed = False

    def read(self, amount=None) -> bytes:
        if amount is None:
            return self._data
        return self._data[:amount]

    def iter_chunks(self, chunk_size=1024):
        for offset in range(0, len(self._data), self._chunk_size):
            yield self._data[offset : offset + self._chunk_size]

    def close(self) -> None:
        self.closed = True


class _StubClient:
    def __init__(self) -> None:
        self.list_calls: list[dict] = []
        self.get_calls: list[dict] = []
        self.pages: dict[str, dict] = {}
        self.objects: dict[str, bytes] = {}
        self.uploads: list[tuple[str, str, str]] = []
        self.error: Exception | None = None

    def list_buckets(self):
        return {"Buckets": [{"Name": "alpha"}, {"Name": "beta"}]}

    def list_objects_v2(self, **kwargs):
        self.list_calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.pages[kwargs.get("ContinuationToken", "")]

    def head_object(self, Bucket, Key):
        if Key not in self.objects:
            raise ClientError(
                {"Error": {"Code": "404", "Message": "Not Found"}}, "HeadObject"
            )
        return {
            "ContentLength": len(self.objects[Key]),
            "LastModified": MODIFIED,
            "ETag": '"abc123"',
            "ContentType": "text/plain",
            "Metadata": {"owner": "ops"},
        }

    def get_object(self, **kwargs):
        self.get_calls.append(kwargs)
        data = self.objects[kwargs["Key"]]
        response = {"Body": _Body(data), "ContentType": "text/plain"}
        range_header = kwargs.get("Range")
        if range_header and not data:
            raise ClientError(
                {
                    "Error": {
                        "Code": "InvalidRange",
                        "Message": "The requested range is not satisfiable",
                    },
                    "ResponseMetadata": {"HTTPStatusCode": 416},
                },
                "GetObject",
            )
        if range_header:
            end = int(range_header.split("-")[1])
            part = data[: end + 1]
            response["Body"] = _Body(part)
            response["ContentRange"] = f"bytes 0-{len(part) - 1}/{len(data)}"
        else:
            response["ContentLength"] = len(data)
        return response

    def upload_file(self, filename, bucket, key, Callback=None):
        data = Path(filename).read_bytes()
        if Callback is not None:
            for offset in range(0, len(data), 3):
                Callback(len(data[offset : offset + 3]))
        self.uploads.append((filename, bucket, key))

    def list_object_versions(self, Bucket, Prefix):
        return {
            "Versions": [
                {
                    "Key": Prefix,
                    "VersionId": "v2",
                    "IsLatest": True,
                    "Size": 5,
                    "LastModified": MODIFIED,
                },
                {"Key": Prefix, "VersionId": "v1", "IsLatest": False, "Size": 3},
                {"Key": f"{Prefix}.bak", "VersionId": "other", "Size": 1},
            ]
        }


class _SlowClient(_StubClient):
    def list_objects_v2(self, **kwargs):
        time.sleep(0.3)
        return {}


class _MultipartClient(_StubClient):
    """Calls back from several threads at once, like s3transfer does."""

    def upload_file(self, filename, bucket, key, Callback=None):
        def _part() -> None:
            for _ in range(200):
                Callback(1)

        threads = [threading.Thread(target=_part) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.uploads.append((filename, bucket, key))


class TestDisplaySegment(unittest.TestCase):
    def test_strips_parent_prefix(self) -> None:
        self.assertEqual(display_segment("logs/2024/", "logs/"), "2024")
        self.assertEqual(display_segment("logs/", ""), "logs")


class TestConsoleUrl(unittest.TestCase):
    def test_bucket_list(self) -> None:
        self.assertEqual(console_url(), "https://s3.console.aws.amazon.com/s3/buckets")

    def test_prefix(self) -> None:
        self.assertEqual(
            console_url("alpha", "logs/2024/", region="eu-west-1"),
            "https://s3.console.aws.amazon.com/s3/buckets/alpha"
            "?region=eu-west-1&prefix=logs/2024/",
        )
        self.assertEqual(
            console_url("alpha"), "https://s3.console.aws.amazon.com/s3/buckets/alpha"
        )

    def test_object(self) -> None:
        self.assertEqual(
            console_url("alpha", key="logs/app log.txt"),
            "https://s3.console.aws.amazon.com/s3/object/alpha?prefix=logs/app%20log.txt",
        )


class TestS3Gateway(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.client = _StubClient()
        self.gateway = S3Gateway(client=self.client, page_size=2)

    async def test_root_lists_buckets_as_single_page(self) -> None:
        page = await self.gateway.list_children(ROOT)
        self.assertEqual(
            page.items,
            (SubContainer(name="alpha", bucket="alpha"), SubContainer(name="beta", bucket="beta")),
        )
        self.assertFalse(page.has_more)
        self.assertEqual(self.client.list_calls, [])

    async def test_list_children_splits_prefixes_and_objects(self) -> None:
        self.client.pages[""] = {
            "CommonPrefixes": [{"Prefix": "logs/2024/"}],
            "Contents": [
                {"Key": "logs/", "Size": 0},
                {
                    "Key": "logs/app.log",
                    "Size": 42,
                    "LastModified": MODIFIED,
                    "ETag": '"e1"',
                    "StorageClass": "STANDARD",
                },
            ],
            "IsTruncated": True,
            "NextContinuationToken": "tok-2",
        }
        page = await self.gateway.list_children(Container(bucket="alpha", prefix="logs/"))

        self.assertEqual(
            page.items,
            (
                SubContainer(name="2024", bucket="alpha", prefix="logs/2024/"),
                ObjectEntry(
                    name="app.log",
                    bucket="alpha",
                    key="logs/app.log",
                    size=42,
                    last_modified=MODIFIED,
                    etag="e1",
                    storage_class="STANDARD",
                ),
            ),
        )
        self.assertTrue(page.has_more)
        self.assertEqual(page.next_token, "tok-2")
        self.assertEqual(
            self.client.list_calls,
            [{"Bucket": "alpha", "Delimiter": "/", "Prefix": "logs/", "MaxKeys": 2}],
        )

    async def test_pages_stay_in_key_order(self) -> None:
        self.client.pages[""] = {
            "CommonPrefixes": [{"Prefix": "c/"}],
            "Contents": [{"Key": "a.txt", "Size": 1}, {"Key": "d.txt", "Size": 1}],
            "IsTruncated": True,
            "NextContinuationToken": "tok-2",
        }
        self.client.pages["tok-2"] = {
            "CommonPrefixes": [{"Prefix": "e/"}],
            "Contents": [{"Key": "d2.txt", "Size": 1}, {"Key": "f.txt", "Size": 1}],
        }
        container = Container(bucket="alpha")
        cache = ListingCache()
        first = await self.gateway.list_children(container)
        cache.append_page(
            container, cache.begin_load(container), first.items, first.next_token, first.has_more
        )
        second = await self.gateway.list_children(container, first.next_token)
        cache.append_page(
            container,
            cache.begin_load_more(container),
            second.items,
            second.next_token,
            second.has_more,
        )

        state = cache.get(container)
        self.assertIsInstance(state, Loaded)
        names = [entry.name for entry in state.items]
        self.assertEqual(names, ["a.txt", "c", "d.txt", "d2.txt", "e", "f.txt"])

    async def test_list_children_passes_continuation_token(self) -> None:
        self.client.pages["tok-2"] = {"Contents": [{"Key": "z.txt", "Size": 1}]}
        page = await self.gateway.list_children(Container(bucket="alpha"), "tok-2")
        self.assertEqual(self.client.list_calls[0]["ContinuationToken"], "tok-2")
        self.assertFalse(page.has_more)
        self.assertIsNone(page.next_token)

    async def test_empty_bucket(self) -> None:
        self.client.pages[""] = {"KeyCount": 0, "IsTruncated": False}
        page = await self.gateway.list_children(Container(bucket="alpha"))
        self.assertEqual(page.items, ())
        self.assertFalse(page.has_more)

    async def test_truncated_without_token_stops_paging(self) -> None:
        self.client.pages[""] = {"Contents": [{"Key": "a", "Size": 1}], "IsTruncated": True}
        page = await self.gateway.list_children(Container(bucket="alpha"))
        self.assertFalse(page.has_more)

    async def test_client_errors_are_classified(self) -> None:
        self.client.error = ClientError(
            {"Error": {"Code": "SlowDown", "Message": "Reduce your request rate"}},
            "ListObjectsV2",
        )
        with self.assertRaises(StorageError) as ctx:
            await self.gateway.list_children(Container(bucket="alpha"))
        self.assertIs(ctx.exception.kind, ErrorKind.THROTTLED)

    async def test_deadline_expiry_is_transient(self) -> None:
        gateway = S3Gateway(client=_SlowClient(), request_timeout=0.05)
        with self.assertRaises(StorageError) as ctx:
            await gateway.list_children(Container(bucket="alpha"))
        self.assertIs(ctx.exception.kind, ErrorKind.TRANSIENT)

    async def test_head_object(self) -> None:
        self.client.objects["notes.txt"] = b"hello"
        meta = await self.gateway.head_object("alpha", "notes.txt")
        self.assertEqual(meta.size, 5)
        self.assertEqual(meta.etag, "abc123")
        self.assertEqual(meta.storage_class, "STANDARD")
        self.assertEqual(meta.metadata, {"owner": "ops"})

    async def test_head_object_rejects_prefix_keys(self) -> None:
        for key in ("", "logs/"):
            with self.subTest(key=key):
                with self.assertRaises(StorageError) as ctx:
                    await self.gateway.head_object("alpha", key)
                self.assertIs(ctx.exception.kind, ErrorKind.NOT_AN_OBJECT)

    async def test_head_missing_object_is_not_found(self) -> None:
        with self.assertRaises(StorageError) as ctx:
            await self.gateway.head_object("alpha", "missing.txt")
        self.assertIs(ctx.exception.kind, ErrorKind.NOT_FOUND)

    async def test_fetch_prefix_uses_range(self) -> None:
        self.client.objects["big.txt"] = b"0123456789"
        prefix = await self.gateway.fetch_prefix("alpha", "big.txt", 4)
        self.assertEqual(prefix.data, b"0123")
        self.assertEqual(prefix.total_size, 10)
        self.assertTrue(prefix.truncated)
        self.assertEqual(self.client.get_calls[0]["Range"], "bytes=0-3")

    async def test_fetch_prefix_of_empty_object(self) -> None:
        self.client.objects["empty.txt"] = b""
        prefix = await self.gateway.fetch_prefix("alpha", "empty.txt", 4)
        self.assertEqual(prefix.data, b"")
        self.assertEqual(prefix.total_size, 0)
        self.assertFalse(prefix.truncated)

    async def test_list_object_versions_keeps_exact_key(self) -> None:
        versions = await self.gateway.list_object_versions("alpha", "notes.txt")
        self.assertEqual(
            versions,
            (
                ObjectVersion(version_id="v2", size=5, last_modified=MODIFIED, is_latest=True),
                ObjectVersion(version_id="v1", size=3),
            ),
        )

    async def test_download_reports_cumulative_progress(self) -> None:
        self.client.objects["data.bin"] = b"abcdefghij"
        progress: list[int] = []
        with tempfile.TemporaryDirectory() as temp_dir:
            destination = Path(temp_dir) / "nested" / "data.bin"
            result = await self.gateway.download_to(
                "alpha", "data.bin", destination, progress.append, threading.Event()
            )
            self.assertEqual(result, destination)
            self.assertEqual(destination.read_bytes(), b"abcdefghij")
        self.assertEqual(progress, [4, 8, 10])

    async def test_download_cancel_leaves_partial_file(self) -> None:
        self.client.objects["data.bin"] = b"abcdefghij"
        cancel = threading.Event()

        def sink(value: int) -> None:
            cancel.set()

        with tempfile.TemporaryDirectory() as temp_dir:
            destination = Path(temp_dir) / "data.bin"
            with self.assertRaises(TransferCancelled):
                await self.gateway.download_to("alpha", "data.bin", destination, sink, cancel)
            self.assertEqual(destination.read_bytes(), b"abcd")

    async def test_download_into_unwritable_path_is_local_error(self) -> None:
        self.client.objects["data.bin"] = b"abc"
        with tempfile.TemporaryDirectory() as temp_dir:
            blocker = Path(temp_dir) / "file"
            blocker.write_text("x")
            with self.assertRaises(StorageError) as ctx:
                await self.gateway.download_to(
                    "alpha", "data.bin", blocker / "data.bin", None, None
                )
        self.assertIs(ctx.exception.kind, ErrorKind.LOCAL_IO)

    async def test_upload_reports_progress(self) -> None:
        progress: list[int] = []
        with tempfile.TemporaryDirectory() as temp_dir:
            source = Path(temp_dir) / "report.csv"
            source.write_bytes(b"a,b,c\n1,2")
            key = await self.gateway.upload(
                source, "alpha", "in/report.csv", progress.append, threading.Event()
            )
        self.assertEqual(key, "in/report.csv")
        self.assertEqual(progress, [3, 6, 9])
        self.assertEqual(self.client.uploads[0][1:], ("alpha", "in/report.csv"))

    async def test_upload_progress_from_many_threads(self) -> None:
        gateway = S3Gateway(client=_MultipartClient())
        progress: list[int] = []
        with tempfile.TemporaryDirectory() as temp_dir:
            source = Path(temp_dir) / "big.bin"
            source.write_bytes(b"x" * 1600)
            await gateway.upload(source, "alpha", "big.bin", progress.append, threading.Event())
        self.assertEqual(len(progress), 1600)
        self.assertEqual(progress, sorted(progress))
        self.assertEqual(progress[-1], 1600)

    async def test_upload_progress_ignores_rollback_below_zero(self) -> None:
        class _RetryingClient(_StubClient):
            def upload_file(self, filename, bucket, key, Callback=None):
                Callback(4)
                Callback(-10)
                Callback(6)
                self.uploads.append((filename, bucket, key))

        gateway = S3Gateway(client=_RetryingClient())
        progress: list[int] = []
        with tempfile.TemporaryDirectory() as temp_dir:
            source = Path(temp_dir) / "a.bin"
            source.write_bytes(b"abcdef")
            await gateway.upload(source, "alpha", "a.bin", progress.append, None)
        self.assertEqual(progress, [4, 0, 6])

    async def test_upload_cancel(self) -> None:
        cancel = threading.Event()
        cancel.set()
        with tempfile.TemporaryDirectory() as temp_dir:
            source = Path(temp_dir) / "report.csv"
            source.write_bytes(b"abcdef")
            with self.assertRaises(TransferCancelled):
                await self.gateway.upload(source, "alpha", "report.csv", None, cancel)
        self.assertEqual(self.client.uploads, [])

    async def test_upload_missing_source(self) -> None:
        with self.assertRaises(StorageError) as ctx:
            await self.gateway.upload(Path("/nonexistent/file"), "alpha", "k", None, None)
        self.assertIs(ctx.exception.kind, ErrorKind.LOCAL_IO)


if __name__ == "__main__":
    unittest.main()
