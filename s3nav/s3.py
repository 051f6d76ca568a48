from __future__ import annotations

import asyncio
import logging
import os
import threading
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import quote, urlencode

import boto3
from botocore.config import Config

from .errors import (
    ErrorKind,
    StorageError,
    TransferCancelled,
    classify_error,
    is_invalid_range,
)
from .models import (
    Container,
    Entry,
    ListPage,
    ObjectEntry,
    ObjectMeta,
    ObjectPrefix,
    ObjectVersion,
    SubContainer,
)

logger = logging.getLogger(__name__)

ProgressSink = Callable[[int], None]

DOWNLOAD_CHUNK_SIZE = 256 * 1024
CONSOLE_BASE = "https://s3.console.aws.amazon.com/s3"


def display_segment(full_prefix: str, parent_prefix: str) -> str:
    name = full_prefix[len(parent_prefix) :] if parent_prefix else full_prefix
    return name.strip("/")


def _listing_key(entry: Entry) -> str:
    if isinstance(entry, SubContainer):
        return entry.prefix
    return entry.key


def console_url(
    bucket: Optional[str] = None,
    prefix: str = "",
    key: Optional[str] = None,
    region: Optional[str] = None,
) -> str:
    """Management console page for the bucket list, a prefix, or one object."""
    if not bucket:
        return f"{CONSOLE_BASE}/buckets"
    params = {}
    if region:
        params["region"] = region
    if key:
        params["prefix"] = key
        path = f"{CONSOLE_BASE}/object/{quote(bucket)}"
    else:
        if prefix:
            params["prefix"] = prefix
        path = f"{CONSOLE_BASE}/buckets/{quote(bucket)}"
    if not params:
        return path
    return f"{path}?{urlencode(params, quote_via=quote, safe='/')}"


class S3Gateway:
    """Asynchronous facade over a boto3 S3 client.

    Every blocking call runs in a worker thread and every failure leaves as a
    StorageError.
    """

    def __init__(
        self,
        client: Optional[object] = None,
        profile: Optional[str] = None,
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        page_size: int = 1000,
        request_timeout: Optional[float] = 30.0,
    ) -> None:
        self._client_handle = client
        self.profile = profile
        self._region = region
        self._endpoint_url = endpoint_url
        self.page_size = max(1, min(1000, int(page_size)))
        self.request_timeout = request_timeout

    def _client(self):
        if self._client_handle is not None:
            return self._client_handle
        if self.profile is None:
            session = boto3.session.Session()
        else:
            session = boto3.session.Session(profile_name=self.profile)
        kwargs: dict[str, object] = {}
        if self.request_timeout:
            kwargs["config"] = Config(
                connect_timeout=self.request_timeout,
                read_timeout=self.request_timeout,
            )
        if self._region:
            kwargs["region_name"] = self._region
        if self._endpoint_url:
            kwargs["endpoint_url"] = self._endpoint_url
        self._client_handle = session.client("s3", **kwargs)
        return self._client_handle

    async def _call(self, func, *args, deadline: bool = True):
        try:
            if deadline and self.request_timeout:
                return await asyncio.wait_for(
                    asyncio.to_thread(func, *args), self.request_timeout
                )
            return await asyncio.to_thread(func, *args)
        except asyncio.CancelledError:
            raise
        except TransferCancelled:
            raise
        except Exception as exc:
            error = classify_error(exc)
            logger.warning("%s failed: %s", getattr(func, "__name__", func), error)
            if error is exc:
                raise
            raise error from exc

    async def list_children(
        self, container: Container, page_token: Optional[str] = None
    ) -> ListPage:
        if container.is_root:
            return await self._call(self._list_bucket_page)
        return await self._call(self._list_children, container, page_token)

    async def list_buckets(self) -> list[str]:
        return await self._call(self._list_buckets)

    def _list_buckets(self) -> list[str]:
        client = self._client()
        response = client.list_buckets()
        return [bucket["Name"] for bucket in response.get("Buckets", [])]

    def _list_bucket_page(self) -> ListPage:
        items = tuple(
            SubContainer(name=name, bucket=name) for name in self._list_buckets()
        )
        return ListPage(items=items, next_token=None, has_more=False)

    def _list_children(
        self, container: Container, page_token: Optional[str]
    ) -> ListPage:
        client = self._client()
        prefix = container.prefix
        kwargs = {
            "Bucket": container.bucket,
            "Delimiter": "/",
            "Prefix": prefix,
            "MaxKeys": self.page_size,
        }
        if page_token:
            kwargs["ContinuationToken"] = page_token
        response = client.list_objects_v2(**kwargs)
        items: list[Entry] = []
        for entry in response.get("CommonPrefixes", []) or []:
            value = entry.get("Prefix")
            if not value:
                continue
            items.append(
                SubContainer(
                    name=display_segment(value, prefix),
                    bucket=container.bucket,
                    prefix=value,
                )
            )
        for entry in response.get("Contents", []) or []:
            key = entry.get("Key")
            if not key:
                continue
            if prefix and key == prefix:
                continue
            items.append(
                ObjectEntry(
                    name=key[len(prefix) :] if prefix else key,
                    bucket=container.bucket,
                    key=key,
                    size=int(entry.get("Size", 0)),
                    last_modified=entry.get("LastModified"),
                    etag=_strip_etag(entry.get("ETag")),
                    storage_class=entry.get("StorageClass"),
                )
            )
        # CommonPrefixes and Contents come back as two lists; interleave by key
        items.sort(key=_listing_key)
        has_more = bool(response.get("IsTruncated"))
        next_token = response.get("NextContinuationToken") if has_more else None
        if has_more and not next_token:
            logger.warning(
                "listing of %s truncated without continuation token", container.uri
            )
            has_more = False
        return ListPage(items=tuple(items), next_token=next_token, has_more=has_more)

    async def head_object(self, bucket: str, key: str) -> ObjectMeta:
        if not key or key.endswith("/"):
            raise StorageError(ErrorKind.NOT_AN_OBJECT, f"s3://{bucket}/{key}")
        return await self._call(self._head_object, bucket, key)

    def _head_object(self, bucket: str, key: str) -> ObjectMeta:
        client = self._client()
        response = client.head_object(Bucket=bucket, Key=key)
        return ObjectMeta(
            bucket=bucket,
            key=key,
            size=int(response.get("ContentLength", 0)),
            last_modified=response.get("LastModified"),
            etag=_strip_etag(response.get("ETag")),
            content_type=response.get("ContentType"),
            storage_class=response.get("StorageClass") or "STANDARD",
            metadata=dict(response.get("Metadata") or {}),
        )

    async def list_object_versions(self, bucket: str, key: str) -> tuple[ObjectVersion, ...]:
        return await self._call(self._list_object_versions, bucket, key)

    def _list_object_versions(self, bucket: str, key: str) -> tuple[ObjectVersion, ...]:
        client = self._client()
        response = client.list_object_versions(Bucket=bucket, Prefix=key)
        versions = []
        for version in response.get("Versions", []) or []:
            if version.get("Key") != key:
                continue
            versions.append(
                ObjectVersion(
                    version_id=str(version.get("VersionId") or "null"),
                    size=int(version.get("Size", 0)),
                    last_modified=version.get("LastModified"),
                    is_latest=bool(version.get("IsLatest")),
                )
            )
        return tuple(versions)

    async def fetch_prefix(self, bucket: str, key: str, max_bytes: int) -> ObjectPrefix:
        if not key or key.endswith("/"):
            raise StorageError(ErrorKind.NOT_AN_OBJECT, f"s3://{bucket}/{key}")
        return await self._call(self._fetch_prefix, bucket, key, max_bytes)

    def _fetch_prefix(self, bucket: str, key: str, max_bytes: int) -> ObjectPrefix:
        client = self._client()
        try:
            response = client.get_object(
                Bucket=bucket,
                Key=key,
                Range=f"bytes=0-{max(0, max_bytes - 1)}",
            )
        except Exception as exc:
            # S3 rejects any range on a zero-byte object
            if is_invalid_range(exc):
                return ObjectPrefix(data=b"", total_size=0)
            raise
        body = response.get("Body")
        data = b""
        if body is not None:
            try:
                data = body.read(max_bytes)
            finally:
                try:
                    body.close()
                except Exception:
                    pass
        total_size: Optional[int] = None
        content_range = response.get("ContentRange")
        if content_range:
            # Expected: "bytes start-end/total"
            parts = content_range.split("/")
            if len(parts) == 2 and parts[1].isdigit():
                total_size = int(parts[1])
        else:
            content_length = response.get("ContentLength")
            if isinstance(content_length, int):
                total_size = content_length
        return ObjectPrefix(
            data=data,
            total_size=total_size,
            content_type=response.get("ContentType"),
        )

    async def download_to(
        self,
        bucket: str,
        key: str,
        destination: Path,
        progress_sink: Optional[ProgressSink] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Path:
        return await self._call(
            self._download_to,
            bucket,
            key,
            Path(destination),
            progress_sink,
            cancel_event,
            deadline=False,
        )

    def _download_to(
        self,
        bucket: str,
        key: str,
        destination: Path,
        progress_sink: Optional[ProgressSink],
        cancel_event: Optional[threading.Event],
    ) -> Path:
        client = self._client()
        response = client.get_object(Bucket=bucket, Key=key)
        body = response["Body"]
        parent = os.path.dirname(str(destination))
        if parent:
            os.makedirs(parent, exist_ok=True)
        written = 0
        try:
            with open(destination, "wb") as handle:
                for chunk in body.iter_chunks(DOWNLOAD_CHUNK_SIZE):
                    if cancel_event is not None and cancel_event.is_set():
                        raise TransferCancelled(f"download of {key} cancelled")
                    if not chunk:
                        continue
                    handle.write(chunk)
                    written += len(chunk)
                    if progress_sink is not None:
                        progress_sink(written)
        finally:
            try:
                body.close()
            except Exception:
                pass
        return destination

    async def upload(
        self,
        source: Path,
        bucket: str,
        key: str,
        progress_sink: Optional[ProgressSink] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> str:
        if not key or key.endswith("/"):
            raise StorageError(ErrorKind.NOT_AN_OBJECT, f"s3://{bucket}/{key}")
        return await self._call(
            self._upload,
            Path(source),
            bucket,
            key,
            progress_sink,
            cancel_event,
            deadline=False,
        )

    def _upload(
        self,
        source: Path,
        bucket: str,
        key: str,
        progress_sink: Optional[ProgressSink],
        cancel_event: Optional[threading.Event],
    ) -> str:
        if not source.is_file():
            raise StorageError(ErrorKind.LOCAL_IO, f"not a readable file: {source}")
        client = self._client()
        callback = _transfer_callback(progress_sink, cancel_event)
        client.upload_file(str(source), bucket, key, Callback=callback)
        return key


def _transfer_callback(
    progress_sink: Optional[ProgressSink],
    cancel_event: Optional[threading.Event],
):
    if progress_sink is None and cancel_event is None:
        return None

    # multipart uploads call back from several s3transfer threads
    lock = threading.Lock()
    transferred = 0

    def _callback(bytes_amount: int) -> None:
        nonlocal transferred
        if cancel_event is not None and cancel_event.is_set():
            raise TransferCancelled("transfer cancelled")
        with lock:
            # retried parts report negative amounts
            transferred = max(0, transferred + bytes_amount)
            if progress_sink is not None:
                progress_sink(transferred)

    return _callback


def _strip_etag(value: object) -> Optional[str]:
    if not isinstance(value, str):
        return None
    return value.strip('"') or None
