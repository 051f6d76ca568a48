from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Awaitable, Callable, Optional, TypeVar

from .cache import ListingCache
from .errors import ErrorKind, StorageError, classify_error
from .events import (
    Completion,
    ListingFailed,
    ListingLoaded,
    MetadataFailed,
    MetadataLoaded,
)
from .models import Container, Failed, Loaded, NotLoaded, ObjectVersion

logger = logging.getLogger(__name__)

THROTTLE_RETRIES = 1

T = TypeVar("T")

PostFn = Callable[[Completion], None]


class FetchOrchestrator:
    """Issues listing and metadata requests for the containers being viewed.

    Requests are fire-and-forget: a request for a container the user has left
    keeps running, and its completion is dropped by the cache token check when
    it is applied.
    """

    def __init__(
        self,
        gateway,
        cache: ListingCache,
        post: PostFn,
        throttle_backoff: float = 1.0,
    ) -> None:
        self._gateway = gateway
        self._cache = cache
        self._post = post
        self._throttle_backoff = throttle_backoff
        self._tasks: set[asyncio.Task] = set()
        self._meta_token = 0
        self.remote_calls = 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def ensure_loaded(self, container: Container) -> Optional[int]:
        state = self._cache.get(container)
        if not isinstance(state, NotLoaded):
            return None
        token = self._cache.begin_load(container)
        self._spawn(self._list(container, token, None))
        return token

    def reload(self, container: Container) -> Optional[int]:
        self._cache.invalidate(container)
        return self.ensure_loaded(container)

    def load_more(self, container: Container) -> Optional[int]:
        state = self._cache.get(container)
        if not isinstance(state, Loaded) or not state.has_more:
            return None
        if self._cache.is_in_flight(container):
            return None
        token = self._cache.begin_load_more(container)
        self._spawn(self._list(container, token, state.next_token))
        return token

    def abandon(self, container: Container) -> None:
        if self._cache.abandon(container):
            logger.debug("left %s before its listing arrived", container.uri)

    def retry(self, container: Container) -> Optional[int]:
        if isinstance(self._cache.get(container), Failed):
            return self.reload(container)
        return None

    async def _with_throttle_retry(
        self,
        call: Callable[[], Awaitable[T]],
        label: str,
        still_wanted: Callable[[], bool],
    ) -> Optional[T]:
        """Run ``call`` and retry it once if it was throttled.

        Returns None when the retry was skipped because nobody wants the
        result any more. Any other error propagates as a StorageError.
        """
        retries = 0
        while True:
            self.remote_calls += 1
            try:
                return await call()
            except StorageError as error:
                if error.kind is not ErrorKind.THROTTLED or retries >= THROTTLE_RETRIES:
                    raise
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("%s raised unexpectedly", label)
                raise classify_error(exc) from exc
            retries += 1
            logger.info("%s throttled, retrying in %.1fs", label, self._throttle_backoff)
            await asyncio.sleep(self._throttle_backoff)
            if not still_wanted():
                logger.debug("skipping retry for superseded %s", label)
                return None

    async def _list(
        self, container: Container, token: int, page_token: Optional[str]
    ) -> None:
        label = f"listing {container.uri}"
        try:
            page = await self._with_throttle_retry(
                lambda: self._gateway.list_children(container, page_token),
                label,
                lambda: self._cache.is_pending(container, token),
            )
        except StorageError as error:
            logger.warning("%s failed: %s", label, error)
            self._post(ListingFailed(container=container, token=token, error=error))
            return
        if page is None:
            return
        logger.debug(
            "listed %s: %d entries, has_more=%s",
            container.uri,
            len(page.items),
            page.has_more,
        )
        self._post(ListingLoaded(container=container, token=token, page=page))

    def request_metadata(self, bucket: str, key: str) -> int:
        self._meta_token += 1
        token = self._meta_token
        self._spawn(self._head(bucket, key, token))
        return token

    def is_current_metadata(self, token: int) -> bool:
        return token == self._meta_token

    def discard_metadata(self) -> None:
        self._meta_token += 1

    async def _head(self, bucket: str, key: str, token: int) -> None:
        label = f"head s3://{bucket}/{key}"
        try:
            meta = await self._with_throttle_retry(
                lambda: self._gateway.head_object(bucket, key),
                label,
                lambda: self.is_current_metadata(token),
            )
        except StorageError as error:
            logger.warning("%s failed: %s", label, error)
            self._post(MetadataFailed(token=token, bucket=bucket, key=key, error=error))
            return
        if meta is None:
            return
        versions = await self._versions(bucket, key)
        self._post(MetadataLoaded(token=token, meta=replace(meta, versions=versions)))

    async def _versions(self, bucket: str, key: str) -> tuple[ObjectVersion, ...]:
        self.remote_calls += 1
        try:
            return await self._gateway.list_object_versions(bucket, key)
        except StorageError as error:
            # details are still useful without the history
            logger.info("no version history for s3://%s/%s: %s", bucket, key, error)
            return ()

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
