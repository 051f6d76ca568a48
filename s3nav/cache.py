from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from .errors import StorageError
from .models import (
    NOT_LOADED,
    Container,
    Entry,
    Failed,
    ListingState,
    Loaded,
    Loading,
)

logger = logging.getLogger(__name__)


@dataclass
class _Slot:
    state: ListingState
    token: Optional[int] = None
    in_flight: bool = False


class ListingCache:
    """Page state for every container visited so far.

    Each container holds at most one valid request token. Results carrying any
    other token, or delivered after their request was already settled, are
    dropped.
    """

    def __init__(self) -> None:
        self._slots: dict[Container, _Slot] = {}
        self._next_token = 0

    def __contains__(self, container: Container) -> bool:
        return container in self._slots

    def __len__(self) -> int:
        return len(self._slots)

    def get(self, container: Container) -> ListingState:
        slot = self._slots.get(container)
        if slot is None:
            return NOT_LOADED
        return slot.state

    def current_token(self, container: Container) -> Optional[int]:
        slot = self._slots.get(container)
        if slot is None:
            return None
        return slot.token

    def is_in_flight(self, container: Container) -> bool:
        slot = self._slots.get(container)
        return bool(slot and slot.in_flight)

    def _issue_token(self) -> int:
        self._next_token += 1
        return self._next_token

    def begin_load(self, container: Container) -> int:
        token = self._issue_token()
        self._slots[container] = _Slot(state=Loading(token), token=token, in_flight=True)
        logger.debug("begin load %s token=%d", container.uri, token)
        return token

    def begin_load_more(self, container: Container) -> int:
        slot = self._slots.get(container)
        if slot is None or not isinstance(slot.state, Loaded):
            raise ValueError(f"{container.uri} has no loaded listing")
        if not slot.state.has_more:
            raise ValueError(f"{container.uri} has no further pages")
        if slot.in_flight:
            raise ValueError(f"{container.uri} already has a request in flight")
        token = self._issue_token()
        slot.token = token
        slot.in_flight = True
        logger.debug("begin load more %s token=%d", container.uri, token)
        return token

    def is_pending(self, container: Container, token: int) -> bool:
        slot = self._slots.get(container)
        return bool(slot and slot.in_flight and slot.token == token)

    def abandon(self, container: Container) -> bool:
        """Stop waiting for the container's in-flight request.

        A first page that never arrived leaves the container ``NotLoaded``; an
        abandoned "load more" keeps the pages already loaded.
        """
        slot = self._slots.get(container)
        if slot is None or not slot.in_flight:
            return False
        if isinstance(slot.state, Loading):
            del self._slots[container]
        else:
            slot.in_flight = False
        logger.debug("abandoned request for %s token=%s", container.uri, slot.token)
        return True

    def _accepts(self, container: Container, token: int) -> Optional[_Slot]:
        slot = self._slots.get(container)
        if slot is None or slot.token != token or not slot.in_flight:
            logger.debug("discarding stale result for %s token=%d", container.uri, token)
            return None
        return slot

    def append_page(
        self,
        container: Container,
        token: int,
        items: Iterable[Entry],
        next_token: Optional[str],
        has_more: bool,
    ) -> bool:
        slot = self._accepts(container, token)
        if slot is None:
            return False
        existing: tuple[Entry, ...] = ()
        if isinstance(slot.state, Loaded):
            existing = slot.state.items
        slot.state = Loaded(
            items=existing + tuple(items),
            next_token=next_token if has_more else None,
            has_more=has_more,
        )
        slot.in_flight = False
        return True

    def mark_failed(self, container: Container, token: int, error: StorageError) -> bool:
        slot = self._accepts(container, token)
        if slot is None:
            return False
        items: tuple[Entry, ...] = ()
        if isinstance(slot.state, Loaded):
            items = slot.state.items
        slot.state = Failed(error=error, items=items)
        slot.in_flight = False
        return True

    def invalidate(self, container: Container) -> None:
        if self._slots.pop(container, None) is not None:
            logger.debug("invalidated %s", container.uri)

    def clear(self) -> None:
        self._slots.clear()
