from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .models import ROOT, Container, Entry, is_navigable


@dataclass
class Slot:
    container: Container
    cursor: int = 0


class NavigationStack:
    """Breadcrumb of visited containers, root first and current last."""

    def __init__(self, root: Container = ROOT) -> None:
        self._slots: list[Slot] = [Slot(root)]

    def __len__(self) -> int:
        return len(self._slots)

    @property
    def depth(self) -> int:
        return len(self._slots) - 1

    @property
    def root(self) -> Container:
        return self._slots[0].container

    def current(self) -> Container:
        return self._slots[-1].container

    def current_slot(self) -> Slot:
        return self._slots[-1]

    def containers(self) -> list[Container]:
        return [slot.container for slot in self._slots]

    def parent(self) -> Optional[Container]:
        if len(self._slots) < 2:
            return None
        return self._slots[-2].container

    def push(self, entry: Entry) -> Container:
        if not is_navigable(entry):
            raise ValueError(f"cannot descend into object {entry.name!r}")
        return self.push_container(entry.container)

    def push_container(self, container: Container) -> Container:
        current = self.current()
        if not current.is_strict_ancestor_of(container):
            raise ValueError(
                f"{container.uri} is not below the current container {current.uri}"
            )
        self._slots.append(Slot(container))
        return container

    def pop(self) -> Container:
        if len(self._slots) > 1:
            self._slots.pop()
        return self.current()

    def reset(self) -> Container:
        del self._slots[1:]
        self._slots[0].cursor = 0
        return self.current()

    @property
    def cursor(self) -> int:
        return self._slots[-1].cursor

    @cursor.setter
    def cursor(self, value: int) -> None:
        self._slots[-1].cursor = max(0, value)
