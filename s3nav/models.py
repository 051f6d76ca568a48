from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Union

from .errors import StorageError


@dataclass(frozen=True)
class Container:
    """A bucket, a prefix inside a bucket, or the root (the bucket list)."""

    bucket: Optional[str] = None
    prefix: str = ""

    def __post_init__(self) -> None:
        if self.bucket is None and self.prefix:
            raise ValueError("root container cannot carry a prefix")
        if self.prefix and not self.prefix.endswith("/"):
            raise ValueError(f"prefix must end with '/': {self.prefix!r}")

    @property
    def is_root(self) -> bool:
        return self.bucket is None

    @property
    def path(self) -> str:
        if self.bucket is None:
            return ""
        return f"{self.bucket}/{self.prefix}"

    @property
    def uri(self) -> str:
        return f"s3://{self.path}"

    @property
    def name(self) -> str:
        if self.bucket is None:
            return ""
        if not self.prefix:
            return self.bucket
        return self.prefix.rstrip("/").rsplit("/", 1)[-1]

    def is_strict_ancestor_of(self, other: "Container") -> bool:
        return len(other.path) > len(self.path) and other.path.startswith(self.path)


ROOT = Container()


@dataclass(frozen=True)
class SubContainer:
    name: str
    bucket: str
    prefix: str = ""

    @property
    def container(self) -> Container:
        return Container(bucket=self.bucket, prefix=self.prefix)

    @property
    def uri(self) -> str:
        return self.container.uri


@dataclass(frozen=True)
class ObjectEntry:
    name: str
    bucket: str
    key: str
    size: int = 0
    last_modified: Optional[datetime] = None
    etag: Optional[str] = None
    storage_class: Optional[str] = None

    @property
    def is_directory_marker(self) -> bool:
        return self.key.endswith("/")

    @property
    def container(self) -> Container:
        if not self.is_directory_marker:
            raise ValueError(f"{self.key!r} is not a directory marker")
        return Container(bucket=self.bucket, prefix=self.key)

    @property
    def uri(self) -> str:
        return f"s3://{self.bucket}/{self.key}"


Entry = Union[SubContainer, ObjectEntry]


def is_navigable(entry: Entry) -> bool:
    if isinstance(entry, SubContainer):
        return True
    return entry.is_directory_marker


@dataclass(frozen=True)
class ListPage:
    items: tuple[Entry, ...] = ()
    next_token: Optional[str] = None
    has_more: bool = False


@dataclass(frozen=True)
class ObjectVersion:
    version_id: str
    size: int = 0
    last_modified: Optional[datetime] = None
    is_latest: bool = False


@dataclass(frozen=True)
class ObjectMeta:
    bucket: str
    key: str
    size: int
    last_modified: Optional[datetime] = None
    etag: Optional[str] = None
    content_type: Optional[str] = None
    storage_class: Optional[str] = None
    metadata: dict[str, str] = field(default_factory=dict)
    versions: tuple[ObjectVersion, ...] = ()


@dataclass(frozen=True)
class ObjectPrefix:
    data: bytes
    total_size: Optional[int] = None
    content_type: Optional[str] = None

    @property
    def truncated(self) -> bool:
        return self.total_size is not None and len(self.data) < self.total_size


@dataclass(frozen=True)
class NotLoaded:
    pass


@dataclass(frozen=True)
class Loading:
    token: int


@dataclass(frozen=True)
class Loaded:
    items: tuple[Entry, ...] = ()
    next_token: Optional[str] = None
    has_more: bool = False


@dataclass(frozen=True)
class Failed:
    error: StorageError
    items: tuple[Entry, ...] = ()


ListingState = Union[NotLoaded, Loading, Loaded, Failed]

NOT_LOADED = NotLoaded()
