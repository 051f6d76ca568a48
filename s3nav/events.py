"""Completions posted by background tasks onto the core's channel."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from .errors import StorageError
from .models import Container, ListPage, ObjectMeta


@dataclass(frozen=True)
class ListingLoaded:
    container: Container
    token: int
    page: ListPage


@dataclass(frozen=True)
class ListingFailed:
    container: Container
    token: int
    error: StorageError


@dataclass(frozen=True)
class MetadataLoaded:
    token: int
    meta: ObjectMeta


@dataclass(frozen=True)
class MetadataFailed:
    token: int
    bucket: str
    key: str
    error: StorageError


@dataclass(frozen=True)
class JobProgress:
    job_id: int
    bytes_done: int


@dataclass(frozen=True)
class JobFinished:
    job_id: int
    result: object = None


@dataclass(frozen=True)
class JobFailed:
    job_id: int
    error: StorageError


@dataclass(frozen=True)
class JobCancelled:
    job_id: int
    reason: Optional[str] = None


Completion = Union[
    ListingLoaded,
    ListingFailed,
    MetadataLoaded,
    MetadataFailed,
    JobProgress,
    JobFinished,
    JobFailed,
    JobCancelled,
]
