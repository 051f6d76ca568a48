from __future__ import annotations

import asyncio
from enum import Enum
from typing import Optional

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
)


class ErrorKind(str, Enum):
    NOT_FOUND = "NotFound"
    ACCESS_DENIED = "AccessDenied"
    THROTTLED = "Throttled"
    TRANSIENT = "Transient"
    NOT_AN_OBJECT = "NotAnObject"
    LOCAL_IO = "LocalIOError"
    DECODE = "DecodeError"


NOT_FOUND_CODES = {
    "404",
    "NoSuchBucket",
    "NoSuchKey",
    "NotFound",
}
ACCESS_DENIED_CODES = {
    "403",
    "AccessDenied",
    "AllAccessDisabled",
    "ExpiredToken",
    "InvalidAccessKeyId",
    "InvalidToken",
    "SignatureDoesNotMatch",
}
THROTTLED_CODES = {
    "429",
    "503",
    "RequestLimitExceeded",
    "SlowDown",
    "Throttling",
    "ThrottlingException",
    "TooManyRequestsException",
}


class StorageError(Exception):
    """Uniform error raised by the storage gateway and the local file layer."""

    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message

    @property
    def retryable(self) -> bool:
        return self.kind in {ErrorKind.THROTTLED, ErrorKind.TRANSIENT}

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, StorageError):
            return NotImplemented
        return self.kind == other.kind and self.message == other.message

    def __hash__(self) -> int:
        return hash((self.kind, self.message))


class TransferCancelled(RuntimeError):
    """Raised inside a transfer when the caller requested cancellation."""


def _client_error_code(exc: ClientError) -> tuple[str, Optional[int]]:
    response = exc.response if isinstance(exc.response, dict) else {}
    code = str(response.get("Error", {}).get("Code", "") or "")
    status = response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    if not isinstance(status, int):
        status = None
    return code, status


def classify_error(exc: BaseException) -> StorageError:
    if isinstance(exc, StorageError):
        return exc
    if isinstance(exc, ClientError):
        code, status = _client_error_code(exc)
        message = exc.response.get("Error", {}).get("Message") or str(exc)
        if code in NOT_FOUND_CODES or status == 404:
            return StorageError(ErrorKind.NOT_FOUND, message)
        if code in ACCESS_DENIED_CODES or status == 403:
            return StorageError(ErrorKind.ACCESS_DENIED, message)
        if code in THROTTLED_CODES or status in {429, 503}:
            return StorageError(ErrorKind.THROTTLED, message)
        return StorageError(ErrorKind.TRANSIENT, f"{code or 'Error'}: {message}")
    if isinstance(exc, NoCredentialsError):
        return StorageError(ErrorKind.ACCESS_DENIED, str(exc))
    if isinstance(
        exc,
        (
            EndpointConnectionError,
            ConnectTimeoutError,
            ReadTimeoutError,
            BotoConnectionError,
        ),
    ):
        return StorageError(ErrorKind.TRANSIENT, str(exc))
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return StorageError(ErrorKind.TRANSIENT, "request timed out")
    if isinstance(exc, OSError):
        return StorageError(ErrorKind.LOCAL_IO, str(exc) or type(exc).__name__)
    if isinstance(exc, BotoCoreError):
        return StorageError(ErrorKind.TRANSIENT, str(exc))
    if isinstance(exc, UnicodeDecodeError):
        return StorageError(ErrorKind.DECODE, str(exc))
    return StorageError(ErrorKind.TRANSIENT, f"{type(exc).__name__}: {exc}")


def is_invalid_range(exc: BaseException) -> bool:
    if not isinstance(exc, ClientError):
        return False
    code, status = _client_error_code(exc)
    return code == "InvalidRange" or status == 416
