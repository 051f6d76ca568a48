from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from pygments.lexers import (
    get_lexer_for_mimetype,
    guess_lexer,
    guess_lexer_for_filename,
)
from pygments.util import ClassNotFound

from .errors import ErrorKind, StorageError
from .models import ObjectPrefix

logger = logging.getLogger(__name__)

PLAIN_LEXER = "text"
HEX_WIDTH = 16
# utf-8 sequences are at most 4 bytes long
MAX_CUT_CHAR_BYTES = 3


@dataclass(frozen=True)
class PreviewContent:
    name: str
    data: bytes
    text: Optional[str]
    lexer: str = PLAIN_LEXER
    is_binary: bool = False
    total_size: Optional[int] = None
    content_type: Optional[str] = None
    error: Optional[StorageError] = None

    @property
    def truncated(self) -> bool:
        return self.total_size is not None and len(self.data) < self.total_size

    @property
    def is_raw(self) -> bool:
        return self.text is None


def decode_text(data: bytes, truncated: bool) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as exc:
        # A multi-byte character may be cut at the end of a ranged read.
        cut = len(data) - exc.start
        if truncated and exc.end == len(data) and cut <= MAX_CUT_CHAR_BYTES:
            return data[: exc.start].decode("utf-8")
        raise


def looks_binary(data: bytes) -> bool:
    return b"\x00" in data[:8192]


def _lexer_alias(lexer) -> str:
    if lexer.aliases:
        return lexer.aliases[0]
    return lexer.name.lower()


def detect_lexer(name: str, text: str, content_type: Optional[str] = None) -> str:
    try:
        return _lexer_alias(guess_lexer_for_filename(name, text))
    except ClassNotFound:
        pass
    if content_type:
        mimetype = content_type.split(";", 1)[0].strip()
        if mimetype and mimetype not in {"application/octet-stream", "binary/octet-stream"}:
            try:
                return _lexer_alias(get_lexer_for_mimetype(mimetype))
            except ClassNotFound:
                pass
    try:
        return _lexer_alias(guess_lexer(text))
    except ClassNotFound:
        return PLAIN_LEXER


def hexdump(data: bytes, limit: Optional[int] = None) -> str:
    if limit is not None:
        data = data[:limit]
    lines = []
    for offset in range(0, len(data), HEX_WIDTH):
        chunk = data[offset : offset + HEX_WIDTH]
        hex_part = " ".join(f"{byte:02x}" for byte in chunk)
        text_part = "".join(chr(byte) if 32 <= byte < 127 else "." for byte in chunk)
        lines.append(f"{offset:08x}  {hex_part:<{HEX_WIDTH * 3 - 1}}  |{text_part}|")
    return "\n".join(lines)


def detect_preview(name: str, prefix: ObjectPrefix) -> PreviewContent:
    """Decide how a fetched object prefix should be shown.

    Never raises. Anything that cannot be decoded or classified is returned as
    raw bytes with the failure recorded as a DecodeError.
    """
    data = prefix.data
    base = dict(
        name=name,
        data=data,
        total_size=prefix.total_size,
        content_type=prefix.content_type,
    )
    if looks_binary(data):
        return PreviewContent(text=None, is_binary=True, **base)
    try:
        text = decode_text(data, prefix.truncated)
    except UnicodeDecodeError as exc:
        logger.debug("preview of %s is not utf-8: %s", name, exc)
        error = StorageError(ErrorKind.DECODE, f"{name} is not UTF-8 text")
        return PreviewContent(text=None, is_binary=True, error=error, **base)
    try:
        lexer = detect_lexer(name, text, prefix.content_type)
    except Exception as exc:
        logger.debug("lexer detection failed for %s: %s", name, exc)
        error = StorageError(ErrorKind.DECODE, f"could not detect syntax: {exc}")
        return PreviewContent(text=text, lexer=PLAIN_LEXER, error=error, **base)
    return PreviewContent(text=text, lexer=lexer, **base)
