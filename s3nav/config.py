from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_PREVIEW_MAX_BYTES = 16 * 1024
DEFAULT_PAGE_SIZE = 1000
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_THROTTLE_BACKOFF = 1.0
DEFAULT_PROGRESS_INTERVAL = 0.2


def config_base_dir() -> Path:
    config_home = os.environ.get("XDG_CONFIG_HOME")
    if config_home:
        base = Path(config_home).expanduser()
    else:
        base = Path.home() / ".config"
    return base / "s3nav"


def default_config_path() -> Path:
    return config_base_dir() / "config.json"


def default_log_path() -> Path:
    return config_base_dir() / "s3nav.log"


def default_download_dir() -> Path:
    return Path.home() / "Downloads"


@dataclass(frozen=True)
class AppConfig:
    download_dir: Path = field(default_factory=default_download_dir)
    preview_max_bytes: int = DEFAULT_PREVIEW_MAX_BYTES
    page_size: int = DEFAULT_PAGE_SIZE
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    throttle_backoff: float = DEFAULT_THROTTLE_BACKOFF
    progress_interval: float = DEFAULT_PROGRESS_INTERVAL
    profile: Optional[str] = None
    region: Optional[str] = None
    endpoint_url: Optional[str] = None
    log_path: Path = field(default_factory=default_log_path)

    def download_path(self, name: str) -> Path:
        return self.download_dir / name

    def with_overrides(self, **overrides) -> "AppConfig":
        values = {key: value for key, value in overrides.items() if value is not None}
        if not values:
            return self
        return replace(self, **values)


def _decode_int(value: object, default: int, minimum: int = 1) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        return default
    if value < minimum:
        return default
    return value


def _decode_float(value: object, default: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    if value < 0:
        return default
    return float(value)


def _decode_str(value: object) -> Optional[str]:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _decode_path(value: object, default: Path) -> Path:
    text = _decode_str(value)
    if text is None:
        return default
    return Path(text).expanduser()


def read_config_payload(path: Path) -> dict[str, object]:
    try:
        payload = json.loads(path.read_text())
    except FileNotFoundError:
        return {}
    except Exception as exc:
        logger.warning("ignoring unreadable config %s: %s", path, exc)
        return {}
    if not isinstance(payload, dict):
        logger.warning("ignoring config %s: top level is not an object", path)
        return {}
    return payload


def load_config(path: Optional[Path] = None) -> AppConfig:
    config_path = path or default_config_path()
    payload = read_config_payload(config_path)
    defaults = AppConfig()
    return AppConfig(
        download_dir=_decode_path(payload.get("download_dir"), defaults.download_dir),
        preview_max_bytes=_decode_int(
            payload.get("preview_max_bytes"), defaults.preview_max_bytes
        ),
        page_size=min(
            1000, _decode_int(payload.get("page_size"), defaults.page_size)
        ),
        request_timeout=_decode_float(
            payload.get("request_timeout"), defaults.request_timeout
        ),
        throttle_backoff=_decode_float(
            payload.get("throttle_backoff"), defaults.throttle_backoff
        ),
        progress_interval=_decode_float(
            payload.get("progress_interval"), defaults.progress_interval
        ),
        profile=_decode_str(payload.get("profile")),
        region=_decode_str(payload.get("region")),
        endpoint_url=_decode_str(payload.get("endpoint_url")),
        log_path=_decode_path(payload.get("log_path"), defaults.log_path),
    )
