"""Pure projection of browser state into a renderable frame."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import PurePosixPath
from typing import Optional, Sequence, Union
from urllib.parse import quote

from .cache import ListingCache
from .errors import StorageError
from .keys import (
    Choose,
    ConfirmAction,
    Filter,
    Help,
    InputState,
    Prompt,
    help_lines,
    mode_name,
)
from .models import (
    Entry,
    Failed,
    ListingState,
    Loaded,
    Loading,
    ObjectEntry,
    ObjectMeta,
    ObjectVersion,
    SubContainer,
)
from .navigation import NavigationStack
from .pipeline import JobKind, JobStatus, PipelineJob
from .preview import hexdump

RAW_PREVIEW_BYTES = 1024


@dataclass(frozen=True)
class Notification:
    message: str
    severity: str = "information"


@dataclass(frozen=True)
class Row:
    name: str
    kind: str
    size: str
    modified: str
    is_container: bool
    size_bytes: Optional[int] = None


@dataclass(frozen=True)
class PreviewPane:
    title: str
    status: str
    text: Optional[str] = None
    lexer: str = "text"
    raw: Optional[str] = None


@dataclass(frozen=True)
class Frame:
    breadcrumb: str
    mode: str
    title: str
    rows: tuple[Row, ...]
    selected: Optional[int]
    offset: int
    total: int
    loading: bool
    status: str
    footer: str
    notification: Optional[Notification] = None
    preview: Optional[PreviewPane] = None
    progress: tuple[str, ...] = ()
    detail: tuple[str, ...] = ()
    help: tuple[str, ...] = ()
    prompt: Optional[str] = None
    choices: tuple[str, ...] = ()
    choice_selected: Optional[int] = None


def format_size(size: int) -> str:
    units = ["B", "KB", "MB", "GB", "TB", "PB"]
    value = float(size)
    for unit in units:
        if value < 1024 or unit == units[-1]:
            if unit == "B":
                return f"{int(value)} {unit}"
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} PB"


def format_time(value: Optional[datetime]) -> str:
    if not value:
        return ""
    return value.strftime("%Y-%m-%d %H:%M")


def kind_from_name(name: str) -> str:
    suffixes = PurePosixPath(name).suffixes
    if suffixes and suffixes[-1].lower() == ".gz":
        suffixes = suffixes[:-1]
    if not suffixes:
        return "file"
    ext = suffixes[-1].lstrip(".").lower()
    if not ext:
        return "file"
    mapping = {
        "yml": "yaml",
        "jpeg": "jpg",
        "htm": "html",
        "md": "markdown",
        "ndjson": "jsonl",
    }
    return mapping.get(ext, ext)


def entry_row(entry: Entry) -> Row:
    if isinstance(entry, SubContainer):
        kind = "bucket" if not entry.prefix else "dir"
        return Row(name=f"{entry.name}/", kind=kind, size="", modified="", is_container=True)
    if entry.is_directory_marker:
        return Row(
            name=entry.name if entry.name.endswith("/") else f"{entry.name}/",
            kind="dir",
            size="",
            modified=format_time(entry.last_modified),
            is_container=True,
        )
    return Row(
        name=entry.name,
        kind=kind_from_name(entry.name),
        size=format_size(entry.size),
        modified=format_time(entry.last_modified),
        is_container=False,
        size_bytes=entry.size,
    )


def listing_items(state: ListingState) -> tuple[Entry, ...]:
    if isinstance(state, (Loaded, Failed)):
        return state.items
    return ()


def filter_entries(items: Sequence[Entry], text: str) -> list[Entry]:
    if not text:
        return list(items)
    return [entry for entry in items if text in entry.name]


def clamp_cursor(cursor: int, length: int) -> Optional[int]:
    if length <= 0:
        return None
    return max(0, min(cursor, length - 1))


def window_offset(cursor: Optional[int], length: int, height: int) -> int:
    if cursor is None or height <= 0 or length <= height:
        return 0
    return max(0, min(cursor - height + 1, length - height))


def breadcrumb(stack: NavigationStack) -> str:
    return stack.current().uri


def listing_status(state: ListingState, loading_more: bool, uri: str) -> str:
    if isinstance(state, Loading):
        return f"Loading {uri} ..."
    if isinstance(state, Failed):
        return f"Error: {state.error} (press r to retry)"
    if isinstance(state, Loaded):
        if loading_more:
            return f"{len(state.items)} loaded, loading more ..."
        if state.has_more:
            return f"{len(state.items)} loaded, more available (press m)"
        return f"{len(state.items)} items"
    return ""


def list_title(total: int, visible: int, cursor: Optional[int], filter_text: str) -> str:
    position = 0 if cursor is None else cursor + 1
    if filter_text:
        return f"{position} / {visible} (filter '{filter_text}' of {total})"
    return f"{position} / {visible}"


def preview_pane(job: PipelineJob) -> PreviewPane:
    title = job.uri
    if job.status is JobStatus.RUNNING:
        return PreviewPane(title=title, status="Loading preview ...")
    if job.status is JobStatus.CANCELLED:
        return PreviewPane(title=title, status="Preview cancelled")
    if job.status is JobStatus.FAILED:
        return PreviewPane(title=title, status=f"Error: {job.error}")
    content = job.preview
    if content is None:
        return PreviewPane(title=title, status="")
    loaded = format_size(len(content.data))
    if content.total_size is not None:
        status = f"{loaded} of {format_size(content.total_size)}"
    else:
        status = loaded
    if content.truncated:
        status = f"{status} (truncated)"
    if content.is_raw:
        label = "binary" if content.error is None else str(content.error)
        return PreviewPane(
            title=title,
            status=f"{status}, {label}",
            raw=hexdump(content.data, RAW_PREVIEW_BYTES),
        )
    return PreviewPane(
        title=title,
        status=f"{status}, {content.lexer}",
        text=content.text,
        lexer=content.lexer,
    )


def progress_line(job: PipelineJob) -> str:
    verb = "Download" if job.kind is JobKind.DOWNLOAD else "Upload"
    target = job.destination if job.kind is JobKind.DOWNLOAD else job.uri
    if job.status is JobStatus.RUNNING:
        done = format_size(job.bytes_done)
        if job.total_bytes:
            return (
                f"{verb} {job.percent:3d}% ({done} of {format_size(job.total_bytes)})"
                f" -> {target}"
            )
        return f"{verb} {done} -> {target}"
    if job.status is JobStatus.DONE:
        return f"{verb} completed: {target}"
    if job.status is JobStatus.CANCELLED:
        return f"{verb} cancelled: {target}"
    return f"{verb} failed: {job.error}"


def object_url(bucket: str, key: str, region: Optional[str] = None) -> str:
    host = f"{bucket}.s3.{region}.amazonaws.com" if region else f"{bucket}.s3.amazonaws.com"
    return f"https://{host}/{quote(key)}"


def copy_fields(
    detail: Union[ObjectMeta, ObjectEntry], region: Optional[str] = None
) -> tuple[tuple[str, str], ...]:
    """Values offered by the copy-details chooser, in display order."""
    fields = (
        ("Name", PurePosixPath(detail.key).name),
        ("Key", detail.key),
        ("S3 URI", f"s3://{detail.bucket}/{detail.key}"),
        ("ARN", f"arn:aws:s3:::{detail.bucket}/{detail.key}"),
        ("Object URL", object_url(detail.bucket, detail.key, region)),
        ("ETag", detail.etag or ""),
    )
    return tuple((label, value) for label, value in fields if value)


def version_lines(versions: Sequence[ObjectVersion]) -> list[str]:
    lines = []
    for version in versions:
        latest = " (latest)" if version.is_latest else ""
        lines.append(f"  {version.version_id}{latest}")
        lines.append(
            f"    {format_time(version.last_modified)}  {format_size(version.size)}"
        )
    return lines


def detail_lines(
    detail: Union[ObjectMeta, StorageError, None], region: Optional[str] = None
) -> tuple[str, ...]:
    if detail is None:
        return ()
    if isinstance(detail, StorageError):
        return (f"Error: {detail}",)
    fields = dict(copy_fields(detail, region))
    lines = [
        ("Name", fields.get("Name", "")),
        ("Key", detail.key),
        ("S3 URI", fields.get("S3 URI", "")),
        ("ARN", fields.get("ARN", "")),
        ("Object URL", fields.get("Object URL", "")),
        ("Size", format_size(detail.size)),
        ("Last Modified", format_time(detail.last_modified)),
        ("ETag", detail.etag or ""),
        ("Content-Type", detail.content_type or ""),
        ("Storage Class", detail.storage_class or ""),
    ]
    lines.extend((f"x-amz-meta-{key}", value) for key, value in sorted(detail.metadata.items()))
    result = [f"{label}: {value}" for label, value in lines]
    if detail.versions:
        result.append("")
        result.append(f"Versions ({len(detail.versions)}):")
        result.extend(version_lines(detail.versions))
    return tuple(result)


def choice_lines(state: Choose) -> tuple[str, ...]:
    width = max((len(label) for label, _ in state.options), default=0)
    return tuple(f"{label:>{width}}  {value}" for label, value in state.options)


def footer(state: InputState) -> str:
    if isinstance(state, Filter):
        return "Enter: apply  Esc: cancel"
    if isinstance(state, ConfirmAction):
        return "y: yes  n/Esc: no"
    if isinstance(state, Prompt):
        return "Enter: confirm  Esc: cancel"
    if isinstance(state, Choose):
        return "j/k: select  Enter: copy  Esc: close"
    if isinstance(state, Help):
        return "?/Esc: close help"
    return "j/k: select  l: open  h: back  p: preview  s: download  /: filter  ?: help  q: quit"


def build_frame(
    stack: NavigationStack,
    cache: ListingCache,
    filter_text: str,
    input_state: InputState,
    jobs: dict[JobKind, PipelineJob],
    detail: Union[ObjectMeta, StorageError, None] = None,
    notification: Optional[Notification] = None,
    height: int = 0,
    region: Optional[str] = None,
) -> Frame:
    container = stack.current()
    state = cache.get(container)
    items = listing_items(state)
    visible = filter_entries(items, filter_text)
    cursor = clamp_cursor(stack.cursor, len(visible))
    offset = window_offset(cursor, len(visible), height)
    window = visible[offset : offset + height] if height > 0 else visible
    rows = tuple(entry_row(entry) for entry in window)
    selected = None if cursor is None else cursor - offset

    loading_more = isinstance(state, Loaded) and cache.is_in_flight(container)
    preview_job = jobs.get(JobKind.PREVIEW)
    progress = tuple(
        progress_line(job)
        for kind, job in jobs.items()
        if kind is not JobKind.PREVIEW and job is not None
    )

    prompt = None
    if isinstance(input_state, Filter):
        prompt = f"/{input_state.text}"
    elif isinstance(input_state, ConfirmAction):
        prompt = f"{input_state.prompt} (y/n)"
    elif isinstance(input_state, Prompt):
        prompt = f"{input_state.label}: {input_state.text}"
    choosing = isinstance(input_state, Choose)

    return Frame(
        breadcrumb=breadcrumb(stack),
        mode=mode_name(input_state),
        title=list_title(len(items), len(visible), cursor, filter_text),
        rows=rows,
        selected=selected,
        offset=offset,
        total=len(visible),
        loading=isinstance(state, Loading) or loading_more,
        status=listing_status(state, loading_more, container.uri),
        footer=footer(input_state),
        notification=notification,
        preview=preview_pane(preview_job) if preview_job is not None else None,
        progress=progress,
        detail=detail_lines(detail, region),
        help=tuple(help_lines()) if isinstance(input_state, Help) else (),
        prompt=prompt,
        choices=choice_lines(input_state) if choosing else (),
        choice_selected=input_state.index if choosing else None,
    )
