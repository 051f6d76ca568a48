from __future__ import annotations

import asyncio
import logging
from pathlib import Path, PurePosixPath
from typing import Callable, Optional, Union

from .cache import ListingCache
from .config import AppConfig
from .errors import StorageError
from .events import (
    Completion,
    JobCancelled,
    JobFailed,
    JobFinished,
    JobProgress,
    ListingFailed,
    ListingLoaded,
    MetadataFailed,
    MetadataLoaded,
)
from .keys import (
    BROWSE,
    Choose,
    Cmd,
    Command,
    ConfirmAction,
    InputState,
    Prompt,
    transition,
)
from .models import Container, Entry, Loaded, ObjectEntry, ObjectMeta, is_navigable
from .navigation import NavigationStack
from .orchestrator import FetchOrchestrator
from .pipeline import JobKind, JobStatus, Pipeline, PipelineJob
from .s3 import console_url
from .view import (
    Frame,
    Notification,
    build_frame,
    clamp_cursor,
    copy_fields,
    filter_entries,
    listing_items,
)

logger = logging.getLogger(__name__)

Clipboard = Callable[[str], None]
Opener = Callable[[str], object]


def parse_s3_uri(value: str) -> tuple[str, str]:
    path = value.strip()
    if path.startswith("s3://"):
        path = path[5:]
    path = path.lstrip("/")
    if not path:
        return "", ""
    if "/" not in path:
        return path, ""
    bucket, rest = path.split("/", 1)
    return bucket, rest.lstrip("/")


def container_chain(bucket: str, prefix: str) -> list[Container]:
    """Containers from the bucket down to ``prefix`` (a trailing object name is dropped)."""
    chain = [Container(bucket=bucket)]
    parts = prefix.split("/")[:-1]
    current = ""
    for part in parts:
        if not part:
            continue
        current = f"{current}{part}/"
        chain.append(Container(bucket=bucket, prefix=current))
    return chain


class BrowserCore:
    """Owns all browser state and is only touched from the event loop.

    Background work reports through ``completions``; ``process_next`` applies
    one completion at a time in arrival order.
    """

    def __init__(
        self,
        gateway,
        config: Optional[AppConfig] = None,
        clipboard: Optional[Clipboard] = None,
        opener: Optional[Opener] = None,
    ) -> None:
        self.config = config or AppConfig()
        self.completions: asyncio.Queue[Completion] = asyncio.Queue()
        self.cache = ListingCache()
        self.stack = NavigationStack()
        self.orchestrator = FetchOrchestrator(
            gateway,
            self.cache,
            self.post,
            throttle_backoff=self.config.throttle_backoff,
        )
        self.pipeline = Pipeline(
            gateway,
            self.post,
            preview_max_bytes=self.config.preview_max_bytes,
            progress_interval=self.config.progress_interval,
        )
        self.input_state: InputState = BROWSE
        self.filter_text = ""
        self.detail: Union[ObjectMeta, StorageError, None] = None
        self.notification: Optional[Notification] = None
        self.quit_requested = False
        self.page_height = 20
        self.version = 0
        self._clipboard = clipboard
        self._opener = opener
        self._handlers: dict[Cmd, Callable[[Command], None]] = {
            Cmd.QUIT: self._quit,
            Cmd.RELOAD: self._reload,
            Cmd.PUSH_SELECTION: self._push_selection,
            Cmd.POP: self._pop,
            Cmd.JUMP_ROOT: self._jump_root,
            Cmd.CURSOR_NEXT: lambda _: self.move_cursor(1),
            Cmd.CURSOR_PREV: lambda _: self.move_cursor(-1),
            Cmd.CURSOR_FIRST: lambda _: self._set_cursor(0),
            Cmd.CURSOR_LAST: lambda _: self._set_cursor(len(self.visible_entries()) - 1),
            Cmd.PAGE_DOWN: lambda _: self.move_cursor(self.page_height),
            Cmd.PAGE_UP: lambda _: self.move_cursor(-self.page_height),
            Cmd.LOAD_MORE: self._load_more,
            Cmd.START_PREVIEW: self._start_preview,
            Cmd.SHOW_DETAILS: self._show_details,
            Cmd.START_DOWNLOAD: self._start_download,
            Cmd.CONFIRM_DOWNLOAD: self._confirm_download,
            Cmd.START_SAVE_AS: self._start_save_as,
            Cmd.SAVE_AS: self._save_as,
            Cmd.CANCEL_JOB: self._cancel_job,
            Cmd.COPY_PATH: self._copy_path,
            Cmd.COPY_DETAILS: self._copy_details,
            Cmd.COPY_VALUE: lambda command: self._copy(str(command.arg)),
            Cmd.OPEN_CONSOLE: self._open_console,
            Cmd.SET_FILTER: self._set_filter,
            Cmd.CLEAR_FILTER: self._clear_filter,
        }

    # -- channel -----------------------------------------------------------

    def post(self, completion: Completion) -> None:
        self.completions.put_nowait(completion)

    async def process_next(self) -> Completion:
        completion = await self.completions.get()
        self.apply(completion)
        return completion

    def drain(self) -> int:
        applied = 0
        while True:
            try:
                completion = self.completions.get_nowait()
            except asyncio.QueueEmpty:
                return applied
            self.apply(completion)
            applied += 1

    # -- state queries -----------------------------------------------------

    @property
    def current(self) -> Container:
        return self.stack.current()

    def visible_entries(self) -> list[Entry]:
        items = listing_items(self.cache.get(self.current))
        return filter_entries(items, self.filter_text)

    def selected_entry(self) -> Optional[Entry]:
        visible = self.visible_entries()
        cursor = clamp_cursor(self.stack.cursor, len(visible))
        if cursor is None:
            return None
        return visible[cursor]

    def jobs(self) -> dict[JobKind, PipelineJob]:
        jobs = {}
        for kind in JobKind:
            job = self.pipeline.job(kind)
            if job is not None:
                jobs[kind] = job
        return jobs

    def frame(self, height: Optional[int] = None) -> Frame:
        return build_frame(
            self.stack,
            self.cache,
            self.filter_text,
            self.input_state,
            self.jobs(),
            detail=self.detail,
            notification=self.notification,
            height=self.page_height if height is None else height,
            region=self.config.region,
        )

    # -- entry points ------------------------------------------------------

    def start(self, initial_path: Optional[str] = None) -> None:
        if initial_path:
            bucket, rest = parse_s3_uri(initial_path)
            if bucket:
                for container in container_chain(bucket, rest):
                    self.stack.push_container(container)
        self._entered()

    def handle_key(self, key: str) -> None:
        result = transition(self.input_state, key, self.filter_text)
        self.input_state = result.state
        for command in result.commands:
            self.execute(command)
        self.version += 1

    def execute(self, command: Command) -> None:
        logger.debug("command %s", command.kind.value)
        self._handlers[command.kind](command)

    def notify(self, message: str, severity: str = "information") -> None:
        self.notification = Notification(message, severity)

    def apply(self, completion: Completion) -> None:
        if isinstance(completion, ListingLoaded):
            page = completion.page
            self.cache.append_page(
                completion.container,
                completion.token,
                page.items,
                page.next_token,
                page.has_more,
            )
        elif isinstance(completion, ListingFailed):
            accepted = self.cache.mark_failed(
                completion.container, completion.token, completion.error
            )
            if accepted and completion.container == self.current:
                self.notify(str(completion.error), "error")
        elif isinstance(completion, MetadataLoaded):
            if self.orchestrator.is_current_metadata(completion.token):
                self.detail = completion.meta
        elif isinstance(completion, MetadataFailed):
            if self.orchestrator.is_current_metadata(completion.token):
                self.detail = completion.error
        elif isinstance(completion, (JobProgress, JobFinished, JobFailed, JobCancelled)):
            job = self.pipeline.apply(completion)
            if job is not None and not isinstance(completion, JobProgress):
                self._job_settled(job)
        self.version += 1

    def start_upload(self, source: Path, key: Optional[str] = None) -> Optional[PipelineJob]:
        container = self.current
        if container.is_root:
            self.notify("Open a bucket before uploading", "warning")
            return None
        source = Path(source)
        target = key or f"{container.prefix}{source.name}"
        return self.pipeline.start_upload(source, container.bucket, target)

    def shutdown(self) -> None:
        self.orchestrator.shutdown()
        self.pipeline.shutdown()

    # -- navigation --------------------------------------------------------

    def _entered(self, left: Optional[Container] = None) -> None:
        if left is not None and left != self.current:
            self.orchestrator.abandon(left)
        self.filter_text = ""
        self.detail = None
        self.orchestrator.discard_metadata()
        self.orchestrator.ensure_loaded(self.current)

    def _push_selection(self, _command: Command) -> None:
        entry = self.selected_entry()
        if entry is None:
            return
        if not is_navigable(entry):
            self._show_details(_command)
            return
        left = self.current
        self.stack.push(entry)
        self._entered(left)

    def _pop(self, _command: Command) -> None:
        if self.stack.depth == 0:
            return
        left = self.current
        self.stack.pop()
        self._entered(left)

    def _jump_root(self, _command: Command) -> None:
        if self.stack.depth == 0:
            return
        left = self.current
        self.stack.reset()
        self._entered(left)

    def _reload(self, _command: Command) -> None:
        self.notification = None
        self.orchestrator.reload(self.current)

    def _load_more(self, _command: Command) -> None:
        if self.orchestrator.load_more(self.current) is None:
            state = self.cache.get(self.current)
            if isinstance(state, Loaded) and not state.has_more:
                self.notify("No more items", "information")

    def _set_cursor(self, value: int) -> None:
        length = len(self.visible_entries())
        self.stack.cursor = max(0, min(value, length - 1))

    def move_cursor(self, delta: int) -> None:
        length = len(self.visible_entries())
        if length == 0:
            return
        cursor = clamp_cursor(self.stack.cursor, length)
        target = cursor + delta
        if delta > 0 and target >= length:
            state = self.cache.get(self.current)
            if isinstance(state, Loaded) and state.has_more:
                self.orchestrator.load_more(self.current)
        self._set_cursor(target)

    def _set_filter(self, command: Command) -> None:
        self.filter_text = str(command.arg or "")
        self.stack.cursor = 0

    def _clear_filter(self, _command: Command) -> None:
        self.filter_text = ""
        self.stack.cursor = 0

    # -- objects -----------------------------------------------------------

    def _selected_object(self, action: str) -> Optional[ObjectEntry]:
        entry = self.selected_entry()
        if isinstance(entry, ObjectEntry) and not entry.is_directory_marker:
            return entry
        self.notify(f"Select an object to {action}", "warning")
        return None

    def _start_preview(self, _command: Command) -> None:
        entry = self._selected_object("preview")
        if entry is None:
            return
        self.pipeline.start_preview(entry)

    def _show_details(self, _command: Command) -> None:
        entry = self._selected_object("inspect")
        if entry is None:
            return
        self.detail = None
        self.orchestrator.request_metadata(entry.bucket, entry.key)

    def _start_download(self, _command: Command) -> None:
        entry = self._selected_object("download")
        if entry is None:
            return
        self._download_to(entry, self.config.download_path(PurePosixPath(entry.key).name))

    def _download_to(self, entry: ObjectEntry, destination: Path) -> None:
        if destination.exists():
            self.input_state = ConfirmAction(
                prompt=f"Overwrite {destination}?",
                action=Command(Cmd.CONFIRM_DOWNLOAD, (entry, destination)),
            )
            return
        self.pipeline.start_download(entry, destination)

    def _confirm_download(self, command: Command) -> None:
        entry, destination = command.arg
        self.pipeline.start_download(entry, destination)

    def _start_save_as(self, _command: Command) -> None:
        entry = self._selected_object("download")
        if entry is None:
            return
        default = self.config.download_path(PurePosixPath(entry.key).name)
        self.input_state = Prompt(
            label="Save as", action=Cmd.SAVE_AS, text=str(default), payload=entry
        )

    def _save_as(self, command: Command) -> None:
        entry, text = command.arg
        destination = Path(text).expanduser()
        if not destination.is_absolute():
            destination = self.config.download_dir / destination
        if destination.is_dir():
            destination = destination / PurePosixPath(entry.key).name
        self._download_to(entry, destination)

    def _cancel_job(self, _command: Command) -> None:
        cancelled = self.pipeline.cancel_active()
        if not cancelled:
            self.notify("Nothing to cancel", "information")
            return
        names = ", ".join(job.kind.value for job in cancelled)
        self.notify(f"Cancelled {names}", "warning")

    def _copy_path(self, _command: Command) -> None:
        entry = self.selected_entry()
        self._copy(entry.uri if entry is not None else self.current.uri)

    def _copy_details(self, _command: Command) -> None:
        entry = self._selected_object("copy details of")
        if entry is None:
            return
        source: Union[ObjectMeta, ObjectEntry] = entry
        detail = self.detail
        same_object = isinstance(detail, ObjectMeta) and detail.key == entry.key
        if same_object and detail.bucket == entry.bucket:
            source = detail
        self.input_state = Choose(
            title="Copy",
            options=copy_fields(source, self.config.region),
            action=Cmd.COPY_VALUE,
        )

    def _copy(self, text: str) -> None:
        if self._clipboard is None:
            self.notify(text, "information")
            return
        try:
            self._clipboard(text)
        except Exception as exc:
            logger.warning("clipboard copy failed: %s", exc)
            self.notify(f"Copy failed: {exc}", "error")
            return
        self.notify(f"Copied '{text}' to clipboard", "information")

    def _open_console(self, _command: Command) -> None:
        entry = self.selected_entry()
        container = self.current
        region = self.config.region
        if isinstance(entry, ObjectEntry) and not entry.is_directory_marker:
            url = console_url(entry.bucket, key=entry.key, region=region)
        else:
            url = console_url(container.bucket, container.prefix, region=region)
        if self._opener is None:
            self.notify(url, "information")
            return
        try:
            self._opener(url)
        except Exception as exc:
            logger.warning("opening %s failed: %s", url, exc)
            self.notify(f"Could not open browser: {exc}", "error")
            return
        logger.info("opened %s", url)

    def _quit(self, _command: Command) -> None:
        self.quit_requested = True

    def _job_settled(self, job: PipelineJob) -> None:
        if job.kind is JobKind.PREVIEW:
            if job.status is JobStatus.FAILED:
                self.notify(str(job.error), "error")
            return
        verb = "Download" if job.kind is JobKind.DOWNLOAD else "Upload"
        if job.status is JobStatus.DONE:
            target = job.destination if job.kind is JobKind.DOWNLOAD else job.uri
            self.notify(f"{verb} completed successfully: {target}", "information")
            if job.kind is JobKind.UPLOAD:
                self._refresh_after_upload(job)
        elif job.status is JobStatus.FAILED:
            self.notify(f"{verb} failed: {job.error}", "error")
        elif job.status is JobStatus.CANCELLED:
            self.notify(f"{verb} cancelled", "warning")

    def _refresh_after_upload(self, job: PipelineJob) -> None:
        parent = PurePosixPath(job.key).parent
        prefix = "" if str(parent) == "." else f"{parent}/"
        container = Container(bucket=job.bucket, prefix=prefix)
        if container in self.cache:
            self.orchestrator.reload(container)
