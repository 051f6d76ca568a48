from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import webbrowser
from pathlib import Path
from typing import Optional

from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text
from textual import events
from textual.app import App, ComposeResult
from textual.containers import Horizontal, Vertical
from textual.widgets import Header, Static

from .config import AppConfig, load_config
from .core import BrowserCore, parse_s3_uri
from .pipeline import JobStatus
from .s3 import S3Gateway
from .view import Frame, Notification, PreviewPane, Row, progress_line

logger = logging.getLogger(__name__)

ONE_MB = 1024**2
HUNDRED_MB = 100 * ONE_MB
ONE_GB = 1024**3
TEN_GB = 10 * ONE_GB
TICK_SECONDS = 0.5


def size_style(size: int) -> str:
    if size < ONE_MB:
        return "green"
    if size < HUNDRED_MB:
        return "#ffd700"
    if size < ONE_GB:
        return "#ff8c00"
    if size < TEN_GB:
        return "red"
    return "bold red"


def normalize_key(event: events.Key) -> str:
    if event.key == "space":
        return "space"
    if event.is_printable and event.character:
        return event.character
    return event.key


def render_rows(rows: tuple[Row, ...], selected: Optional[int]) -> Table:
    table = Table(box=None, expand=True, show_edge=False, pad_edge=False)
    table.add_column("Name", ratio=1, no_wrap=True, overflow="ellipsis")
    table.add_column("Kind", width=8, no_wrap=True)
    table.add_column("Size", width=10, justify="right", no_wrap=True)
    table.add_column("Modified", width=16, no_wrap=True)
    for index, row in enumerate(rows):
        name = Text(row.name, style="bold" if row.is_container else "")
        size = Text(row.size)
        if row.size_bytes is not None:
            size.stylize(size_style(row.size_bytes))
        style = "reverse" if index == selected else ""
        table.add_row(name, row.kind, size, row.modified, style=style)
    return table


def render_preview(pane: PreviewPane):
    if pane.text is not None:
        return Syntax(pane.text, pane.lexer, word_wrap=True, theme="monokai")
    if pane.raw is not None:
        return Text(pane.raw)
    return Text(pane.status, style="dim")


def render_choices(choices: tuple[str, ...], selected: Optional[int]) -> Text:
    text = Text()
    for index, line in enumerate(choices):
        if index:
            text.append("\n")
        text.append(line, style="reverse" if index == selected else "")
    return text


class S3NavApp(App):
    CSS = """
    #breadcrumb {
        height: 3;
        padding: 0 1;
        border: round $panel;
        background: $surface;
        color: $text;
        content-align: left middle;
    }

    #body {
        height: 1fr;
    }

    #entries {
        width: 3fr;
        border: round $panel;
        padding: 0 1;
    }

    #side {
        width: 2fr;
    }

    #preview-header {
        height: 3;
        padding: 0 1;
        border: round $panel;
        background: $surface;
        color: $text;
    }

    #preview-content {
        height: 1fr;
        border: round $panel;
        background: #202427;
        padding: 0 1;
        overflow-y: auto;
    }

    #progress {
        height: auto;
        padding: 0 1;
        color: $text-muted;
    }

    #status {
        height: 1;
        padding: 0 1;
        background: $surface;
        color: $text;
    }

    #status.error {
        color: red;
    }

    #hints {
        height: 1;
        padding: 0 1;
        background: $panel;
        color: $text-muted;
    }
    """

    TITLE = "s3nav"

    def __init__(
        self,
        gateway,
        config: Optional[AppConfig] = None,
        initial_path: Optional[str] = None,
    ) -> None:
        super().__init__()
        self.gateway = gateway
        self.app_config = config or AppConfig()
        self.initial_path = initial_path
        self.core: Optional[BrowserCore] = None
        self._last_notification: Optional[Notification] = None

    def compose(self) -> ComposeResult:
        yield Header()
        yield Static("s3://", id="breadcrumb")
        with Horizontal(id="body"):
            yield Static("", id="entries")
            with Vertical(id="side"):
                yield Static("", id="preview-header")
                yield Static("", id="preview-content")
        yield Static("", id="progress")
        yield Static("", id="status")
        yield Static("", id="hints")

    async def on_mount(self) -> None:
        self.breadcrumb = self.query_one("#breadcrumb", Static)
        self.entries = self.query_one("#entries", Static)
        self.preview_header = self.query_one("#preview-header", Static)
        self.preview_content = self.query_one("#preview-content", Static)
        self.transfers = self.query_one("#progress", Static)
        self.status_bar = self.query_one("#status", Static)
        self.hints = self.query_one("#hints", Static)
        self.core = BrowserCore(
            self.gateway,
            self.app_config,
            clipboard=self.copy_to_clipboard,
            opener=webbrowser.open,
        )
        self.core.start(self.initial_path)
        self.run_worker(self._pump_completions(), exclusive=True, group="completions")
        self.set_interval(TICK_SECONDS, self.render_frame)
        self.render_frame()

    def on_unmount(self) -> None:
        if self.core is not None:
            self.core.shutdown()

    async def _pump_completions(self) -> None:
        while True:
            await self.core.process_next()
            self.render_frame()

    def on_key(self, event: events.Key) -> None:
        if self.core is None:
            return
        event.stop()
        event.prevent_default()
        self.core.handle_key(normalize_key(event))
        if self.core.quit_requested:
            self.exit()
            return
        self.render_frame()

    def _list_height(self) -> int:
        height = self.entries.content_region.height
        # one line for the column header
        return max(0, height - 1)

    def render_frame(self) -> None:
        if self.core is None:
            return
        height = self._list_height()
        if height:
            self.core.page_height = height
        frame = self.core.frame(height)
        self._paint(frame)

    def _paint(self, frame: Frame) -> None:
        crumb = frame.breadcrumb
        if frame.prompt:
            crumb = f"{crumb}    {frame.prompt}"
        self.breadcrumb.update(Text(crumb))
        self.entries.border_title = frame.mode
        self.entries.border_subtitle = frame.title
        if frame.help:
            self.entries.update(Text("\n".join(frame.help)))
        elif frame.choices:
            self.entries.update(render_choices(frame.choices, frame.choice_selected))
        else:
            self.entries.update(render_rows(frame.rows, frame.selected))
        self._paint_side(frame)
        self.transfers.update(Text("\n".join(frame.progress)))
        self.status_bar.update(Text(frame.status))
        self.status_bar.set_class(frame.status.startswith("Error"), "error")
        self.hints.update(Text(frame.footer))
        notification = frame.notification
        if notification is not None and notification is not self._last_notification:
            self._last_notification = notification
            self.notify(notification.message, severity=notification.severity)

    def _paint_side(self, frame: Frame) -> None:
        if frame.detail:
            self.preview_header.update(Text("Details"))
            self.preview_content.update(Text("\n".join(frame.detail)))
            return
        pane = frame.preview
        if pane is None:
            self.preview_header.update("")
            self.preview_content.update(Text("Press p to preview an object", style="dim"))
            return
        self.preview_header.update(Text(f"{pane.title}\n{pane.status}"))
        self.preview_content.update(render_preview(pane))


def setup_logging(log_path: Optional[Path], debug: bool = False) -> None:
    level = logging.DEBUG if debug else logging.INFO
    root = logging.getLogger("s3nav")
    root.handlers = []
    root.setLevel(level)
    root.propagate = False
    if log_path is None:
        root.addHandler(logging.NullHandler())
        return
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_path, mode="a")
    except OSError:
        root.addHandler(logging.NullHandler())
        return
    handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    root.addHandler(handler)
    if not debug:
        logging.getLogger("botocore").setLevel(logging.WARNING)
    root.debug("Logging initialized (debug=%s)", debug)


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-p", "--profile", help="AWS profile to use")
    parser.add_argument("--region", help="AWS region override for S3 client")
    parser.add_argument("--endpoint-url", help="S3-compatible endpoint URL")
    parser.add_argument("--config", type=Path, help="Path to config.json")
    parser.add_argument("--log-file", type=Path, help="Write logs to this file")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")


def _normalize_path(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    value = value.strip()
    if value.startswith("s3://"):
        return value
    return f"s3://{value.lstrip('/')}"


def _resolve_config(args: argparse.Namespace) -> AppConfig:
    config = load_config(args.config)
    return config.with_overrides(
        profile=args.profile,
        region=args.region,
        endpoint_url=args.endpoint_url,
        log_path=args.log_file,
    )


def build_gateway(config: AppConfig) -> S3Gateway:
    return S3Gateway(
        profile=config.profile,
        region=config.region,
        endpoint_url=config.endpoint_url,
        page_size=config.page_size,
        request_timeout=config.request_timeout,
    )


def _run_browser_command(config: AppConfig, initial_path: Optional[str] = None) -> int:
    app = S3NavApp(build_gateway(config), config, initial_path=initial_path)
    app.run()
    return 0


async def run_upload(core: BrowserCore, source: Path, bucket: str, key: str, stream=None) -> bool:
    stream = stream or sys.stderr
    job = core.pipeline.start_upload(source, bucket, key)
    while job.is_running:
        await core.process_next()
        stream.write(f"\r{progress_line(job)}")
        stream.flush()
    stream.write("\n")
    if job.status is JobStatus.FAILED:
        stream.write(f"{job.error}\n")
    return job.status is JobStatus.DONE


def _run_upload_command(config: AppConfig, source: Path, target: str) -> int:
    bucket, key = parse_s3_uri(target)
    if not bucket:
        print(f"invalid target: {target}", file=sys.stderr)
        return 2
    if not key or key.endswith("/"):
        key = f"{key}{source.name}"

    async def _upload() -> bool:
        core = BrowserCore(build_gateway(config), config)
        try:
            return await run_upload(core, source, bucket, key)
        finally:
            core.shutdown()

    return 0 if asyncio.run(_upload()) else 1


def main(argv: Optional[list[str]] = None) -> int:
    args_list = list(sys.argv[1:] if argv is None else argv)
    if args_list and args_list[0] == "upload":
        parser = argparse.ArgumentParser(
            prog="s3nav upload", description="Upload a local file to S3"
        )
        parser.add_argument("source", type=Path, help="Local file to upload")
        parser.add_argument("target", help="s3://bucket/key or s3://bucket/prefix/")
        _add_common_options(parser)
        args = parser.parse_args(args_list[1:])
        config = _resolve_config(args)
        setup_logging(config.log_path, args.debug)
        try:
            return _run_upload_command(config, args.source, _normalize_path(args.target))
        except KeyboardInterrupt:
            return 130

    parser = argparse.ArgumentParser(description="Terminal S3 browser")
    parser.add_argument("path", nargs="?", help="Open at s3://bucket/prefix/")
    _add_common_options(parser)
    args = parser.parse_args(args_list)
    config = _resolve_config(args)
    setup_logging(config.log_path, args.debug)
    logger.info("starting browser at %s", args.path or "s3://")
    return _run_browser_command(config, initial_path=_normalize_path(args.path))


if __name__ == "__main__":
    sys.exit(main())
