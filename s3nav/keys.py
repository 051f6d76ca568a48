"""Modal keystroke handling.

``transition`` is a total function: every key in every mode maps to a new
mode plus a (possibly empty) tuple of commands for the core to execute.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Union


class Cmd(str, Enum):
    QUIT = "quit"
    RELOAD = "reload"
    PUSH_SELECTION = "push_selection"
    POP = "pop"
    JUMP_ROOT = "jump_root"
    CURSOR_NEXT = "cursor_next"
    CURSOR_PREV = "cursor_prev"
    CURSOR_FIRST = "cursor_first"
    CURSOR_LAST = "cursor_last"
    PAGE_DOWN = "page_down"
    PAGE_UP = "page_up"
    LOAD_MORE = "load_more"
    START_PREVIEW = "start_preview"
    SHOW_DETAILS = "show_details"
    START_DOWNLOAD = "start_download"
    CONFIRM_DOWNLOAD = "confirm_download"
    START_SAVE_AS = "start_save_as"
    SAVE_AS = "save_as"
    CANCEL_JOB = "cancel_job"
    COPY_PATH = "copy_path"
    COPY_DETAILS = "copy_details"
    COPY_VALUE = "copy_value"
    OPEN_CONSOLE = "open_console"
    SET_FILTER = "set_filter"
    CLEAR_FILTER = "clear_filter"


@dataclass(frozen=True)
class Command:
    kind: Cmd
    arg: Optional[object] = None


@dataclass(frozen=True)
class Browse:
    pass


@dataclass(frozen=True)
class Filter:
    text: str = ""
    previous: str = ""


@dataclass(frozen=True)
class ConfirmAction:
    prompt: str
    action: Command


@dataclass(frozen=True)
class Prompt:
    """Free text entry; ``enter`` sends ``(payload, text)`` with ``action``."""

    label: str
    action: Cmd
    text: str = ""
    payload: Optional[object] = None


@dataclass(frozen=True)
class Choose:
    """Pick one of ``options`` (label, value); ``enter`` sends the value with ``action``."""

    title: str
    options: tuple[tuple[str, str], ...]
    action: Cmd
    index: int = 0


@dataclass(frozen=True)
class Help:
    pass


InputState = Union[Browse, Filter, ConfirmAction, Prompt, Choose, Help]

BROWSE = Browse()
HELP = Help()


@dataclass(frozen=True)
class Transition:
    state: InputState
    commands: tuple[Command, ...] = ()


# (keys, command, help text). Order is the help page order.
BROWSE_KEYMAP: tuple[tuple[tuple[str, ...], Cmd, str], ...] = (
    (("j", "down"), Cmd.CURSOR_NEXT, "Select next item"),
    (("k", "up"), Cmd.CURSOR_PREV, "Select previous item"),
    (("g", "home"), Cmd.CURSOR_FIRST, "Go to top"),
    (("G", "end"), Cmd.CURSOR_LAST, "Go to bottom"),
    (("f", "pagedown"), Cmd.PAGE_DOWN, "Scroll page forward"),
    (("b", "pageup"), Cmd.PAGE_UP, "Scroll page backward"),
    (("l", "enter", "right"), Cmd.PUSH_SELECTION, "Open bucket or folder"),
    (("h", "backspace", "left"), Cmd.POP, "Back to parent"),
    (("~",), Cmd.JUMP_ROOT, "Back to bucket list"),
    (("r",), Cmd.RELOAD, "Reload current listing"),
    (("m",), Cmd.LOAD_MORE, "Load next page"),
    (("p", "space"), Cmd.START_PREVIEW, "Preview object"),
    (("i",), Cmd.SHOW_DETAILS, "Show object details"),
    (("s",), Cmd.START_DOWNLOAD, "Download object"),
    (("S",), Cmd.START_SAVE_AS, "Download object as ..."),
    (("x",), Cmd.CANCEL_JOB, "Cancel running preview/download"),
    (("y",), Cmd.COPY_PATH, "Copy s3:// path"),
    (("Y",), Cmd.COPY_DETAILS, "Copy an object detail"),
    (("o",), Cmd.OPEN_CONSOLE, "Open management console in browser"),
    (("q", "ctrl+c"), Cmd.QUIT, "Quit app"),
)

BROWSE_BINDINGS: dict[str, Cmd] = {
    key: command for keys, command, _ in BROWSE_KEYMAP for key in keys
}

FILTER_KEY = "/"
HELP_KEY = "?"


def _one(state: InputState, kind: Cmd, arg: Optional[object] = None) -> Transition:
    return Transition(state, (Command(kind, arg),))


def is_printable(key: str) -> bool:
    return len(key) == 1 and key.isprintable()


def _browse(state: Browse, key: str, filter_text: str) -> Transition:
    if key == FILTER_KEY:
        return Transition(Filter(text=filter_text, previous=filter_text))
    if key == HELP_KEY:
        return Transition(HELP)
    if key == "escape":
        if filter_text:
            return _one(state, Cmd.CLEAR_FILTER)
        return Transition(state)
    command = BROWSE_BINDINGS.get(key)
    if command is None:
        return Transition(state)
    return _one(state, command)


def _filter(state: Filter, key: str) -> Transition:
    if key == "ctrl+c":
        return _one(BROWSE, Cmd.QUIT)
    if key == "enter":
        return _one(BROWSE, Cmd.SET_FILTER, state.text)
    if key == "escape":
        return _one(BROWSE, Cmd.SET_FILTER, state.previous)
    if key == "backspace":
        if not state.text:
            return Transition(state)
        text = state.text[:-1]
        return _one(Filter(text=text, previous=state.previous), Cmd.SET_FILTER, text)
    if key == "space":
        key = " "
    if is_printable(key):
        text = state.text + key
        return _one(Filter(text=text, previous=state.previous), Cmd.SET_FILTER, text)
    return Transition(state)


def _confirm(state: ConfirmAction, key: str) -> Transition:
    if key == "ctrl+c":
        return _one(BROWSE, Cmd.QUIT)
    if key in {"y", "Y", "enter"}:
        return Transition(BROWSE, (state.action,))
    if key in {"n", "N", "escape"}:
        return Transition(BROWSE)
    return Transition(state)


def _prompt(state: Prompt, key: str) -> Transition:
    if key == "ctrl+c":
        return _one(BROWSE, Cmd.QUIT)
    if key == "escape":
        return Transition(BROWSE)
    if key == "enter":
        text = state.text.strip()
        if not text:
            return Transition(BROWSE)
        return _one(BROWSE, state.action, (state.payload, text))
    if key == "backspace":
        return Transition(replace(state, text=state.text[:-1]))
    if key == "space":
        key = " "
    if is_printable(key):
        return Transition(replace(state, text=state.text + key))
    return Transition(state)


def _choose(state: Choose, key: str) -> Transition:
    if key == "ctrl+c":
        return _one(BROWSE, Cmd.QUIT)
    if key in {"escape", "q"} or not state.options:
        return Transition(BROWSE)
    if key in {"j", "down"}:
        return Transition(replace(state, index=min(state.index + 1, len(state.options) - 1)))
    if key in {"k", "up"}:
        return Transition(replace(state, index=max(state.index - 1, 0)))
    if key == "enter":
        _, value = state.options[state.index]
        return _one(BROWSE, state.action, value)
    return Transition(state)


def _help(state: Help, key: str) -> Transition:
    if key == "ctrl+c":
        return _one(BROWSE, Cmd.QUIT)
    if key in {HELP_KEY, "escape", "q"}:
        return Transition(BROWSE)
    return Transition(state)


def transition(state: InputState, key: str, filter_text: str = "") -> Transition:
    if isinstance(state, Browse):
        return _browse(state, key, filter_text)
    if isinstance(state, Filter):
        return _filter(state, key)
    if isinstance(state, ConfirmAction):
        return _confirm(state, key)
    if isinstance(state, Prompt):
        return _prompt(state, key)
    if isinstance(state, Choose):
        return _choose(state, key)
    if isinstance(state, Help):
        return _help(state, key)
    raise TypeError(f"unknown input state {state!r}")


def help_lines() -> list[str]:
    rows = [(" / ".join(keys), text) for keys, _, text in BROWSE_KEYMAP]
    rows.append((FILTER_KEY, "Filter current listing"))
    rows.append(("Esc", "Clear filter"))
    rows.append((HELP_KEY, "Toggle help"))
    width = max(len(keys) for keys, _ in rows)
    return [f"{keys:>{width}}  {text}" for keys, text in rows]


def mode_name(state: InputState) -> str:
    if isinstance(state, Filter):
        return "FILTER"
    if isinstance(state, ConfirmAction):
        return "CONFIRM"
    if isinstance(state, Prompt):
        return "INPUT"
    if isinstance(state, Choose):
        return "SELECT"
    if isinstance(state, Help):
        return "HELP"
    return "BROWSE"
