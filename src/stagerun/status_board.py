from __future__ import annotations

import enum
import threading

from rich.console import Console
from rich.live import Live
from rich.spinner import Spinner
from rich.table import Table
from rich.text import Text


class EntryState(enum.Enum):
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self is not EntryState.PENDING


class StatusEntry:
    """One row on a ``StatusBoard``; only the owning worker should mutate it."""

    def __init__(self, board: StatusBoard, label: str) -> None:
        self._board = board
        self.label = label
        self._state = EntryState.PENDING
        self._spinner = Spinner("dots", text=Text("pending", style="yellow"))

    @property
    def state(self) -> EntryState:
        return self._state

    def done(self) -> bool:
        return self._board._transition(self, EntryState.DONE)

    def fail(self) -> bool:
        return self._board._transition(self, EntryState.FAILED)


class StatusBoard:
    """Live per-entry status display.

    Workers call ``add`` and then ``done``/``fail`` on their entry from any
    thread. ``render`` blocks the caller, redrawing until every entry is terminal.
    """

    def __init__(self, *, console: Console | None = None, refresh_per_second: float = 8.0) -> None:
        if refresh_per_second <= 0:
            raise ValueError(f"refresh_per_second must be > 0, got {refresh_per_second}")
        self._console = console or Console()
        self._refresh_per_second = refresh_per_second
        self._entries: list[StatusEntry] = []
        self._pending = 0
        self._changed = threading.Condition()

    @property
    def console(self) -> Console:
        return self._console

    def add(self, label: str) -> StatusEntry:
        entry = StatusEntry(self, label)
        with self._changed:
            self._entries.append(entry)
            self._pending += 1
            self._changed.notify_all()
        return entry

    def _transition(self, entry: StatusEntry, state: EntryState) -> bool:
        with self._changed:
            if entry.state.terminal:
                return False
            entry._state = state
            self._pending -= 1
            self._changed.notify_all()
        return True

    def entries(self) -> list[StatusEntry]:
        with self._changed:
            return list(self._entries)

    def states(self) -> dict[str, EntryState]:
        return {entry.label: entry.state for entry in self.entries()}

    def pending_count(self) -> int:
        with self._changed:
            return self._pending

    def all_terminal(self) -> bool:
        return self.pending_count() == 0

    def build_table(self) -> Table:
        table = Table(show_header=False, box=None, pad_edge=False)
        table.add_column("Status", no_wrap=True)
        table.add_column("Entry")
        for entry in self.entries():
            state = entry.state
            if state is EntryState.DONE:
                status = Text("done", style="green")
            elif state is EntryState.FAILED:
                status = Text("failed", style="bold red")
            else:
                status = entry._spinner
            table.add_row(status, entry.label)
        return table

    def render(self) -> None:
        if not self.entries():
            return

        interval = 1.0 / self._refresh_per_second
        with Live(
            self.build_table(),
            console=self._console,
            refresh_per_second=self._refresh_per_second,
        ) as live:
            while True:
                with self._changed:
                    finished = self._changed.wait_for(lambda: self._pending == 0, timeout=interval)
                live.update(self.build_table(), refresh=True)
                if finished:
                    break
        # Live only terminates its final frame on interactive terminals.
        if not self._console.is_terminal:
            self._console.line()
