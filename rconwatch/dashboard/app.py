"""
rconwatch Dashboard — Textual TUI App

Live view of the player roster kept by an RconService.

The service runs on an asyncio loop in a background thread (see main.py).
The app only reads copies (roster.snapshot(), service.status()) and hands
actions back to the loop with call_soon_threadsafe.

Keys:
  q — quit
  r — restart the RCON session
  p — send a players query now
"""

from __future__ import annotations

import asyncio
import time

from rich.text import Text
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal
from textual.widgets import DataTable, Footer, RichLog, Static

from rconwatch.data.roster import Player
from rconwatch.service.server import RconService

REFRESH_INTERVAL = 1.0

_STATE_COLORS: dict[str, str] = {
    "LOGGED_IN": "green",
    "LOGGING_IN": "yellow",
    "DISCONNECTED": "red",
}


def _fmt_ago(seconds: float) -> Text:
    if seconds < 5:
        return Text("now", style="green")
    if seconds < 60:
        return Text(f"{seconds:.0f}s ago", style="yellow")
    return Text(f"{seconds:.0f}s ago", style="dim")


def _cell(value: object) -> Text:
    if value is None or value == "":
        return Text("-", style="bright_black")
    return Text(str(value))


class RosterDashboard(App):
    """Roster table plus a log of server messages."""

    DEFAULT_CSS = """
    #header-bar {
        height: 1;
        background: $boost;
    }
    #status-label {
        width: 1fr;
    }
    #count-label {
        width: auto;
        padding: 0 1;
    }
    #roster-table {
        height: 2fr;
    }
    #message-log {
        height: 1fr;
        border-top: solid $primary;
    }
    """

    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "restart", "Restart RCON"),
        Binding("p", "poll", "Poll players"),
    ]

    def __init__(self, service: RconService, loop: asyncio.AbstractEventLoop):
        super().__init__()
        self.service = service
        self.loop = loop

    def compose(self) -> ComposeResult:
        with Horizontal(id="header-bar"):
            yield Static("rconwatch", id="status-label")
            yield Static("0 players", id="count-label")
        table = DataTable(id="roster-table")
        table.cursor_type = "row"
        yield table
        yield RichLog(highlight=True, markup=False, max_lines=500, id="message-log")
        yield Footer()

    def on_mount(self) -> None:
        table: DataTable = self.query_one("#roster-table", DataTable)
        table.add_columns("ID", "Name", "UID", "IP", "BE GUID", "Device", "Last Seen")
        # Listeners run on the service thread
        self.service.on("message", self._on_message_threadsafe)
        self.service.on("error", self._on_error_threadsafe)
        self._refresh()
        self.set_interval(REFRESH_INTERVAL, self._refresh)

    # ---- Service events (background thread) ----

    def _on_message_threadsafe(self, text: str) -> None:
        self.call_from_thread(self._log_message, text, "white")

    def _on_error_threadsafe(self, message: str) -> None:
        self.call_from_thread(self._log_message, message, "bold red")

    def _log_message(self, text: str, style: str) -> None:
        log: RichLog = self.query_one("#message-log", RichLog)
        line = Text()
        line.append(f"[{time.strftime('%H:%M:%S')}] ", style="bright_black")
        line.append(text, style=style)
        log.write(line)

    # ---- UI updates ----

    def _refresh(self) -> None:
        self._update_header()
        self._refresh_roster(self.service.roster.snapshot())

    def _update_header(self) -> None:
        status = self.service.status()
        state = status["state"]
        color = _STATE_COLORS.get(state, "white")
        label = Text()
        label.append("rconwatch ", style="bold")
        label.append(status["host"])
        label.append(f" [{state}]", style=color)
        if status["reconnecting"]:
            label.append(f" reconnecting (attempt {status['reconnect_attempts']})", style="yellow")
        if status["consecutive_timeouts"]:
            label.append(f" timeouts={status['consecutive_timeouts']}", style="red")
        self.query_one("#status-label", Static).update(label)
        self.query_one("#count-label", Static).update(f"{status['players']} players")

    def _refresh_roster(self, players: list[Player]) -> None:
        table: DataTable = self.query_one("#roster-table", DataTable)
        table.clear()
        now = self.service.roster.now()
        for p in sorted(players, key=lambda p: (p.id is None, p.id or 0, p.name)):
            name = Text(p.name, style="italic" if p.is_provisional else "bold")
            table.add_row(
                _cell(p.id), name, _cell(p.uid), _cell(p.ip),
                _cell(p.be_guid), _cell(p.device),
                _fmt_ago(now - p.last_seen),
            )

    # ---- Actions ----

    def action_restart(self) -> None:
        self.loop.call_soon_threadsafe(self.service.restart)
        self.notify("Restarting RCON session")

    def action_poll(self) -> None:
        self.loop.call_soon_threadsafe(self.service.poll_now)
        self.notify("Players query sent")
