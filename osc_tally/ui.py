"""
Textual status window for the tally engine.

Shows where OSC is going (or "No OSC Receivers connected!"), the discovery
mode and every parameter value. Keys 1-4 flip Preview/Program/Standby/Error
by hand, which doubles as a manual upstream producer.
"""

import threading

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.reactive import reactive
from textual.widgets import Footer, Header, Static

from .engine import TallyEngine
from .parameters import TallyParameter

REDRAW_INTERVAL = 0.25

_TALLY_COLORS = {
    TallyParameter.PREVIEW.value: "green",
    TallyParameter.PROGRAM.value: "red",
    TallyParameter.STANDBY.value: "yellow",
    TallyParameter.ERROR.value: "magenta",
    TallyParameter.HEARTBEAT.value: "cyan",
}


class ReactivePanel(Static):
    """Base class for reactive panels with common patterns."""

    def render_section(self, title: str, emoji: str = "═") -> str:
        return f"[bold]{emoji * 3} {title} {emoji * 3}[/]\n"


class ConnectionPanel(ReactivePanel):
    """OSC send targets."""
    status = reactive({})

    def watch_status(self, status: dict) -> None:
        if not self.is_mounted:
            return
        lines = [self.render_section("OSC", "═")]
        if status.get("mode") == "custom_port":
            lines.append("[dim]Custom port mode (discovery off)[/dim]")
        else:
            service = status.get("service")
            if service:
                lines.append(
                    f"OSCQuery Service running at TCP {service['http_port']} "
                    f"and UDP {service['osc_port']}"
                )
            discovery = status.get("discovery", {})
            lines.append(
                f"[dim]OSCQuery discovery: {discovery.get('accepted', 0)} accepted, "
                f"{discovery.get('rejected', 0)} rejected, "
                f"{discovery.get('pending', 0)} probing[/dim]"
            )

        connected = status.get("connected", [])
        for dest in connected:
            lines.append(f"OSC Sending to {dest}")
        if status.get("no_receivers", True):
            lines.append("[red]No OSC Receivers connected![/red]")
        elif not connected:
            lines.append("[dim](waiting for first send)[/dim]")

        failing = status.get("scheduler", {}).get("failing", [])
        if failing:
            lines.append(f"[yellow]Failing: {', '.join(failing)}[/yellow]")
        self.update("\n".join(lines))


class ParameterPanel(ReactivePanel):
    """Current parameter values."""
    values = reactive({})

    def watch_values(self, values: dict) -> None:
        if not self.is_mounted:
            return
        lines = [self.render_section("Parameters", "─")]
        for name, value in values.items():
            color = _TALLY_COLORS.get(name, "white")
            mark = f"[{color}]●[/]" if value else "[dim]○[/dim]"
            lines.append(f"{mark} {name:10s} {value}")
        self.update("\n".join(lines))


class TallyApp(App):
    """Terminal front end for a TallyEngine."""

    CSS = """
    Screen { background: $surface; }
    .panel { border: solid $primary; padding: 0 1; height: auto; }
    """

    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("1", "toggle('Preview')", "Preview"),
        Binding("2", "toggle('Program')", "Program"),
        Binding("3", "toggle('Standby')", "Standby"),
        Binding("4", "toggle('Error')", "Error"),
    ]

    def __init__(self, engine: TallyEngine, manage_engine: bool = True):
        super().__init__()
        self.engine = engine
        self.manage_engine = manage_engine
        self._dirty = threading.Event()

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Vertical():
            yield ConnectionPanel(id="connections", classes="panel")
            yield ParameterPanel(id="parameters", classes="panel")
        yield Footer()

    def on_mount(self) -> None:
        self.title = "OSC Tally"
        # Engine callbacks come from worker threads; only flag a redraw there
        self.engine.on_refresh = self._dirty.set
        if self.manage_engine and not self.engine.is_started:
            if not self.engine.start():
                self.notify("Tally engine failed to start", severity="error")
        self._redraw()
        self.set_interval(REDRAW_INTERVAL, self._redraw_if_dirty)

    def _redraw_if_dirty(self) -> None:
        if self._dirty.is_set():
            self._redraw()

    def _redraw(self) -> None:
        self._dirty.clear()
        status = self.engine.get_status()
        self.query_one("#connections", ConnectionPanel).status = status
        self.query_one("#parameters", ParameterPanel).values = status["parameters"]

    def action_toggle(self, name: str) -> None:
        value = self.engine.toggle_parameter(name)
        self.notify(f"{name} → {value}")
        self._redraw()

    def on_unmount(self) -> None:
        self.engine.on_refresh = None
        if self.manage_engine:
            self.engine.stop()
