"""
CLI display components for a streamed chat turn.

Provides different output formats for rendering downstream envelopes:
- VerboseDisplay: Rich terminal UI with thinking, tool calls and a response panel
- CompactDisplay: Minimal output showing only the reply text
- JsonDisplay: Raw NDJSON lines for scripting and debugging
"""

from abc import ABC, abstractmethod
import json
import re
from typing import Any

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel

from ..protocol import DeltaEnvelope, DownstreamEnvelope, ErrorEnvelope, encode_line
from ..reducer import MessageView, Segment, SegmentReducer, SegmentType

_TASK_LIST_PATTERN = re.compile(r"^(\s*[-*]\s+)\[([ xX])\]\s+(.*)$", re.MULTILINE)

_MAX_VALUE_CHARS = 800


class StreamDisplay(ABC):
    """Base class for stream display renderers."""

    def __init__(self, console: Console | None = None) -> None:
        self.reducer = SegmentReducer()
        self.console = console or Console()

    def start(self, prompt: str | None = None) -> None:
        """Start the display (called before first envelope)."""
        self.reducer.begin(prompt)

    @abstractmethod
    def on_envelope(self, envelope: DownstreamEnvelope) -> None:
        """
        Handle one downstream envelope.

        Args:
            envelope: Parsed envelope to fold and display
        """
        pass

    @abstractmethod
    def finish(self) -> None:
        """Finish the display (called after the last envelope or on error)."""
        pass

    def get_final_text(self) -> str:
        for view in reversed(self.reducer.messages):
            if view.role == "assistant":
                return view.content
        return ""


class CompactDisplay(StreamDisplay):
    """
    Compact display showing only the reply text.

    Text deltas are printed as they arrive; everything else is folded
    silently.
    """

    def on_envelope(self, envelope: DownstreamEnvelope) -> None:
        self.reducer.apply(envelope)
        if isinstance(envelope, ErrorEnvelope):
            self.console.print(f"\n[red]Error: {escape(envelope.error)}[/red]")
            return
        if isinstance(envelope, DeltaEnvelope):
            print(envelope.content, end="", flush=True)

    def finish(self) -> None:
        print()


class VerboseDisplay(StreamDisplay):
    """
    Verbose display with rich terminal UI.

    Shows:
    - Reasoning paragraphs as they complete
    - Tool and SQL calls with their results
    - The final reply as a markdown panel
    - Chart, visualization and query hints
    """

    def __init__(self, console: Console | None = None) -> None:
        super().__init__(console=console)
        self._rendered = 0
        self._view: MessageView | None = None

    def start(self, prompt: str | None = None) -> None:
        super().start(prompt)
        self._view = self.reducer.current
        self._rendered = 0

    def on_envelope(self, envelope: DownstreamEnvelope) -> None:
        self.reducer.apply(envelope)
        if isinstance(envelope, ErrorEnvelope):
            self.console.print(
                Panel(
                    f"[red]{escape(envelope.error)}[/red]",
                    title="[red]Error[/red]",
                    border_style="red",
                )
            )
            return
        if self._view is None:
            return
        # Segments are only ever appended, so render what is new
        for segment in self._view.segments[self._rendered :]:
            self._render_segment(segment)
        self._rendered = len(self._view.segments)

    def _render_segment(self, segment: Segment) -> None:
        if segment.type is SegmentType.TEXT:
            return
        if segment.type is SegmentType.THINKING:
            self.console.print(f"[dim cyan]🧠 {escape(str(segment.value))}[/dim cyan]")
        elif segment.type is SegmentType.TOOL_CALL:
            call = segment.value.get("call")
            name = call.get("name") if isinstance(call, dict) else None
            self.console.print(f"[yellow]🔧 {escape(str(name or 'tool call'))}[/yellow]")
        elif segment.type is SegmentType.TOOL_RESULT:
            self.console.print(f"[green]✓ result[/green] {escape(_format_value(segment.value))}")
        elif segment.type is SegmentType.SQL:
            self.console.print(
                Panel(
                    escape(_format_value(segment.value)),
                    title="[blue]SQL[/blue]",
                    border_style="blue",
                )
            )
        elif segment.type is SegmentType.SQL_RESULT:
            self.console.print(f"[green]✓ rows[/green] {escape(_format_value(segment.value))}")

    def finish(self) -> None:
        if self.reducer.error:
            return
        self.console.print(_build_markdown_panel(self.get_final_text()))
        message = next(
            (m for m in reversed(self.reducer.messages) if m.role == "assistant"), None
        )
        if message is None:
            return
        hints = {k: message.metadata[k] for k in ("chartType", "query") if k in message.metadata}
        if hints:
            lines = [f"[bold]{k}[/bold]: {escape(_format_value(v))}" for k, v in hints.items()]
            self.console.print("\n".join(lines))
        if self.reducer.conversation_id:
            self.console.print(f"[dim]conversation {self.reducer.conversation_id}[/dim]")


class JsonDisplay(StreamDisplay):
    """
    JSON display for raw envelope streaming.

    Outputs each envelope as an NDJSON line for machine consumption.
    """

    def on_envelope(self, envelope: DownstreamEnvelope) -> None:
        self.reducer.apply(envelope)
        print(encode_line(envelope), end="", flush=True)

    def finish(self) -> None:
        pass


def render_history(messages: list[MessageView], console: Console | None = None) -> None:
    """Print a persisted conversation."""
    console = console or Console()
    for view in messages:
        if view.role == "user":
            console.print(f"[bold]You[/bold] [dim]{view.timestamp}[/dim]")
            console.print(view.content, markup=False)
            console.print()
            continue
        for step in view.thinking_steps:
            console.print(f"[dim cyan]🧠 {escape(step)}[/dim cyan]")
        console.print(
            _build_markdown_panel(view.content, title=f"[cyan]Assistant[/cyan] {view.timestamp}")
        )


def _format_value(value: Any) -> str:
    text = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False, default=str)
    if len(text) > _MAX_VALUE_CHARS:
        return text[:_MAX_VALUE_CHARS] + "…"
    return text


def _normalize_markdown(text: str) -> str:
    """Apply small GitHub-flavored markdown tweaks Rich lacks natively."""

    def replace(match: re.Match[str]) -> str:
        prefix, state, content = match.groups()
        symbol = "☑" if state.lower() == "x" else "☐"
        return f"{prefix}{symbol} {content}"

    return _TASK_LIST_PATTERN.sub(replace, text)


def _build_markdown_panel(
    text: str,
    *,
    title: str = "[cyan]Response[/cyan]",
    empty_message: str = "[dim]No response generated.[/dim]",
) -> Panel:
    """Convert raw markdown text into a Rich panel with consistent styling."""
    normalized = _normalize_markdown(text)
    if normalized.strip():
        content: Markdown | str = Markdown(normalized, code_theme="monokai", justify="left")
        panel_title: str | None = title
    else:
        content = empty_message
        panel_title = None
    return Panel(content, title=panel_title, border_style="cyan", expand=True)


def create_display(format: str = "verbose", console: Console | None = None) -> StreamDisplay:
    """
    Factory function to create appropriate display.

    Args:
        format: Display format ("verbose", "compact", or "json")

    Returns:
        StreamDisplay instance
    """
    if format == "compact":
        return CompactDisplay(console)
    elif format == "json":
        return JsonDisplay(console)
    else:  # "verbose" is default
        return VerboseDisplay(console)
