"""Rich rendering of reconciled conversation transcripts.

``render_message_rich`` produces Rich markup for one message;
``render_transcript`` wraps a whole session in a renderable group that a
``rich.console.Console`` can print.
"""
from __future__ import annotations

from rich.console import Group
from rich.markup import escape
from rich.rule import Rule
from rich.text import Text

from ttyscribe.shared.models.message import ConversationMessage, MessageRole
from ttyscribe.shared.models.session import ConversationSession, SessionStatus

_ROLE_STYLE = {
    MessageRole.USER: ("❯", "bold green", "you"),
    MessageRole.ASSISTANT: ("⏺", "bold cyan", "assistant"),
    MessageRole.SYSTEM: ("─", "dim", "system"),
}

_STATUS_STYLE = {
    SessionStatus.ACTIVE: "green",
    SessionStatus.EXITED: "yellow",
    SessionStatus.TERMINATED: "red",
}


def render_message_rich(message: ConversationMessage, *, show_time: bool = True) -> str:
    """Render one message as Rich markup."""
    glyph, style, label = _ROLE_STYLE[message.role]
    stamp = f"[dim]{message.timestamp.strftime('%H:%M:%S')}[/dim] " if show_time else ""

    if message.role is MessageRole.SYSTEM:
        return f"{stamp}[dim]{glyph}{glyph} {escape(message.content)} {glyph}{glyph}[/dim]"

    lines = message.content.splitlines() or [""]
    head = f"{stamp}[{style}]{glyph} {label}[/{style}]  {escape(lines[0])}"
    indent = " " * (len(label) + 4 + (9 if show_time else 0))
    rest = [f"{indent}{escape(line)}" for line in lines[1:]]
    return "\n".join([head, *rest])


def render_header_rich(session: ConversationSession) -> str:
    colour = _STATUS_STYLE.get(session.status, "white")
    parts = [
        f"[bold]{escape(session.session_id)}[/bold]",
        f"[{colour}]{session.status.value}[/{colour}]",
        f"[cyan]{escape(session.model_id)}[/cyan]",
        f"[dim]{session.message_count} messages[/dim]",
    ]
    if session.working_directory:
        parts.append(f"[dim]{escape(session.working_directory)}[/dim]")
    return "  ".join(parts)


def render_transcript(
    session: ConversationSession,
    *,
    show_time: bool = True,
    include_system: bool = True,
) -> Group:
    """Renderable transcript: header rule followed by one block per message."""
    blocks: list = [Rule(Text.from_markup(render_header_rich(session)))]
    for message in session.messages:
        if message.role is MessageRole.SYSTEM and not include_system:
            continue
        blocks.append(Text.from_markup(render_message_rich(message, show_time=show_time)))
    return Group(*blocks)


def transcript_plain(session: ConversationSession, *, include_system: bool = True) -> str:
    """Plain-text transcript (no markup), one ``role: content`` block per message."""
    out: list[str] = []
    for message in session.messages:
        if message.role is MessageRole.SYSTEM and not include_system:
            continue
        out.append(f"{message.role.value}: {message.content}")
    return "\n\n".join(out)
