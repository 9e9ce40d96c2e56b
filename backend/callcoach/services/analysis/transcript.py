from typing import Any, Mapping, Optional, Sequence, Union
from callcoach.core.config import settings
from callcoach.core.errors import InsufficientTranscriptError
from callcoach.schemas.analysis import TranscriptTurn

# The AI plays the customer; the voice platform reports it as "agent".
CUSTOMER_ROLES = {"customer", "agent"}

Turn = Union[TranscriptTurn, Mapping[str, Any]]


def role_label(role: str) -> str:
    return "Customer" if (role or "").strip().lower() in CUSTOMER_ROLES else "CSR"


def format_turns(turns: Optional[Sequence[Turn]]) -> str:
    """Join {role, content} turns into "Label: content" lines."""
    lines = []
    for turn in turns or []:
        if isinstance(turn, TranscriptTurn):
            role, content = turn.role, turn.content
        else:
            role, content = turn.get("role", ""), turn.get("content", "")
        content = (content or "").strip()
        if content:
            lines.append(f"{role_label(role)}: {content}")
    return "\n".join(lines)


def resolve_transcript(
    raw: Optional[str],
    turns: Optional[Sequence[Turn]] = None,
    min_chars: int = settings.MIN_TRANSCRIPT_CHARS,
) -> str:
    """
    Pick the transcript text to score.

    The raw transcript wins when it is long enough; otherwise the formatted
    turns are used. If neither reaches min_chars, InsufficientTranscriptError
    is raised so no scoring call is ever made for it.
    """
    raw = (raw or "").strip()
    if raw and len(raw) >= min_chars:
        return raw

    formatted = format_turns(turns)
    if formatted and len(formatted) >= min_chars:
        return formatted

    raise InsufficientTranscriptError(
        f"Transcript too short to analyze (need at least {min_chars} characters)"
    )
