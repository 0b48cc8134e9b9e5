"""Tool-call protocols: how tool intents are read out of model output."""

from taskloom.protocol.base import (
    COMPLETION_TOOL,
    InvocationOrigin,
    ParsedTurn,
    ToolInvocation,
)
from taskloom.protocol.legacy_json import LegacyJsonProtocol, extract_json_objects
from taskloom.protocol.prose import ProseToolExtractor
from taskloom.protocol.streaming import FeedResult, StreamingTagParser
from taskloom.protocol.structured import StructuredProtocol
from taskloom.protocol.tags import TagProtocol


def parse_text_turn(
    text: str,
    primary: TagProtocol,
    legacy: LegacyJsonProtocol | None = None,
    prose: ProseToolExtractor | None = None,
) -> ParsedTurn:
    """Parse a text turn: primary protocol, then legacy JSON, then prose.

    A later parser runs only when every earlier one found nothing.
    """
    parsed = primary.parse(text)
    if not parsed.is_empty:
        return parsed
    fallback = (legacy or LegacyJsonProtocol()).parse(text)
    if not fallback.is_empty:
        return fallback
    return (prose or ProseToolExtractor()).extract(text)


__all__ = [
    "COMPLETION_TOOL",
    "FeedResult",
    "InvocationOrigin",
    "LegacyJsonProtocol",
    "ParsedTurn",
    "ProseToolExtractor",
    "StreamingTagParser",
    "StructuredProtocol",
    "TagProtocol",
    "ToolInvocation",
    "extract_json_objects",
    "parse_text_turn",
]
