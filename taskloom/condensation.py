"""Keeping a long-running loop inside its context budget.

``condense`` asks the model to summarize the middle of the conversation.
``compact_context`` is the cheap structural fallback used when
summarizing was not enough: it stubs old tool results and drops or
shortens earlier file reads without any model call.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from typing import Iterable

from taskloom.config import get_config
from taskloom.conversation import ConversationState, estimate_tokens
from taskloom.exceptions import TaskCancelledError
from taskloom.llm import LLMProvider, Message
from taskloom.logging import get_logger
from taskloom.tools.file_cache import CachedFile, FileContentCache

log = get_logger(__name__)

KEEP_RECENT_ACTIONS = 6
KEEP_RECENT_FILES = 4
MAX_TOKENS_PER_FILE = 3000
TRUNCATED_FILE_MAX_LINES = 100

SUMMARIZER_SYSTEM_PROMPT = (
    "You are a precise conversation summarizer. Extract key facts, decisions, "
    "and progress concisely. Never call tools."
)

_DEFINITION_RE = re.compile(
    r"^\s*(export\s+)?(default\s+)?(abstract\s+)?(async\s+)?"
    r"(function|class|interface|type|const|let|enum|def|struct|impl|trait|pub\s+(fn|struct|enum|trait))\s"
)


def build_folded_file_context(
    files: Iterable[CachedFile] | FileContentCache,
    max_definitions: int | None = None,
    max_chars: int | None = None,
) -> str:
    """Definition lines of each cached file as ``<file-summary>`` blocks."""
    cfg = get_config().context
    per_file = cfg.folded_max_definitions if max_definitions is None else max_definitions
    limit = cfg.folded_max_chars if max_chars is None else max_chars
    entries = files.items() if isinstance(files, FileContentCache) else list(files)

    sections: list[str] = []
    for entry in entries:
        definitions = [
            line for line in entry.content.split("\n") if _DEFINITION_RE.match(line)
        ][:per_file]
        if not definitions:
            continue
        path = entry.path.replace("\\", "/")
        sections.append(f'<file-summary path="{path}">\n' + "\n".join(definitions) + "\n</file-summary>")
    return "\n".join(sections)[:limit]


def _summary_prompt(messages: list[Message], per_message_chars: int) -> str:
    transcript = "\n\n---\n\n".join(
        f"[{m.role.upper()}]: {(m.content or '')[:per_message_chars]}" for m in messages
    )
    return (
        "Summarize the following conversation between an AI assistant and the tools it used. Preserve:\n"
        "- All file paths mentioned and their relevance\n"
        "- All changes made (what was changed and why)\n"
        "- Current task progress and remaining work\n"
        "- Any errors encountered and how they were resolved\n"
        "- Key decisions and their rationale\n\n"
        "Be concise but thorough. DO NOT call any tools. Return ONLY a text summary.\n\n"
        f"--- CONVERSATION TO SUMMARIZE ({len(messages)} messages) ---\n\n{transcript}"
    )


async def condense(
    conversation: ConversationState,
    provider: LLMProvider,
    files: Iterable[CachedFile] | FileContentCache = (),
    keep_last: int | None = None,
    abort_event: asyncio.Event | None = None,
) -> int:
    """Summarize the condensable middle of the conversation.

    Returns the number of tokens freed; 0 when there was too little to
    condense or the summarizer failed (history is then left untouched).
    """
    to_summarize = conversation.messages_to_condense(keep_last)
    if not to_summarize:
        return 0

    cfg = get_config().context
    folded = build_folded_file_context(files)
    prompt = _summary_prompt(to_summarize, cfg.summary_message_chars)
    try:
        response = await provider.complete(
            [
                Message(role="system", content=SUMMARIZER_SYSTEM_PROMPT),
                Message(role="user", content=prompt),
            ],
            tools=None,
            temperature=cfg.summary_temperature,
            max_tokens=cfg.summary_max_tokens,
            abort_event=abort_event,
        )
    except TaskCancelledError:
        raise
    except Exception as e:
        log.warning("Condensation failed; history left unchanged", error=str(e))
        return 0

    summary = (response.content or "").strip()
    if not summary:
        log.warning("Condensation returned an empty summary; history left unchanged")
        return 0
    return conversation.apply_condensation(summary, folded, keep_last)


@dataclass
class CompactionResult:
    freed_tokens: int = 0
    level: int = 0
    details: list[str] = field(default_factory=list)

    @property
    def summary(self) -> str:
        if not self.details:
            return "No compaction needed"
        return f"Context compacted (level {self.level}): " + "; ".join(self.details)

    @property
    def notice(self) -> str:
        """Text for a system notice; empty when nothing was freed."""
        if self.freed_tokens <= 0:
            return ""
        return (
            f"{self.summary}. {self.freed_tokens:,} tokens freed. "
            "Some earlier file contents or tool results were shortened; "
            "re-read files if you need their full content."
        )


def _truncate_lines(content: str, max_lines: int) -> str | None:
    lines = content.split("\n")
    if len(lines) <= max_lines:
        return None
    half = max_lines // 2
    omitted = len(lines) - max_lines
    return (
        "\n".join(lines[:half])
        + f"\n\n... [{omitted} lines omitted, file truncated to save context] ...\n\n"
        + "\n".join(lines[-half:])
    )


def compact_context(
    conversation: ConversationState,
    file_cache: FileContentCache,
    target_free_tokens: int,
    step: int,
) -> CompactionResult:
    """Free roughly ``target_free_tokens`` without calling the model.

    Levels run in order and stop once the target is met:

    1. collapse older tool results to one-line stubs;
    2. evict the least recently used cached files and stub their reads;
    3. truncate the remaining large files to their head and tail.

    ``freed_tokens`` is the real drop in ``conversation.token_count``; cache
    changes alone free nothing the model sees.
    """
    result = CompactionResult()
    before = conversation.token_count

    def freed() -> int:
        return before - conversation.token_count

    if freed() < target_free_tokens:
        compacted, _ = conversation.compact_tool_results(KEEP_RECENT_ACTIONS)
        if compacted:
            result.level = 1
            result.details.append(f"Compressed {compacted} old tool results")

    if freed() < target_free_tokens and len(file_cache) > KEEP_RECENT_FILES:
        result.level = 2
        oldest_first = sorted(file_cache.items(), key=lambda e: e.last_access_step)
        evicted: list[str] = []
        for entry in oldest_first[: len(oldest_first) - KEEP_RECENT_FILES]:
            if freed() >= target_free_tokens:
                break
            stub = f"[Evicted from context] {entry.path}: re-read the file if you need it again."
            conversation.rewrite_file_results(entry.path, lambda body, stub=stub: stub)
            file_cache.invalidate(entry.path)
            evicted.append(entry.path.rsplit("/", 1)[-1])
        if evicted:
            result.details.append(f"Evicted {len(evicted)} oldest files: {', '.join(evicted)}")

    if freed() < target_free_tokens:
        result.level = 3
        for entry in file_cache.items():
            if freed() >= target_free_tokens:
                break
            if estimate_tokens(entry.content) <= MAX_TOKENS_PER_FILE:
                continue
            truncated = _truncate_lines(entry.content, TRUNCATED_FILE_MAX_LINES)
            if truncated is None:
                continue
            line_count = entry.line_count
            file_cache.replace_content(entry.path, truncated)
            conversation.rewrite_file_results(
                entry.path, lambda body: _truncate_lines(body, TRUNCATED_FILE_MAX_LINES)
            )
            result.details.append(
                f"Truncated {entry.path.rsplit('/', 1)[-1]} ({line_count} -> {TRUNCATED_FILE_MAX_LINES} lines)"
            )

    result.freed_tokens = max(0, freed())
    if result.freed_tokens:
        log.info(
            "Context compacted",
            level=result.level,
            freed_tokens=result.freed_tokens,
            target=target_free_tokens,
            step=step,
        )
    return result
