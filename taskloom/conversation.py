"""Per-invocation conversation history with token budgeting.

The first turn (the task statement) and the most recent ``keep_recent``
turns are never rewritten; condensation and sliding-window trimming only
replace the contiguous block between them.
"""

from __future__ import annotations

from typing import Callable

from taskloom.config import get_config
from taskloom.llm import ContentBlock, LLMProvider, Message
from taskloom.logging import get_logger

log = get_logger(__name__)

MESSAGE_OVERHEAD_TOKENS = 4
MIN_CONDENSE_MESSAGES = 3
SYSTEM_NOTICE_PREFIX = "[System Notice]"


def estimate_tokens(text: str) -> int:
    """Rough token estimate (~4 chars per token, rounded up)."""
    return (len(text or "") + 3) // 4


def truncate_tool_result(content: str, max_chars: int) -> str:
    """Keep head and tail of oversized tool output with a marker in between."""
    if max_chars <= 0 or len(content) <= max_chars:
        return content
    half = max_chars // 2
    dropped = len(content) - max_chars
    return f"{content[:half]}\n\n[...{dropped:,} characters truncated...]\n\n{content[-half:]}"


def format_tool_result(tool: str, success: bool, content: str) -> str:
    short_name = tool.split("::")[-1]
    status = "success" if success else "error"
    return f'<tool_result tool="{short_name}" status="{status}">\n{content}\n</tool_result>'


def format_system_notice(text: str) -> str:
    return f"{SYSTEM_NOTICE_PREFIX} {text}"


class ConversationState:
    """Ordered turns, token accounting and compaction for one loop invocation."""

    def __init__(
        self,
        model_window: int = 65536,
        hard_ceiling: int = 200000,
        response_reserve: int = 8000,
        reasoning_reserve: int = 0,
        keep_recent: int = 4,
        max_tool_result_chars: int = 200000,
        token_counter: Callable[[str], int] | None = None,
        structured: bool = False,
    ):
        self.model_window = max(1, int(model_window))
        self.hard_ceiling = max(1, int(hard_ceiling))
        self.response_reserve = max(0, int(response_reserve))
        self.reasoning_reserve = max(0, int(reasoning_reserve))
        self.keep_recent = max(0, int(keep_recent))
        self.max_tool_result_chars = max_tool_result_chars
        self.structured = structured
        self._count = token_counter or estimate_tokens
        self._budget = self._base_budget()
        self._messages: list[Message] = []
        self._estimates: list[int] = []
        # File a tool result was read from, "" for every other turn.
        self._sources: list[str] = []
        self._total = 0
        self.compaction_count = 0
        self.trim_count = 0

    @classmethod
    def for_provider(
        cls,
        provider: LLMProvider,
        structured: bool = False,
    ) -> "ConversationState":
        """Build a state sized for provider using configured reserves."""
        cfg = get_config().context
        return cls(
            model_window=getattr(provider, "context_window", 0) or get_config().model.context_window,
            hard_ceiling=cfg.hard_ceiling,
            response_reserve=cfg.response_reserve,
            reasoning_reserve=cfg.reasoning_reserve if getattr(provider, "supports_reasoning", False) else 0,
            keep_recent=cfg.keep_recent,
            max_tool_result_chars=cfg.max_tool_result_chars,
            token_counter=provider.count_tokens,
            structured=structured,
        )

    # ------------------------------------------------------------------
    # Budget
    # ------------------------------------------------------------------

    def _base_budget(self) -> int:
        capped = min(self.model_window, self.hard_ceiling)
        return max(1, capped - self.response_reserve - self.reasoning_reserve)

    @property
    def budget(self) -> int:
        return self._budget

    def reserve_fixed_overhead(self, overhead_tokens: int, floor: int = 20000) -> int:
        """Subtract system prompt / tool schema tokens from the message budget."""
        base = self._base_budget()
        self._budget = max(1, min(base, max(base - max(0, overhead_tokens), floor)))
        log.debug("Conversation budget", budget=self._budget, overhead=overhead_tokens)
        return self._budget

    @property
    def token_count(self) -> int:
        return self._total

    @property
    def usage_ratio(self) -> float:
        return self._total / self._budget if self._budget else 1.0

    def is_near_budget(self, threshold: float | None = None) -> bool:
        if threshold is None:
            threshold = get_config().context.near_budget_threshold
        return self.usage_ratio >= threshold

    def usage_summary(self) -> dict[str, int | float]:
        return {
            "tokens_used": self._total,
            "budget": self._budget,
            "usage_percent": round(self.usage_ratio * 100, 1),
            "messages": len(self._messages),
            "compactions": self.compaction_count,
            "trims": self.trim_count,
        }

    # ------------------------------------------------------------------
    # Appending
    # ------------------------------------------------------------------

    def _estimate(self, message: Message) -> int:
        text = message.content or ""
        for block in message.blocks:
            if block.text and block.type != "text":
                text += block.text
            if block.arguments:
                text += str(block.argument_dict)
        return self._count(text) + MESSAGE_OVERHEAD_TOKENS

    def _append(self, message: Message, source: str = "") -> Message:
        estimate = self._estimate(message)
        self._messages.append(message)
        self._estimates.append(estimate)
        self._sources.append(source)
        self._total += estimate
        return message

    def add_message(self, role: str, content: str) -> Message:
        return self._append(Message(role=role, content=content))

    def add_blocks(self, role: str, blocks: tuple[ContentBlock, ...] | list[ContentBlock]) -> Message:
        """Append a structured turn; blocks are stored exactly as given."""
        frozen = tuple(blocks)
        text = "".join(block.text for block in frozen if block.type == "text")
        return self._append(Message(role=role, content=text, blocks=frozen))

    def add_tool_result(
        self,
        tool: str,
        success: bool,
        content: str,
        call_id: str | None = None,
        source: str | None = None,
    ) -> Message:
        """Append a tool result.

        ``source`` names the file a successful read returned, so the turn can
        be stubbed or shortened later when that file leaves the context.
        """
        safe = truncate_tool_result(str(content or ""), self.max_tool_result_chars)
        source = (source or "") if success else ""
        if self.structured and call_id:
            block = ContentBlock(
                type="tool_result",
                text=safe,
                tool_call_id=call_id,
                tool_name=tool,
            )
            return self._append(
                Message(
                    role="tool",
                    content=safe if success else f"Error: {safe}",
                    tool_call_id=call_id,
                    tool_name=tool,
                    blocks=(block,),
                ),
                source,
            )
        return self._append(Message(role="user", content=format_tool_result(tool, success, safe)), source)

    def add_system_notice(self, text: str) -> Message:
        return self._append(Message(role="user", content=format_system_notice(text)))

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    # ------------------------------------------------------------------
    # Condensation
    # ------------------------------------------------------------------

    def _condense_bounds(self, keep_last: int | None) -> tuple[int, int]:
        keep = self.keep_recent if keep_last is None else max(0, keep_last)
        start = 1
        end = max(start, len(self._messages) - keep)
        return start, end

    def messages_to_condense(self, keep_last: int | None = None) -> list[Message]:
        """Turns eligible for summarization: all but the first and last N."""
        start, end = self._condense_bounds(keep_last)
        candidates = self._messages[start:end]
        if len(candidates) < MIN_CONDENSE_MESSAGES:
            return []
        return list(candidates)

    def apply_condensation(
        self,
        summary: str,
        folded_context: str = "",
        keep_last: int | None = None,
    ) -> int:
        """Replace the condensable prefix with a summary notice.

        Returns the number of tokens freed (0 when nothing was condensed).
        The notice is shortened when necessary so the estimate always
        decreases.
        """
        start, end = self._condense_bounds(keep_last)
        if end - start < MIN_CONDENSE_MESSAGES:
            return 0

        removed_tokens = sum(self._estimates[start:end])
        condensed_count = end - start
        notice = self._build_condensation_notice(summary, folded_context, condensed_count)
        notice_tokens = self._estimate(notice)
        if notice_tokens >= removed_tokens:
            notice = self._shrink_notice(summary, folded_context, condensed_count, removed_tokens)
            notice_tokens = self._estimate(notice)

        self._messages[start:end] = [notice]
        self._estimates[start:end] = [notice_tokens]
        self._sources[start:end] = [""]
        self._total = sum(self._estimates)
        self.compaction_count += 1
        freed = removed_tokens - notice_tokens
        log.info(
            "Conversation condensed",
            condensed_messages=condensed_count,
            freed_tokens=freed,
            tokens=self._total,
        )
        return freed

    def _build_condensation_notice(self, summary: str, folded_context: str, count: int) -> Message:
        parts = [
            f"{SYSTEM_NOTICE_PREFIX} {count} earlier messages were condensed "
            f"(condensation #{self.compaction_count + 1}).",
            "<conversation-summary>",
            summary.strip(),
            "</conversation-summary>",
        ]
        if folded_context.strip():
            parts.append(folded_context.strip())
        return Message(role="user", content="\n".join(parts))

    def _shrink_notice(self, summary: str, folded_context: str, count: int, removed_tokens: int) -> Message:
        # Drop the digest first, then cut the summary until the notice fits.
        notice = self._build_condensation_notice(summary, "", count)
        text = summary
        while self._estimate(notice) >= removed_tokens and text:
            text = text[: len(text) // 2]
            notice = self._build_condensation_notice(text + " [...]" if text else "", "", count)
        if self._estimate(notice) >= removed_tokens:
            notice = Message(role="user", content=f"{SYSTEM_NOTICE_PREFIX} condensed")
        return notice

    def _is_tool_result(self, message: Message) -> bool:
        if message.role == "tool":
            return True
        return message.role == "user" and message.content.startswith("<tool_result ")

    def compact_tool_results(self, keep_recent_results: int = 6, keep_last: int | None = None) -> tuple[int, int]:
        """Collapse older tool results to one-line stubs.

        The newest ``keep_recent_results`` results, the first turn and the
        last N turns are left as they are.  Returns (compacted, freed_tokens).
        """
        start, end = self._condense_bounds(keep_last)
        indices = [i for i in range(len(self._messages)) if self._is_tool_result(self._messages[i])]
        if keep_recent_results > 0:
            indices = indices[:-keep_recent_results]
        indices = [i for i in indices if start <= i < end]

        compacted = 0
        freed = 0
        for idx in indices:
            message = self._messages[idx]
            if "[Compacted]" in message.content[:40]:
                continue
            stub = self._tool_result_stub(message)
            if message.role == "tool":
                replacement = self._with_result_body(message, stub)
            else:
                replacement = Message(role=message.role, content=stub)
            estimate = self._estimate(replacement)
            if estimate >= self._estimates[idx]:
                continue
            freed += self._estimates[idx] - estimate
            self._messages[idx] = replacement
            self._estimates[idx] = estimate
            self._sources[idx] = ""
            compacted += 1

        if compacted:
            self._total = sum(self._estimates)
        return compacted, freed

    def rewrite_file_results(self, path: str, rewrite: Callable[[str], str | None]) -> int:
        """Rewrite the bodies of tool results read from path.

        Only turns between the first turn and the last N are touched, and a
        rewrite is kept only when it makes the turn smaller.  ``rewrite`` gets
        the current body and returns the new one, or None to leave the turn
        alone.  Returns the number of tokens freed.
        """
        if not path:
            return 0
        start, end = self._condense_bounds(None)
        freed = 0
        for idx in range(start, end):
            if self._sources[idx] != path:
                continue
            message = self._messages[idx]
            body = self._result_body(message)
            new_body = rewrite(body)
            if new_body is None or new_body == body:
                continue
            replacement = self._with_result_body(message, new_body)
            estimate = self._estimate(replacement)
            if estimate >= self._estimates[idx]:
                continue
            freed += self._estimates[idx] - estimate
            self._messages[idx] = replacement
            self._estimates[idx] = estimate
        if freed:
            self._total = sum(self._estimates)
            log.debug("File results rewritten", path=path, freed_tokens=freed)
        return freed

    @staticmethod
    def _result_body(message: Message) -> str:
        if message.role == "tool":
            return message.content
        _, _, rest = message.content.partition("\n")
        return rest.removesuffix("\n</tool_result>")

    @staticmethod
    def _with_result_body(message: Message, body: str) -> Message:
        if message.role != "tool":
            header = message.content.partition("\n")[0]
            return Message(role=message.role, content=f"{header}\n{body}\n</tool_result>")
        blocks = tuple(
            ContentBlock(
                type=block.type,
                text=body,
                tool_call_id=block.tool_call_id,
                tool_name=block.tool_name,
            )
            if block.type == "tool_result"
            else block
            for block in message.blocks
        )
        return Message(
            role="tool",
            content=body,
            tool_call_id=message.tool_call_id,
            tool_name=message.tool_name,
            blocks=blocks,
        )

    @staticmethod
    def _tool_result_stub(message: Message) -> str:
        if message.role == "tool":
            tool = (message.tool_name or "tool").split("::")[-1]
            body = message.content
            ok = not body.startswith("Error:")
        else:
            header, _, body = message.content.partition("\n")
            tool_start = header.find('tool="') + len('tool="')
            tool = header[tool_start:header.find('"', tool_start)] or "tool"
            ok = 'status="success"' in header
        first_line = body.strip().split("\n", 1)[0][:80]
        return f"[Compacted] {tool}: {'OK' if ok else 'FAIL'} - {first_line}"

    def trim_to_budget(self, keep_last: int | None = None) -> int:
        """Sliding-window fallback: drop oldest middle turns until under budget.

        Returns the number of dropped turns.
        """
        if self._total <= self._budget:
            return 0
        start, end = self._condense_bounds(keep_last)
        if end <= start:
            return 0

        dropped = 0
        idx = start
        removed_tokens = 0
        while idx < end and self._total - removed_tokens > self._budget:
            removed_tokens += self._estimates[idx]
            idx += 1
            dropped += 1
        if dropped == 0:
            return 0

        notice = Message(
            role="user",
            content=format_system_notice(
                f"{dropped} earlier messages were dropped to stay within the context budget. "
                "The task definition and recent messages are preserved; re-read files if needed."
            ),
        )
        self._messages[start:idx] = [notice]
        self._estimates[start:idx] = [self._estimate(notice)]
        self._sources[start:idx] = [""]
        self._total = sum(self._estimates)
        self.trim_count += 1
        log.warning("Conversation trimmed", dropped=dropped, tokens=self._total, budget=self._budget)
        return dropped
