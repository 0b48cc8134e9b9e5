import pytest

from taskloom.config import get_config, set_config
from taskloom.conversation import (
    ConversationState,
    estimate_tokens,
    format_tool_result,
    truncate_tool_result,
)


def _long_conversation(keep_recent: int = 2, middle: int = 6) -> ConversationState:
    conversation = ConversationState(keep_recent=keep_recent)
    conversation.add_message("user", "Refactor the parser module.")
    for i in range(middle):
        conversation.add_message("assistant", f"Step {i}: " + "reasoning " * 200)
    conversation.add_message("assistant", "Almost there.")
    conversation.add_message("user", "Continue.")
    return conversation


def test_budget_subtracts_reserves_and_caps_at_ceiling():
    conversation = ConversationState(model_window=300000, hard_ceiling=100000, response_reserve=8000)

    assert conversation.budget == 92000
    assert conversation.reserve_fixed_overhead(2000, floor=1000) == 90000
    assert conversation.reserve_fixed_overhead(95000, floor=20000) == 20000


def test_token_count_tracks_appends():
    conversation = ConversationState()

    conversation.add_message("user", "abcd" * 10)

    assert conversation.token_count == estimate_tokens("abcd" * 10) + 4
    assert conversation.usage_summary()["messages"] == 1


def test_apply_condensation_strictly_decreases_and_keeps_edges():
    conversation = _long_conversation()
    before = conversation.token_count
    first = conversation.messages[0]
    last_two = conversation.messages[-2:]

    freed = conversation.apply_condensation("Parser split into tokenizer and AST builder.")

    assert freed > 0
    assert conversation.token_count < before
    assert conversation.messages[0] == first
    assert conversation.messages[-2:] == last_two
    assert len(conversation) == 4
    assert "<conversation-summary>" in conversation.messages[1].content
    assert conversation.compaction_count == 1


def test_apply_condensation_shrinks_oversized_summary():
    conversation = _long_conversation(middle=3)
    before = conversation.token_count

    freed = conversation.apply_condensation("summary " * 5000, folded_context="<file-summary/>" * 100)

    assert freed > 0
    assert conversation.token_count < before


def test_nothing_to_condense_with_too_few_middle_messages():
    conversation = _long_conversation(middle=0)

    assert conversation.messages_to_condense() == []
    assert conversation.apply_condensation("summary") == 0


def test_tool_results_in_text_mode_are_tagged_user_turns():
    conversation = ConversationState()

    message = conversation.add_tool_result("local::read_file", False, "no such file", call_id="c1")

    assert message.role == "user"
    assert message.content == format_tool_result("read_file", False, "no such file")
    assert 'status="error"' in message.content


def test_tool_results_in_structured_mode_are_tool_turns():
    conversation = ConversationState(structured=True)

    message = conversation.add_tool_result("read_file", True, "data", call_id="c1")

    assert message.role == "tool"
    assert message.tool_call_id == "c1"
    assert message.blocks[0].type == "tool_result"


def test_oversized_tool_result_keeps_head_and_tail():
    content = "A" * 100 + "B" * 100

    truncated = truncate_tool_result(content, 50)

    assert truncated.startswith("A" * 25)
    assert truncated.endswith("B" * 25)
    assert "150 characters truncated" in truncated


def test_compact_tool_results_stubs_older_results_only():
    conversation = ConversationState(keep_recent=2)
    conversation.add_message("user", "task")
    for i in range(8):
        conversation.add_tool_result("read_file", True, f"line {i}\n" + "x" * 2000)
    conversation.add_message("assistant", "ok")
    conversation.add_message("user", "go on")

    compacted, freed = conversation.compact_tool_results(keep_recent_results=2)

    messages = conversation.messages
    assert compacted == 6
    assert freed > 0
    assert messages[1].content == "[Compacted] read_file: OK - line 0"
    assert messages[7].content.startswith("<tool_result ")
    assert conversation.compact_tool_results(keep_recent_results=2) == (0, 0)


def test_trim_to_budget_drops_oldest_middle_turns():
    conversation = ConversationState(model_window=3000, response_reserve=0, keep_recent=2)
    conversation.add_message("user", "task")
    for i in range(10):
        conversation.add_message("assistant", f"{i} " + "y" * 1200)
    conversation.add_message("user", "latest")

    dropped = conversation.trim_to_budget()

    assert dropped > 0
    assert conversation.token_count <= conversation.budget
    assert conversation.messages[0].content == "task"
    assert conversation.messages[-1].content == "latest"
    assert conversation.messages[1].content.startswith("[System Notice]")
    assert conversation.trim_count == 1


def test_near_budget_threshold_comes_from_config():
    conversation = ConversationState(model_window=1000, response_reserve=0)
    conversation.add_message("user", "x" * 2000)

    assert conversation.usage_ratio == pytest.approx(0.504)
    assert not conversation.is_near_budget()
    assert conversation.is_near_budget(threshold=0.5)

    old_cfg = get_config()
    cfg = old_cfg.model_copy(deep=True)
    cfg.context.near_budget_threshold = 0.5
    set_config(cfg)
    try:
        assert conversation.is_near_budget()
    finally:
        set_config(old_cfg)


def test_rewrite_file_results_only_touches_middle_reads_of_that_file():
    conversation = ConversationState(keep_recent=1)
    conversation.add_message("user", "Review the module.")
    conversation.add_tool_result("read_file", True, "a" * 400, source="src/a.py")
    conversation.add_tool_result("read_file", True, "b" * 400, source="src/b.py")
    conversation.add_tool_result("read_file", False, "c" * 400, source="src/a.py")
    conversation.add_tool_result("read_file", True, "a" * 400, source="src/a.py")
    before = conversation.token_count

    freed = conversation.rewrite_file_results("src/a.py", lambda body: "[gone]")

    messages = conversation.messages
    assert messages[1].content == format_tool_result("read_file", True, "[gone]")
    assert "b" * 400 in messages[2].content
    assert "c" * 400 in messages[3].content
    assert "a" * 400 in messages[4].content
    assert freed == before - conversation.token_count > 0


def test_rewrite_that_would_grow_a_result_is_skipped():
    conversation = ConversationState(keep_recent=1)
    conversation.add_message("user", "Review the module.")
    conversation.add_tool_result("read_file", True, "short", source="src/a.py")
    conversation.add_message("assistant", "Done.")

    freed = conversation.rewrite_file_results("src/a.py", lambda body: body + "x" * 200)

    assert freed == 0
    assert conversation.messages[1].content == format_tool_result("read_file", True, "short")
