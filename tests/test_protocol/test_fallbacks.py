from taskloom.llm import LLMResponse, ToolCall
from taskloom.protocol import (
    InvocationOrigin,
    LegacyJsonProtocol,
    ProseToolExtractor,
    StructuredProtocol,
    TagProtocol,
    extract_json_objects,
    parse_text_turn,
)
from taskloom.protocol.prose import extract_shell_commands, looks_like_file_path


def test_extract_json_objects_skips_unbalanced_and_ignores_braces_in_strings():
    text = 'css: a { color: red; then {"tool": "read_file", "args": {"path": "x}.py"}} tail'

    objects = list(extract_json_objects(text))

    assert objects[-1] == '{"tool": "read_file", "args": {"path": "x}.py"}}'


def test_legacy_json_finds_later_object_after_incidental_braces():
    text = (
        "Here is a template: {name} and some code `if (x) { y(); }`.\n"
        '{"tool": "list_files", "args": {"path": "src"}}'
    )

    parsed = LegacyJsonProtocol().parse(text)

    assert len(parsed.invocations) == 1
    assert parsed.invocations[0].tool == "list_files"
    assert parsed.invocations[0].arguments == {"path": "src"}
    assert parsed.invocations[0].origin == InvocationOrigin.LEGACY_JSON


def test_legacy_json_done_summary_is_completion():
    parsed = LegacyJsonProtocol().parse('```json\n{"done": true, "summary": "Report written."}\n```')

    assert parsed.completion == "Report written."
    assert parsed.completion_origin == InvocationOrigin.LEGACY_JSON


def test_legacy_json_done_summary_holding_a_tool_call_runs_the_tool():
    text = '{"done": true, "summary": "{\\"tool\\": \\"read_file\\", \\"args\\": {\\"path\\": \\"a\\"}}"}'

    parsed = LegacyJsonProtocol().parse(text)

    assert parsed.completion is None
    assert parsed.invocations[0].tool == "read_file"


def test_legacy_json_tool_call_marker_split():
    text = '[TOOL_CALL]{"tool": "web_search", "args": {"query": "a"}}[TOOL_CALL]{"tool": "x"}'

    parsed = LegacyJsonProtocol().parse(text)

    assert parsed.invocations[0].tool == "web_search"


def test_prose_shell_fence_becomes_one_call_per_logical_line():
    text = (
        "Run these:\n"
        "```bash\n"
        "$ npm install\n"
        "# comment\n"
        "docker build \\\n"
        "  -t app .\n"
        "```\n"
    )

    parsed = ProseToolExtractor().extract(text)

    commands = [inv.arguments["command"] for inv in parsed.invocations]
    assert commands == ["npm install", "docker build -t app ."]
    assert all(inv.tool == "execute_command" for inv in parsed.invocations)
    assert all(inv.confidence == 0.8 for inv in parsed.invocations)


def test_prose_untagged_fence_with_command_prefix_is_shell():
    parsed = ProseToolExtractor().extract("```\ngit status\n```")

    assert parsed.invocations[0].arguments == {"command": "git status"}


def test_prose_in_block_path_comment_becomes_write_with_comment_stripped():
    text = "```python\n# filepath: src/app/main.py\nprint('hi')\n```"

    parsed = ProseToolExtractor().extract(text)

    assert len(parsed.invocations) == 1
    invocation = parsed.invocations[0]
    assert invocation.tool == "write_to_file"
    assert invocation.arguments == {"path": "src/app/main.py", "content": "print('hi')\n"}
    assert invocation.confidence == 0.9
    assert invocation.origin == InvocationOrigin.PROSE


def test_prose_path_from_preceding_line_bare_filename():
    text = "Create the file at `config.yaml`:\n\n```yaml\nkey: value\n```"

    parsed = ProseToolExtractor().extract(text)

    assert parsed.invocations[0].arguments["path"] == "config.yaml"
    assert parsed.invocations[0].confidence == 0.7


def test_prose_fence_without_path_is_ignored():
    parsed = ProseToolExtractor().extract("Example output:\n```\n42\n```")

    assert parsed.is_empty


def test_prose_completion_phrase_only_without_fences():
    extractor = ProseToolExtractor()

    done = extractor.extract("I have successfully completed the migration of all modules.")
    fenced = extractor.extract("The task is complete.\n```\nfoo\n```")

    assert done.completion is not None
    assert done.completion_origin == InvocationOrigin.PROSE
    assert fenced.completion is None


def test_helpers():
    assert extract_shell_commands("> ls -la\n\n$ pwd") == ["ls -la", "pwd"]
    assert looks_like_file_path("Dockerfile")
    assert looks_like_file_path("src/index.ts")
    assert not looks_like_file_path("notes")


def test_text_chain_primary_protocol_wins():
    text = (
        '<read_file>\n<path>a.py</path>\n</read_file>\n'
        '{"tool": "execute_command", "args": {"command": "rm -rf /"}}\n'
        "```bash\nls\n```"
    )

    parsed = parse_text_turn(text, TagProtocol())

    assert [inv.tool for inv in parsed.invocations] == ["read_file"]
    assert parsed.origin == InvocationOrigin.PROTOCOL


def test_text_chain_falls_back_to_legacy_then_prose():
    legacy = parse_text_turn('{"tool": "list_files", "args": {}}', TagProtocol())
    prose = parse_text_turn("```sh\nmake test\n```", TagProtocol())

    assert legacy.origin == InvocationOrigin.LEGACY_JSON
    assert prose.origin == InvocationOrigin.PROSE


def test_structured_protocol_keeps_all_calls_and_reads_completion():
    response = LLMResponse(
        content="",
        tool_calls=[
            ToolCall(id="1", name="read_file", arguments={"path": "a"}),
            ToolCall(id="2", name="write_to_file", arguments={"path": "b", "content": "x"}),
            ToolCall(id="3", name="attempt_completion", arguments={"result": "done"}),
        ],
    )

    parsed = StructuredProtocol().parse(response)

    assert [inv.call_id for inv in parsed.invocations] == ["1", "2"]
    assert parsed.completion == "done"
    assert parsed.completion_origin == InvocationOrigin.STRUCTURED


def test_structured_tool_definitions_append_completion_tool():
    definitions = StructuredProtocol.tool_definitions([])

    assert [d.name for d in definitions] == ["attempt_completion"]
