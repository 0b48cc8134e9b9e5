"""Last-resort extraction of tool intents from plain prose.

Used only when neither the tag protocol nor the legacy JSON fallback found
anything.  Extraction is conservative: shell fences become commands,
fences with a recognizable file path become writes, and completion
phrasing is accepted only for fence-free answers.
"""

from __future__ import annotations

import re

from taskloom.protocol.base import InvocationOrigin, ParsedTurn, ToolInvocation

SHELL_TOOL = "execute_command"
WRITE_TOOL = "write_to_file"

SHELL_CONFIDENCE = 0.8
PATH_WITH_DIR_CONFIDENCE = 0.9
BARE_FILENAME_CONFIDENCE = 0.7

_CODE_BLOCK_RE = re.compile(r"```(\w*)\n(.*?)```", re.DOTALL)
_ANY_FENCE_RE = re.compile(r"```.*?```", re.DOTALL)

SHELL_LANGUAGES = frozenset({
    "bash", "sh", "shell", "zsh", "terminal", "console", "cmd", "powershell", "ps1",
})

SHELL_COMMAND_PREFIXES = [
    re.compile(r"^(?:\$|>|#)\s+"),
    re.compile(r"^(?:npm|npx|yarn|pnpm)\s+"),
    re.compile(r"^(?:pip|pip3|python|python3|uv|poetry)\s+"),
    re.compile(r"^(?:cd|mkdir|rm|cp|mv|ls|cat|echo|touch|chmod|chown|curl|wget)\s+"),
    re.compile(r"^(?:git|docker|docker-compose|kubectl)\s+"),
    re.compile(r"^(?:node|deno|bun)\s+"),
    re.compile(r"^(?:cargo|go|rustc|gcc|make|cmake)\s+"),
    re.compile(r"^(?:sudo|apt|apt-get|brew|choco|winget)\s+"),
]

# Path comments written as the first line inside a fence.
IN_BLOCK_PATH_PATTERNS = [
    re.compile(r"^//\s*(?:file(?:path)?|name)\s*:\s*(.+?)$"),
    re.compile(r"^#\s*(?:file(?:path)?|name)\s*:\s*(.+?)$"),
    re.compile(r"^/\*\s*(?:file(?:path)?|name)\s*:\s*(.+?)\s*\*/$"),
]

# Checked in order against each of the last prose lines before a fence.
PROSE_PATH_PATTERNS = [
    re.compile(r"[`*]+([^\s`*]+\.[a-z]{1,5})[`*]+\s*[:.]?\s*$", re.IGNORECASE),
    re.compile(
        r"(?:create|write|save|update|overwrite|put)\s+(?:(?:the\s+)?file\s+)?(?:at|to|in)\s+"
        r"[`\"']?([^\s`\"']+\.[a-z]{1,5})[`\"']?\s*[:.]?\s*$",
        re.IGNORECASE,
    ),
    re.compile(
        r"(?:here(?:'s| is))\s+(?:the\s+)?(?:file\s+)?[`\"']?([^\s`\"']+\.[a-z]{1,5})[`\"']?\s*[:.]?\s*$",
        re.IGNORECASE,
    ),
    re.compile(r"^[`\"']?([A-Za-z]:[\\/][^\s`\"']+\.[a-z]{1,5})[`\"']?\s*[:.]?\s*$", re.IGNORECASE),
    re.compile(r"^[`\"']?([a-zA-Z_.\-/][^\s`\"']*\.[a-z]{1,5})[`\"']?\s*[:.]?\s*$", re.IGNORECASE),
    re.compile(r"^#+\s*\d*\.?\s*[`*]+([^\s`*]+\.[a-z]{1,5})[`*]+", re.IGNORECASE),
    re.compile(
        r"(?:created?|wrote|saved|updated|generated)\s+(?:file\s+)?(?:at\s+)?[`\"']([^\s`\"']+\.[a-z]{1,5})[`\"']",
        re.IGNORECASE,
    ),
]

CODE_EXTENSIONS = frozenset({
    "ts", "tsx", "js", "jsx", "mjs", "cjs",
    "py", "rb", "go", "rs", "java", "kt", "swift", "c", "cpp", "h", "hpp", "cs",
    "html", "htm", "css", "scss", "less", "sass",
    "json", "yaml", "yml", "toml", "xml", "ini", "cfg", "conf",
    "md", "mdx", "txt", "env", "gitignore", "dockerignore",
    "sh", "bash", "zsh", "fish", "ps1", "bat", "cmd",
    "sql", "graphql", "gql", "prisma",
    "vue", "svelte", "astro",
    "tf", "hcl",
})
EXTENSIONLESS_NAMES = (
    "Dockerfile", "Makefile", "Gemfile", "Rakefile", "Procfile",
    ".env", ".gitignore", ".dockerignore",
)

COMPLETION_PATTERNS = [
    re.compile(r"\b(?:the\s+)?task\s+is\s+(?:now\s+)?(?:complete|completed|done|finished)\b", re.IGNORECASE),
    re.compile(r"\bI\s+have\s+(?:successfully\s+)?(?:completed|finished)\b", re.IGNORECASE),
    re.compile(
        r"^(?:successfully|done|completed|finished|all\s+(?:files?|tasks?|steps?)\s+"
        r"(?:have\s+been\s+)?(?:created|completed|done|set\s*up))",
        re.IGNORECASE,
    ),
    re.compile(
        r"the\s+(?:implementation|setup|configuration|project)\s+is\s+(?:now\s+)?(?:complete|done|ready|finished)",
        re.IGNORECASE,
    ),
    re.compile(r"^##?\s*(?:summary|result|completed?|done|output)", re.IGNORECASE | re.MULTILINE),
]


def is_shell_command(code: str) -> bool:
    first_line = code.strip().split("\n")[0].strip()
    return any(p.search(first_line) for p in SHELL_COMMAND_PREFIXES)


def extract_shell_commands(code: str) -> list[str]:
    """Split a shell fence into logical command lines."""
    commands: list[str] = []
    current = ""
    for line in code.strip().split("\n"):
        cleaned = re.sub(r"^\s*[$>]\s+", "", line).strip()
        if not cleaned or cleaned.startswith("#"):
            continue
        if cleaned.endswith("\\"):
            current += cleaned[:-1].strip() + " "
            continue
        current += cleaned
        commands.append(current)
        current = ""
    if current.strip():
        commands.append(current.strip())
    return commands


def clean_file_path(raw: str) -> str:
    path = raw.strip().strip("\"'`")
    if path.startswith("./"):
        path = path[2:]
    path = path.replace("**", "")
    path = re.sub(r"[:;,]$", "", path)
    return path.strip()


def looks_like_file_path(path: str) -> bool:
    if not path or len(path) < 3 or len(path) > 300:
        return False
    if path.endswith(EXTENSIONLESS_NAMES):
        return True
    if "." not in path:
        return False
    return path.rsplit(".", 1)[-1].lower() in CODE_EXTENSIONS


def _in_block_path(code: str) -> str | None:
    first = code.split("\n", 1)[0].strip()
    for pattern in IN_BLOCK_PATH_PATTERNS:
        match = pattern.match(first)
        if match:
            path = clean_file_path(match.group(1))
            if looks_like_file_path(path):
                return path
    return None


def _prose_path(text_before: str) -> str | None:
    lines = [line for line in text_before.split("\n") if line.strip()][-5:]
    for line in reversed(lines):
        for pattern in PROSE_PATH_PATTERNS:
            match = pattern.search(line.strip())
            if match:
                path = clean_file_path(match.group(1))
                if looks_like_file_path(path):
                    return path
    return None


def strip_path_comment(code: str) -> str:
    first, _, rest = code.partition("\n")
    if any(p.match(first.strip()) for p in IN_BLOCK_PATH_PATTERNS):
        return rest
    return code


class ProseToolExtractor:
    """Turns fenced commands, fenced files and completion phrasing into intents."""

    def extract(self, content: str) -> ParsedTurn:
        text = content or ""
        invocations: list[ToolInvocation] = []
        blocks = list(_CODE_BLOCK_RE.finditer(text))

        for block in blocks:
            lang = (block.group(1) or "").lower()
            code = block.group(2)

            in_block = _in_block_path(code)
            if lang in SHELL_LANGUAGES or (in_block is None and is_shell_command(code)):
                for command in extract_shell_commands(code):
                    invocations.append(
                        ToolInvocation(
                            tool=SHELL_TOOL,
                            arguments={"command": command},
                            origin=InvocationOrigin.PROSE,
                            confidence=SHELL_CONFIDENCE,
                        )
                    )
                continue

            path = in_block or _prose_path(text[:block.start()])
            if not path:
                continue
            body = strip_path_comment(code) if in_block else code
            confidence = (
                PATH_WITH_DIR_CONFIDENCE
                if "/" in path or "\\" in path
                else BARE_FILENAME_CONFIDENCE
            )
            invocations.append(
                ToolInvocation(
                    tool=WRITE_TOOL,
                    arguments={"path": path, "content": body},
                    origin=InvocationOrigin.PROSE,
                    confidence=confidence,
                )
            )

        completion: str | None = None
        stripped = text.strip()
        if "```" not in text and len(stripped) > 20:
            if any(p.search(stripped) for p in COMPLETION_PATTERNS):
                completion = stripped

        return ParsedTurn(
            invocations=invocations,
            completion=completion,
            text=_ANY_FENCE_RE.sub("", text).strip(),
            completion_origin=InvocationOrigin.PROSE if completion is not None else None,
        )
