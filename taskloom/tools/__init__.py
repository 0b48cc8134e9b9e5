"""Tool provider port, in-process registry and the execution gateway."""

from taskloom.tools.file_cache import CachedFile, FileContentCache, slice_lines
from taskloom.tools.gateway import ToolExecutionGateway, load_ignore_patterns, matches_ignore
from taskloom.tools.registry import (
    Tool,
    ToolOutcome,
    ToolPolicy,
    ToolPolicyChain,
    ToolProvider,
    ToolRegistry,
    ToolSpec,
)

__all__ = [
    "CachedFile",
    "FileContentCache",
    "Tool",
    "ToolExecutionGateway",
    "ToolOutcome",
    "ToolPolicy",
    "ToolPolicyChain",
    "ToolProvider",
    "ToolRegistry",
    "ToolSpec",
    "load_ignore_patterns",
    "matches_ignore",
    "slice_lines",
]
