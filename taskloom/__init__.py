"""Taskloom - agentic tool loops and DAG task scheduling for LLM workers."""

__version__ = "0.1.0"

from taskloom.config import Config

__all__ = ["Config", "__version__"]
