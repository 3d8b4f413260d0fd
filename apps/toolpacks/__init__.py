"""Toolpack loading and execution for the kyscan server."""

from .executor import (
    ExecutionStats,
    Executor,
    ToolInputError,
    ToolOutputError,
    ToolpackExecutionError,
)
from .loader import Toolpack, ToolpackLoader, ToolpackValidationError

__all__ = [
    "ExecutionStats",
    "Executor",
    "ToolInputError",
    "ToolOutputError",
    "Toolpack",
    "ToolpackExecutionError",
    "ToolpackLoader",
    "ToolpackValidationError",
]
