"""Workflow definitions and the loaders that resolve them."""

from .builtin import BUILTIN_DEFINITIONS, builtin_workflow
from .loader import (
    PACKAGED_DEFINITIONS,
    DirectoryWorkflowSource,
    WorkflowLoader,
    WorkflowSource,
    parse_workflow,
)

__all__ = [
    "BUILTIN_DEFINITIONS",
    "PACKAGED_DEFINITIONS",
    "DirectoryWorkflowSource",
    "WorkflowLoader",
    "WorkflowSource",
    "builtin_workflow",
    "parse_workflow",
]
