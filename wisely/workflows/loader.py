"""Load workflow specifications from YAML with a built-in fallback."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional, Protocol

import yaml
from pydantic import ValidationError as PydanticValidationError

from ..config import WiselyConfig
from ..contracts import WorkflowSpec
from ..errors import (
    InfrastructureError,
    MalformedWorkflowError,
    WiselyError,
    WorkflowNotFoundError,
)
from .builtin import BUILTIN_DEFINITIONS, builtin_workflow

logger = logging.getLogger(__name__)

PACKAGED_DEFINITIONS = Path(__file__).parent / "definitions"


class WorkflowSource(Protocol):
    """Pluggable store of workflow definitions keyed by workflow key."""

    def load(self, key: str) -> WorkflowSpec | None:
        """Return the spec for ``key`` or ``None`` when it is not defined.

        Raises ``InfrastructureError`` when the source cannot be read.
        """

    def keys(self) -> List[str]:
        """Keys of every workflow the source defines."""


def parse_workflow(data: object, key: Optional[str] = None) -> WorkflowSpec:
    """Validate raw definition data into a :class:`WorkflowSpec`."""
    if not isinstance(data, dict):
        raise MalformedWorkflowError(f"Workflow {key or '?'} is not a mapping")
    try:
        spec = WorkflowSpec.model_validate(data)
    except PydanticValidationError as e:
        raise MalformedWorkflowError(f"Workflow {key or '?'} is invalid: {e}") from e
    if key is not None and spec.key != key:
        raise MalformedWorkflowError(
            f"Workflow file {key} declares mismatching key {spec.key}"
        )
    return spec


class DirectoryWorkflowSource:
    """Read ``{key}.yml`` definitions from a directory."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path | None:
        for suffix in (".yml", ".yaml"):
            path = self.directory / f"{key}{suffix}"
            if path.is_file():
                return path
        return None

    def read_raw(self, key: str) -> Dict | None:
        if not self.directory.is_dir():
            raise InfrastructureError(f"Workflow directory {self.directory} is unavailable")
        path = self._path(key)
        if path is None:
            return None
        try:
            with open(path) as f:
                return yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise InfrastructureError(f"Cannot read workflow {path}: {e}") from e

    def load(self, key: str) -> WorkflowSpec | None:
        data = self.read_raw(key)
        return None if data is None else parse_workflow(data, key)

    def keys(self) -> List[str]:
        if not self.directory.is_dir():
            raise InfrastructureError(f"Workflow directory {self.directory} is unavailable")
        return sorted(
            {p.stem for p in self.directory.iterdir() if p.suffix in (".yml", ".yaml")}
        )


class WorkflowLoader:
    """Resolve workflow keys, falling back to the built-in definitions."""

    def __init__(self, source: Optional[WorkflowSource] = None, fallback: bool = True):
        self.source = source
        self.fallback = fallback

    @classmethod
    def from_config(cls, config: WiselyConfig) -> "WorkflowLoader":
        directory = config.workflows.directory
        return cls(DirectoryWorkflowSource(directory) if directory else None)

    def load(self, key: str) -> WorkflowSpec:
        """Return the validated spec for ``key``.

        Raises ``WorkflowNotFoundError`` for unknown keys and
        ``MalformedWorkflowError`` when the definition is not a valid DAG.
        """
        spec: WorkflowSpec | None = None
        if self.source is not None:
            try:
                spec = self.source.load(key)
            except InfrastructureError as e:
                if not self.fallback:
                    raise
                logger.warning(f"Workflow source unavailable, using built-in {key}: {e}")
        if spec is None and self.fallback:
            spec = builtin_workflow(key)
        if spec is None:
            raise WorkflowNotFoundError(key)
        spec.validate_graph()
        return spec

    def keys(self) -> List[str]:
        keys = set(BUILTIN_DEFINITIONS) if self.fallback else set()
        if self.source is not None:
            try:
                keys.update(self.source.keys())
            except InfrastructureError as e:
                logger.warning(f"Cannot list workflow source: {e}")
        return sorted(keys)

    def all(self) -> List[WorkflowSpec]:
        """Every loadable workflow; broken definitions are logged and skipped."""
        specs = []
        for key in self.keys():
            try:
                specs.append(self.load(key))
            except WiselyError as e:
                logger.error(f"Skipping workflow {key}: {e}")
        return specs
