"""Execution Context Store.

Per-run, append-only map of step outputs keyed by "<stepId>.<outputField>".
Each key has a single writer (the step that declares the output) and is
written at most once. Later steps read it through conditions and through
the snapshot handed to their handlers.

A context is owned by exactly one WorkflowRun and is never shared.
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Iterable


class _Missing:
    """Sentinel for a path that does not resolve."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()

CONTEXT_PREFIX = "context"
LENGTH_FIELD = "length"


def _descend(current: Any, segment: str) -> Any:
    """Take one step down a tree value; MISSING if the segment does not exist."""
    if isinstance(current, dict):
        if segment in current:
            return current[segment]
        if segment == LENGTH_FIELD:
            return len(current)
        return MISSING
    if isinstance(current, (list, tuple)):
        if segment == LENGTH_FIELD:
            return len(current)
        try:
            index = int(segment)
        except ValueError:
            return MISSING
        if -len(current) <= index < len(current):
            return current[index]
        return MISSING
    if isinstance(current, str) and segment == LENGTH_FIELD:
        return len(current)
    return MISSING


def resolve_path(value: Any, segments: Iterable[str]) -> Any:
    """Total path resolution over a generic tree value."""
    current = value
    for segment in segments:
        current = _descend(current, segment)
        if current is MISSING:
            return MISSING
    return current


@dataclass
class ExecutionContext:
    """Outputs produced so far by one workflow run."""

    run_id: str
    values: dict[str, Any] = field(default_factory=dict)
    # step ids in the order they wrote outputs
    writers: list[str] = field(default_factory=list)

    @staticmethod
    def key(step_id: str, output_name: str) -> str:
        return f"{step_id}.{output_name}"

    def write_outputs(self, step_id: str, outputs: dict[str, Any]) -> list[str]:
        """Merge a step's outputs. Each key may be written only once.

        Returns:
            The context keys written.

        Raises:
            ValueError: if any key was already written.
        """
        keys = [self.key(step_id, name) for name in outputs]
        already = [k for k in keys if k in self.values]
        if already:
            raise ValueError(f"Context keys already written: {', '.join(already)}")

        for name, value in outputs.items():
            self.values[self.key(step_id, name)] = copy.deepcopy(value)
        if outputs and step_id not in self.writers:
            self.writers.append(step_id)
        return keys

    def get(self, step_id: str, output_name: str, default: Any = MISSING) -> Any:
        return self.values.get(self.key(step_id, output_name), default)

    def step_outputs(self, step_id: str) -> dict[str, Any]:
        prefix = f"{step_id}."
        return {k[len(prefix):]: v for k, v in self.values.items() if k.startswith(prefix)}

    def resolve(self, path: str) -> Any:
        """Resolve a dot path; returns MISSING rather than raising.

        "<stepId>.<output>[.<nested>...]" reads one step's output.
        "context.<output>[.<nested>...]" reads the most recently written
        output of that name, whichever step produced it.
        """
        if not isinstance(path, str) or not path:
            return MISSING
        parts = path.split(".")
        if len(parts) < 2:
            return MISSING

        if parts[0] == CONTEXT_PREFIX:
            name, rest = parts[1], parts[2:]
            for step_id in reversed(self.writers):
                value = self.values.get(self.key(step_id, name), MISSING)
                if value is not MISSING:
                    return resolve_path(value, rest)
            return MISSING

        value = self.values.get(self.key(parts[0], parts[1]), MISSING)
        if value is MISSING:
            return MISSING
        return resolve_path(value, parts[2:])

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Deep copy of the context as {stepId: {output: value}} for handlers."""
        tree: dict[str, dict[str, Any]] = {}
        for key, value in self.values.items():
            step_id, name = key.split(".", 1)
            tree.setdefault(step_id, {})[name] = copy.deepcopy(value)
        return tree

    def __contains__(self, key: str) -> bool:
        return key in self.values

    def __len__(self) -> int:
        return len(self.values)
