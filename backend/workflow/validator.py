"""Definition Validator.

Turns a raw definition payload into a frozen WorkflowDefinition, or
rejects it wholesale with a ConfigurationError listing every violation.
Partially valid definitions are never returned.

Two passes:
1. Schema: pydantic parses the payload; every error is collected.
2. Semantics: cross-field rules pydantic cannot express (unique ids,
   path syntax, no forward references, valid cron expressions, ...).

Step ids and the presence of steps and triggers are checked on the raw
payload, so they are reported even when the schema pass fails.
"""

import json
import re
from pathlib import Path
from typing import Any, Union

import structlog
from pydantic import BaseModel, ValidationError as PydanticValidationError

from core.exceptions import ConfigurationError
from triggers.handlers.schedule import cron_error
from workflow.definition import (
    COMPARISON_OPERATORS,
    DefinitionMetadata,
    ScheduledTrigger,
    ThresholdTrigger,
    WorkflowDefinition,
)

logger = structlog.get_logger(__name__)

STEP_ID_PATTERN = re.compile(r"^[A-Za-z0-9_\-]+$")
PATH_SEGMENT_PATTERN = re.compile(r"^[A-Za-z0-9_\-]+$")
CONTEXT_PREFIX = "context"


def is_valid_path(path: str) -> bool:
    """A dot path has at least two non-empty segments of [A-Za-z0-9_-]."""
    if not isinstance(path, str):
        return False
    parts = path.split(".")
    if len(parts) < 2:
        return False
    return all(PATH_SEGMENT_PATTERN.match(p) for p in parts)


def _format_pydantic_errors(exc: PydanticValidationError) -> list[str]:
    violations = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "<root>"
        violations.append(f"{loc}: {err.get('msg', 'invalid')}")
    return violations


def _payload_violations(payload: dict) -> list[str]:
    """Checks that need nothing but the raw payload."""
    violations: list[str] = []
    steps = payload.get("steps")
    triggers = payload.get("triggers")

    if isinstance(steps, list) and not steps:
        violations.append("steps: a workflow must declare at least one step")
    if isinstance(triggers, list) and not triggers:
        violations.append("triggers: a workflow must declare at least one trigger")

    if not isinstance(steps, list):
        return violations

    seen: dict[str, int] = {}
    for i, step in enumerate(steps):
        step_id = step.get("id") if isinstance(step, dict) else None
        if not isinstance(step_id, str) or not step_id:
            # reported by the schema pass
            continue
        if step_id in seen:
            violations.append(
                f"steps.{i}.id: duplicate step id '{step_id}' (first declared at steps.{seen[step_id]})"
            )
        else:
            seen[step_id] = i
        if not STEP_ID_PATTERN.match(step_id):
            violations.append(f"steps.{i}.id: '{step_id}' must match [A-Za-z0-9_-]+")
    return violations


def _semantic_violations(definition: WorkflowDefinition) -> list[str]:
    violations: list[str] = []
    all_ids = set(definition.step_ids)

    for i, step in enumerate(definition.steps):
        earlier = set(definition.step_ids[:i])
        policy = step.error_handling

        if policy.retry is not None:
            if policy.retry.attempts < 0:
                violations.append(f"steps.{i}.errorHandling.retry.attempts: must be >= 0")
            if policy.retry.delay < 0:
                violations.append(f"steps.{i}.errorHandling.retry.delay: must be >= 0")

        if policy.fallback is not None:
            if not STEP_ID_PATTERN.match(policy.fallback):
                violations.append(
                    f"steps.{i}.errorHandling.fallback: '{policy.fallback}' is not a well-formed step id"
                )
            elif policy.fallback == step.id:
                violations.append(f"steps.{i}.errorHandling.fallback: a step cannot fall back to itself")
            elif policy.fallback not in all_ids:
                logger.warning(
                    "Fallback references a step outside the definition",
                    workflow_id=definition.id,
                    step_id=step.id,
                    fallback=policy.fallback,
                )

        if step.timeout is not None and step.timeout <= 0:
            violations.append(f"steps.{i}.timeout: must be > 0 milliseconds")

        for j, cond in enumerate(step.conditions or []):
            loc = f"steps.{i}.conditions.{j}.field"
            if not is_valid_path(cond.field):
                violations.append(f"{loc}: '{cond.field}' is not a well-formed dot path")
                continue
            head = cond.field.split(".", 1)[0]
            if head == CONTEXT_PREFIX:
                continue
            if head == step.id:
                violations.append(f"{loc}: condition references the step's own outputs")
            elif head in all_ids and head not in earlier:
                violations.append(f"{loc}: condition forward-references later step '{head}'")

        for name in step.outputs:
            if not PATH_SEGMENT_PATTERN.match(name):
                violations.append(f"steps.{i}.outputs: '{name}' must match [A-Za-z0-9_-]+")
        duplicate_outputs = {o for o in step.outputs if step.outputs.count(o) > 1}
        for name in sorted(duplicate_outputs):
            violations.append(f"steps.{i}.outputs: duplicate output name '{name}'")

    for k, trigger in enumerate(definition.triggers):
        if isinstance(trigger, ScheduledTrigger):
            error = cron_error(trigger.schedule)
            if error:
                violations.append(f"triggers.{k}.schedule: {error}")
        elif isinstance(trigger, ThresholdTrigger):
            if trigger.threshold.operator not in COMPARISON_OPERATORS:
                violations.append(
                    f"triggers.{k}.threshold.operator: '{trigger.threshold.operator.value}' "
                    "is not a comparison operator"
                )

    return violations


def unrecognized_keys(value: Any, loc: str = "") -> list[str]:
    """Dotted locations of payload keys the schema does not know.

    Metadata is free-form and never reported.
    """
    if isinstance(value, (list, tuple)):
        return [key for i, item in enumerate(value) for key in unrecognized_keys(item, f"{loc}.{i}")]
    if not isinstance(value, BaseModel) or isinstance(value, DefinitionMetadata):
        return []

    prefix = f"{loc}." if loc else ""
    keys = [prefix + key for key in (value.model_extra or {})]
    for name, info in type(value).model_fields.items():
        keys.extend(unrecognized_keys(getattr(value, name), prefix + (info.alias or name)))
    return keys


def load_definition(payload: Any, source: str = None) -> WorkflowDefinition:
    """Validate a raw definition payload.

    Args:
        payload: Parsed JSON object (dict) or a JSON string
        source: Optional label (e.g. file name) used in error messages

    Returns:
        Frozen WorkflowDefinition

    Raises:
        ConfigurationError: listing every violation found
    """
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except ValueError as e:
            raise ConfigurationError([f"<root>: invalid JSON: {e}"], source=source)

    if not isinstance(payload, dict):
        raise ConfigurationError(["<root>: definition must be a JSON object"], source=source)

    violations = _payload_violations(payload)
    try:
        definition = WorkflowDefinition.model_validate(payload)
    except PydanticValidationError as e:
        raise ConfigurationError(_format_pydantic_errors(e) + violations, source=source)

    violations.extend(_semantic_violations(definition))
    if violations:
        raise ConfigurationError(violations, source=source)

    ignored = unrecognized_keys(definition)
    if ignored:
        logger.warning(
            "Workflow definition has unrecognized keys; they are kept but have no effect",
            workflow_id=definition.id,
            keys=ignored,
        )

    logger.debug(
        "Workflow definition validated",
        workflow_id=definition.id,
        steps=len(definition.steps),
        triggers=len(definition.triggers),
    )
    return definition


def load_definition_file(path: Union[str, Path]) -> WorkflowDefinition:
    """Load and validate a single JSON definition file."""
    path = Path(path)
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError([f"<file>: cannot read: {e}"], source=str(path))
    return load_definition(raw, source=path.name)


def load_definitions_dir(path: Union[str, Path]) -> list[WorkflowDefinition]:
    """Load every *.json definition in a directory.

    All files are validated before anything is returned; violations of
    every file are reported together.
    """
    directory = Path(path)
    if not directory.is_dir():
        raise ConfigurationError([f"<dir>: not a directory: {directory}"], source=str(directory))

    definitions: list[WorkflowDefinition] = []
    violations: list[str] = []
    for file in sorted(directory.glob("*.json")):
        try:
            definitions.append(load_definition_file(file))
        except ConfigurationError as e:
            violations.extend(f"{file.name}: {v}" for v in e.violations)

    if violations:
        raise ConfigurationError(violations, source=str(directory))
    return definitions
