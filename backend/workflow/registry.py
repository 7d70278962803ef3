"""Workflow definition registry.

Holds validated, immutable definitions by ID. Only definitions that
passed workflow.validator ever enter the registry.
"""

from typing import Optional

import structlog

from core.exceptions import DefinitionNotFoundError
from workflow.definition import WorkflowDefinition

logger = structlog.get_logger(__name__)


class DefinitionRegistry:
    """In-memory registry of validated workflow definitions."""

    def __init__(self):
        self._definitions: dict[str, WorkflowDefinition] = {}

    def register(self, definition: WorkflowDefinition) -> Optional[WorkflowDefinition]:
        """Register (or replace) a definition. Returns the replaced one, if any."""
        previous = self._definitions.get(definition.id)
        self._definitions[definition.id] = definition
        logger.info(
            "Workflow definition registered",
            workflow_id=definition.id,
            version=definition.version,
            replaced=previous.version if previous else None,
        )
        return previous

    def unregister(self, definition_id: str) -> WorkflowDefinition:
        definition = self._definitions.pop(definition_id, None)
        if definition is None:
            raise DefinitionNotFoundError(definition_id)
        return definition

    def get(self, definition_id: str) -> WorkflowDefinition:
        definition = self._definitions.get(definition_id)
        if definition is None:
            raise DefinitionNotFoundError(definition_id)
        return definition

    def find_by_use_case(self, use_case_id: str) -> list[WorkflowDefinition]:
        return [d for d in self._definitions.values() if d.use_case_id == use_case_id]

    def list_all(self) -> list[WorkflowDefinition]:
        return list(self._definitions.values())

    def __contains__(self, definition_id: str) -> bool:
        return definition_id in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)
