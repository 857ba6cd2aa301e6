"""Reusable workflows that subflow nodes run inline."""

import logging
from typing import Any

from pydantic import BaseModel, Field

from flowgraph.graph.models import WorkflowSnapshot

logger = logging.getLogger(__name__)


class SubflowInput(BaseModel):
    id: str
    label: str = ""
    required: bool = False
    default: Any = None


class SubflowOutput(BaseModel):
    id: str
    label: str = ""


class SubflowDefinition(BaseModel):
    id: str
    name: str = ""
    description: str | None = None
    inputs: list[SubflowInput] = Field(default_factory=list)
    outputs: list[SubflowOutput] = Field(default_factory=list)
    workflow: WorkflowSnapshot

    def missing_inputs(self, mappings: dict[str, Any]) -> list[str]:
        """Required inputs with neither a mapping nor a default."""
        return [
            i.id for i in self.inputs if i.required and i.id not in mappings and i.default is None
        ]


class SubflowRegistry:
    """Subflow definitions keyed by id."""

    def __init__(self, definitions: list[SubflowDefinition] | None = None):
        self._definitions: dict[str, SubflowDefinition] = {}
        for definition in definitions or []:
            self.register(definition)

    def register(self, definition: SubflowDefinition) -> None:
        if definition.id in self._definitions:
            logger.warning(f"Subflow '{definition.id}' is already registered; replacing it")
        self._definitions[definition.id] = definition

    def unregister(self, subflow_id: str) -> bool:
        return self._definitions.pop(subflow_id, None) is not None

    def get(self, subflow_id: str) -> SubflowDefinition | None:
        return self._definitions.get(subflow_id)

    def has(self, subflow_id: str) -> bool:
        return subflow_id in self._definitions

    def definitions(self) -> list[SubflowDefinition]:
        return list(self._definitions.values())

    def __len__(self) -> int:
        return len(self._definitions)
