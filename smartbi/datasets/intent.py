"""
Natural-language intent pipeline seam.

The pipeline itself (intent extraction -> DSL -> SQL) is an external,
LLM-backed collaborator described by ``IntentPipeline``.  This module only
provides what the dataset layer needs around it:

  - ``FieldLookup``: maps the labels a user (or model) sees back to source
    column names, using an explicit table instead of text substitution
  - ``IntentOutcome``: what ``DatasetService.ask`` returns
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

from smartbi.datasets.models import Dataset, QueryResult


class IntentPipeline(Protocol):
    def extract_intent(self, query: str, dataset_schema: dict[str, Any]) -> dict[str, Any]:
        """Return ``{"intent", "confidence", "explanation", "suggestions"}``."""
        ...

    def validate_intent(self, intent: dict[str, Any]) -> dict[str, Any]:
        """Return ``{"valid": bool, "errors": [str]}``."""
        ...

    def intent_to_sql(self, intent: dict[str, Any], dataset: Dataset) -> dict[str, Any]:
        """Return ``{"dsl": ..., "sql": str}``."""
        ...


class FieldLookup:
    """Display-name / column-name lookup table for one dataset.

    Resolution order: exact column name, exact display name, then a
    case-insensitive match on either.
    """

    def __init__(self, dataset: Dataset):
        self._columns = {f.name for f in dataset.fields}
        self._by_display: dict[str, str] = {}
        self._folded: dict[str, str] = {}
        for f in dataset.fields:
            self._by_display.setdefault(f.display_name, f.name)
            self._folded.setdefault(f.name.casefold(), f.name)
            self._folded.setdefault(f.display_name.casefold(), f.name)

    def resolve(self, label: str) -> str | None:
        if label in self._columns:
            return label
        if label in self._by_display:
            return self._by_display[label]
        return self._folded.get(label.casefold())

    def resolve_all(self, labels: Sequence[str]) -> tuple[list[str], list[str]]:
        """Return ``(resolved column names, unknown labels)``."""
        resolved: list[str] = []
        unknown: list[str] = []
        for label in labels:
            name = self.resolve(label)
            if name is None:
                unknown.append(label)
            else:
                resolved.append(name)
        return resolved, unknown


def dataset_schema(dataset: Dataset) -> dict[str, Any]:
    """Schema summary handed to the intent pipeline."""
    return {
        "name": dataset.name,
        "display_name": dataset.display_name,
        "dimension_count": dataset.dimension_count,
        "measure_count": dataset.measure_count,
        "fields": [
            {
                "name": f.name,
                "display_name": f.display_name,
                "type": f.type.value,
                "field_type": f.field_type.value,
                "aggregation_type": f.aggregation_type.value if f.aggregation_type else None,
                "sample_values": f.sample_values[:5],
            }
            for f in dataset.fields
            if not f.hidden
        ],
    }


@dataclass
class IntentOutcome:
    intent: dict[str, Any] | None
    confidence: float = 0.0
    explanation: str = ""
    suggestions: list[str] = field(default_factory=list)
    sql: str = ""
    result: QueryResult | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors and self.result is not None and not self.result.errors
