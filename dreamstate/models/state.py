"""
dreamstate/models/state.py

Per-user behavioral state (`users/{uid}/system/core_memory`).

The stored document is never trusted as-is: normalize_state() rebuilds a
fully-populated state field by field, substituting the default for any field
that fails validation, dropping malformed facts/insights individually and
re-applying the list caps.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

MAX_FACTS = 50
MAX_INSIGHTS = 20
DEFAULT_CREDITS = 20
DEFAULT_ARCHETYPE = "General User"


class MemoryScope(str, Enum):
    GLOBAL = "Global"
    CREATIVE = "Creative"
    BUSINESS = "Business"
    UTILITY = "Utility"


class FactSource(str, Enum):
    IMPLICIT_EDIT = "implicit_edit"
    EXPLICIT_SAVE = "explicit_save"
    CLIPBOARD = "clipboard"
    DWELL = "dwell"


class InsightType(str, Enum):
    PATTERN = "pattern"
    ANOMALY = "anomaly"
    BEHAVIOR = "behavior"


class PromptVariant(str, Enum):
    A = "A"
    B = "B"


class _StateModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, use_enum_values=True)


class LearnedFact(_StateModel):
    """Long-term inferred knowledge, deduplicated by content."""
    content: str = Field(min_length=1)
    scope: MemoryScope
    confidence: float = Field(ge=0.0, le=1.0)
    source: FactSource
    timestamp: float = Field(allow_inf_nan=False)


class Insight(_StateModel):
    """Short-lived detected signal, deduplicated against the most recent five."""
    id: str
    type: InsightType
    message: str = Field(min_length=1)
    confidence: float = Field(ge=0.0, le=1.0)
    timestamp: float = Field(allow_inf_nan=False)


def _today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


class Credits(_StateModel):
    count: int = DEFAULT_CREDITS
    last_reset: str = Field(default_factory=_today)


class BehavioralState(_StateModel):
    user_archetype: str = DEFAULT_ARCHETYPE
    active_prompt_variant: PromptVariant = PromptVariant.A
    learned_facts: List[LearnedFact] = Field(default_factory=list)
    insights: List[Insight] = Field(default_factory=list)
    telemetry_enabled: bool = True
    keyword_weights: Dict[str, float] = Field(default_factory=dict)
    negative_constraints: Dict[str, List[str]] = Field(default_factory=dict)
    golden_templates: Dict[str, List[Any]] = Field(default_factory=dict)
    session_score: float = Field(default=0, allow_inf_nan=False)
    last_generation_timestamp: float = Field(default=0, allow_inf_nan=False)
    total_input_chars: float = Field(default=0, allow_inf_nan=False)
    total_output_chars: float = Field(default=0, allow_inf_nan=False)
    request_count: int = 0
    credits: Credits = Field(default_factory=Credits)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


_FACT_ADAPTER = TypeAdapter(LearnedFact)
_INSIGHT_ADAPTER = TypeAdapter(Insight)


def _valid_items(raw: Any, adapter: TypeAdapter) -> List[Any]:
    if not isinstance(raw, list):
        return []
    items = []
    for item in raw:
        try:
            items.append(adapter.validate_python(item))
        except ValidationError:
            continue
    return items


def evict_lowest_confidence(facts: List[LearnedFact], limit: int = MAX_FACTS) -> List[LearnedFact]:
    """Drop least-confident facts (earliest first among equals) until within `limit`."""
    facts = list(facts)
    while len(facts) > limit:
        weakest = min(range(len(facts)), key=lambda i: facts[i].confidence)
        facts.pop(weakest)
    return facts


def default_state() -> BehavioralState:
    return BehavioralState()


def normalize_state(raw: Optional[Dict[str, Any]]) -> BehavioralState:
    """Build a fully-populated state from a possibly corrupt or partial document."""
    state = default_state()
    if not isinstance(raw, dict):
        return state

    values: Dict[str, Any] = {}
    for name, field in BehavioralState.model_fields.items():
        alias = field.alias or name
        if alias not in raw:
            continue
        value = raw[alias]
        if name == "learned_facts":
            values[name] = evict_lowest_confidence(_valid_items(value, _FACT_ADAPTER))
            continue
        if name == "insights":
            values[name] = _valid_items(value, _INSIGHT_ADAPTER)[:MAX_INSIGHTS]
            continue
        try:
            # Validate the single field in isolation so one bad field cannot poison the rest
            parsed = BehavioralState.model_validate({alias: value})
        except ValidationError:
            continue
        values[name] = getattr(parsed, name)

    return state.model_copy(update=values)
