"""
dreamstate/models/telemetry.py

Telemetry events and the queue entries that carry them to consolidation.

Stored documents use camelCase field names (appId, clientTimestamp, ...);
Python attributes are snake_case with camelCase aliases.
"""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

MetadataValue = Union[str, int, float, bool, None, List[Union[str, int, float, bool, None]]]


class TelemetryEvent(BaseModel):
    """
    One user-observable action, as accepted by the validator.

    `score` is computed during consolidation and is never taken from the
    client.
    """
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    app_id: str = Field(min_length=1)
    action: str = Field(min_length=1)
    timestamp: float = Field(allow_inf_nan=False)
    metadata: Dict[str, MetadataValue] = Field(default_factory=dict)
    score: Optional[float] = Field(default=None, allow_inf_nan=False)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class QueueEntry(BaseModel):
    """One accepted, not-yet-consolidated batch (`users/{uid}/telemetry_queue/{id}`)."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    user_id: str = Field(min_length=1)
    events: List[TelemetryEvent] = Field(min_length=1)
    client_timestamp: float
    server_timestamp: float
    surface: str = "simple"
    processed: bool = False
    last_error: Optional[str] = None
    failed_at: Optional[float] = None

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def queue_collection(user_id: str) -> str:
    return f"users/{user_id}/telemetry_queue"


QUEUE_COLLECTION_ID = "telemetry_queue"
