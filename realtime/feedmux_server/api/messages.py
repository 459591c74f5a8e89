"""
Inbound message models.

Payloads arrive as JSON objects with camelCase keys, as browser clients
send them. Models accept either the camelCase alias or the Python field
name and ignore unknown keys.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr

# =============================================================================
# Pydantic Models
# =============================================================================


class InboundMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class SubscribeRequest(InboundMessage):
    collection_name: StrictStr = Field(alias="collectionName", min_length=1)
    pipeline: Optional[List[Dict[str, Any]]] = None


class BufferedSubscribeRequest(InboundMessage):
    collection_name: StrictStr = Field(alias="collectionName", min_length=1)
    change_limit: StrictInt = Field(alias="changeLimit")
    emit_delay: StrictInt = Field(alias="emitDelay")
    pipeline: Optional[List[Dict[str, Any]]] = None


class FindRequest(InboundMessage):
    request_id: Union[StrictStr, StrictInt] = Field(alias="requestId")
    collection_name: StrictStr = Field(alias="collectionName", min_length=1)
    query: Dict[str, Any] = Field(default_factory=dict)
    options: Optional[Dict[str, Any]] = None


def describe_validation_error(exc: Any) -> str:
    """One-line summary of a pydantic ValidationError for the client."""
    parts = []
    for error in exc.errors():
        location = ".".join(str(p) for p in error.get("loc", ())) or "payload"
        parts.append(f"{location}: {error.get('msg', 'invalid')}")
    return "Invalid request: " + "; ".join(parts)
