from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class StateEntryDocument(BaseModel):
    """Persisted form of one state entry inside a snapshot file."""

    model_config = ConfigDict(populate_by_name=True)

    value: Any = None
    expires_at: float = Field(alias="expiresAt", allow_inf_nan=False)
    updated_at: float = Field(alias="updatedAt", allow_inf_nan=False)
