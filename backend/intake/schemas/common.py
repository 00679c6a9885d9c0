from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class APIModel(BaseModel):
    """Base model with shared config for API schemas."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)
