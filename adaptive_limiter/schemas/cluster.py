"""Pydantic records shared between cluster nodes."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ClusterNode(BaseModel):
    """Registry entry for one service instance."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    hostname: str = ""
    ip: str = "127.0.0.1"
    last_seen: float = Field(..., description="Epoch seconds of the last registration refresh")
    version: str = "0.0.0"


class GlobalLimitState(BaseModel):
    """A node's last published count for one rate limit key.

    Informational only: admission decisions never read this back.
    """

    model_config = ConfigDict(extra="ignore")

    key: str
    count: int = Field(..., ge=0)
    max: int = Field(..., ge=1)
    window_seconds: int = Field(..., ge=1)
    updated_at: float
    node_id: str
