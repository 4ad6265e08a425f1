"""Shared Pydantic base models and utilities."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict


class PunchSyncBase(BaseModel):
    """Base model with shared config for all PunchSync schemas."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class ErrorDetail(BaseModel):
    detail: str


class StatusResponse(BaseModel):
    """Loosely-typed status document (component stats vary by deployment)."""

    sync: dict[str, Any]
    source: dict[str, Any]
    sink: dict[str, Any]
    token: dict[str, Any]
