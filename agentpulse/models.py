"""Pydantic request models for the mutation endpoints."""
from __future__ import annotations
from pydantic import BaseModel, Field
from typing import Optional


# ── Webhooks ────────────────────────────────────────────────────────

class WebhookCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    url: str = Field(..., min_length=1)
    secret: str = ""
    event_types: list[str] = Field(default_factory=list)
    project_filter: str = ""
    active: bool = True


class WebhookUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    url: Optional[str] = None
    secret: Optional[str] = None
    event_types: Optional[list[str]] = None
    project_filter: Optional[str] = None
    active: Optional[bool] = None


# ── Admin ───────────────────────────────────────────────────────────

class RetentionSettingsUpdate(BaseModel):
    """Keys mirror the settings table (``retention.events.days`` etc.)."""

    settings: dict[str, str | int | bool] = Field(default_factory=dict)
