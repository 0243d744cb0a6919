"""Pydantic response models for the Photoforge API.

Route handlers return plain dictionaries built by the core services; these
models are attached as ``response_model`` so FastAPI validates the shape and
documents it in the OpenAPI schema.

Models
------
QuotaView
    Quota snapshot embedded in most responses.
GenerationView
    Public fields of one generation record.
GenerateResponse
    Body of ``POST /api/generate/image-to-image`` and ``POST /api/generate/retry/{id}``.
TierUpdateRequest, StatusUpdateRequest, PresetMatchRequest
    JSON bodies of the admin and preset matching routes.
ErrorResponse
    Body produced by the error handler for every failed request.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

GenerationSort = Literal["newest", "oldest", "prompt"]
GenerationStatusFilter = Literal["all", "processing", "completed", "failed"]


class QuotaView(BaseModel):
    """Quota counters for the current day.

    ``usage_percentage``, ``status``, ``date`` and ``reset_at`` are omitted from
    the compact form embedded in generation responses.
    """

    used: int = Field(..., ge=0)
    limit: int = Field(..., ge=1)
    remaining: int = Field(..., ge=0)
    usage_percentage: int | None = None
    status: Literal["normal", "warning", "exceeded"] | None = None
    date: str | None = None
    reset_at: str | None = None


class GenerationView(BaseModel):
    """A generation record as exposed to its owner."""

    id: str
    status: Literal["processing", "completed", "failed"]
    status_display: str
    prompt: str
    preset: dict[str, Any] | None = None
    preset_used: str
    original_image_url: str | None = None
    generated_image_url: str | None = None
    image_url: str | None = None
    image_urls: list[str] = Field(default_factory=list)
    parameters: dict[str, Any] = Field(default_factory=dict)
    is_placeholder: bool = False
    error: str | None = None
    error_code: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    processing_duration_ms: int | None = None
    created_at: str | None = None
    completed_at: str | None = None


class GenerateResponse(BaseModel):
    success: bool = True
    status: Literal["completed"]
    generation_id: str
    image_ref: str | None
    is_placeholder: bool
    echoed_input: bool = False
    generation: GenerationView
    quota: QuotaView


class GenerationResponse(BaseModel):
    success: bool = True
    generation: GenerationView


class GenerationListResponse(BaseModel):
    """Page of a user's generations; ``page`` is clamped to ``[1, pages]``."""

    success: bool = True
    total: int
    page: int
    per_page: int
    pages: int
    has_next: bool
    has_prev: bool
    generations: list[GenerationView]


class PresetView(BaseModel):
    id: str
    name: str
    main_prompt: str
    description: str = ""
    category: str = "general"
    style: str = "realistic"
    negative_prompt: str = ""
    tags: str = ""
    user_tier: str = "free"
    available: bool = True
    requires_paid: bool = False


class PresetListResponse(BaseModel):
    success: bool = True
    presets: list[PresetView]
    user_tier: str
    source: Literal["file", "fallback"]


class QuotaResponse(BaseModel):
    success: bool = True
    tier: str
    quota: QuotaView


class QuotaHistoryResponse(BaseModel):
    success: bool = True
    days: int
    history: list[QuotaView]


class UserStatsResponse(BaseModel):
    success: bool = True
    tier: str
    quota: QuotaView
    generations: dict[str, Any]


class DeleteResponse(BaseModel):
    success: bool = True
    deleted: str


class TierPlanView(BaseModel):
    name: str
    daily_limit: int
    price: str
    features: list[str]


class TierInfoResponse(BaseModel):
    success: bool = True
    current_tier: str
    current_limit: int
    tiers: dict[str, TierPlanView]


class UserView(BaseModel):
    id: str
    email: str
    display_name: str | None = None
    tier: str
    is_active: bool


class TierChangeResponse(BaseModel):
    """Body of ``POST /api/user/upgrade`` and the admin tier route."""

    success: bool = True
    message: str
    user: UserView
    quota: QuotaView


class UserStatusResponse(BaseModel):
    success: bool = True
    message: str
    user: UserView


class TierUpdateRequest(BaseModel):
    tier: Literal["free", "paid"]


class StatusUpdateRequest(BaseModel):
    is_active: bool


class PresetMatchRequest(BaseModel):
    user_input: str = Field(..., max_length=1000)
    category: str | None = None
    limit: int = Field(5, ge=1, le=20)


class PresetMatchView(PresetView):
    match_score: int


class PresetMatchResponse(BaseModel):
    success: bool = True
    matches: list[PresetMatchView]
    count: int


class BestMatchResponse(BaseModel):
    """``match`` is ``None`` when no preset scores above zero."""

    success: bool = True
    match: PresetMatchView | None


class NameListResponse(BaseModel):
    """Distinct preset categories or styles."""

    success: bool = True
    items: list[str]
    count: int


class PresetStatsResponse(BaseModel):
    success: bool = True
    total: int
    source: Literal["file", "fallback"]
    category_counts: dict[str, int]
    style_counts: dict[str, int]
    user_tier_counts: dict[str, int]


class ErrorResponse(BaseModel):
    """Error body; ``quota`` is present only for ``quota_exceeded``."""

    success: bool = False
    error: str
    code: str
    quota: dict[str, Any] | None = None
