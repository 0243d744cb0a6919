"""Photoforge — FastAPI Application.

This module is the single entry point for the web service.  It defines the
application factory, the module-level ``app`` instance, all REST API routes,
and the ``main()`` CLI function that launches the uvicorn server.

Architecture
------------
- **Services** are built once in the lifespan handler from a
  :class:`~photoforge.core.config.PhotoforgeConfig` and stored on
  ``app.state``; route handlers reach them through small dependencies.
- **Caller identity** comes from the ``X-User-Id`` header set by the
  authenticating gateway in front of this service.
- **Errors** raised by the core are all :class:`PhotoforgeError` subclasses and
  are turned into JSON by a single exception handler, so handlers never build
  error payloads themselves.
- **Images** (normalised uploads and generated outputs) are served by
  ``StaticFiles`` at ``/uploads`` and ``/outputs``.

Endpoints
---------
========  ======================================  ==================================
Method    Path                                    Purpose
========  ======================================  ==================================
GET       ``/health``                             Liveness probe
GET       ``/api/config``                         Version, tier limits, provider
GET       ``/api/generate/presets``               Presets for the caller's tier
POST      ``/api/generate/image-to-image``        Run a generation (multipart)
GET       ``/api/generate/status/{id}``           Generation fields
POST      ``/api/generate/retry/{id}``            Re-run a failed generation
GET       ``/api/user/quota``                     Today's quota
GET       ``/api/user/quota/history``             Quota per day
GET       ``/api/user/generations``               Paginated, filtered gallery
GET       ``/api/user/generations/{id}``          Single generation
DELETE    ``/api/user/generations/{id}``          Delete a generation
GET       ``/api/user/stats``                     Per-status counts and quota
GET       ``/api/user/tier-info``                 Current tier and available plans
POST      ``/api/user/upgrade``                   Move the caller to the paid tier
PUT       ``/api/user/admin/users/{id}/tier``     Admin: set a user's tier
PUT       ``/api/user/admin/users/{id}/status``   Admin: activate or deactivate
GET       ``/api/prompts/categories``             Distinct preset categories
GET       ``/api/prompts/styles``                 Distinct preset styles
GET       ``/api/prompts/stats``                  Preset counts
POST      ``/api/prompts/reload``                 Admin: re-read the preset file
POST      ``/api/prompts/match``                  Rank presets against free text
POST      ``/api/prompts/best-match``             Single best preset
========  ======================================  ==================================

Usage
-----
CLI (installed entry point)::

    photoforge

Direct invocation::

    python -m photoforge.api.main
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, File, Form, Header, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from photoforge import __version__
from photoforge.api.models import (
    BestMatchResponse,
    DeleteResponse,
    ErrorResponse,
    GenerateResponse,
    GenerationListResponse,
    GenerationResponse,
    GenerationSort,
    GenerationStatusFilter,
    NameListResponse,
    PresetListResponse,
    PresetMatchRequest,
    PresetMatchResponse,
    PresetStatsResponse,
    QuotaHistoryResponse,
    QuotaResponse,
    StatusUpdateRequest,
    TierChangeResponse,
    TierInfoResponse,
    TierUpdateRequest,
    UserStatsResponse,
    UserStatusResponse,
)
from photoforge.core.config import PhotoforgeConfig, config
from photoforge.core.database import Database
from photoforge.core.errors import PhotoforgeError, Unauthorized, ValidationError
from photoforge.core.generations import GenerationStore
from photoforge.core.orchestrator import (
    DEFAULT_SIZE,
    MAX_SIDE,
    MIN_SIDE,
    GenerationOrchestrator,
    UploadPayload,
)
from photoforge.core.prompt_resolver import PresetCatalog, PromptResolver
from photoforge.core.providers import ImageProvider, provider_registry
from photoforge.core.quota import QuotaLedger, QuotaStore
from photoforge.core.uploads import ALLOWED_MIME_TYPES, UploadIntake
from photoforge.core.users import UserStore

logger = logging.getLogger(__name__)

# Marks "build the provider from configuration" in create_app.
_CONFIGURED = object()

_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    status: {"model": ErrorResponse} for status in (400, 401, 403, 404, 422, 429, 500, 502, 503)
}


# ---------------------------------------------------------------------------
# Application lifecycle: service graph setup and teardown.
# ---------------------------------------------------------------------------


def build_orchestrator(
    settings: PhotoforgeConfig, provider: ImageProvider | None
) -> GenerationOrchestrator:
    """Wire the core services against one configuration."""
    database = Database(settings.database_path)
    ledger = QuotaLedger(QuotaStore(database), settings)
    return GenerationOrchestrator(
        users=UserStore(database),
        ledger=ledger,
        generations=GenerationStore(database, settings.stored_prompt_max_length),
        resolver=PromptResolver(
            PresetCatalog(settings.presets_path), settings.stored_prompt_max_length
        ),
        intake=UploadIntake(settings),
        provider=provider,
        config=settings,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application startup and shutdown lifecycle.

    On startup:
        Builds the provider (unless one was injected), the stores and the
        orchestrator, and purges quota rows past the retention window.

    On shutdown:
        Waits for generations whose client disconnected so their results
        are committed before the process exits.
    """
    # --- Startup -----------------------------------------------------------
    settings: PhotoforgeConfig = app.state.config
    provider = app.state.provider
    if provider is _CONFIGURED:
        provider = provider_registry.create_configured(settings)
    app.state.provider = provider

    orchestrator = build_orchestrator(settings, provider)
    orchestrator.ledger.purge_expired()
    app.state.orchestrator = orchestrator

    if provider is None:
        logger.warning("No image provider available; generation requests will return 503.")
    else:
        logger.info(f"Image provider ready: {provider.name} ({provider.version})")

    yield  # Application runs here.

    # --- Shutdown ----------------------------------------------------------
    await orchestrator.drain()
    logger.info("Photoforge shut down.")


# ---------------------------------------------------------------------------
# Error handling.
# ---------------------------------------------------------------------------


async def photoforge_error_handler(request: Request, exc: PhotoforgeError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    # Drop the parameter source ("query", "path", ...) from the location.
    location = ".".join(
        str(part) for part in first.get("loc", ()) if part not in ("query", "path", "body")
    )
    if location:
        error = ValidationError(f"Invalid {location}: {first.get('msg', 'invalid value')}")
    else:
        error = ValidationError("Invalid request")
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    error = PhotoforgeError("Internal server error. Please try again later.")
    return JSONResponse(status_code=500, content=error.to_dict())


# ---------------------------------------------------------------------------
# Dependencies.
# ---------------------------------------------------------------------------


def get_orchestrator(request: Request) -> GenerationOrchestrator:
    return request.app.state.orchestrator


def get_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """Caller identity from the ``X-User-Id`` header.

    Raises:
        Unauthorized: If the header is missing or blank
    """
    if x_user_id is None or not x_user_id.strip():
        raise Unauthorized()
    return x_user_id.strip()


# ---------------------------------------------------------------------------
# Application factory.
# ---------------------------------------------------------------------------


def create_app(
    settings: PhotoforgeConfig | None = None,
    provider: ImageProvider | None | object = _CONFIGURED,
) -> FastAPI:
    """Build a Photoforge application.

    Args:
        settings: Configuration; the global ``config`` when omitted.
        provider: Provider instance to use, ``None`` to run without one, or
            omitted to build it from ``settings.provider_name``.

    Returns:
        The configured FastAPI application.
    """
    settings = settings or config

    application = FastAPI(
        title="Photoforge",
        description="Quota-metered AI image-to-image generation API.",
        version=__version__,
        lifespan=lifespan,
    )
    application.state.config = settings
    application.state.provider = provider

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_exception_handler(PhotoforgeError, photoforge_error_handler)
    application.add_exception_handler(RequestValidationError, request_validation_handler)
    application.add_exception_handler(Exception, unhandled_error_handler)

    application.mount(
        "/uploads", StaticFiles(directory=str(settings.uploads_dir)), name="uploads"
    )
    application.mount(
        "/outputs", StaticFiles(directory=str(settings.outputs_dir)), name="outputs"
    )

    _register_routes(application)
    return application


def _register_routes(application: FastAPI) -> None:
    # ------------------------------------------------------------------
    # Service information.
    # ------------------------------------------------------------------

    @application.get("/health")
    async def health() -> dict:
        return {"status": "ok", "version": __version__}

    @application.get("/api/config")
    async def get_config(request: Request) -> dict:
        """Return the public service configuration used by the frontend."""
        settings: PhotoforgeConfig = request.app.state.config
        provider: ImageProvider | None = request.app.state.provider
        return {
            "version": __version__,
            "tiers": {
                "free": {"daily_limit": settings.free_tier_daily_limit},
                "paid": {"daily_limit": settings.paid_tier_daily_limit},
            },
            "provider": provider.get_info() if provider is not None else None,
            "uploads": {
                "max_bytes": settings.max_upload_bytes,
                "allowed_mime_types": sorted(ALLOWED_MIME_TYPES),
                "min_dimension": settings.min_image_dimension,
                "max_dimension": settings.max_image_dimension,
            },
            "sizes": {"default": DEFAULT_SIZE, "min_side": MIN_SIDE, "max_side": MAX_SIDE},
            "max_prompt_length": settings.max_prompt_length,
        }

    # ------------------------------------------------------------------
    # Generation.
    # ------------------------------------------------------------------

    @application.get(
        "/api/generate/presets", response_model=PresetListResponse, responses=_ERROR_RESPONSES
    )
    async def list_presets(
        user_id: str = Depends(get_user_id),
        orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    ) -> dict:
        return {"success": True, **orchestrator.list_presets(user_id)}

    @application.post(
        "/api/generate/image-to-image",
        response_model=GenerateResponse,
        responses=_ERROR_RESPONSES,
    )
    async def generate_image_to_image(
        prompt: str | None = Form(default=None),
        preset: str | None = Form(default=None),
        size: str | None = Form(default=None),
        image: UploadFile | None = File(default=None),
        user_id: str = Depends(get_user_id),
        orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    ) -> dict:
        """Transform the uploaded image according to the prompt and preset.

        Quota is checked before the provider is called and charged only
        when an image (real or placeholder) is delivered.
        """
        upload = None
        if image is not None:
            upload = UploadPayload(
                data=await image.read(),
                content_type=image.content_type,
                filename=image.filename,
            )
        outcome = await orchestrator.generate_from_image(
            user_id,
            prompt,
            upload,
            preset_id=preset or None,
            size=size or DEFAULT_SIZE,
        )
        return outcome.to_dict()

    @application.get(
        "/api/generate/status/{generation_id}",
        response_model=GenerationResponse,
        responses=_ERROR_RESPONSES,
    )
    async def generation_status(
        generation_id: str,
        user_id: str = Depends(get_user_id),
        orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    ) -> dict:
        generation = orchestrator.get_status(user_id, generation_id)
        return {"success": True, "generation": generation.to_public_dict()}

    @application.post(
        "/api/generate/retry/{generation_id}",
        response_model=GenerateResponse,
        responses=_ERROR_RESPONSES,
    )
    async def retry_generation(
        generation_id: str,
        user_id: str = Depends(get_user_id),
        orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    ) -> dict:
        outcome = await orchestrator.retry(user_id, generation_id)
        return outcome.to_dict()

    # ------------------------------------------------------------------
    # User quota and gallery.
    # ------------------------------------------------------------------

    @application.get("/api/user/quota", response_model=QuotaResponse, responses=_ERROR_RESPONSES)
    async def get_quota(
        user_id: str = Depends(get_user_id),
        orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    ) -> dict:
        user, quota = orchestrator.get_quota(user_id)
        return {
            "success": True,
            "tier": user.tier.value,
            "quota": orchestrator.ledger.snapshot(quota),
        }

    @application.get(
        "/api/user/quota/history",
        response_model=QuotaHistoryResponse,
        responses=_ERROR_RESPONSES,
    )
    async def get_quota_history(
        days: int = Query(default=30, ge=1, le=90),
        user_id: str = Depends(get_user_id),
        orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    ) -> dict:
        return {
            "success": True,
            "days": days,
            "history": orchestrator.quota_history(user_id, days),
        }

    @application.get(
        "/api/user/generations",
        response_model=GenerationListResponse,
        responses=_ERROR_RESPONSES,
    )
    async def list_generations(
        page: int = Query(default=1, ge=1),
        per_page: int = Query(default=20, ge=1, le=100),
        status: GenerationStatusFilter = Query(default="all"),
        preset: str | None = Query(default=None),
        search: str | None = Query(default=None, max_length=200),
        sort: GenerationSort = Query(default="newest"),
        user_id: str = Depends(get_user_id),
        orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    ) -> dict:
        """Return a page of the caller's generations, newest first by default."""
        result = orchestrator.list_generations(
            user_id,
            page=page,
            per_page=per_page,
            status=status,
            preset=preset,
            search=search,
            sort=sort,
        )
        result["generations"] = [g.to_public_dict() for g in result["generations"]]
        return {"success": True, **result}

    @application.get(
        "/api/user/generations/{generation_id}",
        response_model=GenerationResponse,
        responses=_ERROR_RESPONSES,
    )
    async def get_generation(
        generation_id: str,
        user_id: str = Depends(get_user_id),
        orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    ) -> dict:
        generation = orchestrator.get_status(user_id, generation_id)
        return {"success": True, "generation": generation.to_public_dict()}

    @application.delete(
        "/api/user/generations/{generation_id}",
        response_model=DeleteResponse,
        responses=_ERROR_RESPONSES,
    )
    async def delete_generation(
        generation_id: str,
        user_id: str = Depends(get_user_id),
        orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    ) -> dict:
        orchestrator.delete_generation(user_id, generation_id)
        return {"success": True, "deleted": generation_id}

    @application.get("/api/user/stats", response_model=UserStatsResponse, responses=_ERROR_RESPONSES)
    async def get_user_stats(
        user_id: str = Depends(get_user_id),
        orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    ) -> dict:
        return {"success": True, **orchestrator.user_stats(user_id)}

    # ------------------------------------------------------------------
    # Account tier and admin actions.
    # ------------------------------------------------------------------

    @application.get(
        "/api/user/tier-info", response_model=TierInfoResponse, responses=_ERROR_RESPONSES
    )
    async def get_tier_info(
        user_id: str = Depends(get_user_id),
        orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    ) -> dict:
        return {"success": True, **orchestrator.tier_info(user_id)}

    @application.post(
        "/api/user/upgrade", response_model=TierChangeResponse, responses=_ERROR_RESPONSES
    )
    async def upgrade_tier(
        user_id: str = Depends(get_user_id),
        orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    ) -> dict:
        """Move the caller to the paid tier; payment is settled upstream."""
        user, quota = orchestrator.upgrade(user_id)
        return {
            "success": True,
            "message": "Successfully upgraded to paid tier",
            "user": user.to_dict(),
            "quota": orchestrator.ledger.snapshot(quota),
        }

    @application.put(
        "/api/user/admin/users/{target_id}/tier",
        response_model=TierChangeResponse,
        responses=_ERROR_RESPONSES,
    )
    async def admin_set_tier(
        target_id: str,
        body: TierUpdateRequest,
        user_id: str = Depends(get_user_id),
        orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    ) -> dict:
        user, quota = orchestrator.set_user_tier(user_id, target_id, body.tier)
        return {
            "success": True,
            "message": f"User tier updated to {user.tier.value}",
            "user": user.to_dict(),
            "quota": orchestrator.ledger.snapshot(quota),
        }

    @application.put(
        "/api/user/admin/users/{target_id}/status",
        response_model=UserStatusResponse,
        responses=_ERROR_RESPONSES,
    )
    async def admin_set_status(
        target_id: str,
        body: StatusUpdateRequest,
        user_id: str = Depends(get_user_id),
        orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    ) -> dict:
        user = orchestrator.set_user_status(user_id, target_id, body.is_active)
        state = "activated" if user.is_active else "deactivated"
        return {"success": True, "message": f"User {state} successfully", "user": user.to_dict()}

    # ------------------------------------------------------------------
    # Preset catalogue.
    # ------------------------------------------------------------------

    @application.get(
        "/api/prompts/categories", response_model=NameListResponse, responses=_ERROR_RESPONSES
    )
    async def list_categories(
        user_id: str = Depends(get_user_id),
        orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    ) -> dict:
        categories = orchestrator.preset_catalog(user_id).categories()
        return {"success": True, "items": categories, "count": len(categories)}

    @application.get(
        "/api/prompts/styles", response_model=NameListResponse, responses=_ERROR_RESPONSES
    )
    async def list_styles(
        user_id: str = Depends(get_user_id),
        orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    ) -> dict:
        styles = orchestrator.preset_catalog(user_id).styles()
        return {"success": True, "items": styles, "count": len(styles)}

    @application.get(
        "/api/prompts/stats", response_model=PresetStatsResponse, responses=_ERROR_RESPONSES
    )
    async def preset_stats(
        user_id: str = Depends(get_user_id),
        orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    ) -> dict:
        return {"success": True, **orchestrator.preset_catalog(user_id).stats()}

    @application.post(
        "/api/prompts/reload", response_model=PresetStatsResponse, responses=_ERROR_RESPONSES
    )
    async def reload_presets(
        user_id: str = Depends(get_user_id),
        orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    ) -> dict:
        return {"success": True, **orchestrator.reload_presets(user_id)}

    @application.post(
        "/api/prompts/match", response_model=PresetMatchResponse, responses=_ERROR_RESPONSES
    )
    async def match_presets(
        body: PresetMatchRequest,
        user_id: str = Depends(get_user_id),
        orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    ) -> dict:
        """Rank the caller's presets against free text, best first."""
        matches = orchestrator.match_presets(user_id, body.user_input, body.category, body.limit)
        return {"success": True, "matches": matches, "count": len(matches)}

    @application.post(
        "/api/prompts/best-match", response_model=BestMatchResponse, responses=_ERROR_RESPONSES
    )
    async def best_match(
        body: PresetMatchRequest,
        user_id: str = Depends(get_user_id),
        orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    ) -> dict:
        matches = orchestrator.match_presets(user_id, body.user_input, body.category, limit=1)
        return {"success": True, "match": matches[0] if matches else None}


# ---------------------------------------------------------------------------
# FastAPI application instance.
# ---------------------------------------------------------------------------
app = create_app()


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host, port and log level from :data:`~photoforge.core.config.config`
    (``PHOTOFORGE_SERVER_HOST``, ``PHOTOFORGE_SERVER_PORT``,
    ``PHOTOFORGE_LOG_LEVEL``).

    This function is registered as the ``photoforge`` console script in
    ``pyproject.toml``.
    """
    import uvicorn

    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(
        "photoforge.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
