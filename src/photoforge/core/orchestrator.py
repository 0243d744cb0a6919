"""Generation orchestrator: the end-to-end lifecycle of one generation request.

State machine
-------------
::

    validate ─► authorize ─► intake ─► resolve prompt ─► record (processing)
                                                              │
                         ┌────────────── invoke provider ◄────┘
                         ▼
       ┌─ distinct image ──────────────► charge quota ─► completed
       ├─ echo of the input ───────────────────────────► failed (echoed_output)
       ├─ transient error / timeout ─► placeholder ─► charge quota ─► completed*
       └─ auth / quota / safety / malformed ───────────► failed (provider_<kind>)

    * ``is_placeholder = True``

Ordering guarantees
-------------------
- Validation and authorization fail before anything is written or any
  provider cost is incurred.
- Quota is charged only after the ``processing`` record exists, and before
  the record is moved to ``completed``.  If the charge loses a race the record
  is marked ``failed`` with ``quota_exceeded`` instead.
- The provider call is bounded by ``provider_timeout_seconds``; a timeout is a
  transient failure, so no record is ever left in ``processing``.
- A failure while storing the output or charging quota moves the record to
  ``failed`` (``persistence_error`` or ``internal_error``) and removes any
  stored output before the error propagates.
- Everything from the provider call to the final commit runs in a task
  shielded from caller cancellation: a client that disconnects mid-request
  still gets its result recorded and charged.

Concurrency
-----------
Requests for the same user are serialised by a per-user :class:`asyncio.Lock`
(taken only for existing users and dropped once no request holds or awaits it)
inside one process; the conditional ``UPDATE`` in
:meth:`~photoforge.core.quota.QuotaStore.atomic_increment` keeps the
``used <= limit`` invariant across processes.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any

from photoforge.core.config import PhotoforgeConfig
from photoforge.core.errors import (
    EchoedOutput,
    Forbidden,
    InvalidTransition,
    NotFound,
    PersistenceError,
    ProviderError,
    QuotaExceeded,
    ServiceUnavailable,
    ValidationError,
)
from photoforge.core.generations import (
    Generation,
    GenerationStatus,
    GenerationStore,
    stand_in_generation,
)
from photoforge.core.prompt_resolver import PresetCatalog, PromptResolver
from photoforge.core.providers.base import ImageProvider, ProviderResult
from photoforge.core.providers.placeholder import synthesize_placeholder
from photoforge.core.quota import Quota, QuotaLedger, remaining
from photoforge.core.uploads import UploadIntake
from photoforge.core.users import Tier, User, UserStore, daily_limit_for

logger = logging.getLogger(__name__)

DEFAULT_SIZE = "1024x1024"
MIN_SIDE = 256
MAX_SIDE = 2048

INTERNAL_ERROR_MESSAGE = "Internal server error. Please try again later."

# Plan descriptions returned by tier_info; "{limit}" is the configured daily limit.
TIER_PLANS: dict[Tier, dict[str, Any]] = {
    Tier.FREE: {
        "name": "Free",
        "price": "Free",
        "features": [
            "Basic image generation",
            "{limit} generations per day",
            "Standard quality",
            "Basic presets",
        ],
    },
    Tier.PAID: {
        "name": "Pro",
        "price": "$9.99/month",
        "features": [
            "Advanced image generation",
            "{limit} generations per day",
            "High quality output",
            "All presets available",
            "Priority processing",
        ],
    },
}


@dataclass
class _UserLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


@dataclass(frozen=True)
class UploadPayload:
    """Raw uploaded file as received from the HTTP layer."""

    data: bytes
    content_type: str | None
    filename: str | None = None


@dataclass
class GenerationOutcome:
    """Result of a successful (possibly placeholder) generation."""

    generation: Generation
    quota: Quota
    echoed_input: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "status": self.generation.status.value,
            "generation_id": self.generation.id,
            "image_ref": self.generation.generated_image_url,
            "is_placeholder": self.generation.is_placeholder,
            "echoed_input": self.echoed_input,
            "generation": self.generation.to_public_dict(),
            "quota": {
                "used": self.quota.generations_used,
                "limit": self.quota.generations_limit,
                "remaining": remaining(self.quota),
            },
        }


def parse_size(size: str | None) -> tuple[int, int]:
    """Parse a ``WIDTHxHEIGHT`` string.

    Raises:
        ValidationError: If the format is wrong or a side is out of range
    """
    raw = (size or DEFAULT_SIZE).strip().lower()
    try:
        width_text, height_text = raw.split("x")
        width, height = int(width_text), int(height_text)
    except ValueError as e:
        raise ValidationError(f"Invalid size '{size}'; expected WIDTHxHEIGHT") from e
    for side in (width, height):
        if side < MIN_SIDE or side > MAX_SIDE:
            raise ValidationError(f"Image size must be between {MIN_SIDE} and {MAX_SIDE} pixels")
    return width, height


class GenerationOrchestrator:
    """Coordinates the quota ledger, prompt resolver, provider and stores.

    All collaborators are injected; ``provider`` may be ``None`` when no
    provider is configured, in which case generation requests fail with
    :class:`ServiceUnavailable` without touching quota.
    """

    def __init__(
        self,
        *,
        users: UserStore,
        ledger: QuotaLedger,
        generations: GenerationStore,
        resolver: PromptResolver,
        intake: UploadIntake,
        provider: ImageProvider | None,
        config: PhotoforgeConfig,
    ):
        self.users = users
        self.ledger = ledger
        self.generations = generations
        self.resolver = resolver
        self.intake = intake
        self.provider = provider
        self.config = config
        self._locks: dict[str, _UserLock] = {}
        self._inflight: set[asyncio.Task] = set()

    # -- Public interface ---------------------------------------------------

    async def generate_from_image(
        self,
        user_id: str,
        prompt: str | None,
        upload: UploadPayload | None,
        preset_id: str | None = None,
        size: str | None = DEFAULT_SIZE,
    ) -> GenerationOutcome:
        """Run one image-to-image generation request.

        Raises:
            ValidationError: Bad prompt, size or file (``InvalidFile``)
            NotFound: Unknown or inactive user
            QuotaExceeded: No generations left today
            ServiceUnavailable: No provider configured
            ProviderError: Non-transient provider rejection
            EchoedOutput: Provider returned the input unchanged
        """
        # --- Validate ------------------------------------------------------
        if prompt is None or not prompt.strip():
            raise ValidationError("Prompt is required and cannot be empty")
        if len(prompt) > self.config.max_prompt_length:
            raise ValidationError(
                f"Prompt must be less than {self.config.max_prompt_length} characters"
            )
        if upload is None or not upload.data:
            raise ValidationError("Image file is required for image-to-image generation")
        width, height = parse_size(size)
        user = self._require_user(user_id)

        async with self._user_lock(user.id):
            # --- Authorize -------------------------------------------------
            quota = self._require_quota(user)
            provider = self._require_provider()

            # --- Intake and prompt resolution ------------------------------
            stored = self.intake.receive_upload(upload.data, upload.content_type, upload.filename)
            resolved = self.resolver.resolve(prompt, preset_id, stored.url)
            logger.info(
                f"Generating for {user.id}: preset={resolved.preset_name} "
                f"prompt_length={len(resolved.text)}"
            )

            # --- Record ----------------------------------------------------
            generation = self._open_record(
                user,
                prompt=resolved.text,
                preset_used=resolved.preset_name,
                original_image_url=stored.url,
                original_image_path=str(stored.path),
                user_prompt=prompt.strip(),
                parameters={"size": f"{width}x{height}", "width": width, "height": height},
                ai_provider=provider.name,
                metadata={"original_image_size": stored.metadata()},
            )

            return await self._run_to_completion(
                user, generation, stored.data, width, height, stored.url, quota.day
            )

    async def retry(self, user_id: str, generation_id: str) -> GenerationOutcome:
        """Re-run a ``failed`` generation with its stored prompt and image.

        Raises:
            NotFound: Unknown user or generation
            InvalidTransition: The generation is not ``failed``
            QuotaExceeded: No generations left today (record left untouched)
            ServiceUnavailable: No provider configured
        """
        user = self._require_user(user_id)
        async with self._user_lock(user.id):
            generation = self.generations.find_generation(generation_id, user.id)
            if generation is None:
                raise NotFound("Generation not found")
            if generation.status is not GenerationStatus.FAILED:
                raise InvalidTransition("Can only retry failed generations")

            quota = self._require_quota(user)
            self._require_provider()

            reset = self.generations.reset_for_retry(generation.id, user.id)
            if reset is None:
                raise InvalidTransition("Generation is no longer in a failed state")
            logger.info(f"Retrying generation {reset.id} for {user.id}")

            try:
                if not reset.original_image_path:
                    raise FileNotFoundError("no stored upload path")
                image_bytes = self.intake.read_upload(reset.original_image_path)
            except FileNotFoundError as e:
                logger.error(f"Original upload missing for generation {reset.id}: {e}")
                self._fail(reset, "Original image is no longer available", "missing_upload")
                raise NotFound("Original image for this generation is no longer available") from e

            width = int(reset.parameters.get("width", 1024))
            height = int(reset.parameters.get("height", 1024))
            return await self._run_to_completion(
                user, reset, image_bytes, width, height, reset.original_image_url, quota.day
            )

    def get_status(self, user_id: str, generation_id: str) -> Generation:
        generation = self.generations.find_generation(generation_id, user_id)
        if generation is None:
            raise NotFound("Generation not found")
        return generation

    def get_quota(self, user_id: str) -> tuple[User, Quota]:
        user = self._require_user(user_id)
        return user, self.ledger.get_or_create_today_quota(user.id, user.tier)

    def list_generations(self, user_id: str, **filters: Any) -> dict[str, Any]:
        user = self._require_user(user_id)
        return self.generations.list_for_user(user.id, **filters)

    def delete_generation(self, user_id: str, generation_id: str) -> None:
        """Delete one of the caller's finished generations.

        Raises:
            NotFound: No such generation for this caller
            InvalidTransition: The generation is still ``processing``
        """
        if not self.generations.delete_generation(generation_id, user_id):
            raise NotFound("Generation not found")
        logger.info(f"Deleted generation {generation_id} for {user_id}")

    def user_stats(self, user_id: str) -> dict[str, Any]:
        user, quota = self.get_quota(user_id)
        return {
            "generations": self.generations.stats(user.id),
            "quota": self.ledger.snapshot(quota),
            "tier": user.tier.value,
        }

    def quota_history(self, user_id: str, days: int = 30) -> list[dict[str, Any]]:
        user = self._require_user(user_id)
        return [self.ledger.snapshot(quota) for quota in self.ledger.history(user.id, days)]

    def list_presets(self, user_id: str) -> dict[str, Any]:
        user = self._require_user(user_id)
        return self.resolver.list_presets(user.tier)

    def match_presets(
        self,
        user_id: str,
        user_input: str | None,
        category: str | None = None,
        limit: int = 5,
    ) -> list[dict[str, Any]]:
        """Rank the presets the caller's tier may use against free text."""
        if user_input is None or not user_input.strip():
            raise ValidationError("User input is required")
        user = self._require_user(user_id)
        return self.resolver.match(user_input, user.tier, category, limit)

    def preset_catalog(self, user_id: str) -> PresetCatalog:
        self._require_user(user_id)
        return self.resolver.catalog

    def reload_presets(self, admin_id: str) -> dict[str, Any]:
        self._require_admin(admin_id)
        self.resolver.catalog.reload()
        logger.info(f"Preset catalogue reloaded by {admin_id}")
        return self.resolver.catalog.stats()

    # -- Account tier -------------------------------------------------------

    def tier_info(self, user_id: str) -> dict[str, Any]:
        """Describe the caller's tier and every available plan."""
        user = self._require_user(user_id)
        tiers = {}
        for tier, plan in TIER_PLANS.items():
            limit = daily_limit_for(tier, self.config)
            tiers[tier.value] = {
                "name": plan["name"],
                "daily_limit": limit,
                "price": plan["price"],
                "features": [feature.format(limit=limit) for feature in plan["features"]],
            }
        return {
            "current_tier": user.tier.value,
            "current_limit": daily_limit_for(user.tier, self.config),
            "tiers": tiers,
        }

    def upgrade(self, user_id: str) -> tuple[User, Quota]:
        """Move the caller to the paid tier.

        Payment is handled before this call; today's usage is kept and only
        the limit grows.

        Raises:
            InvalidTransition: The caller is already on the paid tier
        """
        user = self._require_user(user_id)
        if user.tier is Tier.PAID:
            raise InvalidTransition("User is already on paid tier")
        return self._change_tier(user, Tier.PAID)

    def set_user_tier(self, admin_id: str, target_id: str, tier: Tier | str) -> tuple[User, Quota]:
        """Admin action: change any user's tier, active or not."""
        self._require_admin(admin_id)
        try:
            tier = Tier(tier)
        except ValueError as e:
            raise ValidationError('Invalid tier. Must be "free" or "paid"') from e
        target = self.users.get_user(target_id)
        if target is None:
            raise NotFound("User not found")
        return self._change_tier(target, tier)

    def set_user_status(self, admin_id: str, target_id: str, is_active: bool) -> User:
        """Admin action: activate or deactivate a user."""
        self._require_admin(admin_id)
        if not self.users.set_active(target_id, is_active):
            raise NotFound("User not found")
        return self.users.get_user(target_id)

    def _change_tier(self, user: User, tier: Tier) -> tuple[User, Quota]:
        self.users.set_tier(user.id, tier)
        updated = self.users.get_user(user.id)
        # Refreshes today's limit snapshot in place.
        quota = self.ledger.get_or_create_today_quota(updated.id, updated.tier)
        return updated, quota

    async def drain(self) -> None:
        """Wait for shielded generations that outlived their request."""
        if self._inflight:
            logger.info(f"Waiting for {len(self._inflight)} in-flight generation(s)")
            await asyncio.gather(*self._inflight, return_exceptions=True)

    # -- Authorization helpers ---------------------------------------------

    @asynccontextmanager
    async def _user_lock(self, user_id: str) -> AsyncIterator[None]:
        """Serialise requests for one user; the entry is dropped once idle."""
        entry = self._locks.get(user_id)
        if entry is None:
            entry = self._locks[user_id] = _UserLock()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                del self._locks[user_id]

    def _require_user(self, user_id: str) -> User:
        user = self.users.find_user(user_id)
        if user is None:
            raise NotFound("User not found")
        return user

    def _require_admin(self, user_id: str) -> User:
        user = self._require_user(user_id)
        if user.id not in self.config.admin_user_ids:
            logger.warning(f"Admin action refused for {user.id}")
            raise Forbidden()
        return user

    def _require_quota(self, user: User) -> Quota:
        quota = self.ledger.get_or_create_today_quota(user.id, user.tier)
        if quota.generations_used >= quota.generations_limit:
            logger.info(
                f"Quota exceeded for {user.id}: "
                f"{quota.generations_used}/{quota.generations_limit}"
            )
            raise QuotaExceeded(quota=quota)
        return quota

    def _require_provider(self) -> ImageProvider:
        if self.provider is None:
            raise ServiceUnavailable()
        return self.provider

    # -- Record helpers -----------------------------------------------------

    def _open_record(self, user: User, **fields: Any) -> Generation:
        """Create the ``processing`` record, tolerating a storage failure."""
        try:
            return self.generations.create_generation(user.id, **fields)
        except PersistenceError as e:
            logger.error(f"Generation record not persisted for {user.id} (durability gap): {e}")
            now = datetime.now()
            return Generation(
                id=f"temp-{uuid.uuid4().hex}",
                user_id=user.id,
                processing_start_time=now,
                created_at=now,
                updated_at=now,
                persisted=False,
                **fields,
            )

    def _complete(
        self,
        generation: Generation,
        image_url: str,
        is_placeholder: bool,
        metadata: dict[str, Any],
    ) -> Generation:
        if generation.persisted:
            try:
                return self.generations.update_generation_terminal(
                    generation.id,
                    GenerationStatus.COMPLETED,
                    generated_image_url=image_url,
                    is_placeholder=is_placeholder,
                    metadata=metadata,
                )
            except (PersistenceError, NotFound, InvalidTransition) as e:
                logger.error(f"Completed generation {generation.id} not persisted: {e}")
        return stand_in_generation(
            generation,
            status=GenerationStatus.COMPLETED,
            generated_image_url=image_url,
            is_placeholder=is_placeholder,
            metadata={**generation.metadata, **metadata},
            processing_end_time=datetime.now(),
        )

    def _fail(self, generation: Generation, message: str, code: str) -> Generation:
        if generation.persisted:
            try:
                return self.generations.update_generation_terminal(
                    generation.id,
                    GenerationStatus.FAILED,
                    error_message=message,
                    error_code=code,
                )
            except (PersistenceError, NotFound, InvalidTransition) as e:
                logger.error(f"Could not mark generation {generation.id} failed: {e}")
        return stand_in_generation(
            generation,
            status=GenerationStatus.FAILED,
            error_message=message,
            error_code=code,
            processing_end_time=datetime.now(),
        )

    # -- Provider invocation and commit ------------------------------------

    async def _run_to_completion(
        self,
        user: User,
        generation: Generation,
        image_bytes: bytes,
        width: int,
        height: int,
        original_url: str | None,
        charge_day: date,
    ) -> GenerationOutcome:
        """Invoke and commit in a task that survives caller cancellation."""
        task = asyncio.ensure_future(
            self._invoke_and_commit(
                user, generation, image_bytes, width, height, original_url, charge_day
            )
        )
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return await asyncio.shield(task)

    async def _call_provider(
        self, prompt: str, image_bytes: bytes, width: int, height: int
    ) -> ProviderResult:
        provider = self._require_provider()
        return await asyncio.wait_for(
            asyncio.to_thread(
                provider.generate,
                prompt,
                image_bytes,
                width=width,
                height=height,
                mime_type="image/jpeg",
            ),
            timeout=self.config.provider_timeout_seconds,
        )

    async def _invoke_and_commit(
        self,
        user: User,
        generation: Generation,
        image_bytes: bytes,
        width: int,
        height: int,
        original_url: str | None,
        charge_day: date,
    ) -> GenerationOutcome:
        started = time.monotonic()
        is_placeholder = False

        # --- Invoke provider -----------------------------------------------
        try:
            result = await self._call_provider(generation.prompt, image_bytes, width, height)
        except asyncio.TimeoutError:
            logger.warning(
                f"Provider timed out after {self.config.provider_timeout_seconds}s "
                f"for generation {generation.id}; using placeholder"
            )
            result = None
        except ProviderError as e:
            if not e.is_transient:
                logger.warning(f"Provider rejected generation {generation.id}: {e.code} {e.detail}")
                self._fail(generation, e.message, e.code)
                raise
            logger.warning(
                f"Transient provider failure for generation {generation.id}: {e.detail}; "
                "using placeholder"
            )
            result = None
        except Exception:
            logger.exception(f"Unexpected provider failure for generation {generation.id}")
            self._fail(generation, INTERNAL_ERROR_MESSAGE, "internal_error")
            raise

        if result is None:
            try:
                placeholder = await asyncio.to_thread(
                    synthesize_placeholder, image_bytes, width, height
                )
            except Exception:
                logger.exception(f"Placeholder synthesis failed for generation {generation.id}")
                self._fail(generation, INTERNAL_ERROR_MESSAGE, "internal_error")
                raise
            result = ProviderResult(image_bytes=placeholder, mime_type="image/png")
            is_placeholder = True

        # --- Interpret -----------------------------------------------------
        echoed = (original_url is not None and result.image_url == original_url) or (
            bool(result.image_bytes) and result.image_bytes == image_bytes
        )
        if echoed:
            logger.warning(f"Provider echoed the input image for generation {generation.id}")
            error = EchoedOutput()
            self._fail(generation, error.message, error.code)
            raise error

        if not result.image_bytes and not result.image_url:
            error = ProviderError("malformed", detail="Provider returned neither bytes nor URL")
            self._fail(generation, error.message, error.code)
            raise error

        # --- Commit: store, charge, then mark completed --------------------
        output_path = None
        try:
            if result.image_bytes:
                output = self.intake.store_output(
                    result.image_bytes,
                    result.mime_type,
                    prefix="placeholder" if is_placeholder else "gen",
                )
                image_url, output_meta, output_path = output.url, output.metadata(), output.path
            else:
                image_url, output_meta = result.image_url, {}
            quota = self.ledger.increment_usage(user.id, user.tier, day=charge_day)
        except QuotaExceeded:
            logger.warning(f"Quota race lost for generation {generation.id}; discarding result")
            self._discard_output(output_path)
            self._fail(generation, "Daily generation limit exceeded", "quota_exceeded")
            raise
        except Exception as e:
            logger.exception(f"Could not commit generation {generation.id}")
            self._discard_output(output_path)
            code = e.code if isinstance(e, PersistenceError) else "internal_error"
            self._fail(generation, INTERNAL_ERROR_MESSAGE, code)
            raise

        metadata = {
            "generated_image_size": output_meta,
            "processing_time": int((time.monotonic() - started) * 1000),
        }
        if result.text:
            metadata["provider_text"] = result.text[:500]
        completed = self._complete(generation, image_url, is_placeholder, metadata)
        logger.info(
            f"Generation {completed.id} completed for {user.id}"
            f"{' (placeholder)' if is_placeholder else ''}; "
            f"quota {quota.generations_used}/{quota.generations_limit}"
        )
        return GenerationOutcome(generation=completed, quota=quota)

    def _discard_output(self, path: Path | None) -> None:
        if path is None:
            return
        try:
            self.intake.discard(path)
        except OSError as e:
            logger.error(f"Could not remove unused output {path}: {e}")
