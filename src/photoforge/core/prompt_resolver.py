"""Preset lookup and final prompt construction.

The resolver turns a caller's raw prompt, an optional preset identifier and
the URL of the uploaded image into the exact prompt string sent to the image
provider.

Preset Catalogue
----------------
Presets are read from ``presets.json`` in the data directory::

    {
      "presets": [
        {
          "id": "noir-portrait",
          "name": "Noir Portrait",
          "category": "portrait",
          "main_prompt": "black and white film noir portrait of {image}, {prompt}",
          "negative_prompt": "colour",
          "style": "cinematic",
          "tags": "portrait, noir, black and white",
          "user_tier": "paid"
        }
      ]
    }

The file is re-read only when its modification time changes.  When the file
is missing, empty or unreadable, a small built-in table is used instead.

Template Substitution
---------------------
Templates use a fixed set of placeholders, replaced literally:

========================================  ===============================
Placeholder                               Replaced with
========================================  ===============================
``{image}`` ``{image_url}`` ``{image_path}`` ``[IMAGE]``  uploaded image URL
``{prompt}``                              caller's raw prompt
========================================  ===============================

When a template has no prompt placeholder the raw prompt is appended, and
when it has no image placeholder ``reference image: <url>`` is appended, so
neither the caller's text nor the image is silently dropped.

Usage
-----
::

    resolver = PromptResolver(PresetCatalog(config.presets_path))
    resolved = resolver.resolve("sunset", "artistic-landscape", "/uploads/u.jpg")
    resolved.text         # final prompt
    resolved.preset_name  # "Artistic Landscape" (or "custom")
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path

from photoforge.core.generations import CUSTOM_PRESET
from photoforge.core.users import Tier

logger = logging.getLogger(__name__)

IMAGE_PLACEHOLDERS: tuple[str, ...] = ("{image}", "{image_url}", "{image_path}", "[IMAGE]")
PROMPT_PLACEHOLDER = "{prompt}"
REFERENCE_LABEL = "reference image"


@dataclass(frozen=True)
class Preset:
    """A named template that expands into a full prompt."""

    id: str
    name: str
    main_prompt: str
    description: str = ""
    category: str = "general"
    style: str = "realistic"
    negative_prompt: str = ""
    tags: str = ""
    user_tier: str = Tier.FREE.value

    @classmethod
    def from_dict(cls, data: dict) -> Preset:
        name = str(data.get("name") or data.get("category") or data["id"]).strip()
        return cls(
            id=str(data["id"]).strip(),
            name=name,
            main_prompt=str(data["main_prompt"]).strip(),
            description=str(data.get("description") or ""),
            category=str(data.get("category") or "general").strip(),
            style=str(data.get("style") or "realistic"),
            negative_prompt=str(data.get("negative_prompt") or ""),
            tags=str(data.get("tags") or ""),
            user_tier=str(data.get("user_tier") or Tier.FREE.value),
        )

    def available_to(self, tier: Tier | str) -> bool:
        return Tier(tier) is Tier.PAID or self.user_tier == Tier.FREE.value

    def tag_list(self) -> list[str]:
        return [tag.strip().lower() for tag in self.tags.split(",") if tag.strip()]


# Used when no presets.json is available.
FALLBACK_PRESETS: tuple[Preset, ...] = (
    Preset(
        id="realistic-portrait",
        name="Realistic Portrait",
        description="High-quality realistic human portraits",
        main_prompt=(
            "professional portrait photography, high quality, realistic, "
            "detailed facial features, natural lighting"
        ),
        negative_prompt="cartoon, anime, illustration, painting, drawing, art, sketch",
        style="photorealistic",
        category="portrait",
        tags="portrait, person, face, headshot",
    ),
    Preset(
        id="artistic-landscape",
        name="Artistic Landscape",
        description="Beautiful artistic landscape scenes",
        main_prompt=(
            "beautiful landscape, artistic style, vibrant colors, detailed scenery, "
            "professional photography"
        ),
        negative_prompt="people, portraits, indoor, urban, city",
        style="artistic",
        category="landscape",
        tags="landscape, nature, scenery, sunset",
    ),
    Preset(
        id="modern-architecture",
        name="Modern Architecture",
        description="Contemporary architectural designs",
        main_prompt=(
            "modern architecture, contemporary design, clean lines, "
            "professional architectural photography"
        ),
        negative_prompt="people, nature, vintage, old, traditional",
        style="architectural",
        category="architecture",
        tags="architecture, building, interior, city",
    ),
)


class PresetCatalog:
    """Preset source backed by ``presets.json`` with a built-in fallback.

    Attributes:
        path: Location of the catalogue file
        source: ``"file"`` when presets came from disk, else ``"fallback"``
    """

    def __init__(self, path: Path | None, fallback: tuple[Preset, ...] = FALLBACK_PRESETS):
        self.path = Path(path) if path else None
        self.fallback = fallback
        self.source = "fallback"
        self._presets: list[Preset] = []
        self._loaded_mtime: float | None = None

    def _load(self) -> None:
        """(Re)load the catalogue file when it changed on disk.

        Raises:
            ValueError: If the file exists but is not a valid catalogue
            OSError: If the file exists but cannot be read
        """
        if self.path is None or not self.path.exists():
            self._presets = []
            self._loaded_mtime = None
            return

        mtime = self.path.stat().st_mtime
        if self._loaded_mtime is not None and mtime <= self._loaded_mtime:
            return

        with open(self.path, encoding="utf-8") as handle:
            data = json.load(handle)

        raw_presets = data.get("presets", []) if isinstance(data, dict) else data
        if not isinstance(raw_presets, list):
            raise ValueError(f"{self.path} does not contain a preset list")

        presets: list[Preset] = []
        for entry in raw_presets:
            # Entries without an id or template cannot be resolved; skip them.
            if not isinstance(entry, dict) or not entry.get("id") or not entry.get("main_prompt"):
                continue
            presets.append(Preset.from_dict(entry))

        self._presets = presets
        self._loaded_mtime = mtime
        logger.info(f"Loaded {len(presets)} presets from {self.path}")

    def all(self) -> list[Preset]:
        """Return every preset, falling back to the built-in table."""
        try:
            self._load()
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load presets from {self.path}: {e}")
            self._presets = []
            self._loaded_mtime = None

        if self._presets:
            self.source = "file"
            return list(self._presets)
        self.source = "fallback"
        return list(self.fallback)

    def find(self, preset_id: str) -> Preset | None:
        """Look a preset up by id, then by name."""
        presets = self.all()
        for preset in presets:
            if preset.id == preset_id:
                return preset
        for preset in presets:
            if preset.name == preset_id:
                return preset
        if self.source == "file":
            for preset in self.fallback:
                if preset.id == preset_id or preset.name == preset_id:
                    return preset
        return None

    def reload(self) -> None:
        self._loaded_mtime = None
        self.all()

    def categories(self) -> list[str]:
        return sorted({preset.category for preset in self.all()})

    def styles(self) -> list[str]:
        return sorted({preset.style for preset in self.all()})

    def stats(self) -> dict:
        """Count presets per category, style and tier."""
        presets = self.all()
        stats: dict = {"total": len(presets), "source": self.source}
        for key in ("category", "style", "user_tier"):
            counts: dict[str, int] = {}
            for preset in presets:
                value = getattr(preset, key)
                counts[value] = counts.get(value, 0) + 1
            stats[f"{key}_counts"] = counts
        return stats


def score_preset(preset: Preset, user_input: str) -> int:
    """Score how well a preset matches free-text input.

    Substring hits on the name count 10, description 5, each tag 3, category
    and style 2 each, and every input word longer than two characters found
    in the template counts 1.
    """
    text = user_input.strip().lower()
    if not text:
        return 0

    score = 0
    if text in preset.name.lower():
        score += 10
    if text in preset.description.lower():
        score += 5
    for tag in preset.tag_list():
        if tag in text or text in tag:
            score += 3
    if text in preset.category.lower():
        score += 2
    if text in preset.style.lower():
        score += 2
    template = preset.main_prompt.lower()
    score += sum(1 for word in text.split() if len(word) > 2 and word in template)
    return score


def render_template(template: str, raw_prompt: str, image_url: str) -> str:
    """Expand a preset template with the caller's prompt and image URL.

    Args:
        template: Preset ``main_prompt`` text
        raw_prompt: Caller's prompt
        image_url: Reference to the uploaded image

    Returns:
        The expanded prompt

    Example:
        >>> render_template("make it look like {prompt}, ref: {image}", "sunset", "http://x/u.jpg")
        'make it look like sunset, ref: http://x/u.jpg'
    """
    text = template.strip()
    has_image = any(token in text for token in IMAGE_PLACEHOLDERS)
    has_prompt = PROMPT_PLACEHOLDER in text

    for token in IMAGE_PLACEHOLDERS:
        text = text.replace(token, image_url)
    if has_prompt:
        text = text.replace(PROMPT_PLACEHOLDER, raw_prompt)

    parts = [text] if text else []
    if not has_prompt and raw_prompt.strip():
        parts.append(raw_prompt.strip())
    if not has_image:
        parts.append(f"{REFERENCE_LABEL}: {image_url}")
    return ", ".join(parts)


def plain_prompt(raw_prompt: str, image_url: str) -> str:
    """Prompt used when no preset applies."""
    return f"{raw_prompt}, {REFERENCE_LABEL}: {image_url}"


@dataclass(frozen=True)
class ResolvedPrompt:
    text: str
    preset_name: str = CUSTOM_PRESET
    preset_id: str | None = None


class PromptResolver:
    """Produce the final provider prompt from raw text, preset and image URL."""

    def __init__(self, catalog: PresetCatalog, max_length: int = 2000):
        self.catalog = catalog
        self.max_length = max_length

    def resolve(self, raw_prompt: str, preset_id: str | None, image_url: str) -> ResolvedPrompt:
        """Resolve the prompt; never raises.

        Catalogue problems degrade to the preset-less form
        ``"<raw prompt>, reference image: <url>"``.
        """
        raw_prompt = raw_prompt.strip()
        resolved = ResolvedPrompt(text=plain_prompt(raw_prompt, image_url))

        if preset_id and preset_id != CUSTOM_PRESET:
            try:
                preset = self.catalog.find(preset_id)
                if preset is None:
                    logger.warning(f"Preset '{preset_id}' not found; using prompt as written")
                else:
                    resolved = ResolvedPrompt(
                        text=render_template(preset.main_prompt, raw_prompt, image_url),
                        preset_name=preset.name or preset.category or preset.id,
                        preset_id=preset.id,
                    )
                    logger.debug(f"Applied preset '{preset.id}'")
            except Exception as e:
                logger.error(f"Error applying preset '{preset_id}': {e}")

        if len(resolved.text) > self.max_length:
            logger.warning(
                f"Resolved prompt clipped from {len(resolved.text)} to {self.max_length} characters"
            )
            resolved = ResolvedPrompt(
                text=resolved.text[: self.max_length],
                preset_name=resolved.preset_name,
                preset_id=resolved.preset_id,
            )
        return resolved

    def list_presets(self, tier: Tier | str) -> dict:
        """Return the catalogue as seen by a user of the given tier.

        Presets the tier cannot use are still listed, flagged
        ``available=False`` and ``requires_paid=True``.
        """
        presets = self.catalog.all()
        entries = []
        for preset in presets:
            available = preset.available_to(tier)
            entry = asdict(preset)
            entry["available"] = available
            if not available:
                entry["requires_paid"] = True
            entries.append(entry)
        # Available presets first, keeping catalogue order within each group.
        entries.sort(key=lambda entry: not entry["available"])
        return {
            "presets": entries,
            "user_tier": Tier(tier).value,
            "source": self.catalog.source,
        }

    def match(
        self,
        user_input: str,
        tier: Tier | str,
        category: str | None = None,
        limit: int = 5,
    ) -> list[dict]:
        """Rank the presets available to *tier* against free-text input.

        Args:
            user_input: Text to match, e.g. "sunset beach"
            tier: Caller's tier; paid-only presets are skipped for free users
            category: Restrict to one category (case-insensitive)
            limit: Maximum number of matches

        Returns:
            Preset dicts with a ``match_score`` key, best first; presets that
            score zero are omitted
        """
        matches = []
        for preset in self.catalog.all():
            if not preset.available_to(tier):
                continue
            if category and preset.category.lower() != category.lower():
                continue
            score = score_preset(preset, user_input)
            if score > 0:
                matches.append({**asdict(preset), "match_score": score})
        # Stable sort keeps catalogue order among equal scores.
        matches.sort(key=lambda entry: entry["match_score"], reverse=True)
        return matches[:limit]

    def best_match(
        self, user_input: str, tier: Tier | str, category: str | None = None
    ) -> dict | None:
        matches = self.match(user_input, tier, category, limit=1)
        return matches[0] if matches else None
