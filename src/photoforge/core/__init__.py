"""Core services for quota-enforced image-to-image generation.

This package holds everything below the HTTP layer:

- **config**: ``PhotoforgeConfig`` settings (``PHOTOFORGE_`` environment prefix)
- **errors**: The error taxonomy shared by every service
- **database / users**: SQLite bootstrap and the user directory
- **quota**: The per-user, per-day generation ledger
- **generations**: Durable generation records and their status machine
- **prompt_resolver**: Preset catalogue and prompt construction
- **providers**: External image providers behind a registry
- **uploads**: Image intake and output storage
- **orchestrator**: The end-to-end generation lifecycle

Architecture Overview
---------------------
::

    api.main ──► GenerationOrchestrator
                   ├── UserStore ───────┐
                   ├── QuotaLedger ─────┼──► Database (SQLite)
                   ├── GenerationStore ─┘
                   ├── PromptResolver ──► PresetCatalog (presets.json)
                   ├── UploadIntake ────► uploads/ and outputs/
                   └── ImageProvider ───► Gemini API

Every collaborator is passed in explicitly, so tests can build the whole
graph against a temporary directory and a fake provider.

Usage Example
-------------
::

    from photoforge.core import Database, PhotoforgeConfig, QuotaLedger, QuotaStore

    config = PhotoforgeConfig(data_dir="/tmp/pf")
    ledger = QuotaLedger(QuotaStore(Database(config.database_path)), config)
    quota = ledger.get_or_create_today_quota("user-1", "free")
"""

from photoforge.core.config import PhotoforgeConfig, config
from photoforge.core.database import Database
from photoforge.core.errors import (
    EchoedOutput,
    InvalidFile,
    InvalidTransition,
    NotFound,
    PersistenceError,
    PhotoforgeError,
    ProviderError,
    ProviderErrorKind,
    QuotaExceeded,
    ServiceUnavailable,
    ValidationError,
)
from photoforge.core.generations import Generation, GenerationStatus, GenerationStore
from photoforge.core.orchestrator import GenerationOrchestrator, GenerationOutcome, UploadPayload
from photoforge.core.prompt_resolver import PresetCatalog, PromptResolver
from photoforge.core.quota import Quota, QuotaLedger, QuotaStatus, QuotaStore
from photoforge.core.uploads import UploadIntake
from photoforge.core.users import Tier, User, UserStore

__all__ = [
    "Database",
    "EchoedOutput",
    "Generation",
    "GenerationOrchestrator",
    "GenerationOutcome",
    "GenerationStatus",
    "GenerationStore",
    "InvalidFile",
    "InvalidTransition",
    "NotFound",
    "PersistenceError",
    "PhotoforgeConfig",
    "PhotoforgeError",
    "PresetCatalog",
    "PromptResolver",
    "ProviderError",
    "ProviderErrorKind",
    "Quota",
    "QuotaExceeded",
    "QuotaLedger",
    "QuotaStatus",
    "QuotaStore",
    "ServiceUnavailable",
    "Tier",
    "UploadIntake",
    "UploadPayload",
    "User",
    "UserStore",
    "ValidationError",
    "config",
]
