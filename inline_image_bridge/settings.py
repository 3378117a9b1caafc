"""
Process configuration and the persisted image generation settings record.

`Config` holds process-level knobs read from the environment once at import.
`ImageGenSettings` is the user-facing record the front-end edits; it is stored
as JSON with the camelCase keys the SillyTavern extension has always used, so
an exported extension settings blob can be dropped in as-is.
"""

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .errors import ConfigurationInvalid
from .i18n import tr

logger = logging.getLogger(__name__)


def _env_headers() -> Dict[str, str]:
    raw = os.getenv("IIG_HOST_HEADERS", "")
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("⚠️ [Config] IIG_HOST_HEADERS is not valid JSON, ignoring")
        return {}
    return {str(k): str(v) for k, v in parsed.items()} if isinstance(parsed, dict) else {}


class Config:
    """Bridge process configuration"""
    HOST = os.getenv("IIG_HOST", "127.0.0.1")
    PORT = int(os.getenv("IIG_PORT", 7862))

    # Logging
    LOG_LEVEL = os.getenv("IIG_LOG_LEVEL", "INFO").upper()
    LOG_BUFFER_SIZE = 200

    # Settings record
    SETTINGS_PATH = os.getenv("IIG_SETTINGS_PATH", "iig_settings.json")

    # SillyTavern server the chat/avatars/uploads live on
    HOST_BASE_URL = os.getenv("IIG_HOST_BASE_URL", "http://127.0.0.1:8000")
    HOST_HEADERS = _env_headers()

    # Timeouts (seconds)
    GENERATION_TIMEOUT = float(os.getenv("IIG_GENERATION_TIMEOUT", 120))
    DOWNLOAD_TIMEOUT = float(os.getenv("IIG_DOWNLOAD_TIMEOUT", 30))

    @classmethod
    def print_config(cls):
        logger.info("=" * 80)
        logger.info("INLINE IMAGE BRIDGE CONFIGURATION")
        logger.info("=" * 80)
        logger.info(f"Listen: {cls.HOST}:{cls.PORT}")
        logger.info(f"Log level: {cls.LOG_LEVEL} (buffer {cls.LOG_BUFFER_SIZE} entries)")
        logger.info(f"Settings file: {cls.SETTINGS_PATH}")
        logger.info(f"Host: {cls.HOST_BASE_URL} (extra headers: {sorted(cls.HOST_HEADERS)})")
        logger.info(f"Timeouts: generation={cls.GENERATION_TIMEOUT}s download={cls.DOWNLOAD_TIMEOUT}s")
        logger.info("=" * 80)


class NpcReference(BaseModel):
    """A named entity whose image is attached when its name appears in a prompt."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str = ""
    image_data_url: str = ""


class ImageGenSettings(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    enabled: bool = True
    api_type: Literal["openai", "gemini", "naistera"] = "openai"
    endpoint: str = ""
    api_key: str = ""
    model: str = ""

    # Generic-REST
    size: str = "1024x1024"
    quality: str = "standard"

    # Retry
    max_retries: int = Field(default=0, ge=0)
    retry_delay: int = Field(default=1000, ge=0, description="Base delay in milliseconds")

    # Multimodal-chat
    send_char_avatar: bool = False
    send_user_avatar: bool = False
    user_avatar_file: str = ""
    aspect_ratio: str = "1:1"
    image_size: str = "1K"

    # Custom-REST
    naistera_aspect_ratio: str = "1:1"
    naistera_preset: str = ""
    naistera_send_char_avatar: bool = False
    naistera_send_user_avatar: bool = False

    # History references
    send_previous_images: bool = False
    previous_images_count: int = 2
    send_style_reference: bool = False

    # Named entity references
    npc_references: List[NpcReference] = Field(default_factory=list)
    enable_npc_references: bool = False

    locale: Literal["en", "ru"] = "en"

    @field_validator("previous_images_count", mode="before")
    @classmethod
    def _clamp_previous_count(cls, value):
        try:
            value = int(value)
        except (TypeError, ValueError):
            return 2
        return min(4, max(0, value))


DEFAULT_SETTINGS: Dict[str, Any] = ImageGenSettings().model_dump(by_alias=True)


def migrate_settings(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Add every missing default key, never overwriting a present one."""
    merged = dict(raw)
    added = []
    for key, value in DEFAULT_SETTINGS.items():
        if key not in merged:
            merged[key] = copy.deepcopy(value)
            added.append(key)
    if added:
        logger.info(f"🔧 [Settings] Migrated record, added keys: {added}")
    return merged


def _to_storage_key(key: str) -> str:
    return key if key in DEFAULT_SETTINGS else to_camel(key)


def validate_for_generation(settings: ImageGenSettings) -> None:
    """Fail fast with every missing field in one message."""
    missing = []
    if not settings.endpoint:
        missing.append(tr("missing_endpoint", settings.locale))
    if not settings.api_key:
        missing.append(tr("missing_api_key", settings.locale))
    if settings.api_type != "naistera" and not settings.model:
        missing.append(tr("missing_model", settings.locale))
    if missing:
        raise ConfigurationInvalid(missing, tr("settings_error", settings.locale, details=", ".join(missing)))


class SettingsStore:
    """Lazily created, persisted settings record."""

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path) if path else None
        self._settings: Optional[ImageGenSettings] = None

    def get(self) -> ImageGenSettings:
        if self._settings is None:
            self._settings = self._load()
        return self._settings

    def _load(self) -> ImageGenSettings:
        raw: Dict[str, Any] = {}
        if self.path and self.path.exists():
            try:
                raw = json.loads(self.path.read_text(encoding="utf-8"))
                logger.info(f"🔧 [Settings] Loaded {self.path}")
            except (OSError, json.JSONDecodeError) as e:
                logger.error(f"🔧 [Settings] Failed reading {self.path}: {e}, using defaults")
                raw = {}
        else:
            logger.info("🔧 [Settings] No stored record, creating defaults")
        settings = ImageGenSettings.model_validate(migrate_settings(raw))
        self._settings = settings
        self.save()
        return settings

    def save(self) -> None:
        if not self.path or self._settings is None:
            return
        try:
            self.path.write_text(
                json.dumps(self._settings.model_dump(by_alias=True), indent=2, ensure_ascii=False),
                encoding="utf-8",
            )
        except OSError as e:
            logger.error(f"🔧 [Settings] Failed saving {self.path}: {e}")

    def update(self, changes: Dict[str, Any]) -> ImageGenSettings:
        """Apply a partial update. Raises pydantic.ValidationError on bad values."""
        data = self.get().model_dump(by_alias=True)
        for key, value in changes.items():
            data[_to_storage_key(key)] = value
        self._settings = ImageGenSettings.model_validate(data)
        self.save()
        logger.info(f"🔧 [Settings] Updated: {sorted(_to_storage_key(k) for k in changes)}")
        return self._settings

    def upsert_npc_reference(self, name: str, image_data_url: str) -> bool:
        """Add or replace a named reference. Returns True when an entry was updated."""
        settings = self.get()
        for npc in settings.npc_references:
            if npc.name.lower() == name.lower():
                npc.image_data_url = image_data_url
                self.save()
                logger.info(f"🔧 [Settings] NPC reference updated: {name}")
                return True
        settings.npc_references.append(NpcReference(name=name, image_data_url=image_data_url))
        self.save()
        logger.info(f"🔧 [Settings] NPC reference added: {name}")
        return False

    def remove_npc_reference(self, name: str) -> bool:
        settings = self.get()
        kept = [npc for npc in settings.npc_references if npc.name.lower() != name.lower()]
        removed = len(kept) != len(settings.npc_references)
        if removed:
            settings.npc_references = kept
            self.save()
            logger.info(f"🔧 [Settings] NPC reference removed: {name}")
        return removed
