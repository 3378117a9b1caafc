"""
Reference image collection.

Priority order (highest first): character avatar, user avatar, style
reference, previous generations, named-entity (NPC) matches. The backend's
cap truncates from the low-priority end. Every image is resolved to both a
bare base64 string and a self-contained data URL; whichever form the chosen
backend consumes is read off the bundle.
"""

import base64
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from .errors import AssetFetchError
from .host import CharacterInfo, ChatMessage, SillyTavernHost, to_data_url
from .scanner import ERROR_IMAGE_NAME
from .settings import ImageGenSettings

logger = logging.getLogger(__name__)

PREVIOUS_IMAGES_CEILING = 4

# Generated images live under /user/images/, referenced either by an element
# src or by a completed legacy marker.
GENERATED_IMAGE_PATTERN = re.compile(
    r"(?:src=[\"']?|\[IMG:✓:)(/user/images/[^\"'\s>\]]+)",
    re.IGNORECASE,
)


class ReferenceOrigin(str, Enum):
    CHARACTER_AVATAR = "character-avatar"
    USER_AVATAR = "user-avatar"
    STYLE = "style-reference"
    PREVIOUS = "prior-generation"
    NAMED_ENTITY = "named-entity"


@dataclass(frozen=True)
class ReferenceImage:
    origin: ReferenceOrigin
    source: str
    base64_data: str
    data_url: str
    label: str = ""


@dataclass
class ReferenceBundle:
    images: List[ReferenceImage] = field(default_factory=list)

    @property
    def encoded(self) -> List[str]:
        return [img.base64_data for img in self.images]

    @property
    def data_urls(self) -> List[str]:
        return [img.data_url for img in self.images]

    def __len__(self) -> int:
        return len(self.images)


@dataclass(frozen=True)
class ReferenceToggles:
    char_avatar: bool = False
    user_avatar: bool = False
    style_reference: bool = False
    previous_images: bool = False
    previous_count: int = 0
    named_entities: bool = False
    cap: int = 4


@dataclass(frozen=True)
class GeneratedImageRef:
    path: str
    message_index: int


def find_generated_images(chat: Sequence[ChatMessage], exclude_index: Optional[int] = None) -> List[GeneratedImageRef]:
    """Generated image paths in chat history, newest first, each path once."""
    found: List[GeneratedImageRef] = []
    seen = set()
    for index in range(len(chat) - 1, -1, -1):
        if index == exclude_index:
            continue
        text = chat[index].mes or ""
        matches = [m.group(1) for m in GENERATED_IMAGE_PATTERN.finditer(text)]
        # later in the message means newer
        for path in reversed(matches):
            if ERROR_IMAGE_NAME in path or path in seen:
                continue
            seen.add(path)
            found.append(GeneratedImageRef(path, index))
    return found


def select_history_references(found: List[GeneratedImageRef], style_reference: bool, previous_images: bool,
                              previous_count: int) -> Tuple[Optional[GeneratedImageRef], List[GeneratedImageRef]]:
    """Pick the style anchor (oldest) and up to `previous_count` newest others."""
    style = found[-1] if style_reference and found else None
    previous: List[GeneratedImageRef] = []
    if previous_images and previous_count > 0:
        limit = min(previous_count, PREVIOUS_IMAGES_CEILING)
        previous = [ref for ref in found if ref is not style][:limit]
    return style, previous


def match_named_entities(prompt: str, settings: ImageGenSettings) -> List[Tuple[str, str]]:
    """(name, image) for every configured entity whose name occurs in the prompt."""
    if not settings.enable_npc_references:
        return []
    prompt_lower = prompt.lower()
    matches = []
    for npc in settings.npc_references:
        if not npc.name or not npc.image_data_url:
            continue
        if npc.name.lower() in prompt_lower:
            matches.append((npc.name, npc.image_data_url))
            logger.info(f"🧩 [References] Found NPC reference match: {npc.name}")
    return matches


class ReferenceCollector:
    """Assembles the reference images for one generation call."""

    def __init__(self, host: SillyTavernHost, settings: ImageGenSettings):
        self.host = host
        self.settings = settings

    async def _resolve(self, origin: ReferenceOrigin, source: str, label: str = "") -> Optional[ReferenceImage]:
        try:
            data, mime = await self.host.fetch_image(source)
        except AssetFetchError as e:
            logger.warning(f"🧩 [References] Skipping {origin.value} {source[:60]}: {e}")
            return None
        if not data:
            logger.warning(f"🧩 [References] Skipping empty {origin.value} {source[:60]}")
            return None
        return ReferenceImage(
            origin=origin,
            source=source if not source.startswith("data:") else f"data:{mime}",
            base64_data=base64.b64encode(data).decode("ascii"),
            data_url=to_data_url(data, mime),
            label=label,
        )

    def _candidates(self, prompt: str, chat: Sequence[ChatMessage], message_index: Optional[int],
                    toggles: ReferenceToggles, character: Optional[CharacterInfo]) -> List[Tuple[ReferenceOrigin, str, str]]:
        candidates = []
        if toggles.char_avatar and character and character.avatar:
            candidates.append((ReferenceOrigin.CHARACTER_AVATAR,
                               self.host.character_avatar_path(character.avatar), character.name))
        if toggles.user_avatar and self.settings.user_avatar_file:
            candidates.append((ReferenceOrigin.USER_AVATAR,
                               self.host.user_avatar_path(self.settings.user_avatar_file), ""))

        if toggles.style_reference or toggles.previous_images:
            found = find_generated_images(chat, exclude_index=message_index)
            logger.info(f"🧩 [References] {len(found)} generated image(s) in history")
            style, previous = select_history_references(
                found, toggles.style_reference, toggles.previous_images, toggles.previous_count)
            if style is not None:
                candidates.append((ReferenceOrigin.STYLE, style.path, ""))
            for ref in previous:
                candidates.append((ReferenceOrigin.PREVIOUS, ref.path, ""))

        if toggles.named_entities:
            for name, image in match_named_entities(prompt, self.settings):
                candidates.append((ReferenceOrigin.NAMED_ENTITY, image, name))
        return candidates

    async def collect(self, prompt: str, chat: Sequence[ChatMessage], message_index: Optional[int],
                      toggles: ReferenceToggles, character: Optional[CharacterInfo] = None) -> ReferenceBundle:
        bundle = ReferenceBundle()
        if toggles.cap <= 0:
            return bundle

        candidates = self._candidates(prompt, chat, message_index, toggles, character)
        for position, (origin, source, label) in enumerate(candidates):
            if len(bundle.images) >= toggles.cap:
                logger.info(f"🧩 [References] Cap of {toggles.cap} reached, dropping "
                            f"{len(candidates) - position} lower-priority candidate(s)")
                break
            image = await self._resolve(origin, source, label)
            if image is not None:
                bundle.images.append(image)
                logger.info(f"🧩 [References] Added {origin.value}{f' ({label})' if label else ''}: {image.source[:50]}")

        logger.info(f"🧩 [References] Total references collected: {len(bundle.images)}")
        return bundle
