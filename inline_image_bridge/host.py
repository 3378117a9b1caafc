"""
Host (SillyTavern) collaborators: chat store, avatar/asset fetches, uploads.

Every call goes through httpx.AsyncClient against the SillyTavern server the
chat lives on. Paths handed around are server-relative ("/user/images/...").
"""

import base64
import binascii
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from io import BytesIO
from typing import Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx
from PIL import Image, UnidentifiedImageError

from .errors import AssetFetchError, ImageSaveError
from .settings import Config

logger = logging.getLogger(__name__)

DEFAULT_CHARACTER_FOLDER = "generated"


# ============================================
# CHAT STORE
# ============================================

@dataclass
class ChatMessage:
    mes: str = ""
    is_user: bool = False
    name: str = ""


class ChatStore:
    """Ordered chat messages plus the host's persist hook."""

    def __init__(self, messages: Optional[List[ChatMessage]] = None):
        self.messages: List[ChatMessage] = list(messages or [])

    def get(self, message_id: int) -> Optional[ChatMessage]:
        if 0 <= message_id < len(self.messages):
            return self.messages[message_id]
        return None

    async def save_chat(self) -> None:
        raise NotImplementedError


class MemoryChatStore(ChatStore):
    """Chat store for one HTTP request; the caller persists the patched text."""

    def __init__(self, messages: Optional[List[ChatMessage]] = None):
        super().__init__(messages)
        self.saved = False
        self.save_count = 0

    async def save_chat(self) -> None:
        self.saved = True
        self.save_count += 1


@dataclass
class CharacterInfo:
    name: str = ""
    avatar: str = ""  # avatar file name as stored by the host, or a full path


# ============================================
# DATA URL HELPERS
# ============================================

def split_data_url(value: str) -> Tuple[str, str]:
    """("image/png", "<base64>") for a data URL. Raises ValueError otherwise."""
    if not isinstance(value, str) or not value.startswith("data:"):
        raise ValueError("Not a data URL")
    comma = value.find(",")
    if comma == -1:
        raise ValueError("Invalid data URL format")
    meta = value[5:comma]
    mime = meta.split(";", 1)[0] or "image/png"
    return mime, value[comma + 1:]


def decode_data_url(value: str) -> Tuple[bytes, str]:
    mime, payload = split_data_url(value)
    try:
        return base64.b64decode(payload, validate=True), mime
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid base64 payload: {e}")


def to_data_url(data: bytes, mime: str = "image/png") -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def detect_image_format(data: bytes) -> str:
    """Lower-case format name ("png", "jpeg", "webp", ...) sniffed with Pillow."""
    try:
        with Image.open(BytesIO(data)) as img:
            fmt = img.format
    except (UnidentifiedImageError, OSError) as e:
        raise ImageSaveError(f"Generated data is not a valid image ({len(data)} bytes): {e}")
    if not fmt:
        raise ImageSaveError("Generated image format could not be determined")
    return fmt.lower()


# ============================================
# SILLYTAVERN HOST CLIENT
# ============================================

class SillyTavernHost:
    """Asset/avatar/upload API of the SillyTavern server."""

    def __init__(self, base_url: Optional[str] = None, headers: Optional[Dict[str, str]] = None,
                 timeout: Optional[float] = None):
        self.base_url = (base_url or Config.HOST_BASE_URL).rstrip("/")
        self.headers = dict(Config.HOST_HEADERS if headers is None else headers)
        self.timeout = timeout or Config.DOWNLOAD_TIMEOUT
        logger.info(f"🏠 [Host] Client initialized - Base: {self.base_url}")

    def url_for(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        if not path.startswith("/"):
            path = "/" + path
        return self.base_url + path

    @staticmethod
    def character_avatar_path(avatar: str) -> str:
        if avatar.startswith(("/", "http://", "https://", "data:")):
            return avatar
        return f"/characters/{quote(avatar)}"

    @staticmethod
    def user_avatar_path(file_name: str) -> str:
        return f"/User Avatars/{quote(file_name)}"

    async def fetch_image(self, path: str) -> Tuple[bytes, str]:
        """Raw bytes and mime type of an image on the host (or a data URL)."""
        if path.startswith("data:"):
            try:
                return decode_data_url(path)
            except ValueError as e:
                raise AssetFetchError(f"Bad data URL: {e}")
        url = self.url_for(path)
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url, headers=self.headers)
        except httpx.HTTPError as e:
            raise AssetFetchError(f"Failed to fetch {path}: {e}")
        if response.status_code != 200:
            raise AssetFetchError(f"Failed to fetch {path}: HTTP {response.status_code}")
        mime = (response.headers.get("content-type") or "image/png").split(";", 1)[0].strip()
        return response.content, mime

    async def file_exists(self, path: str) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.head(self.url_for(path), headers=self.headers)
        except httpx.HTTPError as e:
            logger.warning(f"🏠 [Host] HEAD {path} failed: {e}")
            return False
        return 200 <= response.status_code < 300

    async def upload_image(self, image_b64: str, image_format: str, character_name: str, filename: str) -> str:
        body = {
            "image": image_b64,
            "format": image_format,
            "ch_name": character_name,
            "filename": filename,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url_for("/api/images/upload"), json=body, headers=self.headers)
        except httpx.HTTPError as e:
            raise ImageSaveError(f"Upload failed: {e}")
        if response.status_code != 200:
            try:
                detail = response.json().get("error")
            except ValueError:
                detail = None
            raise ImageSaveError(detail or f"Upload failed: {response.status_code}")
        path = response.json().get("path")
        if not path:
            raise ImageSaveError("Upload response carried no path")
        path = path.replace("\\", "/")
        if not path.startswith("/"):
            path = "/" + path
        logger.info(f"🏠 [Host] Image saved to: {path}")
        return path

    async def list_user_avatars(self) -> List[str]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url_for("/api/avatars/get"), json={}, headers=self.headers)
        except httpx.HTTPError as e:
            raise AssetFetchError(f"Avatar list failed: {e}")
        if response.status_code != 200:
            raise AssetFetchError(f"Avatar list failed: HTTP {response.status_code}")
        data = response.json()
        return [str(item) for item in data] if isinstance(data, list) else []


async def download_image(url: str, timeout: Optional[float] = None) -> Tuple[bytes, str]:
    try:
        async with httpx.AsyncClient(timeout=timeout or Config.DOWNLOAD_TIMEOUT) as client:
            response = await client.get(url)
    except httpx.HTTPError as e:
        raise ImageSaveError(f"Failed to download image from URL: {e}")
    if response.status_code != 200:
        raise ImageSaveError(f"Failed to download image from URL: HTTP {response.status_code}")
    mime = (response.headers.get("content-type") or "image/png").split(";", 1)[0].strip()
    return response.content, mime


async def save_generated_image(host: SillyTavernHost, image_ref: str, character_name: str = "") -> str:
    """Persist a generated image (data URL or remote URL) on the host, return its path."""
    if image_ref.startswith(("http://", "https://")):
        logger.info("🏠 [Host] Downloading image from URL...")
        data, _ = await download_image(image_ref)
    else:
        try:
            data, _ = decode_data_url(image_ref)
        except ValueError as e:
            raise ImageSaveError(str(e))

    image_format = detect_image_format(data)
    stamp = datetime.now(timezone.utc).isoformat().replace(":", "-").replace(".", "-")
    return await host.upload_image(
        base64.b64encode(data).decode("ascii"),
        image_format,
        character_name or DEFAULT_CHARACTER_FOLDER,
        f"iig_{stamp}",
    )
