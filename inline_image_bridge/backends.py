"""
Image backend adapters.

Three interchangeable protocols, each turning a GenerationRequest into an
image reference (data URL or remote URL):

1. openai    generic REST     POST {endpoint}/v1/images/generations
2. gemini    multimodal chat  POST {endpoint}/v1beta/models/{model}:generateContent
3. naistera  custom REST      POST {endpoint}/api/generate

Every adapter raises BackendHttpError on a non-2xx response,
BackendTransportError when no response arrives, and BackendProtocolError when
a 2xx response carries no image.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

import httpx

from .errors import BackendHttpError, BackendProtocolError, BackendTransportError
from .settings import Config, ImageGenSettings

logger = logging.getLogger(__name__)

# Multimodal-chat allow-lists
VALID_ASPECT_RATIOS = ["1:1", "2:3", "3:2", "3:4", "4:3", "4:5", "5:4", "9:16", "16:9", "21:9"]
VALID_IMAGE_SIZES = ["1K", "2K", "4K"]
DEFAULT_ASPECT_RATIO = "1:1"
DEFAULT_IMAGE_SIZE = "1K"

# Generic-REST size per aspect ratio
OPENAI_SIZES = {
    "16:9": "1792x1024",
    "9:16": "1024x1792",
    "1:1": "1024x1024",
}

MAX_REFERENCE_IMAGES = 4

REFERENCE_INSTRUCTION = (
    "[CRITICAL: The reference image(s) above show the EXACT appearance of the character(s). "
    "You MUST precisely copy their: face structure, eye color, hair color and style, skin tone, "
    "body type, clothing, and all distinctive features. Do not deviate from the reference appearances.]"
)

IMAGE_MODEL_KEYWORDS = [
    "dall-e", "midjourney", "mj", "journey", "stable-diffusion", "sdxl", "flux",
    "imagen", "drawing", "paint", "image", "seedream", "hidream", "dreamshaper",
    "ideogram", "nano-banana", "gpt-image", "wanx", "qwen",
]

VIDEO_MODEL_KEYWORDS = [
    "sora", "kling", "jimeng", "veo", "pika", "runway", "luma",
    "video", "gen-3", "minimax", "cogvideo", "mochi", "seedance",
    "vidu", "wan-ai", "hunyuan", "hailuo",
]


class BackendKind(str, Enum):
    OPENAI = "openai"
    GEMINI = "gemini"
    NAISTERA = "naistera"


# Reference images each backend accepts; 0 disables collection
REFERENCE_CAPS = {
    BackendKind.OPENAI: 0,
    BackendKind.GEMINI: MAX_REFERENCE_IMAGES,
    BackendKind.NAISTERA: MAX_REFERENCE_IMAGES,
}


def is_image_model(model_id: str) -> bool:
    mid = model_id.lower()
    if any(kw in mid for kw in VIDEO_MODEL_KEYWORDS):
        return False
    if "vision" in mid and "preview" in mid:
        return False
    return any(kw in mid for kw in IMAGE_MODEL_KEYWORDS)


def is_gemini_model(model_id: str) -> bool:
    return "nano-banana" in (model_id or "").lower()


def classify_backend(settings: ImageGenSettings) -> BackendKind:
    if settings.api_type == "naistera":
        return BackendKind.NAISTERA
    if settings.api_type == "gemini" or is_gemini_model(settings.model):
        return BackendKind.GEMINI
    return BackendKind.OPENAI


def styled_prompt(prompt: str, style: str = "") -> str:
    return f"[Style: {style}] {prompt}" if style else prompt


@dataclass
class GenerationOptions:
    aspect_ratio: Optional[str] = None
    image_size: Optional[str] = None
    quality: Optional[str] = None
    preset: Optional[str] = None
    reference_cap: int = MAX_REFERENCE_IMAGES


@dataclass
class GenerationRequest:
    prompt: str
    style: str = ""
    # Bare base64 strings (openai/gemini) and data URLs (naistera), capped upstream
    reference_images: List[str] = field(default_factory=list)
    reference_data_urls: List[str] = field(default_factory=list)
    options: GenerationOptions = field(default_factory=GenerationOptions)


@dataclass
class GeneratedImage:
    data_url: Optional[str] = None
    url: Optional[str] = None

    @property
    def reference(self) -> str:
        return self.data_url or self.url or ""


# ============================================
# PROVIDER CLIENT INTERFACE
# ============================================
class ProviderClient:
    name = "provider"

    def __init__(self, settings: ImageGenSettings, timeout: Optional[float] = None):
        self.settings = settings
        self.timeout = timeout or Config.GENERATION_TIMEOUT

    @property
    def endpoint(self) -> str:
        return self.settings.endpoint.rstrip("/")

    def headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.settings.api_key}",
            "Content-Type": "application/json",
        }

    async def _post(self, url: str, body: Dict) -> Dict:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=body, headers=self.headers())
        except httpx.TimeoutException as e:
            raise BackendTransportError(f"[{self.name}] Request timeout: {e}")
        except httpx.TransportError as e:
            raise BackendTransportError(f"[{self.name}] network error: {e}")

        logger.info(f"🌐 [{self.name}] Response status: {response.status_code}")
        if not 200 <= response.status_code < 300:
            logger.error(f"🌐 [{self.name}] API Error {response.status_code}: {response.text[:500]}")
            raise BackendHttpError(response.status_code, response.text, self.name)
        try:
            return response.json()
        except ValueError:
            raise BackendProtocolError(f"[{self.name}] Response is not JSON")

    async def generate(self, request: GenerationRequest) -> GeneratedImage:
        raise NotImplementedError


# ============================================
# GENERIC REST (OPENAI-COMPATIBLE)
# ============================================
class OpenAIImageClient(ProviderClient):
    name = "OpenAI"

    def resolve_size(self, aspect_ratio: Optional[str]) -> str:
        return OPENAI_SIZES.get(aspect_ratio or "", self.settings.size)

    def build_body(self, request: GenerationRequest) -> Dict:
        body = {
            "model": self.settings.model,
            "prompt": styled_prompt(request.prompt, request.style),
            "n": 1,
            "size": self.resolve_size(request.options.aspect_ratio),
            "quality": request.options.quality or self.settings.quality,
            "response_format": "b64_json",
        }
        if request.reference_images:
            body["image"] = f"data:image/png;base64,{request.reference_images[0]}"
        return body

    async def generate(self, request: GenerationRequest) -> GeneratedImage:
        url = f"{self.endpoint}/v1/images/generations"
        body = self.build_body(request)
        logger.info(f"🎨 [OpenAI] Generating: model={body['model']} size={body['size']} quality={body['quality']}")
        result = await self._post(url, body)

        data_list = result.get("data") or []
        if not data_list:
            if result.get("url"):
                return GeneratedImage(url=result["url"])
            raise BackendProtocolError("No image data in response")

        first = data_list[0] or {}
        if first.get("b64_json"):
            return GeneratedImage(data_url=f"data:image/png;base64,{first['b64_json']}")
        if first.get("url"):
            return GeneratedImage(url=first["url"])
        raise BackendProtocolError("No image data in response")


# ============================================
# MULTIMODAL CHAT (GEMINI / NANO-BANANA)
# ============================================
class GeminiImageClient(ProviderClient):
    name = "Gemini"

    def resolve_aspect_ratio(self, requested: Optional[str]) -> str:
        value = requested or self.settings.aspect_ratio or DEFAULT_ASPECT_RATIO
        if value in VALID_ASPECT_RATIOS:
            return value
        return self.settings.aspect_ratio if self.settings.aspect_ratio in VALID_ASPECT_RATIOS else DEFAULT_ASPECT_RATIO

    def resolve_image_size(self, requested: Optional[str]) -> str:
        value = requested or self.settings.image_size or DEFAULT_IMAGE_SIZE
        if value in VALID_IMAGE_SIZES:
            return value
        return self.settings.image_size if self.settings.image_size in VALID_IMAGE_SIZES else DEFAULT_IMAGE_SIZE

    def build_body(self, request: GenerationRequest) -> Dict:
        aspect_ratio = self.resolve_aspect_ratio(request.options.aspect_ratio)
        image_size = self.resolve_image_size(request.options.image_size)
        references = request.reference_images[:MAX_REFERENCE_IMAGES]

        parts = [{"inlineData": {"mimeType": "image/png", "data": img}} for img in references]

        full_prompt = styled_prompt(request.prompt, request.style)
        if references:
            full_prompt = f"{REFERENCE_INSTRUCTION}\n\n{full_prompt}"
        parts.append({"text": full_prompt})

        logger.info(f"🍌 [Gemini] {len(references)} reference image(s) + prompt ({len(full_prompt)} chars), "
                    f"aspect_ratio={aspect_ratio} image_size={image_size}")
        return {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {
                "responseModalities": ["TEXT", "IMAGE"],
                "imageConfig": {"aspectRatio": aspect_ratio, "imageSize": image_size},
            },
        }

    async def generate(self, request: GenerationRequest) -> GeneratedImage:
        url = f"{self.endpoint}/v1beta/models/{self.settings.model}:generateContent"
        result = await self._post(url, self.build_body(request))

        candidates = result.get("candidates") or []
        if not candidates:
            raise BackendProtocolError("No candidates in response")

        for part in (candidates[0].get("content") or {}).get("parts") or []:
            inline = part.get("inlineData")
            if inline and inline.get("data"):
                return GeneratedImage(data_url=f"data:{inline.get('mimeType', 'image/png')};base64,{inline['data']}")
            inline = part.get("inline_data")
            if inline and inline.get("data"):
                return GeneratedImage(data_url=f"data:{inline.get('mime_type', 'image/png')};base64,{inline['data']}")
        raise BackendProtocolError("No image found in Gemini response")


# ============================================
# CUSTOM REST (NAISTERA)
# ============================================
class NaisteraImageClient(ProviderClient):
    name = "Naistera"

    @property
    def url(self) -> str:
        endpoint = self.endpoint
        return endpoint if endpoint.endswith("/api/generate") else f"{endpoint}/api/generate"

    def build_body(self, request: GenerationRequest) -> Dict:
        body = {
            "prompt": styled_prompt(request.prompt, request.style),
            "aspect_ratio": request.options.aspect_ratio or self.settings.naistera_aspect_ratio or DEFAULT_ASPECT_RATIO,
        }
        preset = request.options.preset or self.settings.naistera_preset
        if preset:
            body["preset"] = preset
        if request.reference_data_urls:
            body["reference_images"] = request.reference_data_urls[:MAX_REFERENCE_IMAGES]
        return body

    async def generate(self, request: GenerationRequest) -> GeneratedImage:
        body = self.build_body(request)
        logger.info(f"🖌️ [Naistera] Generating: aspect_ratio={body['aspect_ratio']} preset={body.get('preset')} "
                    f"references={len(body.get('reference_images', []))}")
        result = await self._post(self.url, body)
        data_url = result.get("data_url") if isinstance(result, dict) else None
        if not data_url:
            raise BackendProtocolError("No data_url in response")
        return GeneratedImage(data_url=data_url)


CLIENTS = {
    BackendKind.OPENAI: OpenAIImageClient,
    BackendKind.GEMINI: GeminiImageClient,
    BackendKind.NAISTERA: NaisteraImageClient,
}


def client_for(settings: ImageGenSettings, kind: Optional[BackendKind] = None) -> ProviderClient:
    return CLIENTS[kind or classify_backend(settings)](settings)


async def fetch_image_models(settings: ImageGenSettings) -> List[str]:
    """Image-capable model ids advertised by the configured endpoint."""
    if not settings.endpoint or not settings.api_key:
        logger.warning("⚠️ [Models] Cannot fetch models: endpoint or API key not set")
        return []
    url = f"{settings.endpoint.rstrip('/')}/v1/models"
    try:
        async with httpx.AsyncClient(timeout=Config.DOWNLOAD_TIMEOUT) as client:
            response = await client.get(url, headers={"Authorization": f"Bearer {settings.api_key}"})
    except httpx.HTTPError as e:
        raise BackendTransportError(f"[Models] network error: {e}")
    if response.status_code != 200:
        raise BackendHttpError(response.status_code, response.text, "Models")
    models = response.json().get("data") or []
    ids = [m.get("id", "") for m in models if isinstance(m, dict)]
    image_ids = [mid for mid in ids if mid and is_image_model(mid)]
    logger.info(f"📋 [Models] {len(image_ids)}/{len(ids)} model(s) are image models")
    return image_ids
