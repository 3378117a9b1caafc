"""
Directive scanner for AI chat messages.

Two directive formats can live side by side in one message:

TAGGED   <img data-iig-instruction='{"style":"anime","prompt":"..."}' src="[IMG:GEN]">
LEGACY   [IMG:GEN:{"style":"anime","prompt":"..."}]

Messages arrive as arbitrary (possibly half-streamed) HTML, so nothing here is
allowed to raise: a malformed candidate becomes a ScanDiagnostic and the scan
moves on past it.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterator, List, Optional, Tuple

from .errors import ScanParseError

logger = logging.getLogger(__name__)

INSTRUCTION_MARKER = "data-iig-instruction="
LEGACY_MARKER = "[IMG:GEN:"
PENDING_MARKERS = ("[IMG:GEN]", "[IMG:")
ERROR_IMAGE_PATH = "/scripts/extensions/third-party/sillyimages/error.svg"
ERROR_IMAGE_NAME = "error.svg"

# How far back from the marker the opening <img may sit
IMG_LOOKBEHIND = 500
# How far after the marker the opening brace may sit (quote, whitespace)
BRACE_LOOKAHEAD = 10

SRC_PATTERN = re.compile(r"(?<![\w-])src\s*=\s*[\"']?([^\"'\s>]+)", re.IGNORECASE)

ENTITY_REPLACEMENTS = (
    ("&quot;", '"'),
    ("&#34;", '"'),
    ("&#x22;", '"'),
    ("&#39;", "'"),
    ("&#x27;", "'"),
    ("&apos;", "'"),
    ("&amp;", "&"),
)
SMART_QUOTES = (
    ("“", '"'),
    ("”", '"'),
    ("„", '"'),
    ("‘", "'"),
    ("’", "'"),
)

ExistsCheck = Callable[[str], Awaitable[bool]]


class DirectiveFormat(str, Enum):
    LEGACY = "legacy"
    TAGGED = "tagged"


@dataclass(frozen=True)
class Directive:
    full_match: str
    source_offset: int
    format: DirectiveFormat
    prompt: str = ""
    style: str = ""
    aspect_ratio: Optional[str] = None
    image_size: Optional[str] = None
    quality: Optional[str] = None
    preset: Optional[str] = None
    existing_reference: Optional[str] = None
    # (start, end) of the JSON payload inside full_match
    payload_span: Tuple[int, int] = (0, 0)

    @property
    def is_tagged(self) -> bool:
        return self.format is DirectiveFormat.TAGGED

    def generation_options(self) -> Dict[str, Optional[str]]:
        return {
            "aspect_ratio": self.aspect_ratio,
            "image_size": self.image_size,
            "quality": self.quality,
            "preset": self.preset,
        }

    def to_dict(self) -> Dict:
        return {
            "format": self.format.value,
            "full_match": self.full_match,
            "source_offset": self.source_offset,
            "prompt": self.prompt,
            "style": self.style,
            "aspect_ratio": self.aspect_ratio,
            "image_size": self.image_size,
            "quality": self.quality,
            "preset": self.preset,
            "existing_reference": self.existing_reference,
        }


@dataclass(frozen=True)
class ScanDiagnostic:
    offset: int
    format: DirectiveFormat
    reason: str
    snippet: str = ""


@dataclass
class ScanResult:
    directives: List[Directive] = field(default_factory=list)
    diagnostics: List[ScanDiagnostic] = field(default_factory=list)

    def __iter__(self) -> Iterator[Directive]:
        return iter(self.directives)

    def __len__(self) -> int:
        return len(self.directives)

    def __getitem__(self, index: int) -> Directive:
        return self.directives[index]


def find_json_end(text: str, start: int) -> int:
    """Index just past the brace that closes the object opened at `start`.

    Braces inside double-quoted strings do not count, and a backslash inside a
    string escapes the next character. Returns -1 when the object never closes.
    """
    depth = 0
    in_string = False
    escape_next = False
    for i in range(start, len(text)):
        char = text[i]
        if escape_next:
            escape_next = False
            continue
        if char == "\\" and in_string:
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return i + 1
    return -1


def decode_entities(payload: str) -> str:
    for entity, plain in ENTITY_REPLACEMENTS:
        payload = payload.replace(entity, plain)
    return payload


def _first_present(data: Dict, *keys) -> Optional[str]:
    for key in keys:
        value = data.get(key)
        if value:
            return str(value)
    return None


def _parse_instruction(payload: str) -> Dict:
    """Parse an entity-encoded instruction payload, tolerating smart quotes."""
    normalized = decode_entities(payload)
    try:
        data = json.loads(normalized)
    except json.JSONDecodeError as first_error:
        relaxed = normalized
        for smart, plain in SMART_QUOTES:
            relaxed = relaxed.replace(smart, plain)
        if relaxed == normalized:
            raise ScanParseError(f"Invalid instruction JSON: {first_error}", payload[:100])
        try:
            data = json.loads(relaxed)
        except json.JSONDecodeError as e:
            raise ScanParseError(f"Invalid instruction JSON: {e}", payload[:100])
    if not isinstance(data, dict):
        raise ScanParseError("Instruction JSON is not an object", payload[:100])
    return data


def _parse_legacy(payload: str) -> Dict:
    # Models often emit single-quoted pseudo-JSON here. Valid JSON is parsed
    # as-is so apostrophes inside prompts survive.
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        try:
            data = json.loads(payload.replace("'", '"'))
        except json.JSONDecodeError as e:
            raise ScanParseError(f"Invalid legacy tag JSON: {e}", payload[:100])
    if not isinstance(data, dict):
        raise ScanParseError("Legacy tag JSON is not an object", payload[:100])
    return data


def _directive_fields(data: Dict) -> Dict:
    return {
        "prompt": str(data.get("prompt") or ""),
        "style": str(data.get("style") or ""),
        "aspect_ratio": _first_present(data, "aspect_ratio", "aspectRatio"),
        "preset": _first_present(data, "preset"),
        "image_size": _first_present(data, "image_size", "imageSize"),
        "quality": _first_present(data, "quality"),
    }


def extract_src(tag: str, payload_span: Tuple[int, int]) -> Tuple[str, Optional[Tuple[int, int]]]:
    """Find the src attribute value outside the instruction payload.

    Returns the value and its (start, end) within `tag`, or ("", None).
    """
    start, end = payload_span
    for offset, segment in ((0, tag[:start]), (end, tag[end:])):
        match = SRC_PATTERN.search(segment)
        if match:
            return match.group(1), (offset + match.start(1), offset + match.end(1))
    return "", None


class TagScanner:
    """Extracts generation directives from message text."""

    def __init__(self, exists: Optional[ExistsCheck] = None):
        self.exists = exists

    async def scan(self, text: str, check_existence: bool = False, force_all: bool = False) -> ScanResult:
        result = ScanResult()
        if not text:
            return result
        await self._scan_tagged(text, result, check_existence, force_all)
        self._scan_legacy(text, result)
        for diag in result.diagnostics:
            logger.warning(f"🔎 [Scanner] Dropped {diag.format.value} candidate at {diag.offset}: {diag.reason} | {diag.snippet}")
        logger.debug(f"🔎 [Scanner] {len(result.directives)} directive(s), {len(result.diagnostics)} diagnostic(s)")
        return result

    async def _needs_generation(self, src: str, force_all: bool, check_existence: bool) -> Optional[bool]:
        """True/False for a decided candidate, None when it must be skipped outright."""
        if ERROR_IMAGE_NAME in src and not force_all:
            return None
        if force_all:
            return True
        if not src or any(marker in src for marker in PENDING_MARKERS):
            return True
        has_path = src.startswith("/") and len(src) > 5
        if has_path and check_existence and self.exists is not None:
            exists = await self.exists(src)
            if not exists:
                logger.info(f"🔎 [Scanner] Referenced image is missing, regenerating: {src}")
            return not exists
        return False

    async def _scan_tagged(self, text: str, result: ScanResult, check_existence: bool, force_all: bool) -> None:
        search_pos = 0
        while True:
            marker_pos = text.find(INSTRUCTION_MARKER, search_pos)
            if marker_pos == -1:
                return

            img_start = text.rfind("<img", 0, marker_pos)
            if img_start == -1 or marker_pos - img_start > IMG_LOOKBEHIND:
                search_pos = marker_pos + 1
                continue

            after_marker = marker_pos + len(INSTRUCTION_MARKER)
            json_start = text.find("{", after_marker)
            if json_start == -1 or json_start > after_marker + BRACE_LOOKAHEAD:
                search_pos = marker_pos + 1
                continue

            json_end = find_json_end(text, json_start)
            if json_end == -1:
                result.diagnostics.append(ScanDiagnostic(
                    json_start, DirectiveFormat.TAGGED, "unterminated instruction payload", text[json_start:json_start + 100]))
                search_pos = marker_pos + 1
                continue

            img_end = text.find(">", json_end)
            if img_end == -1:
                search_pos = marker_pos + 1
                continue
            img_end += 1

            full_tag = text[img_start:img_end]
            payload_span = (json_start - img_start, json_end - img_start)
            src, _ = extract_src(full_tag, payload_span)

            needs = await self._needs_generation(src, force_all, check_existence)
            if not needs:
                search_pos = img_end
                continue

            payload = text[json_start:json_end]
            try:
                data = _parse_instruction(payload)
            except ScanParseError as e:
                result.diagnostics.append(ScanDiagnostic(json_start, DirectiveFormat.TAGGED, str(e), e.snippet))
                search_pos = img_end
                continue

            has_path = src.startswith("/") and len(src) > 5
            result.directives.append(Directive(
                full_match=full_tag,
                source_offset=img_start,
                format=DirectiveFormat.TAGGED,
                existing_reference=src if has_path else None,
                payload_span=payload_span,
                **_directive_fields(data),
            ))
            search_pos = img_end

    def _scan_legacy(self, text: str, result: ScanResult) -> None:
        search_start = 0
        while True:
            marker_index = text.find(LEGACY_MARKER, search_start)
            if marker_index == -1:
                return

            json_start = marker_index + len(LEGACY_MARKER)
            if not text.startswith("{", json_start):
                search_start = json_start
                continue

            json_end = find_json_end(text, json_start)
            if json_end == -1:
                result.diagnostics.append(ScanDiagnostic(
                    marker_index, DirectiveFormat.LEGACY, "unterminated tag payload", text[json_start:json_start + 100]))
                search_start = json_start
                continue

            if not text.startswith("]", json_end):
                search_start = json_end
                continue

            payload = text[json_start:json_end]
            try:
                data = _parse_legacy(payload)
            except ScanParseError as e:
                result.diagnostics.append(ScanDiagnostic(marker_index, DirectiveFormat.LEGACY, str(e), e.snippet))
                search_start = json_end + 1
                continue

            result.directives.append(Directive(
                full_match=text[marker_index:json_end + 1],
                source_offset=marker_index,
                format=DirectiveFormat.LEGACY,
                payload_span=(json_start - marker_index, json_end - marker_index),
                **_directive_fields(data),
            ))
            search_start = json_end + 1
