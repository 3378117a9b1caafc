"""Rewrites the exact directive region of a message with its outcome."""

import logging
from dataclasses import dataclass
from typing import Optional

from .scanner import ERROR_IMAGE_PATH, Directive, extract_src

logger = logging.getLogger(__name__)

ERROR_MARKER_MAX = 50


@dataclass(frozen=True)
class PatchOutcome:
    image_path: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.image_path is not None


def success_marker(image_path: str) -> str:
    return f"[IMG:✓:{image_path}]"


def error_marker(message: str) -> str:
    short = " ".join(message.split())[:ERROR_MARKER_MAX].replace("]", ")")
    return f"[IMG:ERROR:{short}]"


def _with_src(directive: Directive, new_src: str) -> str:
    """The directive's tag with only its src value swapped."""
    tag = directive.full_match
    _, span = extract_src(tag, directive.payload_span)
    if span is not None:
        start, end = span
        return tag[:start] + new_src + tag[end:]
    # No src attribute at all: add one right after the element name
    return tag.replace("<img", f'<img src="{new_src}"', 1)


def replacement_for(directive: Directive, outcome: PatchOutcome) -> str:
    if directive.is_tagged:
        return _with_src(directive, outcome.image_path if outcome.ok else ERROR_IMAGE_PATH)
    if outcome.ok:
        return success_marker(outcome.image_path)
    return error_marker(outcome.error or "unknown error")


def patch_message(text: str, directive: Directive, outcome: PatchOutcome) -> str:
    """Replace exactly the directive's source region.

    The recorded offset is tried first; if earlier patches shifted the text the
    first literal occurrence is used instead. A region that no longer exists
    leaves the text unchanged.
    """
    target = directive.full_match
    replacement = replacement_for(directive, outcome)
    offset = directive.source_offset
    if text[offset:offset + len(target)] == target:
        return text[:offset] + replacement + text[offset + len(target):]
    index = text.find(target)
    if index == -1:
        logger.warning(f"🩹 [Patcher] Directive at {offset} no longer present, patch skipped")
        return text
    return text[:index] + replacement + text[index + len(target):]
