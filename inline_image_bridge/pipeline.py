"""
Orchestration: scan a message, generate every directive, patch, persist.

All process-wide mutable state (settings record, diagnostic log buffer,
in-flight message set, progress subscribers) lives on a BridgeContext that is
handed to every call. Nothing here is a module-level singleton.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .backends import (
    REFERENCE_CAPS,
    BackendKind,
    GenerationOptions,
    GenerationRequest,
    classify_backend,
    client_for,
)
from .host import CharacterInfo, ChatStore, SillyTavernHost, save_generated_image
from .i18n import tr
from .logbuffer import RingBufferHandler
from .patcher import PatchOutcome, patch_message
from .references import ReferenceCollector, ReferenceToggles
from .retry import run_with_retry
from .scanner import Directive, TagScanner
from .settings import Config, ImageGenSettings, SettingsStore, validate_for_generation

logger = logging.getLogger(__name__)

PACKAGE_LOGGER = "inline_image_bridge"

STATUS_PROCESSED = "processed"
STATUS_SKIPPED = "skipped"
STATUS_NO_TAGS = "no_tags"
STATUS_DISABLED = "disabled"
STATUS_NOT_FOUND = "not_found"

StatusCallback = Callable[[str], None]


# ============================================
# PROGRESS EVENTS
# ============================================
class StatusBroadcaster:
    """Fans progress events out to every live subscriber queue."""

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._subscribers: Set[asyncio.Queue] = set()

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, message_id: int, tag_id: str, status: str) -> None:
        event = {"message_id": message_id, "tag_id": tag_id, "status": status}
        logger.debug(f"📣 [Events] {tag_id}: {status}")
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"📣 [Events] Subscriber queue full, dropping event for {tag_id}")


# ============================================
# CONTEXT
# ============================================
class BridgeContext:
    """Injected state shared by every pipeline call."""

    def __init__(
        self,
        settings_store: Optional[SettingsStore] = None,
        host: Optional[SillyTavernHost] = None,
        log_handler: Optional[RingBufferHandler] = None,
        events: Optional[StatusBroadcaster] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings_store = settings_store or SettingsStore(Config.SETTINGS_PATH)
        self.host = host or SillyTavernHost()
        self.log_handler = log_handler or RingBufferHandler(Config.LOG_BUFFER_SIZE)
        self.events = events or StatusBroadcaster()
        self.sleep = sleep
        self.in_flight: Set[str] = set()
        self.scanner = TagScanner(exists=self.host.file_exists)

        package_logger = logging.getLogger(PACKAGE_LOGGER)
        package_logger.setLevel(getattr(logging, Config.LOG_LEVEL, logging.INFO))
        if self.log_handler not in package_logger.handlers:
            package_logger.addHandler(self.log_handler)

    @property
    def settings(self) -> ImageGenSettings:
        return self.settings_store.get()

    def close(self) -> None:
        logging.getLogger(PACKAGE_LOGGER).removeHandler(self.log_handler)


# ============================================
# RESULTS
# ============================================
@dataclass
class DirectiveOutcome:
    index: int
    tag_id: str
    directive: Directive
    outcome: PatchOutcome

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "tag_id": self.tag_id,
            "format": self.directive.format.value,
            "prompt": self.directive.prompt,
            "image_path": self.outcome.image_path,
            "error": self.outcome.error,
        }


@dataclass
class ProcessResult:
    status: str
    message_id: int
    text: Optional[str] = None
    outcomes: List[DirectiveOutcome] = field(default_factory=list)
    saved: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "message_id": self.message_id,
            "text": self.text,
            "saved": self.saved,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


def reference_toggles_for(kind: BackendKind, settings: ImageGenSettings) -> ReferenceToggles:
    cap = REFERENCE_CAPS[kind]
    if kind is BackendKind.NAISTERA:
        char_avatar = settings.naistera_send_char_avatar
        user_avatar = settings.naistera_send_user_avatar
    else:
        char_avatar = settings.send_char_avatar
        user_avatar = settings.send_user_avatar
    return ReferenceToggles(
        char_avatar=char_avatar,
        user_avatar=user_avatar,
        style_reference=settings.send_style_reference,
        previous_images=settings.send_previous_images,
        previous_count=settings.previous_images_count,
        named_entities=settings.enable_npc_references,
        cap=cap,
    )


def _tag_id(message_id: int, index: int) -> str:
    return f"iig-{message_id}-{index}"


def _chat_key(chat_id: str, message_id: int) -> str:
    return f"{chat_id}:{message_id}"


# ============================================
# GENERATION
# ============================================
async def generate_image_with_retry(
    context: BridgeContext,
    directive: Directive,
    store: ChatStore,
    message_id: Optional[int] = None,
    character: Optional[CharacterInfo] = None,
    on_status: Optional[StatusCallback] = None,
) -> str:
    """Generate one directive's image; returns a data URL or remote URL."""
    settings = context.settings
    validate_for_generation(settings)

    kind = classify_backend(settings)
    toggles = reference_toggles_for(kind, settings)
    logger.info(f"🎯 [Pipeline] Backend: {kind.value}, reference cap {toggles.cap}")

    if on_status and toggles.cap > 0:
        if toggles.previous_images or toggles.style_reference:
            on_status(tr("loading_previous", settings.locale))
        if toggles.named_entities:
            on_status(tr("searching_npc", settings.locale))

    collector = ReferenceCollector(context.host, settings)
    bundle = await collector.collect(directive.prompt, store.messages, message_id, toggles, character)

    request = GenerationRequest(
        prompt=directive.prompt,
        style=directive.style,
        reference_images=bundle.encoded,
        reference_data_urls=bundle.data_urls,
        options=GenerationOptions(
            aspect_ratio=directive.aspect_ratio,
            image_size=directive.image_size,
            quality=directive.quality,
            preset=directive.preset,
            reference_cap=toggles.cap,
        ),
    )
    client = client_for(settings, kind)
    result = await run_with_retry(
        lambda: client.generate(request),
        max_retries=settings.max_retries,
        base_delay_ms=settings.retry_delay,
        on_status=on_status,
        locale=settings.locale,
        sleep=context.sleep,
    )
    return result.reference


async def _run_directive(
    context: BridgeContext,
    directive: Directive,
    index: int,
    total: int,
    store: ChatStore,
    message_id: int,
    character: Optional[CharacterInfo],
) -> DirectiveOutcome:
    tag_id = _tag_id(message_id, index)
    locale = context.settings.locale

    def on_status(status: str) -> None:
        context.events.publish(message_id, tag_id, status)

    logger.info(f"🖼️ [Pipeline] {tag_id}: {directive.prompt[:80]!r} (style={directive.style or '-'})")
    try:
        image_ref = await generate_image_with_retry(context, directive, store, message_id, character, on_status)
        on_status(tr("saving", locale))
        path = await save_generated_image(context.host, image_ref, character.name if character else "")
    except Exception as e:
        logger.error(f"❌ [Pipeline] {tag_id} failed: {e}")
        on_status(tr("generation_failed", locale, error=str(e)))
        return DirectiveOutcome(index, tag_id, directive, PatchOutcome(error=str(e)))

    on_status(tr("image_ready", locale, index=index + 1, total=total))
    logger.info(f"✅ [Pipeline] {tag_id} -> {path}")
    return DirectiveOutcome(index, tag_id, directive, PatchOutcome(image_path=path))


# ============================================
# MESSAGE HANDLERS
# ============================================
def _precheck(context: BridgeContext, chat_id: str, message_id: int, store: ChatStore) -> Optional[ProcessResult]:
    if not context.settings.enabled:
        return ProcessResult(STATUS_DISABLED, message_id)
    message = store.get(message_id)
    if message is None:
        logger.warning(f"⚠️ [Pipeline] Message {message_id} not found")
        return ProcessResult(STATUS_NOT_FOUND, message_id)
    if message.is_user:
        return ProcessResult(STATUS_SKIPPED, message_id, message.mes)
    if _chat_key(chat_id, message_id) in context.in_flight:
        logger.warning(f"⚠️ [Pipeline] Message {message_id} already in flight, dropping trigger")
        return ProcessResult(STATUS_SKIPPED, message_id, message.mes)
    return None


async def process_message(
    context: BridgeContext,
    chat_id: str,
    message_id: int,
    store: ChatStore,
    character: Optional[CharacterInfo] = None,
) -> ProcessResult:
    """Generate every pending directive of one message concurrently."""
    early = _precheck(context, chat_id, message_id, store)
    if early is not None:
        return early

    key = _chat_key(chat_id, message_id)
    # Claimed before the first await so a concurrent trigger sees it
    context.in_flight.add(key)
    try:
        message = store.get(message_id)
        scan = await context.scanner.scan(message.mes, check_existence=True)
        if not scan.directives:
            return ProcessResult(STATUS_NO_TAGS, message_id, message.mes)

        total = len(scan.directives)
        locale = context.settings.locale
        logger.info(f"🏷️ [Pipeline] Message {message_id}: {total} directive(s)")
        context.events.publish(message_id, _tag_id(message_id, 0), tr("found_tags", locale, count=total))

        outcomes = await asyncio.gather(*[
            _run_directive(context, directive, index, total, store, message_id, character)
            for index, directive in enumerate(scan.directives)
        ])

        # Right-to-left keeps every earlier recorded offset valid
        text = message.mes
        for result in sorted(outcomes, key=lambda o: o.directive.source_offset, reverse=True):
            text = patch_message(text, result.directive, result.outcome)
        message.mes = text

        await store.save_chat()
        succeeded = sum(1 for o in outcomes if o.outcome.ok)
        logger.info(f"💾 [Pipeline] Message {message_id} saved ({succeeded}/{total} generated)")
        return ProcessResult(STATUS_PROCESSED, message_id, text, list(outcomes), saved=True)
    finally:
        context.in_flight.discard(key)


async def regenerate_message(
    context: BridgeContext,
    chat_id: str,
    message_id: int,
    store: ChatStore,
    character: Optional[CharacterInfo] = None,
) -> ProcessResult:
    """Regenerate every directive of a message one by one.

    A failed tagged directive keeps its current image; a failed legacy one
    gets an error marker.
    """
    early = _precheck(context, chat_id, message_id, store)
    if early is not None:
        return early

    key = _chat_key(chat_id, message_id)
    context.in_flight.add(key)
    try:
        message = store.get(message_id)
        locale = context.settings.locale
        scan = await context.scanner.scan(message.mes, force_all=True)
        if not scan.directives:
            context.events.publish(message_id, _tag_id(message_id, 0), tr("no_tags_to_regenerate", locale))
            return ProcessResult(STATUS_NO_TAGS, message_id, message.mes)

        total = len(scan.directives)
        logger.info(f"🔄 [Pipeline] Regenerating {total} image(s) in message {message_id}")
        outcomes: List[DirectiveOutcome] = []
        for index, directive in enumerate(scan.directives):
            outcomes.append(await _run_directive(context, directive, index, total, store, message_id, character))

        text = message.mes
        for result in sorted(outcomes, key=lambda o: o.directive.source_offset, reverse=True):
            # A tagged image that failed to regenerate keeps its current src
            if result.outcome.ok or not result.directive.is_tagged:
                text = patch_message(text, result.directive, result.outcome)
        message.mes = text

        await store.save_chat()
        return ProcessResult(STATUS_PROCESSED, message_id, text, outcomes, saved=True)
    finally:
        context.in_flight.discard(key)
