"""
HTTP surface of the inline image bridge.

The SillyTavern front-end calls these endpoints when a message is rendered
(process), when the user asks for a regeneration, and from the settings
panel. Progress for each directive is streamed over /iig/events.
"""

import json
import logging
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel
from sse_starlette.sse import EventSourceResponse

from .backends import fetch_image_models
from .errors import ConfigurationInvalid, ImageGenError
from .host import CharacterInfo, ChatMessage, MemoryChatStore
from .pipeline import BridgeContext, process_message, regenerate_message
from .settings import Config

logger = logging.getLogger(__name__)

SERVICE_NAME = "Inline Image Bridge"
SERVICE_VERSION = "1.0.0"


# ============================================
# API MODELS
# ============================================
class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChatMessageModel(CamelModel):
    mes: str = Field(default="", description="Message text")
    is_user: bool = Field(default=False)
    name: str = Field(default="")


class MessageRequest(CamelModel):
    chat_id: str = Field(default="default", description="Chat the message belongs to")
    message_id: int = Field(description="Index of the message in `messages`")
    messages: List[ChatMessageModel] = Field(default_factory=list)
    character_name: str = Field(default="")
    character_avatar: str = Field(default="")


class ScanRequest(CamelModel):
    text: str = Field(default="")
    check_existence: bool = Field(default=False)
    force_all: bool = Field(default=False)


class NpcReferenceRequest(CamelModel):
    name: str = Field(min_length=1)
    image_data_url: str = Field(min_length=1)


def _store_for(request: MessageRequest) -> MemoryChatStore:
    return MemoryChatStore([ChatMessage(m.mes, m.is_user, m.name) for m in request.messages])


def _character_for(request: MessageRequest) -> Optional[CharacterInfo]:
    if not request.character_name and not request.character_avatar:
        return None
    return CharacterInfo(request.character_name, request.character_avatar)


def create_app(context: Optional[BridgeContext] = None) -> FastAPI:
    context = context or BridgeContext()
    app = FastAPI(title=SERVICE_NAME, version=SERVICE_VERSION)
    app.state.context = context

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ConfigurationInvalid)
    async def configuration_error(request: Request, exc: ConfigurationInvalid):
        return JSONResponse(status_code=400, content={"detail": str(exc), "missing": exc.missing})

    @app.exception_handler(ImageGenError)
    async def pipeline_error(request: Request, exc: ImageGenError):
        logger.error(f"❌ [Server] {request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=502, content={"detail": str(exc)})

    @app.on_event("startup")
    async def startup_event():
        logger.info("🚀 Inline Image Bridge starting...")
        Config.print_config()

    @app.get("/")
    async def root():
        return {
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "status": "running",
            "in_flight": sorted(context.in_flight),
        }

    # ---------------- settings ----------------

    @app.get("/iig/settings")
    async def get_settings():
        return context.settings.model_dump(by_alias=True)

    @app.patch("/iig/settings")
    async def patch_settings(changes: Dict[str, Any] = Body(...)):
        try:
            settings = context.settings_store.update(changes)
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))
        return settings.model_dump(by_alias=True)

    @app.post("/iig/npc-references")
    async def upsert_npc_reference(request: NpcReferenceRequest):
        updated = context.settings_store.upsert_npc_reference(request.name, request.image_data_url)
        return {"name": request.name, "updated": updated, "count": len(context.settings.npc_references)}

    @app.delete("/iig/npc-references/{name}")
    async def delete_npc_reference(name: str):
        if not context.settings_store.remove_npc_reference(name):
            raise HTTPException(status_code=404, detail=f"No NPC reference named {name!r}")
        return {"name": name, "removed": True}

    @app.get("/iig/models")
    async def list_models():
        return {"models": await fetch_image_models(context.settings)}

    @app.get("/iig/user-avatars")
    async def list_user_avatars():
        return {"avatars": await context.host.list_user_avatars()}

    # ---------------- messages ----------------

    @app.post("/iig/scan")
    async def scan_text(request: ScanRequest):
        result = await context.scanner.scan(request.text, request.check_existence, request.force_all)
        return {
            "directives": [d.to_dict() for d in result.directives],
            "diagnostics": [
                {"offset": d.offset, "format": d.format.value, "reason": d.reason, "snippet": d.snippet}
                for d in result.diagnostics
            ],
        }

    @app.post("/iig/messages/process")
    async def process(request: MessageRequest):
        store = _store_for(request)
        result = await process_message(context, request.chat_id, request.message_id, store, _character_for(request))
        return result.to_dict()

    @app.post("/iig/messages/regenerate")
    async def regenerate(request: MessageRequest):
        store = _store_for(request)
        result = await regenerate_message(context, request.chat_id, request.message_id, store, _character_for(request))
        return result.to_dict()

    # ---------------- diagnostics ----------------

    @app.get("/iig/logs")
    async def export_logs():
        filename = context.log_handler.export_filename()
        return PlainTextResponse(
            context.log_handler.export_text(),
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.delete("/iig/logs")
    async def clear_logs():
        context.log_handler.clear()
        return {"cleared": True}

    @app.get("/iig/events")
    async def events():
        queue = context.events.subscribe()

        async def generator():
            try:
                while True:
                    event = await queue.get()
                    yield {"event": "status", "data": json.dumps(event, ensure_ascii=False)}
            finally:
                context.events.unsubscribe(queue)

        return EventSourceResponse(generator())

    return app


app = create_app()


def main():
    logging.basicConfig(
        level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(app, host=Config.HOST, port=Config.PORT)


if __name__ == "__main__":
    main()
