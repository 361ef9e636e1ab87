from fastapi import APIRouter, Depends, HTTPException
import logging
import uuid

# Import DTOs only
from app.modules.docauthoring.schema.routing import (
    AutoChatEnableRequest,
    AutoChatStatusResponse,
    ConversationRef,
    RouteRequest,
    RouteResponse,
    SessionSnapshotResponse,
)
from app.modules.docauthoring.schema.documents import SectionUpdateRequest, SectionUpdateResponse

from app.modules.docauthoring.services.context import AuthoringContext
from app.modules.docauthoring.services.registry import (
    ConversationRouterRegistry,
    ConversationSlot,
    WorkspacePathError,
    get_router_registry,
    get_update_engine,
    resolve_workspace_path,
)
from app.modules.docauthoring.services.section_merge import (
    DocumentUpdateEngine,
    SectionUpdate,
    SectionUpdateError,
    UpdateMode,
)
from core.config import settings

logger = logging.getLogger(__name__)

v1 = APIRouter(prefix=f"{settings.FASTAPI_API_V1_PATH}/docs", tags=["Doc Authoring"])
router = v1


def _workspace_path(registry: ConversationRouterRegistry, relative_path: str) -> str:
    try:
        return resolve_workspace_path(registry.workspace_root, relative_path)
    except WorkspacePathError as e:
        raise HTTPException(status_code=400, detail=str(e))


@v1.post("/route", response_model=RouteResponse)
async def route_message(
    body: RouteRequest,
    registry: ConversationRouterRegistry = Depends(get_router_registry),
):
    conversation_id = body.conversation_id or uuid.uuid4().hex
    slot = await registry.get(conversation_id)
    ctx = AuthoringContext(workspace_root=registry.workspace_root, model=registry.model)

    # One message at a time per conversation
    async with slot.lock:
        result = await slot.router.route_user_input(body.message, ctx)

    logger.info(f"[route] conversation={conversation_id} routed_to={result.routed_to} session={result.session_id}")
    return RouteResponse(
        conversation_id=conversation_id,
        routed_to=result.routed_to,
        session_id=result.session_id or None,
        agent_name=result.agent_name,
        response=result.response,
        error=result.error,
        should_continue=result.should_continue,
    )


@v1.post("/auto-chat/enable", response_model=AutoChatStatusResponse)
async def enable_auto_chat(
    body: AutoChatEnableRequest,
    registry: ConversationRouterRegistry = Depends(get_router_registry),
):
    document_path = _workspace_path(registry, body.document_path) if body.document_path else None
    slot = await registry.get(body.conversation_id)
    async with slot.lock:
        if slot.router.agents.get_agent(body.agent_name) is None:
            known = ", ".join(slot.router.agents.list_agents())
            raise HTTPException(status_code=404, detail=f"Unknown agent: {body.agent_name} (known: {known})")
        enabled = await slot.router.enable_auto_chat(body.agent_name, document_path, body.template_id)
        if not enabled:
            raise HTTPException(status_code=409, detail="Auto-chat is disabled in configuration")
        stats = slot.router.auto_chat.session_stats()
        prompt = slot.router.auto_chat.activation_prompt()
    return AutoChatStatusResponse(conversation_id=body.conversation_id, prompt=prompt, **stats)


def _known_slot(registry: ConversationRouterRegistry, conversation_id: str) -> ConversationSlot:
    slot = registry.lookup(conversation_id)
    if slot is None:
        raise HTTPException(status_code=404, detail=f"Unknown conversation: {conversation_id}")
    return slot


@v1.post("/auto-chat/disable", response_model=AutoChatStatusResponse)
async def disable_auto_chat(
    body: ConversationRef,
    registry: ConversationRouterRegistry = Depends(get_router_registry),
):
    slot = _known_slot(registry, body.conversation_id)
    async with slot.lock:
        await slot.router.disable_auto_chat()
        stats = slot.router.auto_chat.session_stats()
    return AutoChatStatusResponse(conversation_id=body.conversation_id, **stats)


@v1.get("/auto-chat/status", response_model=AutoChatStatusResponse)
async def auto_chat_status(
    conversation_id: str,
    registry: ConversationRouterRegistry = Depends(get_router_registry),
):
    slot = _known_slot(registry, conversation_id)
    async with slot.lock:
        await slot.router.auto_chat.is_active()  # lazily expires a timed-out context
        stats = slot.router.auto_chat.session_stats()
    return AutoChatStatusResponse(conversation_id=conversation_id, **stats)


@v1.get("/sessions/{conversation_id}", response_model=SessionSnapshotResponse)
async def session_snapshot(
    conversation_id: str,
    registry: ConversationRouterRegistry = Depends(get_router_registry),
):
    slot = _known_slot(registry, conversation_id)
    async with slot.lock:
        state = slot.router.snapshot()
    return SessionSnapshotResponse(conversation_id=conversation_id, state=state)


@v1.post("/documents/sections", response_model=SectionUpdateResponse)
async def update_section(
    body: SectionUpdateRequest,
    registry: ConversationRouterRegistry = Depends(get_router_registry),
    engine: DocumentUpdateEngine = Depends(get_update_engine),
):
    path = _workspace_path(registry, body.document_path)
    if not await engine.storage.exists(path):
        raise HTTPException(status_code=404, detail=f"Document not found: {body.document_path}")

    mode = UpdateMode(body.mode)
    if mode is not UpdateMode.INSERT_AT_OFFSET and not body.section.strip():
        raise HTTPException(status_code=422, detail="section is required for this mode")

    update = SectionUpdate(section=body.section, content=body.content, mode=mode, offset=body.offset)
    try:
        content = await engine.apply_section_updates(path, [update])
    except SectionUpdateError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return SectionUpdateResponse(
        document_path=body.document_path,
        section=body.section,
        mode=mode.value,
        content=content,
    )
