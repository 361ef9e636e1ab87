import asyncio
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from fastapi import FastAPI, Request

from app.modules.docauthoring.services.agents import build_default_registry
from app.modules.docauthoring.services.doc_session import DocSessionStore
from app.modules.docauthoring.services.document_storage import DocumentStorage, LocalDocumentStorage
from app.modules.docauthoring.services.llm import LanguageModel, build_default_model
from app.modules.docauthoring.services.section_merge import DocumentUpdateEngine
from app.modules.docauthoring.services.session_router import SessionRouter
from app.modules.docauthoring.services.state_store import KeyValueStore, build_state_store
from core.config import Settings

logger = logging.getLogger(__name__)


class WorkspacePathError(ValueError):
    """A client-supplied path resolves outside the workspace root."""


def resolve_workspace_path(workspace_root: str, relative_path: str) -> str:
    root = os.path.realpath(workspace_root)
    target = os.path.realpath(os.path.join(root, relative_path))
    if os.path.commonpath([root, target]) != root:
        raise WorkspacePathError(f"path escapes the workspace: {relative_path}")
    return target


@dataclass
class ConversationSlot:
    router: SessionRouter
    last_used: datetime
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class ConversationRouterRegistry:
    """One SessionRouter per conversation id, each behind its own lock.

    Slots idle longer than ROUTER_SESSION_IDLE_MINUTES are dropped on the next
    ``get``. Their routing state stays in the key-value store under the
    conversation prefix, so a later message reloads it.
    """

    def __init__(
        self,
        config: Settings,
        storage: DocumentStorage,
        store: KeyValueStore,
        model: Optional[LanguageModel] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self.storage = storage
        self.store = store
        self.model = model
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._slots: Dict[str, ConversationSlot] = {}
        self._guard = asyncio.Lock()

    @property
    def workspace_root(self) -> str:
        return os.path.abspath(self.config.WORKSPACE_ROOT)

    async def get(self, conversation_id: str) -> ConversationSlot:
        async with self._guard:
            now = self._clock()
            self._evict_idle(now)
            slot = self._slots.get(conversation_id)
            if slot is None:
                router = SessionRouter(
                    doc_sessions=DocSessionStore(self.storage, config=self.config, clock=self._clock),
                    agents=build_default_registry(),
                    store=self.store,
                    config=self.config,
                    clock=self._clock,
                    key_prefix=f"{conversation_id}:",
                )
                await router.load_state()
                slot = ConversationSlot(router, last_used=now)
                self._slots[conversation_id] = slot
                logger.info(f"[session-router] Created router for conversation {conversation_id}")
            slot.last_used = now
            return slot

    def lookup(self, conversation_id: str) -> Optional[ConversationSlot]:
        """Existing slot or None; never creates one."""
        slot = self._slots.get(conversation_id)
        if slot is not None:
            slot.last_used = self._clock()
        return slot

    async def evict_idle(self) -> int:
        async with self._guard:
            return self._evict_idle(self._clock())

    def _evict_idle(self, now: datetime) -> int:
        max_idle = timedelta(minutes=self.config.ROUTER_SESSION_IDLE_MINUTES)
        # A held lock means a message is still being routed
        stale = [
            cid for cid, slot in self._slots.items()
            if now - slot.last_used > max_idle and not slot.lock.locked()
        ]
        for cid in stale:
            del self._slots[cid]
        if stale:
            logger.info(f"[session-router] Evicted {len(stale)} idle conversation router(s)")
        return len(stale)

    def conversation_ids(self):
        return list(self._slots)

    async def aclose(self) -> None:
        self._slots.clear()
        dispose = getattr(self.store, "dispose", None)
        if dispose is not None:
            await dispose()


def wire_services(app: FastAPI, config: Settings, model: Optional[LanguageModel] = None, store: Optional[KeyValueStore] = None) -> None:
    """Put the shared collaborators on app.state."""
    logger.info("Wiring doc-authoring services...")
    app.state.settings = config
    storage = LocalDocumentStorage()
    app.state.storage = storage
    app.state.update_engine = DocumentUpdateEngine(storage, document_updates_enabled=config.AUTO_CHAT_DOCUMENT_UPDATES)
    app.state.routers = ConversationRouterRegistry(
        config,
        storage,
        store or build_state_store(config),
        model if model is not None else build_default_model(config),
    )
    logger.info("Service wiring completed")


def get_router_registry(request: Request) -> ConversationRouterRegistry:
    return request.app.state.routers


def get_update_engine(request: Request) -> DocumentUpdateEngine:
    return request.app.state.update_engine
