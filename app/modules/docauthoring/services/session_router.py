"""
Session Router
Single entry point for every user message of one conversation.

Per message, first applicable branch wins:
  1. pending routing decision (confirmation reply)
  2. active document session (with switch-intent override)
  3. auto-chat, unbound, kickoff message -> new document session
  4. auto-chat (document-bound -> doc session, unbound -> agent chat)
  5. legacy conversation session
  6. routing intent policy
  7. plain agent chat
Nothing raises past route_user_input; unexpected failures become routed "error" results.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Literal, Optional, Protocol

from app.modules.docauthoring.services.agents import AgentRegistry, AgentRequest
from app.modules.docauthoring.services.auto_chat import AUTO_CHAT_STATE_KEY, AutoChatContext, AutoChatStateManager
from app.modules.docauthoring.services.context import AuthoringContext
from app.modules.docauthoring.services.conversation_state import (
    LAST_DOCUMENT_KEY,
    SESSION_STATE_KEY,
    LastDocumentContext,
    PendingRoutingDecision,
    RouterSessionState,
    SessionMetadata,
)
from app.modules.docauthoring.services.doc_session import DocSessionResult, DocSessionStore
from app.modules.docauthoring.services.doc_types import DocType, get_meta, relative_doc_path, resolve_doc_type
from app.modules.docauthoring.services.intent_router import (
    IntentInput,
    RoutingIntent,
    RoutingIntentPolicy,
    interpret_confirmation,
    looks_like_project_kickoff,
    looks_like_routing_switch,
    needs_confirmation,
)
from app.modules.docauthoring.services.state_store import KeyValueStore
from core.config import Settings, settings

logger = logging.getLogger(__name__)

RoutedTo = Literal["conversation", "agent", "error"]

NO_AGENT_ERROR = "No active agent available"


@dataclass
class RoutingResult:
    routed_to: RoutedTo
    session_id: Optional[str] = None
    agent_name: Optional[str] = None
    response: Optional[str] = None
    error: Optional[str] = None
    should_continue: Optional[bool] = None


@dataclass
class ConversationTurn:
    agent_message: str
    conversation_complete: bool = False


class ConversationManager(Protocol):
    def get_session(self, session_id: str) -> Optional[Any]: ...

    async def continue_conversation(self, session_id: str, user_input: str) -> ConversationTurn: ...


class SessionRouter:
    def __init__(
        self,
        doc_sessions: DocSessionStore,
        agents: AgentRegistry,
        store: KeyValueStore,
        auto_chat: Optional[AutoChatStateManager] = None,
        conversation_manager: Optional[ConversationManager] = None,
        intent_policy: Optional[RoutingIntentPolicy] = None,
        config: Settings = settings,
        clock: Optional[Callable[[], datetime]] = None,
        key_prefix: str = "",
    ):
        self.doc_sessions = doc_sessions
        self.agents = agents
        self.store = store
        self.config = config
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.key_prefix = key_prefix
        self.auto_chat = auto_chat or AutoChatStateManager(
            store, config=config, clock=self._clock, state_key=f"{key_prefix}{AUTO_CHAT_STATE_KEY}"
        )
        self.conversation_manager = conversation_manager
        self.intent_policy = intent_policy or RoutingIntentPolicy()

        self.active_doc_session_id: Optional[str] = None
        self.pending_decision: Optional[PendingRoutingDecision] = None
        self.last_document: Optional[LastDocumentContext] = None
        self.session_state = RouterSessionState()

    # ==================== entry point ====================

    async def route_user_input(self, message: str, ctx: AuthoringContext) -> RoutingResult:
        try:
            return await self._route(message, ctx)
        except Exception as e:
            logger.error(f"[session-router] Routing failed: {e}", exc_info=True)
            return RoutingResult(
                routed_to="error",
                error=f"Routing failed: {e}",
                response=(
                    "Something went wrong while handling your message. Your documents were not changed.\n\n"
                    "Please send the message again. If it keeps failing, disable auto-chat or start a new document."
                ),
            )

    async def _route(self, message: str, ctx: AuthoringContext) -> RoutingResult:
        text = (message or "").strip()

        # 1. Confirmation gate
        if self.pending_decision is not None:
            if self.pending_decision.is_expired(self._clock()):
                logger.info("[session-router] Pending routing decision expired, discarding")
                self.pending_decision = None
            else:
                return await self._handle_confirmation(text, ctx)

        # 2. Active document session
        if self.active_doc_session_id:
            if not self.doc_sessions.has_session(self.active_doc_session_id):
                logger.info(f"[session-router] Clearing stale doc session {self.active_doc_session_id}")
                self.active_doc_session_id = None
            else:
                override = await self._switch_override(text, ctx)
                if override is not None:
                    return override
                return await self._continue_doc_session(self.active_doc_session_id, text, ctx)

        # 3 + 4. Auto-chat
        auto_ctx = await self.auto_chat.get_context()
        if auto_ctx is not None:
            if not auto_ctx.document_path and looks_like_project_kickoff(text):
                logger.info("[session-router] Kickoff detected during auto-chat, starting a document session")
                await self.auto_chat.disable()
                return await self._start_doc_session(text, ctx)
            return await self._route_auto_chat(auto_ctx, text, ctx)

        # 5. Legacy conversation session
        if self.session_state.active_session_id and self.conversation_manager is not None:
            legacy = await self._continue_legacy_session(text)
            if legacy is not None:
                return legacy

        # 6. Routing intent
        if text:
            intent = await self.intent_policy.evaluate(self._intent_input(text), ctx.model, ctx.token)
            return await self._act_on_intent(intent, text, ctx)

        # 7. Plain agent chat
        return await self._route_to_agent(text, ctx)

    # ==================== document sessions ====================

    async def _switch_override(self, text: str, ctx: AuthoringContext) -> Optional[RoutingResult]:
        if ctx.model is None or not looks_like_routing_switch(text, has_last_document=True):
            return None
        classifier = self.intent_policy.classifier_for(ctx.model)
        intent = await classifier.classify(self._intent_input(text), ctx.token)
        if intent.action != "start_new_doc":
            return None
        logger.info(f"[session-router] Switch intent while {self.active_doc_session_id} is open: {intent.reason}")
        return await self._act_on_intent(intent, text, ctx, session_to_close=self.active_doc_session_id)

    async def _continue_doc_session(self, session_id: str, text: str, ctx: AuthoringContext) -> RoutingResult:
        session = self.doc_sessions.get_session(session_id)
        result = await self.doc_sessions.continue_session(session_id, text, ctx)
        await self._remember_document(result.document_path, session.agent_name, session.doc_type)

        if not result.should_continue:
            self.active_doc_session_id = None
            auto_ctx = self.auto_chat.state.context
            if auto_ctx is not None and auto_ctx.document_path == result.document_path:
                await self.auto_chat.disable()
        elif self.auto_chat.state.is_active:
            await self.auto_chat.update_activity()

        return self._conversation_result(result, session.agent_name)

    async def _start_doc_session(
        self,
        text: str,
        ctx: AuthoringContext,
        forced_doc_type: Optional[DocType] = None,
    ) -> RoutingResult:
        result = await self.doc_sessions.start_new_session(text, ctx, forced_doc_type=forced_doc_type)
        if not result.session_id:
            return RoutingResult(routed_to="conversation", response=result.response, should_continue=False)

        session = self.doc_sessions.get_session(result.session_id)
        self.active_doc_session_id = result.session_id
        self.agents.set_current_agent(session.agent_name)
        await self._remember_document(session.document_path, session.agent_name, session.doc_type)
        return self._conversation_result(result, session.agent_name)

    async def _attach_to_document(
        self,
        document_path: str,
        text: str,
        ctx: AuthoringContext,
        template_id: Optional[str] = None,
        agent_name: Optional[str] = None,
    ) -> RoutingResult:
        result = await self.doc_sessions.start_session_from_existing_document(
            document_path,
            ctx,
            template_id=template_id,
            agent_name=agent_name,
            initial_user_input=text,
        )
        doc_type = resolve_doc_type(template_id, agent_name, document_path)
        resolved_agent = get_meta(doc_type).agent_name
        self.active_doc_session_id = result.session_id if result.should_continue else None
        await self._remember_document(document_path, resolved_agent, doc_type)
        return self._conversation_result(result, resolved_agent)

    async def _resume_last_document(self, text: str, ctx: AuthoringContext) -> RoutingResult:
        last = self.last_document
        logger.info(f"[session-router] Resuming last document {last.document_path}")
        return await self._attach_to_document(
            last.document_path,
            text,
            ctx,
            template_id=last.doc_type.value if last.doc_type else None,
            agent_name=last.agent_name,
        )

    @staticmethod
    def _conversation_result(result: DocSessionResult, agent_name: str) -> RoutingResult:
        return RoutingResult(
            routed_to="conversation",
            session_id=result.session_id,
            agent_name=agent_name,
            response=result.response,
            should_continue=result.should_continue,
        )

    # ==================== auto-chat ====================

    async def _route_auto_chat(self, auto_ctx: AutoChatContext, text: str, ctx: AuthoringContext) -> RoutingResult:
        await self.auto_chat.update_activity()
        if auto_ctx.document_path:
            result = await self._attach_to_document(
                auto_ctx.document_path,
                text,
                ctx,
                template_id=auto_ctx.template_id,
                agent_name=auto_ctx.agent_name,
            )
            if result.should_continue:
                await self.auto_chat.set_conversation_session_id(result.session_id)
            else:
                await self.auto_chat.disable()
            return result

        result = await self._route_to_agent(text, ctx, agent_name=auto_ctx.agent_name)
        if result.routed_to == "agent":
            result.should_continue = True
            ctx.emit(self.auto_chat.continuation_prompt())
        return result

    async def enable_auto_chat(
        self,
        agent_name: str,
        document_path: Optional[str] = None,
        template_id: Optional[str] = None,
    ) -> bool:
        if self.agents.get_agent(agent_name) is not None:
            self.agents.set_current_agent(agent_name)
        return await self.auto_chat.enable(agent_name, document_path=document_path, template_id=template_id)

    async def disable_auto_chat(self) -> None:
        await self.auto_chat.disable()

    # ==================== routing intent ====================

    def _intent_input(self, text: str) -> IntentInput:
        current = self.agents.get_current_agent()
        last = self.last_document
        return IntentInput(
            message=text,
            current_agent=current.name if current else None,
            last_document_path=last.document_path if last else None,
            last_doc_type=last.doc_type.value if last and last.doc_type else None,
        )

    async def _act_on_intent(
        self,
        intent: RoutingIntent,
        text: str,
        ctx: AuthoringContext,
        session_to_close: Optional[str] = None,
    ) -> RoutingResult:
        if intent.action == "resume_last_doc":
            if self.last_document is None:
                return await self._route_to_agent(text, ctx)
            return await self._resume_last_document(text, ctx)

        if intent.action == "start_new_doc":
            if needs_confirmation(intent, self._intent_input(text)):
                ttl = timedelta(minutes=self.config.PENDING_DECISION_TTL_MINUTES)
                self.pending_decision = PendingRoutingDecision.open(
                    intent, text, self._clock(), ttl, session_to_close=session_to_close
                )
                logger.info(f"[session-router] Awaiting confirmation for start_new_doc ({intent.confidence:.2f})")
                current = self.agents.get_current_agent()
                return RoutingResult(
                    routed_to="agent",
                    agent_name=current.name if current else None,
                    response=self._confirmation_prompt(intent, ctx, session_to_close),
                    should_continue=True,
                )
            return await self._execute_start(intent, text, ctx, session_to_close)

        if intent.target_agent and self.agents.get_agent(intent.target_agent) is not None:
            self.agents.set_current_agent(intent.target_agent)
        return await self._route_to_agent(text, ctx)

    async def _execute_start(
        self,
        intent: RoutingIntent,
        text: str,
        ctx: AuthoringContext,
        session_to_close: Optional[str],
    ) -> RoutingResult:
        if session_to_close:
            self.doc_sessions.close_session(session_to_close)
            if self.active_doc_session_id == session_to_close:
                self.active_doc_session_id = None
        return await self._start_doc_session(text, ctx, forced_doc_type=intent.target_doc_type)

    def _confirmation_prompt(self, intent: RoutingIntent, ctx: AuthoringContext, session_to_close: Optional[str]) -> str:
        label = get_meta(intent.target_doc_type).doc_label if intent.target_doc_type else "document"
        lines = [f"It sounds like you want to start a new {label}. ({intent.reason})", ""]
        if self.last_document is not None:
            rel = relative_doc_path(ctx.workspace_root, self.last_document.document_path)
            kept = f"Your current document `{rel}` will be kept"
            lines.append(kept + (" and its editing session closed." if session_to_close else "."))
            lines.append("")
        lines.append("Reply `yes` to start the new document, or `no` to keep working on the current one.")
        return "\n".join(lines)

    async def _handle_confirmation(self, text: str, ctx: AuthoringContext) -> RoutingResult:
        pending = self.pending_decision
        reply = interpret_confirmation(text)
        current = self.agents.get_current_agent()
        agent_name = current.name if current else None

        if reply == "yes":
            self.pending_decision = None
            logger.info(f"[session-router] Confirmed {pending.intent.action}")
            return await self._execute_start(pending.intent, pending.original_input, ctx, pending.session_to_close)

        if reply == "no":
            self.pending_decision = None
            logger.info("[session-router] Routing decision declined")
            kept = ""
            if self.last_document is not None:
                kept = f" `{relative_doc_path(ctx.workspace_root, self.last_document.document_path)}` stays as it is."
            follow_up = (
                "Keep replying to continue the current document."
                if self.active_doc_session_id
                else "Tell me what you'd like to do next."
            )
            return RoutingResult(
                routed_to="agent",
                agent_name=agent_name,
                response=f"Okay, no new document.{kept}\n\n{follow_up}",
                should_continue=bool(self.active_doc_session_id),
            )

        return RoutingResult(
            routed_to="agent",
            agent_name=agent_name,
            response="I didn't catch that.\n\n" + self._confirmation_prompt(pending.intent, ctx, pending.session_to_close),
            should_continue=True,
        )

    # ==================== agent fallback ====================

    async def _route_to_agent(self, text: str, ctx: AuthoringContext, agent_name: Optional[str] = None) -> RoutingResult:
        agent = self.agents.get_agent(agent_name) if agent_name else None
        agent = agent or self.agents.get_current_agent()
        if agent is None:
            return RoutingResult(
                routed_to="error",
                error=NO_AGENT_ERROR,
                response="No agent is active. Enable auto-chat with an agent, or describe a project to start a document.",
            )
        request = AgentRequest(
            prompt=text,
            document_path=self.last_document.document_path if self.last_document else None,
            model=ctx.model,
            token=ctx.token,
        )
        response = await agent.handle(request)
        return RoutingResult(routed_to="agent", agent_name=agent.name, response=response.content, should_continue=False)

    # ==================== legacy conversation sessions ====================

    async def _continue_legacy_session(self, text: str) -> Optional[RoutingResult]:
        await self.cleanup_inactive_sessions()
        session_id = self.session_state.active_session_id
        if session_id is None:
            return None

        session = self.conversation_manager.get_session(session_id)
        if session is None or not getattr(session, "is_active", True):
            logger.info(f"[session-router] Conversation session {session_id} is gone, clearing")
            await self.clear_active_session()
            return None

        try:
            turn = await self.conversation_manager.continue_conversation(session_id, text)
        except Exception as e:
            logger.warning(f"[session-router] Conversation session {session_id} failed: {e}")
            await self.clear_active_session()
            return RoutingResult(
                routed_to="error",
                session_id=session_id,
                error=f"Conversation error: {e}",
                response="The conversation hit an error and was closed. Send your message again to continue with the agent.",
            )

        await self.update_session_activity(session_id)
        meta = self.session_state.session_metadata.get(session_id)
        if turn.conversation_complete:
            await self.clear_active_session()
        return RoutingResult(
            routed_to="conversation",
            session_id=session_id,
            agent_name=meta.agent_name if meta else None,
            response=turn.agent_message,
            should_continue=not turn.conversation_complete,
        )

    def has_active_session(self) -> bool:
        return self.session_state.active_session_id is not None

    async def set_active_session(self, session_id: str, metadata: Optional[SessionMetadata] = None) -> None:
        if metadata is None:
            current = self.agents.get_current_agent()
            now = self._clock()
            metadata = SessionMetadata(
                agent_name=current.name if current else "unknown",
                started_at=now,
                last_activity=now,
            )
        self.session_state.active_session_id = session_id
        self.session_state.session_metadata[session_id] = metadata
        self.session_state.sessions_by_agent[metadata.agent_name] = session_id
        await self._persist_session_state()

    async def clear_active_session(self) -> None:
        session_id = self.session_state.active_session_id
        if session_id is None:
            return
        meta = self.session_state.session_metadata.pop(session_id, None)
        if meta and self.session_state.sessions_by_agent.get(meta.agent_name) == session_id:
            del self.session_state.sessions_by_agent[meta.agent_name]
        self.session_state.active_session_id = None
        await self._persist_session_state()

    def get_session_metadata(self, session_id: str) -> Optional[SessionMetadata]:
        return self.session_state.session_metadata.get(session_id)

    def get_session_by_agent(self, agent_name: str) -> Optional[str]:
        return self.session_state.sessions_by_agent.get(agent_name)

    async def update_session_activity(self, session_id: str) -> None:
        meta = self.session_state.session_metadata.get(session_id)
        if meta is None:
            return
        meta.last_activity = self._clock()
        meta.response_count += 1
        await self._persist_session_state()

    async def cleanup_inactive_sessions(self, max_idle: Optional[timedelta] = None) -> int:
        max_idle = max_idle or timedelta(minutes=self.config.ROUTER_SESSION_IDLE_MINUTES)
        now = self._clock()
        stale = [sid for sid, meta in self.session_state.session_metadata.items() if now - meta.last_activity > max_idle]
        for sid in stale:
            meta = self.session_state.session_metadata.pop(sid)
            if self.session_state.sessions_by_agent.get(meta.agent_name) == sid:
                del self.session_state.sessions_by_agent[meta.agent_name]
            if self.session_state.active_session_id == sid:
                self.session_state.active_session_id = None
        if stale:
            logger.info(f"[session-router] Cleaned up {len(stale)} inactive session(s)")
            await self._persist_session_state()
        return len(stale)

    def get_session_state(self) -> RouterSessionState:
        return RouterSessionState(
            active_session_id=self.session_state.active_session_id,
            sessions_by_agent=dict(self.session_state.sessions_by_agent),
            session_metadata=dict(self.session_state.session_metadata),
        )

    # ==================== persistence ====================

    async def load_state(self) -> None:
        await self.auto_chat.load()
        try:
            raw_state = await self.store.get(self._key(SESSION_STATE_KEY))
            if raw_state:
                self.session_state = RouterSessionState.from_dict(raw_state)
            raw_last = await self.store.get(self._key(LAST_DOCUMENT_KEY))
            if raw_last:
                self.last_document = LastDocumentContext.from_dict(raw_last)
        except Exception as e:
            logger.warning(f"[session-router] Failed to restore router state: {e}")

    def _key(self, name: str) -> str:
        return f"{self.key_prefix}{name}"

    async def _remember_document(self, document_path: str, agent_name: str, doc_type: Optional[DocType]) -> None:
        if not document_path:
            return
        self.last_document = LastDocumentContext(document_path, agent_name, doc_type, self._clock())
        try:
            await self.store.set(self._key(LAST_DOCUMENT_KEY), self.last_document.to_dict())
        except Exception as e:
            logger.warning(f"[session-router] Failed to persist last document: {e}")

    async def _persist_session_state(self) -> None:
        try:
            await self.store.set(self._key(SESSION_STATE_KEY), self.session_state.to_dict())
        except Exception as e:
            logger.warning(f"[session-router] Failed to persist session state: {e}")

    def snapshot(self) -> Dict[str, Any]:
        active = self.doc_sessions.get_session(self.active_doc_session_id) if self.active_doc_session_id else None
        return {
            "active_doc_session": {
                "session_id": active.id,
                "doc_type": active.doc_type.value,
                "agent_name": active.agent_name,
                "document_path": active.document_path,
                "turn_count": active.turn_count,
            } if active else None,
            "pending_decision": self.pending_decision.to_dict() if self.pending_decision else None,
            "last_document": self.last_document.to_dict() if self.last_document else None,
            "auto_chat": self.auto_chat.session_stats(),
            "conversation_sessions": self.session_state.to_dict(),
        }
