"""
Auto-Chat Context
A time-boxed "sticky agent" binding for one conversation, persisted through the key/value store.

Expiry is lazy: every read compares now - last_activity against the configured
timeout and clears the state when it has lapsed. Persistence failures are logged
and swallowed; the in-memory state stays authoritative for the running process.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from app.modules.docauthoring.services.state_store import KeyValueStore
from core.config import Settings, settings

logger = logging.getLogger(__name__)

AUTO_CHAT_STATE_KEY = "autoChatState"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class AutoChatContext:
    agent_name: str
    enabled_at: datetime
    last_activity: datetime
    document_path: Optional[str] = None
    template_id: Optional[str] = None
    conversation_session_id: Optional[str] = None


@dataclass
class AutoChatState:
    is_active: bool = False
    context: Optional[AutoChatContext] = None
    session_start_time: Optional[datetime] = None
    last_user_input: Optional[datetime] = None
    message_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        ctx = None
        if self.context:
            ctx = asdict(self.context)
            ctx["enabled_at"] = _iso(self.context.enabled_at)
            ctx["last_activity"] = _iso(self.context.last_activity)
        return {
            "isActive": self.is_active,
            "context": ctx,
            "sessionStartTime": _iso(self.session_start_time),
            "lastUserInput": _iso(self.last_user_input),
            "messageCount": self.message_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AutoChatState":
        raw_ctx = data.get("context")
        ctx = None
        if raw_ctx:
            ctx = AutoChatContext(
                agent_name=raw_ctx["agent_name"],
                enabled_at=_parse(raw_ctx["enabled_at"]),
                last_activity=_parse(raw_ctx["last_activity"]),
                document_path=raw_ctx.get("document_path"),
                template_id=raw_ctx.get("template_id"),
                conversation_session_id=raw_ctx.get("conversation_session_id"),
            )
        return cls(
            is_active=bool(data.get("isActive")),
            context=ctx,
            session_start_time=_parse(data.get("sessionStartTime")),
            last_user_input=_parse(data.get("lastUserInput")),
            message_count=int(data.get("messageCount") or 0),
        )


class AutoChatStateManager:
    def __init__(
        self,
        store: KeyValueStore,
        config: Settings = settings,
        clock: Optional[Callable[[], datetime]] = None,
        state_key: str = AUTO_CHAT_STATE_KEY,
    ):
        self.store = store
        self.config = config
        self.state_key = state_key
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.state = AutoChatState()

    @property
    def timeout(self) -> timedelta:
        return timedelta(minutes=self.config.AUTO_CHAT_TIMEOUT_MINUTES)

    async def load(self) -> None:
        try:
            data = await self.store.get(self.state_key)
        except Exception as e:
            logger.warning(f"[auto-chat] Failed to load state: {e}")
            return
        if not data:
            return
        try:
            self.state = AutoChatState.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"[auto-chat] Ignoring unreadable persisted state: {e}")
            return
        logger.info(
            f"[auto-chat] State loaded: active={self.state.is_active} "
            f"agent={self.state.context.agent_name if self.state.context else None}"
        )
        await self.cleanup_expired()

    async def enable(
        self,
        agent_name: str,
        document_path: Optional[str] = None,
        template_id: Optional[str] = None,
        conversation_session_id: Optional[str] = None,
    ) -> bool:
        """Returns False (and changes nothing) when auto-chat is disabled in configuration."""
        if not self.config.AUTO_CHAT_ENABLED:
            logger.info("[auto-chat] Auto-chat is disabled in configuration")
            return False

        now = self._clock()
        logger.info(f"[auto-chat] Enabling for agent={agent_name} document={document_path}")
        self.state = AutoChatState(
            is_active=True,
            context=AutoChatContext(
                agent_name=agent_name,
                enabled_at=now,
                last_activity=now,
                document_path=document_path,
                template_id=template_id,
                conversation_session_id=conversation_session_id,
            ),
            session_start_time=now,
        )
        await self._save()
        return True

    async def disable(self) -> None:
        logger.info(f"[auto-chat] Disabling (was_active={self.state.is_active}, messages={self.state.message_count})")
        self.state = AutoChatState()
        await self._save()

    def _expired(self) -> bool:
        ctx = self.state.context
        return bool(self.state.is_active and ctx and self._clock() - ctx.last_activity > self.timeout)

    async def is_active(self) -> bool:
        if self._expired():
            idle = int((self._clock() - self.state.context.last_activity).total_seconds())
            logger.info(f"[auto-chat] Session timed out after {idle}s idle")
            await self.disable()
            return False
        return self.state.is_active

    async def get_context(self) -> Optional[AutoChatContext]:
        if not await self.is_active():
            return None
        return self.state.context

    async def update_activity(self) -> None:
        if self.state.is_active and self.state.context:
            now = self._clock()
            self.state.context.last_activity = now
            self.state.last_user_input = now
            self.state.message_count += 1
            await self._save()

    async def set_conversation_session_id(self, session_id: Optional[str]) -> None:
        if self.state.context:
            self.state.context.conversation_session_id = session_id
            await self._save()

    async def cleanup_expired(self) -> None:
        if self._expired():
            logger.info(f"[auto-chat] Cleaning up expired session for {self.state.context.agent_name}")
            await self.disable()

    def session_stats(self) -> Dict[str, Any]:
        ctx = self.state.context
        stats: Dict[str, Any] = {
            "is_active": self.state.is_active,
            "agent_name": ctx.agent_name if ctx else None,
            "message_count": self.state.message_count,
            "document_path": ctx.document_path if ctx else None,
            "session_duration": None,
        }
        if self.state.session_start_time:
            stats["session_duration"] = round((self._clock() - self.state.session_start_time).total_seconds())
        return stats

    def activation_prompt(self) -> str:
        ctx = self.state.context
        if not ctx:
            return ""
        lines = [f"**Agent set: {ctx.agent_name}**"]
        if ctx.document_path:
            lines.append(f"**Document:** {ctx.document_path}")
        lines.append("")
        lines.append("Ready for conversation. Just type your next message; no command prefix is needed.")
        if ctx.document_path and self.config.AUTO_CHAT_DOCUMENT_UPDATES:
            lines.append("Document updates will be saved automatically during our conversation.")
        lines += [
            "",
            "What would you like to work on?",
            "- Tell me about your project requirements",
            "- Help me develop the document content",
            "- Review and improve existing content",
        ]
        return "\n".join(lines) + "\n"

    def continuation_prompt(self) -> str:
        ctx = self.state.context
        if not ctx:
            return ""
        text = "\n**Continue the conversation** - ready for your next response.\n"
        if ctx.document_path:
            text += f"**Document updates will be saved to:** {ctx.document_path}\n"
        return text

    async def _save(self) -> None:
        try:
            await self.store.set(self.state_key, self.state.to_dict())
        except Exception as e:
            logger.warning(f"[auto-chat] Failed to persist state: {e}")
