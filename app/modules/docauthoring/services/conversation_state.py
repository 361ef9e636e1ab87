from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from app.modules.docauthoring.services.doc_types import DocType, parse_doc_type
from app.modules.docauthoring.services.intent_router import RoutingIntent

SESSION_STATE_KEY = "conversationSessionState"
LAST_DOCUMENT_KEY = "lastDocumentContext"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class SessionMetadata:
    """Bookkeeping for a legacy conversation session (one per agent)."""

    agent_name: str
    started_at: datetime
    last_activity: datetime
    document_path: Optional[str] = None
    template_id: Optional[str] = None
    question_count: int = 0
    response_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agentName": self.agent_name,
            "documentPath": self.document_path,
            "templateId": self.template_id,
            "startedAt": _iso(self.started_at),
            "lastActivity": _iso(self.last_activity),
            "questionCount": self.question_count,
            "responseCount": self.response_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionMetadata":
        return cls(
            agent_name=data["agentName"],
            started_at=_parse(data["startedAt"]),
            last_activity=_parse(data["lastActivity"]),
            document_path=data.get("documentPath"),
            template_id=data.get("templateId"),
            question_count=int(data.get("questionCount") or 0),
            response_count=int(data.get("responseCount") or 0),
        )


@dataclass
class LastDocumentContext:
    document_path: str
    agent_name: str
    doc_type: Optional[DocType]
    last_activity: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "documentPath": self.document_path,
            "agentName": self.agent_name,
            "docType": self.doc_type.value if self.doc_type else None,
            "lastActivity": _iso(self.last_activity),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LastDocumentContext":
        return cls(
            document_path=data["documentPath"],
            agent_name=data.get("agentName") or "",
            doc_type=parse_doc_type(data.get("docType")),
            last_activity=_parse(data["lastActivity"]),
        )


@dataclass
class PendingRoutingDecision:
    intent: RoutingIntent
    original_input: str
    created_at: datetime
    expires_at: datetime
    session_to_close: Optional[str] = None

    @classmethod
    def open(
        cls,
        intent: RoutingIntent,
        original_input: str,
        now: datetime,
        ttl: timedelta,
        session_to_close: Optional[str] = None,
    ) -> "PendingRoutingDecision":
        return cls(intent, original_input, now, now + ttl, session_to_close)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.intent.action,
            "confidence": self.intent.confidence,
            "reason": self.intent.reason,
            "targetDocType": self.intent.target_doc_type.value if self.intent.target_doc_type else None,
            "targetAgent": self.intent.target_agent,
            "originalInput": self.original_input,
            "sessionToClose": self.session_to_close,
            "createdAt": _iso(self.created_at),
            "expiresAt": _iso(self.expires_at),
        }


@dataclass
class RouterSessionState:
    active_session_id: Optional[str] = None
    sessions_by_agent: Dict[str, str] = field(default_factory=dict)
    session_metadata: Dict[str, SessionMetadata] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "activeSessionId": self.active_session_id,
            "sessionsByAgent": dict(self.sessions_by_agent),
            "sessionMetadata": {sid: meta.to_dict() for sid, meta in self.session_metadata.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RouterSessionState":
        return cls(
            active_session_id=data.get("activeSessionId"),
            sessions_by_agent=dict(data.get("sessionsByAgent") or {}),
            session_metadata={
                sid: SessionMetadata.from_dict(meta) for sid, meta in (data.get("sessionMetadata") or {}).items()
            },
        )
