"""
Document Session Store
Lifecycle of document-drafting sessions: classify -> draft -> refine (repeat) -> complete.

The store is explicitly constructed and owned by whoever composes the router;
there is no process-wide instance. Every model call is caught at its call site and
replaced with deterministic fallback text, so callers never see a model failure.
"""

import json
import logging
import random
import re
import string
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from app.modules.docauthoring.services.context import AuthoringContext
from app.modules.docauthoring.services.doc_types import (
    DEFAULT_DOC_TYPE,
    DocType,
    DocTypeMeta,
    agent_for_doc_type,
    build_document_path,
    get_meta,
    relative_doc_path,
    resolve_doc_type,
    title_from_path,
)
from app.modules.docauthoring.services.document_storage import DocumentStorage
from app.modules.docauthoring.services.llm import LanguageModel, collect_text, user_message
from app.modules.docauthoring.services.prompts.docgen import (
    DOCUMENT_DELIMITER,
    QUESTION_DELIMITER,
    build_classification_prompt,
    build_draft_prompt,
    build_first_question_prompt,
    build_refine_prompt,
)
from core.config import Settings, settings

logger = logging.getLogger(__name__)

_DONE_RE = re.compile(
    r"^\s*(/done|done|finish|finished|complete|that['’]s\s+it|looks\s+good|that\s+works)\s*[!.]?\s*$",
    re.I,
)
_JSON_FENCE_RE = re.compile(r"```(?:json)?\s*", re.I)
_DOC_TYPE_VALUES = {dt.value for dt in DocType}

TITLE_FALLBACK_WORDS = 8
DONE_HINT = "---\n*Type `done` when you're satisfied with the document.*"

FALLBACK_FIRST_QUESTION = "What are the key objectives and success criteria for this project?"
EMPTY_FIRST_QUESTION = "What are the most important aspects you would like to elaborate on?"
NO_MODEL_FIRST_QUESTION = "What should we refine first in this document?"
FALLBACK_NEXT_QUESTION = "What aspect would you like to work on next?"
EMPTY_NEXT_QUESTION = "What else would you like to refine?"
EMPTY_RAW_QUESTION = "What else would you like to add?"


class DocSessionNotFound(KeyError):
    """Continuation requested for a session id the store does not know."""


def is_completion_phrase(text: str) -> bool:
    return bool(_DONE_RE.match(text or ""))


def fallback_title(user_input: str) -> str:
    words = (user_input or "").split()[:TITLE_FALLBACK_WORDS]
    return " ".join(words) or "New Document"


def _new_session_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"docsess_{int(time.time() * 1000)}_{suffix}"


@dataclass
class DocSession:
    id: str
    doc_type: DocType
    agent_name: str
    document_path: str
    turn_count: int
    created_at: datetime
    last_activity: datetime


@dataclass
class DocSessionResult:
    response: str
    session_id: str
    document_path: str
    should_continue: bool


@dataclass
class RefineOutcome:
    updated_content: Optional[str]
    next_question: str


def parse_refine_output(raw: str) -> RefineOutcome:
    """Split `---DOCUMENT--- ... ---QUESTION--- ...`; raw text becomes the question when it doesn't parse."""
    doc_idx = raw.find(DOCUMENT_DELIMITER)
    q_idx = raw.find(QUESTION_DELIMITER)
    if doc_idx != -1 and q_idx != -1 and q_idx > doc_idx:
        updated = raw[doc_idx + len(DOCUMENT_DELIMITER):q_idx].strip()
        question = raw[q_idx + len(QUESTION_DELIMITER):].strip()
        return RefineOutcome(updated or None, question or EMPTY_NEXT_QUESTION)
    return RefineOutcome(None, raw.strip() or EMPTY_RAW_QUESTION)


def parse_classification(raw: str, user_input: str) -> Tuple[DocType, str]:
    """Never raises: malformed JSON yields (prd, first words of the input)."""
    try:
        parsed = json.loads(_JSON_FENCE_RE.sub("", raw or "").strip())
        if not isinstance(parsed, dict):
            raise ValueError("classification is not an object")
    except ValueError:
        return DEFAULT_DOC_TYPE, fallback_title(user_input)

    raw_type = parsed.get("docType")
    doc_type = DocType(raw_type) if isinstance(raw_type, str) and raw_type in _DOC_TYPE_VALUES else DEFAULT_DOC_TYPE
    title = parsed.get("title")
    title = title.strip() if isinstance(title, str) and title.strip() else "New Document"
    return doc_type, title


class DocSessionStore:
    def __init__(
        self,
        storage: DocumentStorage,
        config: Settings = settings,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.storage = storage
        self.config = config
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sessions: Dict[str, DocSession] = {}

    # -------------------- registry --------------------

    def has_session(self, session_id: str) -> bool:
        return session_id in self._sessions

    def get_session(self, session_id: str) -> Optional[DocSession]:
        return self._sessions.get(session_id)

    def list_sessions(self) -> List[DocSession]:
        return list(self._sessions.values())

    def close_session(self, session_id: str) -> bool:
        closed = self._sessions.pop(session_id, None) is not None
        if closed:
            logger.info(f"[doc-session] Closed session {session_id}")
        return closed

    def clear_all(self) -> None:
        self._sessions.clear()

    def _register(self, doc_type: DocType, document_path: str) -> DocSession:
        now = self._clock()
        session = DocSession(
            id=_new_session_id(),
            doc_type=doc_type,
            agent_name=agent_for_doc_type(doc_type),
            document_path=document_path,
            turn_count=1,
            created_at=now,
            last_activity=now,
        )
        self._sessions[session.id] = session
        return session

    # -------------------- lifecycle --------------------

    async def start_new_session(
        self,
        user_input: str,
        ctx: AuthoringContext,
        forced_doc_type: Optional[DocType] = None,
    ) -> DocSessionResult:
        model = ctx.model
        if model is None:
            return self._no_model_result()

        if forced_doc_type is not None:
            doc_type, title = forced_doc_type, fallback_title(user_input)
        else:
            doc_type, title = await self._classify(user_input, model, ctx)
        meta = get_meta(doc_type)

        draft = await self._generate_draft(meta, title, user_input, model, ctx)
        document_path = build_document_path(ctx.workspace_root, doc_type, title)
        await self.storage.write_text(document_path, draft)

        question = await self._generate_first_question(meta, title, draft, model, ctx)
        session = self._register(doc_type, document_path)
        logger.info(f"[doc-session] Started {session.id} ({doc_type.value}) at {document_path}")

        rel = relative_doc_path(ctx.workspace_root, document_path)
        response = (
            f"## {meta.agent_title} - New {meta.doc_label}\n\n"
            f"Created `{rel}` with an initial draft.\n\n"
            "---\n\n"
            f"{question}\n\n"
            "---\n"
            "*Just reply to continue. Type `done` when you're happy with the document.*"
        )
        return DocSessionResult(response, session.id, document_path, True)

    async def start_session_from_existing_document(
        self,
        document_path: str,
        ctx: AuthoringContext,
        template_id: Optional[str] = None,
        agent_name: Optional[str] = None,
        initial_user_input: Optional[str] = None,
    ) -> DocSessionResult:
        doc_type = resolve_doc_type(template_id, agent_name, document_path)
        meta = get_meta(doc_type)
        title = title_from_path(document_path)

        existing = await self._read_or_empty(document_path)
        if not existing.strip():
            await self.storage.write_text(document_path, f"# {title}\n\n[Initial content pending refinement]\n")

        session = self._register(doc_type, document_path)
        logger.info(f"[doc-session] Attached {session.id} to existing {document_path}")

        initial = (initial_user_input or "").strip()
        if initial:
            return await self.continue_session(session.id, initial, ctx)

        if ctx.model is not None:
            current = await self._read_or_empty(document_path)
            question = await self._generate_first_question(meta, title, current, ctx.model, ctx)
        else:
            question = NO_MODEL_FIRST_QUESTION

        rel = relative_doc_path(ctx.workspace_root, document_path)
        response = (
            f"## {meta.agent_title} - Continuing {meta.doc_label}\n\n"
            f"Attached to existing file `{rel}`.\n\n"
            f"{question}\n\n"
            f"{DONE_HINT}"
        )
        return DocSessionResult(response, session.id, document_path, True)

    async def continue_session(self, session_id: str, user_input: str, ctx: AuthoringContext) -> DocSessionResult:
        session = self._sessions.get(session_id)
        if session is None:
            raise DocSessionNotFound(session_id)

        rel = relative_doc_path(ctx.workspace_root, session.document_path)

        if is_completion_phrase(user_input):
            del self._sessions[session_id]
            label = get_meta(session.doc_type).doc_label
            logger.info(f"[doc-session] Completed {session_id} after {session.turn_count} turn(s)")
            return DocSessionResult(
                response=(
                    f"Session complete. Your {label} is saved at `{rel}`.\n\n"
                    "You can:\n"
                    "- Open the file to review the final document\n"
                    "- Start a new session by describing your next project\n"
                    "- Ask for a quality review of the document"
                ),
                session_id=session_id,
                document_path=session.document_path,
                should_continue=False,
            )

        if ctx.model is None:
            self._touch(session)
            return DocSessionResult(
                response=(
                    f"Got your feedback. The file is at `{rel}`.\n"
                    "*(No language model is currently available - connect a model to enable automatic document updates.)*"
                ),
                session_id=session_id,
                document_path=session.document_path,
                should_continue=True,
            )

        current = await self._read_or_empty(session.document_path)
        outcome = await self._refine(get_meta(session.doc_type), current, user_input, session, ctx.model, ctx)
        if outcome.updated_content:
            await self.storage.write_text(session.document_path, outcome.updated_content)

        self._touch(session)
        note = f"*Document updated* (`{rel}`, turn {session.turn_count})\n\n" if outcome.updated_content else ""
        return DocSessionResult(
            response=f"{note}{outcome.next_question}\n\n{DONE_HINT}",
            session_id=session_id,
            document_path=session.document_path,
            should_continue=True,
        )

    # -------------------- model round-trips --------------------

    async def _classify(self, user_input: str, model: LanguageModel, ctx: AuthoringContext) -> Tuple[DocType, str]:
        try:
            raw = await collect_text(model, [user_message(build_classification_prompt(user_input))], ctx.token)
        except Exception as e:
            logger.warning(f"[doc-session] Classification call failed, using defaults: {e}")
            return DEFAULT_DOC_TYPE, fallback_title(user_input)
        return parse_classification(raw, user_input)

    async def _generate_draft(
        self,
        meta: DocTypeMeta,
        title: str,
        user_input: str,
        model: LanguageModel,
        ctx: AuthoringContext,
    ) -> str:
        try:
            content = await collect_text(model, [user_message(build_draft_prompt(meta, title, user_input))], ctx.token)
        except Exception as e:
            logger.warning(f"[doc-session] Draft generation failed: {e}")
            return f"# {title}\n\n*[Initial draft - language model unavailable]*\n"
        return content.strip() or f"# {title}\n\n*[Initial draft - content pending user input]*\n"

    async def _generate_first_question(
        self,
        meta: DocTypeMeta,
        title: str,
        draft: str,
        model: LanguageModel,
        ctx: AuthoringContext,
    ) -> str:
        prompt = build_first_question_prompt(meta, title, draft, self.config.DOC_FIRST_QUESTION_CONTEXT_CHARS)
        try:
            question = await collect_text(model, [user_message(prompt)], ctx.token)
        except Exception as e:
            logger.warning(f"[doc-session] First question generation failed: {e}")
            return FALLBACK_FIRST_QUESTION
        return question.strip() or EMPTY_FIRST_QUESTION

    async def _refine(
        self,
        meta: DocTypeMeta,
        content: str,
        feedback: str,
        session: DocSession,
        model: LanguageModel,
        ctx: AuthoringContext,
    ) -> RefineOutcome:
        prompt = build_refine_prompt(meta, content, feedback, session.turn_count + 1, self.config.DOC_CONTEXT_MAX_CHARS)
        try:
            raw = await collect_text(model, [user_message(prompt)], ctx.token)
        except Exception as e:
            logger.warning(f"[doc-session] Refinement failed for {session.id}, keeping document: {e}")
            return RefineOutcome(None, FALLBACK_NEXT_QUESTION)
        return parse_refine_output(raw)

    # -------------------- helpers --------------------

    def _touch(self, session: DocSession) -> None:
        session.turn_count += 1
        session.last_activity = self._clock()

    async def _read_or_empty(self, path: str) -> str:
        try:
            return await self.storage.read_text(path)
        except FileNotFoundError:
            return ""

    @staticmethod
    def _no_model_result() -> DocSessionResult:
        return DocSessionResult(
            response=(
                "No language model is available.\n\n"
                "Natural-language document creation needs a model: set `OPENAI_API_KEY` and try again.\n\n"
                "In the meantime you can enable auto-chat with an agent and a document path "
                "to keep notes against an existing file."
            ),
            session_id="",
            document_path="",
            should_continue=False,
        )
