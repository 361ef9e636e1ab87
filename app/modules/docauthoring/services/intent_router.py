"""
Routing Intent Policy
Decides, for a message that arrives with no open document session, whether to
start a new document, resume the last one, or keep chatting with the current agent.

The fast paths are an ordered list of pure predicate -> decision rules. The one
ambiguous case (a routing-switch candidate) is delegated to an IntentClassifier;
the model-assisted classifier falls back to the heuristic one on any failure.
All vocabularies are English-only.
"""

import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Callable, List, Literal, Optional, Protocol

from app.modules.docauthoring.services.doc_session import is_completion_phrase
from app.modules.docauthoring.services.doc_types import DocType, infer_doc_type_from_text, parse_doc_type
from app.modules.docauthoring.services.llm import CancellationToken, LanguageModel, collect_text, user_message
from app.modules.docauthoring.services.prompts.docgen import build_routing_intent_prompt

logger = logging.getLogger(__name__)

RoutingAction = Literal["start_new_doc", "resume_last_doc", "route_to_agent"]
ConfirmationReply = Literal["yes", "no", "unclear"]

ROUTING_ACTIONS = ("start_new_doc", "resume_last_doc", "route_to_agent")

CONFIRMATION_THRESHOLD = 0.9
EXPLICIT_NEW_DOC_THRESHOLD = 0.7
MIN_KICKOFF_CHARS = 24
MIN_CONTEXTUAL_SWITCH_CHARS = 12


def _words(*terms: str) -> re.Pattern:
    return re.compile(r"\b(" + "|".join(terms) + r")\b", re.I)


REVISION_VERBS = _words(
    "fix", "improve", "update", "revise", "refine", "iterate", "polish",
    "adjust", "correct", "rewrite", "edit", "expand", "clarify", "address",
)
DOCUMENT_NOUNS = _words(
    "document", "doc", "docs", "draft", "file", "section", "sections",
    "prd", "spec", "specification", "requirements", "design doc",
)
REVIEW_CONTINUATION = _words(
    "the issues", "issues found", "from the review", "review feedback", "review comments",
    "the feedback", "the comments", "the gaps", "the findings", "what we discussed",
)

SWITCH_VERBS = _words(
    "switch", "change", "move", "use", "instead", "start over", "new", "another", "different", "separate",
)
ROUTING_TARGETS = _words(
    "agent", "document", "doc", "file", "prd", "requirements", "design", "spec", "brainstorm", "idea",
)
CONTEXTUAL_SWITCH_WORDS = _words("new", "another", "different", "instead", "switch", "change")

DIRECT_QUESTION_OPENERS = {
    "what", "how", "why", "when", "where", "who", "which", "whose",
    "can", "could", "should", "would", "is", "are", "do", "does", "did", "will",
}
KICKOFF_PATTERNS = [
    re.compile(r"\bthis\s+will\s+be\s+an?\b", re.I),
    re.compile(r"\bi\s+want\s+to\s+(build|create|develop|design)\b", re.I),
    re.compile(r"\bwe\s+(need|are\s+building|are\s+creating|are\s+developing)\b", re.I),
    re.compile(r"\blet['’]?s\s+(build|create|develop|design|write|draft)\b", re.I),
    re.compile(r"\blet\s+us\s+(build|create|develop|design|write|draft)\b", re.I),
]
KICKOFF_NOUNS = _words(
    "project", "product", "application", "platform", "system", "mvp",
    "prd", "requirements", "design[- ]doc", "spec",
)

EXPLICIT_NEW_DOC = re.compile(
    r"\b(new|another|separate|fresh|different|brand[- ]new)\s+(\w+\s+){0,2}"
    r"(doc|document|prd|spec|specification|requirements(\s+doc(ument)?)?|design(\s+doc(ument)?)?|brainstorm|idea\s+doc(ument)?)\b",
    re.I,
)

AFFIRMATIVE = {
    "yes", "y", "yeah", "yep", "yup", "sure", "ok", "okay", "confirm", "confirmed",
    "proceed", "go ahead", "do it", "yes please", "please do", "correct",
}
NEGATIVE = {
    "no", "n", "nope", "nah", "cancel", "stop", "don't", "do not", "never mind",
    "nevermind", "no thanks", "keep it", "keep going", "abort",
}


def _contains_any(text: str, patterns) -> bool:
    return any(p.search(text) for p in patterns)


# -------------------- predicates --------------------

def looks_like_project_kickoff(message: str) -> bool:
    msg = (message or "").strip()
    if len(msg) < MIN_KICKOFF_CHARS:
        return False
    first_word = re.split(r"\W+", msg.lower(), maxsplit=1)[0]
    if first_word in DIRECT_QUESTION_OPENERS:
        return False
    return _contains_any(msg, KICKOFF_PATTERNS) or bool(KICKOFF_NOUNS.search(msg))


def looks_like_document_revision(message: str) -> bool:
    msg = (message or "").strip()
    if not msg or is_completion_phrase(msg) or looks_like_project_kickoff(msg):
        return False
    if not REVISION_VERBS.search(msg):
        return False
    return bool(DOCUMENT_NOUNS.search(msg) or REVIEW_CONTINUATION.search(msg))


def looks_like_routing_switch(message: str, has_last_document: bool = False) -> bool:
    msg = (message or "").strip()
    if not msg:
        return False
    if SWITCH_VERBS.search(msg) and ROUTING_TARGETS.search(msg):
        return True
    return has_last_document and len(msg) >= MIN_CONTEXTUAL_SWITCH_CHARS and bool(CONTEXTUAL_SWITCH_WORDS.search(msg))


def looks_like_explicit_new_doc_request(message: str) -> bool:
    return bool(EXPLICIT_NEW_DOC.search(message or ""))


def interpret_confirmation(message: str) -> ConfirmationReply:
    normalized = re.sub(r"[^\w\s']", " ", (message or "").lower())
    normalized = re.sub(r"\s+", " ", normalized).strip()
    if normalized in AFFIRMATIVE:
        return "yes"
    if normalized in NEGATIVE:
        return "no"
    return "unclear"


# -------------------- decisions --------------------

@dataclass
class RoutingIntent:
    action: RoutingAction
    confidence: float
    reason: str
    requires_confirmation: bool = False
    target_doc_type: Optional[DocType] = None
    target_agent: Optional[str] = None


@dataclass
class IntentInput:
    message: str
    current_agent: Optional[str] = None
    last_document_path: Optional[str] = None
    last_doc_type: Optional[str] = None

    @property
    def has_last_document(self) -> bool:
        return bool(self.last_document_path)


def needs_confirmation(intent: RoutingIntent, inp: IntentInput) -> bool:
    """Only start_new_doc over an existing last document is gated; resuming never is."""
    if intent.action != "start_new_doc" or not inp.has_last_document:
        return False
    if looks_like_explicit_new_doc_request(inp.message) and intent.confidence >= EXPLICIT_NEW_DOC_THRESHOLD:
        return False
    return intent.requires_confirmation or intent.confidence < CONFIRMATION_THRESHOLD


class IntentClassifier(Protocol):
    async def classify(self, inp: IntentInput, token: Optional[CancellationToken] = None) -> RoutingIntent: ...


class HeuristicIntentClassifier:
    """Pattern-only classification; confidences stay below the confirmation threshold."""

    async def classify(self, inp: IntentInput, token: Optional[CancellationToken] = None) -> RoutingIntent:
        return self.classify_sync(inp)

    def classify_sync(self, inp: IntentInput) -> RoutingIntent:
        msg = inp.message
        if inp.has_last_document and looks_like_document_revision(msg):
            return RoutingIntent("resume_last_doc", 0.7, "Revision request for the last document")
        if looks_like_explicit_new_doc_request(msg):
            return RoutingIntent(
                "start_new_doc",
                0.7,
                "Explicit request for a new document",
                requires_confirmation=inp.has_last_document,
                target_doc_type=infer_doc_type_from_text(msg),
            )
        if looks_like_routing_switch(msg, inp.has_last_document) and DOCUMENT_NOUNS.search(msg):
            return RoutingIntent(
                "start_new_doc",
                0.55,
                "Possible switch to a different document",
                requires_confirmation=True,
                target_doc_type=infer_doc_type_from_text(msg),
            )
        return RoutingIntent("route_to_agent", 0.5, "No document action detected")


_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.S)


def parse_intent_json(raw: str) -> Optional[RoutingIntent]:
    """Strict parse of the classifier's JSON reply; None for anything malformed."""
    match = _JSON_OBJECT_RE.search(raw or "")
    if not match:
        return None
    try:
        data = json.loads(match.group(0))
    except ValueError:
        return None
    if not isinstance(data, dict) or data.get("action") not in ROUTING_ACTIONS:
        return None
    try:
        confidence = float(data.get("confidence", 0.0))
    except (TypeError, ValueError):
        return None
    if not math.isfinite(confidence):
        return None
    target_doc = data.get("targetDocType")
    target_agent = data.get("targetAgent")
    return RoutingIntent(
        action=data["action"],
        confidence=max(0.0, min(1.0, confidence)),
        reason=str(data.get("reason") or "").strip() or "Model routing decision",
        requires_confirmation=bool(data.get("requiresConfirmation", False)),
        target_doc_type=parse_doc_type(target_doc) if isinstance(target_doc, str) else None,
        target_agent=target_agent if isinstance(target_agent, str) and target_agent.strip() else None,
    )


class ModelIntentClassifier:
    def __init__(self, model: LanguageModel, fallback: Optional[HeuristicIntentClassifier] = None):
        self.model = model
        self.fallback = fallback or HeuristicIntentClassifier()

    async def classify(self, inp: IntentInput, token: Optional[CancellationToken] = None) -> RoutingIntent:
        prompt = build_routing_intent_prompt(inp.message, inp.current_agent, inp.last_document_path, inp.last_doc_type)
        try:
            raw = await collect_text(self.model, [user_message(prompt)], token)
        except Exception as e:
            logger.warning(f"[routing-intent] Model classification failed, using heuristics: {e}")
            return self.fallback.classify_sync(inp)

        intent = parse_intent_json(raw)
        if intent is None:
            logger.info("[routing-intent] Unparseable classifier output, using heuristics")
            return self.fallback.classify_sync(inp)
        if intent.action == "start_new_doc" and intent.target_doc_type is None:
            intent.target_doc_type = infer_doc_type_from_text(inp.message)
        return intent


# -------------------- ordered rules --------------------

@dataclass(frozen=True)
class IntentRule:
    name: str
    applies: Callable[[IntentInput], bool]
    # None means "ask the classifier"
    decide: Optional[Callable[[IntentInput], RoutingIntent]]


DEFAULT_RULES: List[IntentRule] = [
    IntentRule(
        "document_revision",
        lambda i: i.has_last_document and looks_like_document_revision(i.message),
        lambda i: RoutingIntent("resume_last_doc", 0.95, "Revision request for the last document"),
    ),
    IntentRule(
        "routing_switch",
        lambda i: looks_like_routing_switch(i.message, i.has_last_document),
        None,
    ),
    IntentRule(
        "project_kickoff",
        lambda i: looks_like_project_kickoff(i.message),
        lambda i: RoutingIntent("start_new_doc", 0.8, "Project kickoff detected"),
    ),
]


class RoutingIntentPolicy:
    def __init__(self, rules: Optional[List[IntentRule]] = None):
        self.rules = rules if rules is not None else DEFAULT_RULES

    def classifier_for(self, model: Optional[LanguageModel]) -> IntentClassifier:
        return ModelIntentClassifier(model) if model is not None else HeuristicIntentClassifier()

    async def evaluate(
        self,
        inp: IntentInput,
        model: Optional[LanguageModel] = None,
        token: Optional[CancellationToken] = None,
    ) -> RoutingIntent:
        for rule in self.rules:
            if not rule.applies(inp):
                continue
            if rule.decide is None:
                intent = await self.classifier_for(model).classify(inp, token)
            else:
                intent = rule.decide(inp)
            logger.info(
                f"[routing-intent] rule={rule.name} action={intent.action} "
                f"confidence={intent.confidence:.2f} reason={intent.reason}"
            )
            return intent
        return RoutingIntent("route_to_agent", 1.0, "Plain agent conversation")
