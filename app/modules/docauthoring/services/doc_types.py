import os
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Optional


class DocType(str, Enum):
    PRD = "prd"
    REQUIREMENTS = "requirements"
    DESIGN = "design"
    SPEC = "spec"
    BRAINSTORM = "brainstorm"


DEFAULT_DOC_TYPE = DocType.PRD


@dataclass(frozen=True)
class DocTypeMeta:
    agent_name: str
    agent_title: str
    folder: str
    doc_label: str
    system_prompt: str


_ONE_QUESTION = (
    "Each response should: (1) incorporate the user's latest input into the document, "
    "(2) ask exactly ONE focused follow-up question."
)

DOC_TYPE_META: Dict[DocType, DocTypeMeta] = {
    DocType.PRD: DocTypeMeta(
        agent_name="prd-creator",
        agent_title="PRD Creator",
        folder="docs/prd",
        doc_label="Product Requirements Document (PRD)",
        system_prompt=(
            "You are a senior product manager specialising in Product Requirements Documents. "
            "Help the user develop a comprehensive PRD through focused conversation. "
            "Ask about goals, target users, key features, success metrics, and constraints. "
            + _ONE_QUESTION
        ),
    ),
    DocType.REQUIREMENTS: DocTypeMeta(
        agent_name="requirements-gatherer",
        agent_title="Requirements Gatherer",
        folder="docs/requirements",
        doc_label="Requirements Document",
        system_prompt=(
            "You are a senior business analyst specialising in requirements engineering. "
            "Help the user produce a thorough Requirements Document covering functional and "
            "non-functional requirements, acceptance criteria, constraints, and dependencies. "
            + _ONE_QUESTION
        ),
    ),
    DocType.DESIGN: DocTypeMeta(
        agent_name="solution-architect",
        agent_title="Solution Architect",
        folder="docs/design",
        doc_label="Design Document",
        system_prompt=(
            "You are a senior solution architect. Help the user create a Design Document "
            "covering system architecture, component design, data flows, API contracts, "
            "technology choices, and scalability. " + _ONE_QUESTION
        ),
    ),
    DocType.SPEC: DocTypeMeta(
        agent_name="specification-writer",
        agent_title="Specification Writer",
        folder="docs/spec",
        doc_label="Technical Specification",
        system_prompt=(
            "You are a senior technical writer specialising in implementation specifications. "
            "Help the user create a Technical Specification covering implementation tasks, "
            "interfaces, data models, error handling, and testing strategy. " + _ONE_QUESTION
        ),
    ),
    DocType.BRAINSTORM: DocTypeMeta(
        agent_name="brainstormer",
        agent_title="Brainstormer",
        folder="docs/ideas",
        doc_label="Idea Document",
        system_prompt=(
            "You are a creative brainstorming facilitator. Help the user expand their ideas "
            "into an Idea Document covering concept overview, motivations, potential approaches, "
            "opportunities, risks, and next steps. " + _ONE_QUESTION
        ),
    ),
}

_TEMPLATE_ALIASES: Dict[str, DocType] = {
    "prd": DocType.PRD,
    "requirements": DocType.REQUIREMENTS,
    "design": DocType.DESIGN,
    "spec": DocType.SPEC,
    "specification": DocType.SPEC,
    "brainstorm": DocType.BRAINSTORM,
    "ideas": DocType.BRAINSTORM,
}

_AGENT_TO_TYPE: Dict[str, DocType] = {meta.agent_name: dt for dt, meta in DOC_TYPE_META.items()}

# Ordered: "product requirements" must resolve to prd before the generic requirements hint.
_TEXT_HINTS = [
    (DocType.PRD, re.compile(r"\b(prd|product brief|product requirements)\b", re.I)),
    (DocType.SPEC, re.compile(r"\b(spec|specs|specification|technical spec)\b", re.I)),
    (DocType.DESIGN, re.compile(r"\b(design|architecture|design[- ]doc)\b", re.I)),
    (DocType.REQUIREMENTS, re.compile(r"\b(requirements?|user stories|acceptance criteria)\b", re.I)),
    (DocType.BRAINSTORM, re.compile(r"\b(brainstorm\w*|ideas?|idea doc)\b", re.I)),
]


def get_meta(doc_type: DocType) -> DocTypeMeta:
    return DOC_TYPE_META[doc_type]


def parse_doc_type(value: Optional[str]) -> Optional[DocType]:
    """Map a loose label ("spec", "specification", "ideas", ...) onto DocType; None if unknown."""
    return _TEMPLATE_ALIASES.get((value or "").strip().lower())


def resolve_doc_type(
    template_id: Optional[str] = None,
    agent_name: Optional[str] = None,
    document_path: Optional[str] = None,
) -> DocType:
    """Template id first, then the bound agent, then the docs/<folder> the file lives in."""
    by_template = parse_doc_type(template_id)
    if by_template:
        return by_template

    by_agent = _AGENT_TO_TYPE.get((agent_name or "").strip().lower())
    if by_agent:
        return by_agent

    normalized = (document_path or "").replace("\\", "/").lower()
    for doc_type, meta in DOC_TYPE_META.items():
        if f"/{meta.folder}/" in normalized or normalized.startswith(f"{meta.folder}/"):
            return doc_type

    return DEFAULT_DOC_TYPE


def infer_doc_type_from_text(text: str) -> Optional[DocType]:
    """Pick the document type a free-text message names, if any."""
    for doc_type, pattern in _TEXT_HINTS:
        if pattern.search(text or ""):
            return doc_type
    return None


def agent_for_doc_type(doc_type: DocType) -> str:
    return DOC_TYPE_META[doc_type].agent_name


def slugify_title(title: str, max_len: int = 60) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (title or "").lower()).strip("-")
    return slug[:max_len] or "document"


def build_document_path(workspace_root: str, doc_type: DocType, title: str) -> str:
    folder = DOC_TYPE_META[doc_type].folder
    return str(Path(workspace_root) / folder / f"{slugify_title(title)}.md")


def title_from_path(document_path: str) -> str:
    base = os.path.splitext(os.path.basename(document_path))[0]
    words = [w for w in re.split(r"[-_]+", base) if w]
    return " ".join(w[:1].upper() + w[1:] for w in words) or "Document"


def relative_doc_path(workspace_root: str, document_path: str) -> str:
    try:
        rel = os.path.relpath(document_path, workspace_root)
    except ValueError:
        rel = document_path
    return rel.replace("\\", "/")
