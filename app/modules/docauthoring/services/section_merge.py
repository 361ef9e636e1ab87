"""
Section Merge Engine
Locates markdown sections by header text and applies one update at a time.

A section runs from its header line to the next header of equal or shallower
level (or end of document). Headers inside fenced code blocks are NOT skipped;
a "## foo" line inside ``` fences is treated as a real header.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

_HEADER_RE = re.compile(r"^(#{1,6})[ \t]+(.+?)(?:[ \t]+#+)?[ \t]*$", re.M)


class UpdateMode(str, Enum):
    REPLACE = "replace"
    APPEND = "append"
    PREPEND = "prepend"
    INSERT_AT_OFFSET = "insert-at-offset"


class SectionUpdateError(ValueError):
    """Raised when a merge request cannot be applied (bad offset, unknown mode)."""


# Header level used when a section has to be created from scratch.
SECTION_HEADER_LEVELS: Dict[str, int] = {
    "overview": 2,
    "problem statement": 2,
    "target users": 2,
    "goals and objectives": 2,
    "key features": 2,
    "functional requirements": 2,
    "non-functional requirements": 2,
    "constraints": 2,
    "system architecture": 2,
    "components": 2,
    "data flow": 2,
    "success metrics": 2,
    "timeline": 2,
    "user stories": 3,
    "acceptance criteria": 3,
    "open questions": 3,
    "risks": 3,
}
DEFAULT_HEADER_LEVEL = 2


@dataclass(frozen=True)
class SectionRecord:
    level: int
    title: str
    start: int       # offset of the '#' that opens the header line
    body_start: int  # first offset after the header line (past its newline)
    end: int         # next header of level <= this one, or len(text)


@dataclass
class SectionUpdate:
    section: str
    content: str
    mode: UpdateMode = UpdateMode.REPLACE
    offset: Optional[int] = None
    priority: int = 999


def scan_sections(text: str) -> List[SectionRecord]:
    """Return every header of the document, in order, with its computed extent."""
    headers = []
    for m in _HEADER_RE.finditer(text or ""):
        line_end = m.end()
        body_start = line_end + 1 if line_end < len(text) and text[line_end] == "\n" else line_end
        headers.append((len(m.group(1)), m.group(2).strip(), m.start(), body_start))

    records: List[SectionRecord] = []
    for i, (level, title, start, body_start) in enumerate(headers):
        end = len(text)
        for next_level, _, next_start, _ in headers[i + 1:]:
            if next_level <= level:
                end = next_start
                break
        records.append(SectionRecord(level, title, start, body_start, end))
    return records


def find_section(text: str, name: str) -> Optional[SectionRecord]:
    """Case-insensitive lookup: exact title match first, else first title containing `name`."""
    wanted = (name or "").strip().lower()
    if not wanted or not text:
        return None
    records = scan_sections(text)
    for rec in records:
        if rec.title.lower() == wanted:
            return rec
    for rec in records:
        if wanted in rec.title.lower():
            return rec
    return None


def read_section_body(text: str, name: str) -> Optional[str]:
    rec = find_section(text, name)
    if rec is None:
        return None
    return text[rec.body_start:rec.end]


def header_level_for(name: str) -> int:
    return SECTION_HEADER_LEVELS.get((name or "").strip().lower(), DEFAULT_HEADER_LEVEL)


def _block(content: str) -> str:
    return (content or "").strip("\n")


def _replace_body(text: str, rec: SectionRecord, content: str) -> str:
    current = text[rec.body_start:rec.end]
    # Same text modulo surrounding blank lines leaves the document byte-identical
    if content == current or _block(content) == current.strip("\n"):
        return text
    followed = rec.end < len(text)
    body = "\n" + _block(content) + "\n"
    if followed:
        body += "\n"
    prefix = text[:rec.body_start]
    if not prefix.endswith("\n"):
        prefix += "\n"
    return prefix + body + text[rec.end:]


def _append_body(text: str, rec: SectionRecord, content: str) -> str:
    before = text[:rec.end]
    followed = rec.end < len(text)
    if before.endswith("\n\n"):
        sep = ""
    elif before.endswith("\n"):
        sep = "\n"
    else:
        sep = "\n\n"
    tail = "\n\n" if followed else "\n"
    return before + sep + _block(content) + tail + text[rec.end:]


def _prepend_body(text: str, rec: SectionRecord, content: str) -> str:
    head = text[:rec.body_start]
    rest = text[rec.body_start:]
    if not head.endswith("\n"):
        head += "\n"
    inserted = "\n" + _block(content) + "\n"
    if rest and not rest.startswith("\n"):
        inserted += "\n"
    return head + inserted + rest


def _insert_at(text: str, content: str, offset: Optional[int]) -> str:
    if offset is None:
        raise SectionUpdateError("insert-at-offset requires an explicit character offset")
    if offset < 0 or offset > len(text):
        raise SectionUpdateError(f"offset {offset} is outside the document (0..{len(text)})")
    return text[:offset] + content + text[offset:]


def _append_new_section(text: str, name: str, content: str) -> str:
    header = "#" * header_level_for(name) + " " + name.strip()
    section = f"{header}\n\n{_block(content)}\n"
    if not text:
        return section
    if text.endswith("\n\n"):
        sep = ""
    elif text.endswith("\n"):
        sep = "\n"
    else:
        sep = "\n\n"
    return text + sep + section


def apply_section_update(text: str, update: SectionUpdate) -> str:
    """Apply one update and return the new document text; bytes outside the section never change."""
    text = text or ""
    mode = UpdateMode(update.mode)

    if mode is UpdateMode.INSERT_AT_OFFSET:
        return _insert_at(text, update.content, update.offset)

    rec = find_section(text, update.section)
    if rec is None:
        logger.debug(f"[section-merge] '{update.section}' not found, appending new section")
        return _append_new_section(text, update.section, update.content)

    if mode is UpdateMode.REPLACE:
        return _replace_body(text, rec, update.content)
    if mode is UpdateMode.APPEND:
        return _append_body(text, rec, update.content)
    return _prepend_body(text, rec, update.content)


# -------------------- Template structures & progress tracking --------------------

@dataclass(frozen=True)
class TemplateSection:
    header: str
    required: bool
    order: int


TEMPLATE_STRUCTURES: Dict[str, Dict[str, TemplateSection]] = {
    "basic": {
        "Overview": TemplateSection("## Overview", True, 1),
        "Requirements": TemplateSection("## Requirements", False, 2),
        "Implementation": TemplateSection("## Implementation", False, 3),
        "Testing": TemplateSection("## Testing", False, 4),
    },
    "prd": {
        "Problem Statement": TemplateSection("## Problem Statement", True, 1),
        "Target Users": TemplateSection("## Target Users", True, 2),
        "Goals and Objectives": TemplateSection("## Goals and Objectives", True, 3),
        "Key Features": TemplateSection("## Key Features", True, 4),
        "User Stories": TemplateSection("## User Stories", False, 5),
        "Technical Requirements": TemplateSection("## Technical Requirements", False, 6),
        "Success Metrics": TemplateSection("## Success Metrics", False, 7),
        "Timeline": TemplateSection("## Timeline", False, 8),
    },
}

# extracted-entity key -> section title, per agent
AGENT_MAPPING_RULES: Dict[str, Dict[str, str]] = {
    "prd-creator": {
        "problemStatement": "Problem Statement",
        "targetUsers": "Target Users",
        "features": "Key Features",
        "goals": "Goals and Objectives",
    },
    "requirements-gatherer": {
        "functionalRequirements": "Functional Requirements",
        "nonFunctionalRequirements": "Non-Functional Requirements",
        "constraints": "Constraints",
    },
    "solution-architect": {
        "architecture": "System Architecture",
        "components": "Components",
        "dataFlow": "Data Flow",
    },
}


@dataclass
class DocumentUpdateRecord:
    timestamp: datetime
    section_name: str
    content_added: str
    update_type: str
    conversation_turn: int


@dataclass
class DocumentUpdateProgress:
    document_path: str
    template_id: str = "basic"
    total_sections: int = 8
    completed_sections: int = 0
    progress_percentage: int = 0
    last_updated: Optional[datetime] = None
    update_history: List[DocumentUpdateRecord] = field(default_factory=list)


@dataclass
class DocumentUpdateResult:
    success: bool
    sections_updated: List[str]
    progress_percentage: int
    error: Optional[str] = None


class DocumentUpdateEngine:
    """Read-modify-write of a document through the storage collaborator, plus per-document progress."""

    def __init__(self, storage, document_updates_enabled: bool = True, clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self.document_updates_enabled = document_updates_enabled
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._progress: Dict[str, DocumentUpdateProgress] = {}

    def get_progress(self, document_path: str, template_id: str = "basic") -> DocumentUpdateProgress:
        progress = self._progress.get(document_path)
        if progress is None:
            total = len(TEMPLATE_STRUCTURES.get(template_id, {})) or 8
            progress = DocumentUpdateProgress(document_path=document_path, template_id=template_id, total_sections=total)
            self._progress[document_path] = progress
        return progress

    async def apply_section_updates(self, document_path: str, updates: List[SectionUpdate]) -> str:
        """Apply updates in priority order and persist. A missing file starts out empty."""
        try:
            text = await self.storage.read_text(document_path)
        except FileNotFoundError:
            logger.info(f"[section-merge] {document_path} does not exist yet, creating it")
            text = ""

        for update in sorted(updates, key=lambda u: u.priority):
            text = apply_section_update(text, update)

        await self.storage.write_text(document_path, text)
        logger.info(f"[section-merge] Applied {len(updates)} update(s) to {document_path}")
        return text

    def map_extracted_content(
        self,
        extracted: Dict[str, str],
        agent_name: str,
        template_id: str,
        turn: int,
    ) -> List[SectionUpdate]:
        template = TEMPLATE_STRUCTURES.get(template_id, TEMPLATE_STRUCTURES["basic"])
        rules = AGENT_MAPPING_RULES.get(agent_name, {})
        mode = UpdateMode.REPLACE if turn <= 1 else UpdateMode.APPEND

        updates: List[SectionUpdate] = []
        for key, value in (extracted or {}).items():
            if not (value or "").strip():
                continue
            section = rules.get(key) or self._match_template_section(key, template)
            if not section:
                continue
            order = template[section].order if section in template else 999
            updates.append(SectionUpdate(section=section, content=_format_for_section(section, value), mode=mode, priority=order))
        return updates

    async def update_from_extracted_content(
        self,
        document_path: str,
        extracted: Dict[str, str],
        agent_name: str,
        template_id: str = "basic",
        turn: int = 1,
    ) -> DocumentUpdateResult:
        if not self.document_updates_enabled:
            logger.info("[section-merge] Document updates disabled in configuration")
            return DocumentUpdateResult(success=True, sections_updated=[], progress_percentage=0)

        try:
            updates = self.map_extracted_content(extracted, agent_name, template_id, turn)
            await self.apply_section_updates(document_path, updates)
        except Exception as e:
            logger.error(f"[section-merge] Failed to update {document_path}: {e}", exc_info=True)
            return DocumentUpdateResult(
                success=False,
                sections_updated=[],
                progress_percentage=self.get_progress(document_path, template_id).progress_percentage,
                error=str(e),
            )

        progress = self._record_progress(document_path, template_id, updates, turn)
        return DocumentUpdateResult(
            success=True,
            sections_updated=[u.section for u in updates],
            progress_percentage=progress.progress_percentage,
        )

    @staticmethod
    def _match_template_section(key: str, template: Dict[str, TemplateSection]) -> Optional[str]:
        k = key.lower()
        for name, section in template.items():
            if k in name.lower() or k in section.header.lower():
                return name
        return None

    def _record_progress(
        self,
        document_path: str,
        template_id: str,
        updates: List[SectionUpdate],
        turn: int,
    ) -> DocumentUpdateProgress:
        progress = self.get_progress(document_path, template_id)
        now = self._clock()
        for u in updates:
            progress.update_history.append(
                DocumentUpdateRecord(
                    timestamp=now,
                    section_name=u.section,
                    content_added=u.content[:100],
                    update_type="replace" if u.mode is UpdateMode.REPLACE else "append",
                    conversation_turn=turn,
                )
            )
        progress.completed_sections = min(progress.completed_sections + len(updates), progress.total_sections)
        progress.progress_percentage = round(progress.completed_sections / progress.total_sections * 100)
        progress.last_updated = now
        return progress


def _format_for_section(section: str, content: str) -> str:
    lowered = section.lower()
    lines = [ln.strip() for ln in content.splitlines() if ln.strip()]
    if "requirements" in lowered:
        return "\n".join(f"- {ln}" for ln in lines)
    if "features" in lowered:
        return "\n\n".join(f"### {ln}\n\n[Feature description to be added]" for ln in lines)
    return content.strip()
