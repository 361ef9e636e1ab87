from typing import Dict, Optional

from app.modules.docauthoring.services.doc_types import DOC_TYPE_META, DocType, DocTypeMeta


DOC_TYPE_DESCRIPTIONS: Dict[DocType, str] = {
    DocType.PRD: "Product Requirements Document - new product/feature ideas, MVP definitions",
    DocType.REQUIREMENTS: "Requirements Document - functional/non-functional requirements, user stories",
    DocType.DESIGN: "Design Document - system architecture, component design, technology choices",
    DocType.SPEC: "Technical Specification - implementation tasks, interfaces, data models",
    DocType.BRAINSTORM: "Idea / Brainstorming - exploratory ideas, concepts, not yet a formal doc type",
}

DOCUMENT_DELIMITER = "---DOCUMENT---"
QUESTION_DELIMITER = "---QUESTION---"
TRUNCATION_MARKER = "\n\n[... document truncated for context ...]"
TBD_PLACEHOLDER = "[TBD - see conversation]"


def truncate_for_context(content: str, max_chars: int) -> str:
    if len(content) <= max_chars:
        return content
    return content[:max_chars] + TRUNCATION_MARKER


def build_classification_prompt(user_input: str) -> str:
    types = "\n".join(f"- {dt.value}: {desc}" for dt, desc in DOC_TYPE_DESCRIPTIONS.items())
    return (
        "Classify the following user message into exactly one document type and extract a concise title.\n\n"
        f"Document types:\n{types}\n\n"
        f'User message: "{user_input}"\n\n'
        "Respond with ONLY a JSON object like this (no markdown, no explanation):\n"
        '{"docType": "prd", "title": "Concise Title Here"}'
    )


def build_draft_prompt(meta: DocTypeMeta, title: str, user_input: str) -> str:
    return (
        f"{meta.system_prompt}\n\n"
        f'The user wants to create a {meta.doc_label} titled: "{title}".\n\n'
        f"Initial context from user:\n{user_input}\n\n"
        "Generate a comprehensive initial draft in Markdown. "
        f"Use proper headings (##, ###). Include all relevant sections for a {meta.doc_label}. "
        f'Where you lack information, use "{TBD_PLACEHOLDER}" as placeholder. '
        "Do NOT ask questions in the draft - just write the document."
    )


def build_first_question_prompt(meta: DocTypeMeta, title: str, draft: str, max_chars: int) -> str:
    return (
        f"{meta.system_prompt}\n\n"
        f'You just created an initial draft of a {meta.doc_label} titled "{title}".\n\n'
        f"Here is the draft:\n```\n{draft[:max_chars]}\n```\n\n"
        "Ask the single most important follow-up question to help refine this document. "
        "Be specific - refer to the content of the draft. "
        "Output ONLY the question (no preamble, no options list)."
    )


def build_refine_prompt(meta: DocTypeMeta, content: str, feedback: str, turn: int, max_chars: int) -> str:
    """
    Ask for the full updated document plus one follow-up question,
    separated by the two delimiter lines the session store parses.
    """
    return (
        f"{meta.system_prompt}\n\n"
        f"You are refining a {meta.doc_label} (turn {turn}).\n\n"
        f"--- CURRENT DOCUMENT ---\n{truncate_for_context(content, max_chars)}\n--- END DOCUMENT ---\n\n"
        f'User feedback / new information:\n"{feedback}"\n\n'
        "Instructions:\n"
        "1. Produce a fully updated version of the document incorporating this feedback.\n"
        "2. After updating, ask ONE focused follow-up question to further improve it.\n\n"
        "Respond using EXACTLY this format (include the delimiter lines as shown):\n"
        f"{DOCUMENT_DELIMITER}\n"
        "[full updated markdown document here]\n"
        f"{QUESTION_DELIMITER}\n"
        "[one focused follow-up question here]"
    )


def build_routing_intent_prompt(
    user_input: str,
    current_agent: Optional[str],
    last_document_path: Optional[str],
    last_doc_type: Optional[str],
) -> str:
    doc_types = ", ".join(dt.value for dt in DOC_TYPE_META)
    return (
        "You route messages inside a document-authoring assistant. Decide what the user wants.\n\n"
        f"Current agent: {current_agent or 'none'}\n"
        f"Last document: {last_document_path or 'none'}\n"
        f"Last document type: {last_doc_type or 'unknown'}\n\n"
        f'User message: "{user_input}"\n\n'
        "Actions:\n"
        "- start_new_doc: the user wants a brand-new document\n"
        "- resume_last_doc: the user wants to keep editing the last document\n"
        "- route_to_agent: anything else (questions, chat, feedback for the current agent)\n\n"
        "Respond with ONLY a JSON object (no markdown, no explanation):\n"
        '{"action": "start_new_doc|resume_last_doc|route_to_agent", "confidence": 0.0, '
        '"reason": "short reason", "requiresConfirmation": false, '
        f'"targetDocType": "one of {doc_types} or null", "targetAgent": "agent name or null"}}'
    )
