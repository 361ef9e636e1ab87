import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol

from app.modules.docauthoring.services.doc_types import DOC_TYPE_META
from app.modules.docauthoring.services.llm import (
    CancellationToken,
    LanguageModel,
    Message,
    collect_text,
    system_message,
    user_message,
)

logger = logging.getLogger(__name__)

QUALITY_REVIEWER_PROMPT = (
    "You are a quality reviewer for software project documents. Check structure, completeness of "
    "required sections, internal consistency and cross-references. Point out gaps and give concrete, "
    "actionable suggestions. Start with a one-paragraph summary of overall quality."
)


@dataclass
class AgentRequest:
    prompt: str
    document_path: Optional[str] = None
    history: List[Message] = field(default_factory=list)
    model: Optional[LanguageModel] = None
    token: Optional[CancellationToken] = None


@dataclass
class AgentResponse:
    content: str


class Agent(Protocol):
    name: str

    async def handle(self, request: AgentRequest) -> AgentResponse: ...


class PersonaAgent:
    """Plain chat through the model with a persona system prompt."""

    def __init__(self, name: str, title: str, system_prompt: str):
        self.name = name
        self.title = title
        self.system_prompt = system_prompt

    def guidance(self) -> str:
        return (
            f"**{self.title}** is ready, but no language model is available right now.\n\n"
            "Describe your project (for example: *I want to build a mobile app for ...*) "
            "and I'll open a document for it once a model is connected."
        )

    async def handle(self, request: AgentRequest) -> AgentResponse:
        if request.model is None:
            return AgentResponse(self.guidance())

        messages = [system_message(self.system_prompt), *request.history]
        if request.document_path:
            messages.append(system_message(f"The user is working on the document at {request.document_path}."))
        messages.append(user_message(request.prompt))
        try:
            text = await collect_text(request.model, messages, request.token)
        except Exception as e:
            logger.warning(f"[agent:{self.name}] Model call failed: {e}")
            return AgentResponse(
                f"{self.title} couldn't reach the language model just now. Please try your message again."
            )
        return AgentResponse(text.strip() or self.guidance())


class AgentRegistry:
    def __init__(self, agents: Optional[List[Agent]] = None, current: Optional[str] = None):
        self._agents: Dict[str, Agent] = {}
        for agent in agents or []:
            self.register(agent)
        self._current: Optional[str] = current

    def register(self, agent: Agent) -> None:
        if agent.name in self._agents:
            logger.warning(f"[agents] Replacing already registered agent {agent.name}")
        self._agents[agent.name] = agent

    def get_agent(self, name: str) -> Optional[Agent]:
        return self._agents.get(name)

    def list_agents(self) -> List[str]:
        return list(self._agents)

    def get_current_agent(self) -> Optional[Agent]:
        return self._agents.get(self._current) if self._current else None

    def set_current_agent(self, name: str) -> bool:
        if name not in self._agents:
            logger.warning(f"[agents] Unknown agent {name}")
            return False
        self._current = name
        return True


def build_default_registry(current: str = "prd-creator") -> AgentRegistry:
    agents: List[Agent] = [
        PersonaAgent(meta.agent_name, meta.agent_title, meta.system_prompt) for meta in DOC_TYPE_META.values()
    ]
    agents.append(PersonaAgent("quality-reviewer", "Quality Reviewer", QUALITY_REVIEWER_PROMPT))
    return AgentRegistry(agents, current=current)
