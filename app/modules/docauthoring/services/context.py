from dataclasses import dataclass, field
from typing import Callable, Optional

from app.modules.docauthoring.services.llm import CancellationToken, LanguageModel


@dataclass
class AuthoringContext:
    """Everything a single routed message needs from its caller."""

    workspace_root: str
    model: Optional[LanguageModel] = None
    token: CancellationToken = field(default_factory=CancellationToken)
    # Optional progress sink (e.g. a streaming response); receives markdown fragments
    output: Optional[Callable[[str], None]] = None

    def emit(self, text: str) -> None:
        if self.output is not None:
            self.output(text)
