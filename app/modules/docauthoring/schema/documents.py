from pydantic import BaseModel, Field
from typing import Literal, Optional


class SectionUpdateRequest(BaseModel):
    document_path: str = Field(min_length=1)  # workspace-relative
    section: str = ""
    content: str
    mode: Literal["replace", "append", "prepend", "insert-at-offset"] = "replace"
    offset: Optional[int] = None


class SectionUpdateResponse(BaseModel):
    document_path: str
    section: str
    mode: str
    content: str
