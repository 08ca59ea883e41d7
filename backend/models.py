"""
Pydantic request/response models shared across route modules.
"""

from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field


class ImagePayload(BaseModel):
    data: str
    media_type: str = "image/png"


class HistoryTurn(BaseModel):
    role: str
    content: str


class AgentInfo(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    nickname: Optional[str] = None
    job_title: Optional[str] = None


class ChatRequest(BaseModel):
    request_id: str = Field(default_factory=lambda: uuid4().hex[:12])
    prompt: str
    model: Optional[str] = None
    max_context: Optional[int] = None
    project_path: Optional[str] = None
    container_id: Optional[str] = None
    agent: Optional[AgentInfo] = None
    user: dict = Field(default_factory=dict)
    history: list[HistoryTurn] = Field(default_factory=list)
    requested_tools: list[str] = Field(default_factory=list)
    privileged_tools: list[str] = Field(default_factory=list)
    project_context: Optional[str] = None
    rag_context: Optional[str] = None
    image: Optional[ImagePayload] = None
