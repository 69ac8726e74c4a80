"""Model registry, request models and prompt helpers."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, field_validator

from .errors import ValidationError

MODEL_CREATED = 1704067200
MODEL_OWNER = "deepseek"


@dataclass(frozen=True)
class ModelSpec:
    id: str
    reasoning: bool
    description: str


# Canonical ids first; aliases map onto the same behaviour.
MODELS: dict[str, ModelSpec] = {
    "deepseek-v3": ModelSpec("deepseek-v3", False, "DeepSeek-V3 - Fast chat"),
    "deepseek-r1": ModelSpec("deepseek-r1", True, "DeepSeek-R1 - Deep reasoning"),
}
MODEL_ALIASES: dict[str, str] = {
    "deepseek-chat": "deepseek-v3",
    "deepseek-reasoner": "deepseek-r1",
}
DEFAULT_MODEL = "deepseek-v3"


def resolve_model(name: Optional[str]) -> ModelSpec:
    key = (name or DEFAULT_MODEL).strip().lower()
    key = MODEL_ALIASES.get(key, key)
    spec = MODELS.get(key)
    if spec is None:
        raise ValidationError(
            f"Model '{name}' not found. Available models: {', '.join(MODELS)}",
            code="model_not_found",
        )
    return spec


def model_card(model_id: str) -> dict[str, Any]:
    return {
        "id": model_id,
        "object": "model",
        "created": MODEL_CREATED,
        "owned_by": MODEL_OWNER,
        "permission": [],
        "root": model_id,
        "parent": None,
    }


# ── Pydantic Models ───────────────────────────────────────────────────────────


class ChatMessage(BaseModel):
    role: str = Field(min_length=1, max_length=32)
    content: Union[str, list[Any], None] = None

    def text(self) -> str:
        if self.content is None:
            return ""
        if isinstance(self.content, str):
            return self.content
        parts: list[str] = []
        for part in self.content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(str(part.get("text", "")))
        return "\n".join(parts)


class ChatCompletionRequest(BaseModel):
    model: str = DEFAULT_MODEL
    messages: list[ChatMessage] = Field(min_length=1)
    stream: bool = False
    n: int = 1
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    stop: Union[str, list[str], None] = None
    search: bool = False
    chat_session_id: Optional[str] = Field(default=None, max_length=200)
    parent_message_id: Optional[Union[int, str]] = None

    @field_validator("model")
    @classmethod
    def validate_model(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("model must not be empty")
        return v


# ── Prompt helpers ────────────────────────────────────────────────────────────


def messages_to_prompt(messages: list[ChatMessage]) -> str:
    """Flatten a chat history into the single prompt the upstream accepts."""
    system_parts: list[str] = []
    turns: list[ChatMessage] = []
    for msg in messages:
        if msg.role == "system":
            system_parts.append(msg.text())
        else:
            turns.append(msg)

    prompt = ""
    if system_parts:
        prompt = "\n".join(system_parts) + "\n\n"
    for msg in turns:
        if msg.role == "user":
            prompt += msg.text()
        elif msg.role == "assistant":
            prompt += f"\n\nAssistant: {strip_thinking_tags(msg.text())}\n\nUser: "
    return prompt.strip()


def strip_thinking_tags(content: str) -> str:
    """Drop ``<think>`` blocks that clients echo back in assistant turns."""
    return re.sub(r"<think>[\s\S]*?</think>\s*", "", content).strip()
