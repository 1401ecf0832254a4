"""
Request, chunk and usage types shared across the gateway.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple, Union


@dataclass(frozen=True)
class TokenUsage:
    """Token usage of one completed request."""
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int

    @classmethod
    def from_counts(cls, prompt_tokens: int, completion_tokens: int) -> "TokenUsage":
        return cls(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )

    @classmethod
    def from_openai(cls, usage: Mapping[str, Any]) -> "TokenUsage":
        """Build from an OpenAI-style ``usage`` object."""
        prompt = int(usage.get("prompt_tokens") or 0)
        completion = int(usage.get("completion_tokens") or 0)
        total = usage.get("total_tokens")
        return cls(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=int(total) if total is not None else prompt + completion,
        )

    def to_dict(self) -> dict:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(frozen=True)
class Message:
    """A role-tagged chat message."""
    role: str
    content: str

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content}


MessageLike = Union[Message, Mapping[str, Any]]


def _to_message(value: MessageLike) -> Message:
    if isinstance(value, Message):
        return value
    content = value.get("content")
    if not isinstance(content, str):
        # Multi-part content: keep the text parts only
        content = "".join(
            part.get("text", "")
            for part in (content or [])
            if isinstance(part, Mapping) and part.get("type") == "text"
        )
    return Message(role=str(value["role"]), content=content)


@dataclass(frozen=True)
class CompletionRequest:
    """
    A completion request. Immutable once created.

    ``messages`` may be given as Message objects or ``{"role", "content"}``
    dicts; they are normalised to a tuple of Message.
    """
    model: str
    messages: Tuple[Message, ...]
    provider_override: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self):
        if not self.model:
            raise ValueError("model is required")
        messages = tuple(_to_message(m) for m in self.messages)
        if not messages:
            raise ValueError("messages cannot be empty")
        object.__setattr__(self, "messages", messages)

    def prompt_text(self) -> str:
        """Render the messages as the text used for prompt token counting."""
        return "\n".join(
            f"<im_start>{m.role}\n{m.content}<im_end>" for m in self.messages
        )

    def to_dict(self) -> dict:
        d: Dict[str, Any] = {
            "model": self.model,
            "messages": [m.to_dict() for m in self.messages],
        }
        if self.provider_override:
            d["providerOverride"] = self.provider_override
        if self.max_tokens is not None:
            d["max_tokens"] = self.max_tokens
        if self.temperature is not None:
            d["temperature"] = self.temperature
        return d

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CompletionRequest":
        return cls(
            model=data["model"],
            messages=tuple(data.get("messages") or ()),
            provider_override=data.get("providerOverride"),
            max_tokens=data.get("max_tokens"),
            temperature=data.get("temperature"),
        )


@dataclass(frozen=True)
class Delta:
    """Incremental role/content fragment of a streamed completion."""
    role: Optional[str] = None
    content: Optional[str] = None


@dataclass(frozen=True)
class CompletionChunk:
    """One unit of a streamed completion."""
    delta: Delta = field(default_factory=Delta)
    finish_reason: Optional[str] = None
    usage: Optional[TokenUsage] = None

    @property
    def is_terminal(self) -> bool:
        return self.finish_reason is not None

    def to_dict(self) -> dict:
        delta: Dict[str, str] = {}
        if self.delta.role is not None:
            delta["role"] = self.delta.role
        if self.delta.content is not None:
            delta["content"] = self.delta.content
        d: Dict[str, Any] = {"delta": delta}
        if self.finish_reason is not None:
            d["finishReason"] = self.finish_reason
        if self.usage is not None:
            d["usage"] = self.usage.to_dict()
        return d


def text_chunk(content: str, role: Optional[str] = None) -> CompletionChunk:
    """Shorthand for a content-only chunk."""
    return CompletionChunk(delta=Delta(role=role, content=content))


def join_content(chunks: Sequence[CompletionChunk]) -> str:
    return "".join(c.delta.content or "" for c in chunks)
