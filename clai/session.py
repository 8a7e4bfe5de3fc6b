"""Resumable conversation state: the in-memory value and its JSON file."""

import copy
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, ValidationError

from . import fmt
from .cache import strip_cache_control
from .report import AgentError


@dataclass
class SessionState:
    """Everything needed to resume a conversation.

    ``messages`` never ends with an unanswered tool_use; ``system_prompts``
    always holds at least the base prompt.
    """

    messages: list[dict] = field(default_factory=list)
    system_prompts: list[dict] = field(default_factory=list)

    def copy(self) -> "SessionState":
        return SessionState(
            copy.deepcopy(self.messages), copy.deepcopy(self.system_prompts)
        )

    def to_json(self) -> dict:
        return {
            "state": {
                "messages": strip_cache_control(self.messages),
                "systemPrompts": strip_cache_control(self.system_prompts),
            }
        }


# --- File schema ---


class CacheControl(BaseModel):
    type: Literal["ephemeral"]


class TextBlock(BaseModel):
    type: Literal["text"]
    text: str
    cache_control: CacheControl | None = None


class ToolUseBlock(BaseModel):
    type: Literal["tool_use"]
    id: str
    name: str
    input: dict[str, Any]


class ToolResultBlock(BaseModel):
    type: Literal["tool_result"]
    tool_use_id: str
    content: str
    is_error: bool | None = None


ContentBlock = Annotated[
    Union[TextBlock, ToolUseBlock, ToolResultBlock], Field(discriminator="type")
]


class Message(BaseModel):
    role: Literal["user", "assistant"]
    content: str | list[ContentBlock]


class StateModel(BaseModel):
    messages: list[Message]
    systemPrompts: list[TextBlock] = Field(min_length=1)


class SessionFile(BaseModel):
    state: StateModel


# --- Load / save ---


def load_session(path: str | Path) -> SessionState | None:
    """Load a session file, or return None to start fresh.

    A missing file is silent; an unreadable, unparsable or invalid one is
    reported as a warning.
    """
    path = Path(path).resolve()
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        fmt.warning(f"error parsing session file {path}, starting fresh: {e}")
        return None
    try:
        SessionFile.model_validate(data)
    except ValidationError as e:
        fmt.warning(
            f"invalid session format in {path}, starting fresh "
            f"({e.error_count()} validation errors)"
        )
        return None

    state = data["state"]
    return SessionState(
        messages=strip_cache_control(state["messages"]),
        system_prompts=strip_cache_control(state["systemPrompts"]),
    )


def save_session(path: str | Path, state: SessionState) -> Path:
    """Write *state* without cache markers, overwriting any existing file."""
    path = Path(path).resolve()
    try:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(state.to_json(), f, indent=2, ensure_ascii=False)
            f.write("\n")
    except OSError as e:
        raise AgentError(f"cannot write session file {path}: {e}") from e
    return path
