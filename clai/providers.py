"""Backend adapters behind one send_turn() contract.

Every adapter talks to its backend through LiteLLM's OpenAI-compatible
completion API. The adapters translate the generic conversation blocks
(text, tool_use, tool_result) into that format and normalize the reply
back into blocks.
"""

import json
import uuid
from dataclasses import dataclass, field

from . import fmt
from .config import Settings
from .report import AgentError, ProviderError
from .tools import ToolDefinition

TOKEN_EFFICIENT_BETA = "token-efficient-tools-2025-02-19"
EMPTY_RESPONSE_TEXT = "(empty response)"

# LiteLLM finish reasons -> the stop reasons recorded in history and reports
_STOP_REASONS = {
    "stop": "end_turn",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "length": "max_tokens",
}

_USAGE_FIELDS = (
    ("prompt_tokens", "input_tokens"),
    ("completion_tokens", "output_tokens"),
    ("cache_creation_input_tokens", "cache_creation_input_tokens"),
    ("cache_read_input_tokens", "cache_read_input_tokens"),
)


@dataclass
class TurnResult:
    content: list[dict]
    usage: dict = field(default_factory=dict)
    stop_reason: str = "end_turn"

    @property
    def tool_uses(self) -> list[dict]:
        return [b for b in self.content if b.get("type") == "tool_use"]


class Provider:
    """Base adapter. Subclasses pick the LiteLLM model prefix and request shaping."""

    name = ""
    prefix = ""
    supports_cache_control = False

    def __init__(self, settings: Settings):
        self.settings = settings
        self.model = settings.model

    @property
    def model_string(self) -> str:
        return f"{self.prefix}/{self.model.removeprefix(self.prefix + '/')}"

    # --- Request shaping ---

    def system_messages(self, system_prompts: list[dict]) -> list[dict]:
        """One system message per segment."""
        return [
            {"role": "system", "content": seg["text"]}
            for seg in system_prompts
            if seg.get("text")
        ]

    def tool_declarations(self, tool_defs: list[ToolDefinition]) -> list[dict]:
        return [d.to_openai() for d in tool_defs]

    def completion_kwargs(self) -> dict:
        kwargs: dict = {}
        if self.settings.api_key:
            kwargs["api_key"] = self.settings.api_key
        if self.settings.base_url:
            kwargs["api_base"] = self.settings.base_url
        return kwargs

    def build_request(
        self,
        messages: list[dict],
        system_prompts: list[dict],
        tool_defs: list[ToolDefinition],
    ) -> dict:
        request = dict(
            model=self.model_string,
            messages=self.system_messages(system_prompts) + to_openai_messages(messages),
            max_tokens=self.settings.max_output_tokens,
            timeout=self.settings.request_timeout,
            **self.completion_kwargs(),
        )
        if tool_defs:
            request["tools"] = self.tool_declarations(tool_defs)
            request["tool_choice"] = "auto"
        return request

    # --- The contract ---

    def send_turn(
        self,
        messages: list[dict],
        system_prompts: list[dict],
        tool_defs: list[ToolDefinition],
    ) -> TurnResult:
        """Send one turn and return the reply as generic content blocks.

        Raises ProviderError when the remote call fails.
        """
        import litellm

        litellm.suppress_debug_info = True

        request = self.build_request(messages, system_prompts, tool_defs)
        if self.settings.verbose:
            fmt.model_info(
                f"Calling model {request['model']} with "
                f"max_tokens={request['max_tokens']}, {len(tool_defs)} tools"
            )
        try:
            response = litellm.completion(**request)
        except Exception as e:
            raise ProviderError(f"LLM call failed: {e}") from e

        if not response.choices:
            raise ProviderError("LLM call failed: response has no choices")
        choice = response.choices[0]
        return TurnResult(
            content=normalize_message(choice.message),
            usage=usage_dict(getattr(response, "usage", None)),
            stop_reason=_STOP_REASONS.get(choice.finish_reason, str(choice.finish_reason)),
        )


class AnthropicProvider(Provider):
    name = "anthropic"
    prefix = "anthropic"
    supports_cache_control = True

    def system_messages(self, system_prompts: list[dict]) -> list[dict]:
        """All segments in one system message, keeping cache markers."""
        parts = []
        for seg in system_prompts:
            part = {"type": "text", "text": seg["text"]}
            if "cache_control" in seg:
                part["cache_control"] = seg["cache_control"]
            parts.append(part)
        return [{"role": "system", "content": parts}]

    def completion_kwargs(self) -> dict:
        kwargs = super().completion_kwargs()
        if self.settings.token_efficient:
            kwargs["extra_headers"] = {"anthropic-beta": TOKEN_EFFICIENT_BETA}
        return kwargs


# Keys Gemini's function-declaration schema rejects
_GEMINI_UNSUPPORTED_KEYS = {"$schema", "$id", "additionalProperties", "default", "minLength"}


def _gemini_schema(schema):
    if isinstance(schema, dict):
        return {
            k: _gemini_schema(v)
            for k, v in schema.items()
            if k not in _GEMINI_UNSUPPORTED_KEYS
        }
    if isinstance(schema, list):
        return [_gemini_schema(v) for v in schema]
    return schema


class GeminiProvider(Provider):
    name = "gemini"
    prefix = "gemini"

    def tool_declarations(self, tool_defs: list[ToolDefinition]) -> list[dict]:
        return [
            ToolDefinition(d.name, d.description, _gemini_schema(d.input_schema)).to_openai()
            for d in tool_defs
        ]


class OllamaProvider(Provider):
    name = "ollama"
    prefix = "ollama_chat"

    def completion_kwargs(self) -> dict:
        # Local server, no credentials
        return {"api_base": self.settings.base_url}


PROVIDERS: dict[str, type[Provider]] = {
    "anthropic": AnthropicProvider,
    "gemini": GeminiProvider,
    "ollama": OllamaProvider,
}


def build_provider(settings: Settings) -> Provider:
    try:
        cls = PROVIDERS[settings.provider]
    except KeyError:
        raise AgentError(f"unknown provider {settings.provider!r}") from None
    return cls(settings)


# --- Message translation ---


def _text_part(block: dict) -> dict:
    part = {"type": "text", "text": block.get("text", "")}
    if "cache_control" in block:
        part["cache_control"] = block["cache_control"]
    return part


def to_openai_messages(messages: list[dict]) -> list[dict]:
    """Translate generic messages into OpenAI chat messages.

    tool_result blocks become ``role: tool`` messages (emitted before any
    text of the same user message, so they directly follow the assistant's
    tool calls). Cache markers are carried on content parts, and on the
    message itself for tool results.
    """
    out: list[dict] = []
    tool_names: dict[str, str] = {}

    for message in messages:
        role = message["role"]
        content = message["content"]
        if isinstance(content, str):
            out.append({"role": role, "content": content})
            continue

        if role == "assistant":
            texts = [b.get("text", "") for b in content if b.get("type") == "text"]
            msg: dict = {"role": "assistant", "content": "\n".join(t for t in texts if t) or None}
            tool_calls = []
            for b in content:
                if b.get("type") != "tool_use":
                    continue
                tool_names[b["id"]] = b["name"]
                tool_calls.append(
                    {
                        "id": b["id"],
                        "type": "function",
                        "function": {
                            "name": b["name"],
                            "arguments": json.dumps(b.get("input", {}), ensure_ascii=False),
                        },
                    }
                )
            if tool_calls:
                msg["tool_calls"] = tool_calls
            elif msg["content"] is None:
                msg["content"] = EMPTY_RESPONSE_TEXT
            out.append(msg)
            continue

        text_parts = []
        for b in content:
            kind = b.get("type")
            if kind == "tool_result":
                result = b.get("content", "")
                if b.get("is_error"):
                    result = f"error: {result}"
                tool_msg = {
                    "role": "tool",
                    "tool_call_id": b["tool_use_id"],
                    "name": tool_names.get(b["tool_use_id"], ""),
                    "content": result,
                }
                if "cache_control" in b:
                    tool_msg["cache_control"] = b["cache_control"]
                out.append(tool_msg)
            elif kind == "text":
                text_parts.append(_text_part(b))
        if text_parts:
            out.append({"role": role, "content": text_parts})

    return out


def _arguments(raw) -> dict:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return {"_raw_arguments": raw}
    return parsed if isinstance(parsed, dict) else {"_raw_arguments": raw}


def _get(obj, key, default=None):
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def normalize_message(message) -> list[dict]:
    """Turn a LiteLLM response message into content blocks.

    Text comes first, then one tool_use block per out-of-band tool call.
    """
    blocks: list[dict] = []
    text = _get(message, "content")
    if text:
        blocks.append({"type": "text", "text": text})
    for tc in _get(message, "tool_calls") or []:
        fn = _get(tc, "function")
        blocks.append(
            {
                "type": "tool_use",
                "id": _get(tc, "id") or f"toolu_{uuid.uuid4().hex[:24]}",
                "name": _get(fn, "name"),
                "input": _arguments(_get(fn, "arguments")),
            }
        )
    return blocks


def usage_dict(usage) -> dict:
    """Extract token counts from a LiteLLM usage object."""
    if usage is None:
        return {}
    result = {}
    for src, dest in _USAGE_FIELDS:
        value = _get(usage, src)
        if isinstance(value, int) and not isinstance(value, bool):
            result[dest] = value
    return result
