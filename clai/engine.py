"""The conversation engine: one prompt in, a multi-turn tool-using exchange out."""

import copy
import json
import time
from typing import Callable

import tiktoken

from . import fmt
from .cache import CacheAnnotator, count_markers
from .providers import EMPTY_RESPONSE_TEXT, Provider
from .registry import ToolRegistry
from .report import MaxTurnsExceededError, ReportCollector
from .session import SessionState

DEFAULT_MAX_TURNS = 100
MAX_RESULT_PREVIEW = 500

_encoder = tiktoken.get_encoding("cl100k_base")


def estimate_tokens(messages: list[dict], system_prompts: list[dict], tool_defs=()) -> int:
    """Approximate prompt size for progress output and reports."""
    texts = [seg.get("text", "") for seg in system_prompts]
    for m in messages:
        content = m.get("content", "")
        if isinstance(content, str):
            texts.append(content)
            continue
        for block in content:
            if block.get("type") == "text":
                texts.append(block.get("text", ""))
            elif block.get("type") == "tool_use":
                texts.append(block.get("name", "") + json.dumps(block.get("input", {})))
            elif block.get("type") == "tool_result":
                texts.append(str(block.get("content", "")))
    for d in tool_defs:
        texts.append(json.dumps(d.to_openai()))
    # ~4 tokens of per-message overhead (role, separators)
    return sum(len(_encoder.encode(t)) for t in texts) + 4 * len(messages)


def start_conversation(
    prompt: str,
    base_system_prompt: str,
    context: list[str] = (),
    session: SessionState | None = None,
) -> SessionState:
    """Build the starting state: prior session (if any) plus the new prompt.

    Extra context strings become trailing system segments in argument order.
    """
    if session is not None:
        messages = copy.deepcopy(session.messages)
        system_prompts = copy.deepcopy(session.system_prompts)
    else:
        messages = []
        system_prompts = []
    if not system_prompts:
        system_prompts = [{"type": "text", "text": base_system_prompt}]
    system_prompts += [{"type": "text", "text": text} for text in context]
    messages.append({"role": "user", "content": prompt})
    return SessionState(messages, system_prompts)


def handle_tool_use(block: dict, registry: ToolRegistry, verbose: bool):
    """Run one tool_use block and return (tool_result_block, system_text, metadata).

    An unknown tool name raises ToolNotFoundError. Any exception from the
    tool itself becomes an ``is_error`` result.
    """
    name = block["name"]
    params = block.get("input") or {}
    tool = registry.lookup(name)

    if verbose:
        fmt.tool_request(name)

    system_text = None
    t0 = time.monotonic()
    try:
        tool.check_params(params)
        if verbose:
            fmt.tool_invocation(tool.describe_invocation(params))
        result = tool.invoke(params)
        content = str(result.content)
        system_text = result.system
        succeeded = True
    except Exception as e:
        content = str(e) or type(e).__name__
        succeeded = False
    elapsed = time.monotonic() - t0

    if verbose:
        if succeeded:
            preview = content[:MAX_RESULT_PREVIEW].replace("\n", " ")
            fmt.tool_result(name, elapsed, preview)
        else:
            fmt.tool_error(name, content)

    result_block = {"type": "tool_result", "tool_use_id": block["id"], "content": content}
    if not succeeded:
        result_block["is_error"] = True

    metadata = {
        "name": name,
        "arguments": params,
        "elapsed": elapsed,
        "succeeded": succeeded,
        "result_length": len(content),
    }
    return result_block, system_text, metadata


def _print_text(text: str) -> None:
    print(text, flush=True)


def run_agent_loop(
    messages: list[dict],
    system_prompts: list[dict],
    *,
    provider: Provider,
    registry: ToolRegistry,
    max_turns: int = DEFAULT_MAX_TURNS,
    verbose: bool = True,
    report: ReportCollector | None = None,
    on_text: Callable[[str], None] | None = None,
) -> SessionState:
    """Run turns until the model answers without calling a tool.

    Works on copies of *messages* and *system_prompts*. Text blocks go to
    *on_text* (stdout by default) as soon as they are processed. Raises
    MaxTurnsExceededError, carrying the state so far, when the model is
    still calling tools after *max_turns* turns.
    """
    messages = copy.deepcopy(messages)
    system_prompts = copy.deepcopy(system_prompts)
    on_text = on_text or _print_text
    annotator = CacheAnnotator() if provider.supports_cache_control else None
    tool_defs = registry.definitions(provider.name)

    turns = 0
    while True:
        if turns >= max_turns:
            raise MaxTurnsExceededError(max_turns, SessionState(messages, system_prompts))
        turns += 1

        token_est = estimate_tokens(messages, system_prompts, tool_defs)
        if verbose:
            fmt.turn_header(turns, max_turns, token_est)

        if annotator is not None:
            request_messages = annotator.annotate(messages)
            request_system = annotator.annotate_system(system_prompts)
        else:
            request_messages = copy.deepcopy(messages)
            request_system = copy.deepcopy(system_prompts)
        markers = count_markers(request_messages)

        t0 = time.monotonic()
        response = provider.send_turn(request_messages, request_system, tool_defs)
        elapsed = time.monotonic() - t0

        if verbose:
            fmt.llm_timing(elapsed, response.stop_reason)
            fmt.usage(response.usage, markers)
        if report is not None:
            report.record_llm_call(
                turns,
                elapsed,
                token_est,
                response.stop_reason,
                usage=response.usage,
                cache_markers=markers,
            )

        # Backends reject an assistant message with no content on resume
        stored = copy.deepcopy(response.content) or [
            {"type": "text", "text": EMPTY_RESPONSE_TEXT}
        ]
        messages.append({"role": "assistant", "content": stored})

        results = []
        for block in response.content:
            if block["type"] == "text":
                on_text(block["text"])
            elif block["type"] == "tool_use":
                result_block, system_text, meta = handle_tool_use(block, registry, verbose)
                results.append(result_block)
                if system_text:
                    system_prompts.append({"type": "text", "text": system_text})
                if report is not None:
                    report.record_tool_call(
                        turns,
                        meta["name"],
                        meta["arguments"],
                        meta["succeeded"],
                        meta["elapsed"],
                        meta["result_length"],
                        error=None if meta["succeeded"] else result_block["content"],
                    )

        if not results:
            if verbose:
                fmt.completion(turns, "ok")
            return SessionState(messages, system_prompts)

        messages.append({"role": "user", "content": results})


def create_message(
    prompt: str,
    *,
    provider: Provider,
    registry: ToolRegistry,
    base_system_prompt: str,
    context: list[str] = (),
    session: SessionState | None = None,
    max_turns: int = DEFAULT_MAX_TURNS,
    verbose: bool = True,
    report: ReportCollector | None = None,
    on_text: Callable[[str], None] | None = None,
) -> SessionState:
    """Start (or resume) a conversation and run it to completion."""
    state = start_conversation(prompt, base_system_prompt, context, session)
    return run_agent_loop(
        state.messages,
        state.system_prompts,
        provider=provider,
        registry=registry,
        max_turns=max_turns,
        verbose=verbose,
        report=report,
        on_text=on_text,
    )
