"""Prompt-cache boundary placement for backends that bill cached prefixes less.

Markers are applied to per-request copies only. The canonical history and
saved sessions never contain them.
"""

import copy
import json
import math

CACHE_CONTROL = {"type": "ephemeral"}

MAX_MESSAGE_MARKERS = 3
FIRST_MARKER_TOKENS = 1024
NEXT_MARKER_TOKENS = 2048


def strip_cache_control(obj):
    """Return a deep copy of *obj* with every ``cache_control`` key removed."""
    if isinstance(obj, dict):
        return {k: strip_cache_control(v) for k, v in obj.items() if k != "cache_control"}
    if isinstance(obj, list):
        return [strip_cache_control(v) for v in obj]
    return obj


def count_markers(obj) -> int:
    if isinstance(obj, dict):
        own = 1 if "cache_control" in obj else 0
        return own + sum(count_markers(v) for v in obj.values())
    if isinstance(obj, list):
        return sum(count_markers(v) for v in obj)
    return 0


def block_text(block: dict) -> str:
    """The text a block contributes to the prompt, for estimation."""
    kind = block.get("type")
    if kind == "text":
        return block.get("text", "")
    if kind == "tool_use":
        return json.dumps(block.get("input", {}), ensure_ascii=False)
    if kind == "tool_result":
        content = block.get("content", "")
        if isinstance(content, list):
            return "".join(b.get("text", "") for b in content if isinstance(b, dict))
        return str(content)
    return ""


def estimate_tokens(text: str) -> int:
    """Rough token estimate: non-whitespace characters / 4, rounded up."""
    return math.ceil(sum(1 for c in text if not c.isspace()) / 4)


def _as_blocks(message: dict) -> dict:
    if isinstance(message.get("content"), str):
        return {**message, "content": [{"type": "text", "text": message["content"]}]}
    return message


class CacheAnnotator:
    """Places at most three message markers plus one system-prompt marker.

    One annotator lives for one conversation run and remembers where it put
    markers on earlier turns, so each request extends the previous one's
    cached prefix.
    """

    def __init__(self):
        self._markers: list[tuple[int, int]] = []  # (message index, block index)

    @property
    def markers(self) -> list[tuple[int, int]]:
        return list(self._markers)

    def annotate_system(self, system_prompts: list[dict]) -> list[dict]:
        """Copy of *system_prompts* with exactly one marker, on the last segment."""
        segments = strip_cache_control(system_prompts)
        if segments:
            segments[-1]["cache_control"] = dict(CACHE_CONTROL)
        return segments

    def annotate(self, messages: list[dict]) -> list[dict]:
        """Copy of *messages* with cache markers for this request."""
        marked = [_as_blocks(m) for m in strip_cache_control(messages)]

        self._markers = [
            (mi, bi)
            for mi, bi in self._markers
            if mi < len(marked) and bi < len(marked[mi]["content"])
        ]

        if marked and marked[-1].get("role") == "user" and marked[-1]["content"]:
            target = (len(marked) - 1, len(marked[-1]["content"]) - 1)
            if target not in self._markers:
                self._apply_policy(marked, target)

        for mi, bi in self._markers:
            marked[mi]["content"][bi]["cache_control"] = dict(CACHE_CONTROL)
        return marked

    def _apply_policy(self, marked: list[dict], target: tuple[int, int]) -> None:
        count = len(self._markers)
        if count >= MAX_MESSAGE_MARKERS:
            self._markers.remove(max(self._markers))
            self._markers.append(target)
            return

        tokens = self._tokens_since_last_marker(marked, target)
        threshold = FIRST_MARKER_TOKENS if count == 0 else NEXT_MARKER_TOKENS
        if tokens > threshold:
            self._markers.append(target)

    def _tokens_since_last_marker(self, marked: list[dict], target: tuple[int, int]) -> int:
        start = max(self._markers) if self._markers else None
        parts = []
        for mi, message in enumerate(marked):
            for bi, block in enumerate(message["content"]):
                pos = (mi, bi)
                if start is not None and pos <= start:
                    continue
                if pos > target:
                    break
                parts.append(block_text(block))
        return estimate_tokens("".join(parts))
