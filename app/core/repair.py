"""
LLM Response Repair

Best-effort coercion of model output into parseable JSON. Nothing here
raises: failures are logged and the best text available is returned.
"""

from __future__ import annotations
import json
import logging
import re
from typing import Any, Dict, Optional

logger = logging.getLogger("functions.repair")

# ```json ... ``` or a bare ``` ... ``` fence
FENCE_RE = re.compile(r"```([A-Za-z0-9_+-]*)[ \t]*\n?(.*?)```", re.DOTALL)

# Defaults written into a parsed mnemonic when the model leaves them out
MNEMONIC_DEFAULTS = {
    "name": "自動生成暗記法",
    "description": "内容に基づいて自動生成された暗記法です",
    "type": "concept",
}


def extract_fenced_block(text: str) -> Optional[str]:
    """Return the trimmed content of the first fenced block, if any."""
    match = FENCE_RE.search(text)
    if not match:
        return None
    return match.group(2).strip()


def _parses(text: str) -> bool:
    try:
        json.loads(text)
        return True
    except ValueError:
        return False


def repair_json_text(text: str) -> str:
    """
    Try to turn text into valid JSON.

    Extracts a fenced block when present, then closes one missing trailing
    brace. Returns the repaired text when it parses, otherwise the extracted
    (or original) text unchanged.
    """
    if not text:
        return text

    fenced = extract_fenced_block(text)
    candidate = fenced if fenced is not None else text

    if _parses(candidate):
        return candidate

    stripped = candidate.strip()
    if stripped.startswith("{") and not stripped.endswith("}"):
        patched = stripped + "}"
        if _parses(patched):
            logger.info("Repaired JSON by closing a trailing brace")
            return patched
        logger.warning("JSON repair failed after closing trailing brace")
    elif fenced is not None or "{" in candidate:
        logger.warning("Response text is not valid JSON")

    return candidate


def backfill_mnemonic(obj: Dict[str, Any]) -> Dict[str, Any]:
    for key, default in MNEMONIC_DEFAULTS.items():
        if not obj.get(key):
            obj[key] = default
    return obj


def to_json(obj: Any) -> str:
    """Compact JSON, non-ASCII kept as is."""
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def repair_completion(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Repair the first choice of a chat completion in place.

    Content without both braces is left alone. When the (unfenced) content
    parses as is, missing mnemonic fields are backfilled; when it only parses
    after closing a trailing brace, it is re-serialized without backfill. On
    any failure the completion is returned untouched.
    """
    try:
        message = data["choices"][0]["message"]
        content = message["content"]
    except (KeyError, IndexError, TypeError):
        return data

    if not isinstance(content, str) or "{" not in content or "}" not in content:
        return data

    fenced = extract_fenced_block(content)
    candidate = fenced if fenced is not None else content

    try:
        parsed = json.loads(candidate)
    except ValueError as e:
        logger.warning(f"Completion is not valid JSON: {e}")
        repaired = repair_json_text(candidate)
        if repaired != candidate and _parses(repaired):
            message["content"] = to_json(json.loads(repaired))
        return data

    if isinstance(parsed, dict):
        parsed = backfill_mnemonic(parsed)
    message["content"] = to_json(parsed)
    return data
