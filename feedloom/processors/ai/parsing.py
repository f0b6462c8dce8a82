from __future__ import annotations

import json
import re
from typing import Any, Callable, Dict, List, Optional

from ...errors import AIResponseError

_fence_re = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL)

BatchResults = Dict[str, str]


def extract_json(raw: str) -> str:
    """Pull the JSON part out of a model reply.

    Tried in order: the whole text, a fenced code block, the span from the
    first ``{`` to the last ``}``, then the same for ``[``/``]``. Returns ""
    when nothing JSON-shaped is found.
    """
    text = (raw or "").strip()
    if (text.startswith("{") and text.endswith("}")) or (text.startswith("[") and text.endswith("]")):
        return text

    match = _fence_re.search(text)
    if match:
        return match.group(1).strip()

    for open_ch, close_ch in (("{", "}"), ("[", "]")):
        start = text.find(open_ch)
        end = text.rfind(close_ch)
        if start != -1 and end > start:
            return text[start : end + 1]
    return ""


def _decode_results(obj: Any) -> Optional[BatchResults]:
    """``{"results": {"0": "tech", ...}}`` with at least one entry."""
    if not isinstance(obj, dict):
        return None
    results = obj.get("results")
    if not isinstance(results, dict) or not results:
        return None
    if not all(isinstance(v, str) for v in results.values()):
        return None
    return {str(k): v for k, v in results.items()}


def _decode_bare_map(obj: Any) -> Optional[BatchResults]:
    """``{"0": "tech", "1": "news"}``."""
    if not isinstance(obj, dict) or not all(isinstance(v, str) for v in obj.values()):
        return None
    return {str(k): v for k, v in obj.items()}


def _decode_legacy(obj: Any) -> Optional[BatchResults]:
    """``{"results": {"0": {"category": "tech"}, ...}}``."""
    if not isinstance(obj, dict):
        return None
    results = obj.get("results")
    if not isinstance(results, dict) or not results:
        return None
    decoded: BatchResults = {}
    for key, value in results.items():
        if not isinstance(value, dict):
            return None
        category = value.get("category", "")
        decoded[str(key)] = category if isinstance(category, str) else str(category)
    return decoded


BATCH_DECODERS: List[Callable[[Any], Optional[BatchResults]]] = [
    _decode_results,
    _decode_bare_map,
    _decode_legacy,
]


def parse_batch_response(raw: str) -> BatchResults:
    """Parse a batch classification reply into ``{index: category_id}``.

    Each decoder in ``BATCH_DECODERS`` is tried in order; the first one that
    accepts the document wins.
    """
    candidate = extract_json(raw) or (raw or "").strip()
    try:
        obj = json.loads(candidate)
    except (json.JSONDecodeError, TypeError) as exc:
        raise AIResponseError(f"Cannot parse batch reply: {raw[:200]!r}") from exc

    for decoder in BATCH_DECODERS:
        decoded = decoder(obj)
        if decoded is not None:
            return decoded
    raise AIResponseError(f"Unrecognised batch reply shape: {raw[:200]!r}")


def parse_object_response(raw: str) -> Dict[str, Any]:
    """Parse a reply expected to hold a single JSON object."""
    candidate = extract_json(raw)
    if not candidate:
        raise AIResponseError("No JSON object found in AI response")
    try:
        obj = json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise AIResponseError(f"Invalid JSON in AI response: {exc}") from exc
    if isinstance(obj, list) and obj and isinstance(obj[0], dict):
        obj = obj[0]
    if not isinstance(obj, dict):
        raise AIResponseError("AI response is not a JSON object")
    return obj
