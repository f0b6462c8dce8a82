from __future__ import annotations

import json
import subprocess
from typing import Any, Dict, List

from ..errors import ScriptError
from ..models import Item
from ..utils.logging import get_logger

logger = get_logger("fl.processors.script")


def run_shell(script: str, payload: str, *, timeout: float) -> str:
    """Run ``script`` with ``bash -c``, feeding ``payload`` on stdin; return stdout.

    Raises ``ScriptError`` on timeout, non-zero exit or a missing shell.
    """
    try:
        proc = subprocess.run(
            ["bash", "-c", script],
            input=payload,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        raise ScriptError(f"script timed out after {timeout:.0f}s") from exc
    except OSError as exc:
        raise ScriptError(f"cannot start script: {exc}") from exc
    if proc.returncode != 0:
        raise ScriptError(f"script exited with {proc.returncode}: {proc.stderr.strip()[:500]}")
    return proc.stdout


def parse_script_output(output: str) -> List[Dict[str, Any]]:
    """Decode a JSON array, or JSON lines, of objects. Blank output is an empty list."""
    text = output.strip()
    if not text:
        return []
    try:
        decoded = json.loads(text)
    except json.JSONDecodeError as exc:
        rows = []
        for line in text.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                row = json.loads(line)
            except json.JSONDecodeError:
                raise ScriptError(f"cannot parse script output: {exc}; output: {text[:200]}") from exc
            if not isinstance(row, dict):
                raise ScriptError(f"script output line is not an object: {line[:200]}")
            rows.append(row)
        return rows
    if isinstance(decoded, dict):
        return [decoded]
    if not isinstance(decoded, list) or not all(isinstance(r, dict) for r in decoded):
        raise ScriptError("script output must be a JSON array of objects")
    return decoded


def apply_script_filter(items: List[Item], script: str, *, timeout: float) -> List[Item]:
    """Keep the items whose link the script writes back to stdout.

    An empty stdout filters everything out. Any failure raises
    ``ScriptError``; callers keep the input list in that case.
    """
    if not items:
        return items
    payload = json.dumps([item.to_json() for item in items], ensure_ascii=False)
    rows = parse_script_output(run_shell(script, payload, timeout=timeout))
    kept_links = {str(row.get("link") or "") for row in rows}
    unknown = kept_links - {item.link for item in items} - {""}
    if unknown:
        logger.debug("Script returned %d links that were not in its input", len(unknown))
    return [item for item in items if item.link in kept_links]
