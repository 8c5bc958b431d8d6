"""
Script text utilities: fence stripping, the vision sentinel, and light
structural summaries used in logs and results.

All functions here are pure/stateless.
"""

from __future__ import annotations

import re

# Single comment the model emits, with no return statement, when a photo
# does not show anything it can model.
UNIDENTIFIABLE_SENTINEL = "# UNIDENTIFIABLE_OBJECT"

_LEADING_FENCE_RE = re.compile(r"^\s*```[\w+-]*[ \t]*\n?")
_TRAILING_FENCE_RE = re.compile(r"\n?[ \t]*```\s*$")
_PARAM_KEY_RE = re.compile(r'["\'](\w+)["\']\s*:')


# ---------------------------------------------------------------------------
# Code extraction: strip markdown fences from raw LLM output
# ---------------------------------------------------------------------------

def strip_fences(raw: str) -> str:
    """Remove one leading and one trailing fence marker, if present."""
    code = _LEADING_FENCE_RE.sub("", raw or "", count=1)
    code = _TRAILING_FENCE_RE.sub("", code, count=1)
    return code.strip()


def extract_code(raw: str) -> str:
    """Pull the script out of a reply that wraps it in prose and a fenced block."""
    if "```python" in raw:
        return raw.split("```python", 1)[1].split("```", 1)[0].strip()
    if raw.lstrip().startswith("```"):
        return strip_fences(raw)
    if "```" in raw:
        return raw.split("```", 1)[1].split("```", 1)[0].strip()
    return raw.strip()


# ---------------------------------------------------------------------------
# Vision sentinel
# ---------------------------------------------------------------------------

def is_unidentifiable(code: str) -> bool:
    """True when the script is only the sentinel comment (no return statement)."""
    lines = [ln.strip() for ln in (code or "").splitlines() if ln.strip()]
    if not lines or "return" in code:
        return False
    return all(ln.startswith("#") for ln in lines) and lines[0].startswith(UNIDENTIFIABLE_SENTINEL)


# ---------------------------------------------------------------------------
# Parameter discovery: names declared in the script's PARAMS dict
# ---------------------------------------------------------------------------

def extract_parameters(code: str) -> list[str]:
    """Keys of the ``PARAMS = {...}`` block, in declaration order."""
    start = code.find("PARAMS")
    if start < 0:
        return []
    open_idx = code.find("{", start)
    if open_idx < 0:
        return []
    depth = 0
    for i in range(open_idx, len(code)):
        if code[i] == "{":
            depth += 1
        elif code[i] == "}":
            depth -= 1
            if depth == 0:
                block = code[open_idx:i]
                return list(dict.fromkeys(_PARAM_KEY_RE.findall(block)))
    return []
