"""
Prompt templates for solid generation, editing, photo interpretation and
error-fixing.

The system prompt is the contract generated scripts must satisfy; the
sandbox enforces the parts of it that can be checked mechanically (names,
forbidden statements, return shape). The primitive list is rendered from
the binding registry so the prompt can never advertise a name the sandbox
does not bind.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Sequence

from .code_processor import UNIDENTIFIABLE_SENTINEL
from .primitives import PRIMITIVE_NAMES

OVERLAP = 0.01

# Minimum circular segment counts per feature class.
SEGMENTS_MAIN_BODY = 48
SEGMENTS_HOLE = 32
SEGMENTS_SMALL = 24
SEGMENTS_TORUS = (48, 24)

PRIMITIVE_DOCS: dict[str, str] = {
    "cuboid": "cuboid(size=[x, y, z]) — box centred at the origin",
    "sphere": "sphere(radius=r, segments=n) — sphere centred at the origin",
    "cylinder": "cylinder(radius=r, height=h, segments=n) — cylinder centred at the origin along Z",
    "torus": (
        "torus(inner_radius=tube_r, outer_radius=ring_r, inner_segments=n, outer_segments=m) "
        "— ring centred at the origin in the XY plane"
    ),
    "polygon": "polygon(points=[[x, y], ...]) — closed 2-D outline (x is the radius when revolved)",
    "revolve": "revolve(profile, segments=n, angle=radians) — spin a polygon outline around the Z axis",
    "union": "union(a, b, ...) — combine solids",
    "subtract": "subtract(a, b, ...) — cut b (and any following solids) from a",
    "intersect": "intersect(a, b, ...) — keep only the overlap",
    "translate": "translate([x, y, z], solid) — move",
    "rotate": "rotate([rx, ry, rz], solid) — rotate about X, Y, Z (radians)",
    "scale": "scale([sx, sy, sz], solid) — scale (a single number scales uniformly)",
    "mirror": "mirror([nx, ny, nz], solid) — reflect across the plane through the origin with that normal",
}

HELPER_NAMES = (
    "range, len, min, max, abs, round, sum, enumerate, zip, float, int, bool, str, "
    "list, tuple, dict, sorted, reversed, any, all, pi, sin, cos, tan, sqrt, atan2, radians, degrees"
)


@dataclass(frozen=True)
class ChatMessage:
    """Provider-neutral message handed to the generation client."""

    role: str
    content: str
    image_data: bytes | None = None
    image_mime: str | None = None


# ---------------------------------------------------------------------------
# System prompt
# ---------------------------------------------------------------------------

def _primitive_block() -> str:
    return "\n".join(f"- {PRIMITIVE_DOCS[name]}" for name in PRIMITIVE_NAMES)


def _base_prompt() -> str:
    signature = ", ".join(PRIMITIVE_NAMES)
    return f"""You are a 3D modeling assistant that writes parametric solid-modeling code in Python.
The user describes a part in natural language. You respond with ONLY the code body — no explanation, no markdown fences.

## Function signature

Your code is the body of:
def generate_model({signature}):

It must end with a `return` statement producing either a single solid, or a list of parts:
return [{{"solid": body, "color": "#8899aa", "name": "Body"}}, ...]
("color" and "name" are optional strings.)

## Available primitives

These {len(PRIMITIVE_NAMES)} primitives are passed in as function arguments:

{_primitive_block()}

Pure helpers you may also use: {HELPER_NAMES}.

## Hard constraints

- NO `import` or `from ... import` statements — primitives are pre-injected
- NO `print`, logging, file access or any other side effect
- ONLY the {len(PRIMITIVE_NAMES)} listed primitives and the pure helpers — nothing else
- NO names starting with an underscore, NO `global`, `class`, `with`, `yield` or `del`
- Output raw code only — no markdown fences, no explanation text

## Engineering rules

- Units are millimetres. Use real-world dimensions.
- Declare every dimension once in a `PARAMS` dict at the top and reference it by name. No magic numbers below it.
- Every solid used as a cutting operand in `subtract` or `intersect` must extend `PARAMS["overlap"]` ({OVERLAP}) past the faces it cuts, so no faces are coincident.
- Minimum segments: {SEGMENTS_MAIN_BODY} for main round bodies, {SEGMENTS_HOLE} for holes and bosses, {SEGMENTS_SMALL} for small spheres and details, torus {SEGMENTS_TORUS[0]} x {SEGMENTS_TORUS[1]}.
- Every part must be a closed solid that touches or overlaps the rest of the model.

## Examples

User: "make a box"
PARAMS = {{"width": 40, "depth": 30, "height": 20}}
return cuboid(size=[PARAMS["width"], PARAMS["depth"], PARAMS["height"]])

User: "make an L-bracket"
PARAMS = {{"leg": 40, "thickness": 5, "width": 30, "overlap": {OVERLAP}}}
vertical = translate([0, 0, PARAMS["leg"] / 2], cuboid(size=[PARAMS["thickness"], PARAMS["width"], PARAMS["leg"]]))
horizontal = translate([PARAMS["leg"] / 2, 0, PARAMS["thickness"] / 2], cuboid(size=[PARAMS["leg"], PARAMS["width"], PARAMS["thickness"]]))
return union(vertical, horizontal)

User: "make a cylinder with a hole through the center"
PARAMS = {{"radius": 15, "height": 25, "hole_radius": 5, "overlap": {OVERLAP}}}
outer = cylinder(radius=PARAMS["radius"], height=PARAMS["height"], segments={SEGMENTS_MAIN_BODY})
hole = cylinder(radius=PARAMS["hole_radius"], height=PARAMS["height"] + 2 * PARAMS["overlap"], segments={SEGMENTS_HOLE})
return subtract(outer, hole)

User: "make a small vase with a red base ring"
PARAMS = {{"base_r": 30, "neck_r": 12, "height": 90, "ring_tube": 3}}
outline = polygon(points=[[0, 0], [PARAMS["base_r"], 0], [PARAMS["base_r"] * 1.2, PARAMS["height"] * 0.4], [PARAMS["neck_r"], PARAMS["height"]], [0, PARAMS["height"]]])
body = translate([0, 0, -PARAMS["height"] / 2], revolve(outline, segments={SEGMENTS_MAIN_BODY}))
ring = translate([0, 0, -PARAMS["height"] / 2], torus(inner_radius=PARAMS["ring_tube"], outer_radius=PARAMS["base_r"], inner_segments={SEGMENTS_TORUS[1]}, outer_segments={SEGMENTS_TORUS[0]}))
return [{{"solid": body, "color": "#d8d2c4", "name": "Vase"}}, {{"solid": ring, "color": "#b03030", "name": "Base ring"}}]
"""


def _edit_block(current_code: str) -> str:
    return f"""
## Current model code

The user is iterating on this existing design:

{current_code}

- Modify the provided code to match the user's request — do not start from scratch unless asked.
- Preserve variable names, structure, PARAMS entries and dimensions that the user did not ask to change.
- Always return the COMPLETE updated code, never a diff or a partial snippet.
- If the request is ambiguous about which part to change, make a reasonable choice and change only that part.
"""


def _vision_block() -> str:
    return f"""
## Working from a photo

The user attached a photo. Before writing code:
1. Identify the main subject of the photo.
2. Estimate its proportions (ratios between width, depth and height, hole positions, wall thickness).
3. Pick plausible real-world dimensions in millimetres for an object of that kind.
4. Map every visible feature onto the available primitives; approximate details the primitives cannot express.

If the photo does not show an object you can identify and model, respond with exactly this single line and nothing else (no return statement):
{UNIDENTIFIABLE_SENTINEL}
"""


def build_system_prompt(current_code: str | None = None, has_image: bool = False) -> str:
    prompt = _base_prompt()
    if current_code:
        prompt += _edit_block(current_code)
    if has_image:
        prompt += _vision_block()
    return prompt


# ---------------------------------------------------------------------------
# Message list
# ---------------------------------------------------------------------------

def trim_history(turns: Sequence[tuple[str, str]], max_turns: int) -> list[tuple[str, str]]:
    """Keep the newest ``max_turns`` turns, starting on a user turn."""
    kept = list(turns)[-max_turns:] if max_turns > 0 else list(turns)
    while kept and kept[0][0] != "user":
        kept.pop(0)
    return kept


def build_messages(
    turns: Sequence[tuple[str, str]],
    image_data: bytes | None = None,
    image_mime: str | None = None,
) -> list[ChatMessage]:
    """Shape ``(role, content)`` history for the generation API.

    The last turn must be the user's; the image, if any, rides on it.
    """
    if not turns or turns[-1][0] != "user":
        raise ValueError("history must end with a user turn")
    messages = [ChatMessage(role=role, content=content) for role, content in turns[:-1]]
    role, content = turns[-1]
    messages.append(ChatMessage(role=role, content=content, image_data=image_data, image_mime=image_mime))
    return messages


# ---------------------------------------------------------------------------
# Fix prompt (for the sandbox auto-retry loop)
# ---------------------------------------------------------------------------

def build_fix_prompt(original_request: str, failed_script: str, error_text: str) -> str:
    return f"""The code you just wrote failed when it was executed. Fix it in ONE attempt.

ORIGINAL REQUEST:
{original_request}

FAILED CODE:
{failed_script}

ERROR:
{error_text}

DIAGNOSIS STEPS:
1. Read the error — identify the exact statement and primitive call that failed.
2. Classify the error:
   - NAME: a name that is not one of the primitives or pure helpers → use only: {", ".join(PRIMITIVE_NAMES)}
   - ARGUMENTS: wrong argument shape or type → match the documented primitive signatures exactly
   - GEOMETRY: empty or degenerate solid → check dimensions, positions and that cutting solids actually overlap
   - SHAPE: wrong return value → return a solid or a list of {{"solid", "color", "name"}} dicts
   - FORBIDDEN: import, print, underscore names, global, class, with, yield, del, string join/replace/padding → remove them
   - LIMIT: a huge range(), repetition or power → use realistic sizes

FIX RULES:
1. Fix ONLY the specific error. Keep everything else identical.
2. Keep the PARAMS dict and use PARAMS["overlap"] on every cutting operand.
3. Respect the minimum segment counts.
4. End with a `return` of a solid or a list of parts.
5. Return ONLY the code body. No explanations. No markdown fences."""


# ---------------------------------------------------------------------------
# Prompt expander — imperial units and part-type requirements
# ---------------------------------------------------------------------------

_INCH_RE = re.compile(r'(\d+(?:\.\d+)?)\s*(?:inches|inch|in\b|")', re.IGNORECASE)
_FOOT_RE = re.compile(r"(\d+(?:\.\d+)?)\s*(?:foot|feet|ft\b|')", re.IGNORECASE)

_OVERLAP_RULE = '- Boolean overlap: all cutting geometry must use PARAMS["overlap"]'

PART_TYPES: list[tuple[tuple[str, ...], list[str]]] = [
    (
        ("clamp", "pipe clamp", "repair clamp", "hose clamp", "c-clamp"),
        [
            "Geometric requirements for clamp:",
            "- Bore diameter must match the pipe/hose outer diameter",
            "- Wall thickness: minimum 5mm for structural integrity",
            "- Flange width: at least 15mm on each side of the gap opening",
            "- Bolt holes: 2-4 holes through the flanges, typically 4mm radius",
            "- C-shape gap: 8-12mm opening width",
            _OVERLAP_RULE,
            "- Use segments: 48 for main shell cylinder",
        ],
    ),
    (
        ("bracket", "mounting bracket", "handrail bracket", "wall bracket", "l-bracket", "angle bracket"),
        [
            "Geometric requirements for bracket:",
            "- L-shape construction: vertical plate + horizontal plate",
            "- Plate thickness: minimum 5mm",
            "- Add a gusset/brace between the two plates for structural support",
            "- Bolt hole pattern: at least 2 holes per plate face",
            "- Bolt holes typically 3-5mm radius",
            _OVERLAP_RULE,
        ],
    ),
    (
        ("housing", "junction box", "enclosure", "box", "case", "casing"),
        [
            "Geometric requirements for housing/enclosure:",
            "- Hollow interior created by subtracting a smaller cuboid from the outer shell",
            "- Wall thickness: minimum 3mm on all sides",
            "- Lid lip: 2-3mm raised rim around the top opening",
            "- Conduit/cable holes on at least one side wall",
            "- Conduit holes typically 10-15mm radius",
            _OVERLAP_RULE,
        ],
    ),
    (
        ("clip", "cable clip", "wire clip", "cable management", "snap clip", "retention clip"),
        [
            "Geometric requirements for clip:",
            "- Channel opening (snap-fit gap) at the top: 10-15mm width",
            "- Wall thickness around the channel: minimum 3mm",
            "- Flat mounting base at the bottom with screw holes",
            "- Mounting holes: 2-3mm radius, at least 2 holes",
            "- Channel diameter must match cable/pipe diameter",
            _OVERLAP_RULE,
            "- Use segments: 48 for clip body cylinder",
        ],
    ),
    (
        ("collar", "pipe collar", "shaft collar", "ring", "flange collar"),
        [
            "Geometric requirements for collar:",
            "- Inner radius must match the pipe/shaft outer radius exactly",
            "- Wall thickness: minimum 4mm",
            "- Mounting tab extending outward with bolt holes",
            "- Tab bolt holes: 3-4mm radius",
            _OVERLAP_RULE,
            "- Use segments: 48 for collar body cylinders",
        ],
    ),
    (
        ("saddle", "conduit saddle", "pipe saddle", "pipe support"),
        [
            "Geometric requirements for saddle:",
            "- Half-round channel to cradle the pipe",
            "- Flat base with mounting holes on each side",
            "- Channel radius matches pipe outer diameter",
            "- Base width: pipe diameter + 20mm minimum per side",
            "- Mounting holes: 3-4mm radius",
            _OVERLAP_RULE,
        ],
    ),
]


@dataclass(frozen=True)
class ExpandedPrompt:
    text: str
    extracted_mm: tuple[float, ...] = ()
    was_expanded: bool = False


def _convert_imperial(text: str) -> tuple[str, list[float]]:
    extracted: list[float] = []

    def _sub(factor: float, unit: str):
        def _repl(match: re.Match) -> str:
            num = match.group(1)
            mm = float(num) * factor
            extracted.append(mm)
            return f"{num} {unit} ({mm:.1f}mm)"
        return _repl

    text = _INCH_RE.sub(_sub(25.4, "inch"), text)
    text = _FOOT_RE.sub(_sub(304.8, "foot"), text)
    return text, extracted


def _part_constraints(text: str) -> str | None:
    lower = text.lower()
    for keywords, lines in PART_TYPES:
        if any(keyword in lower for keyword in keywords):
            return "\n".join(lines)
    return None


def expand_prompt(user_input: str) -> ExpandedPrompt:
    """Convert imperial lengths to mm and append part-type requirements."""
    metric_text, extracted = _convert_imperial(user_input)
    constraints = _part_constraints(metric_text)
    if not extracted and not constraints:
        return ExpandedPrompt(text=user_input)
    expanded = metric_text
    if constraints:
        expanded += f"\n\n{constraints}"
    return ExpandedPrompt(text=expanded, extracted_mm=tuple(extracted), was_expanded=True)
