"""
Set-of-Mark prompting and reply interpretation.

Every fused element is listed as ``[n] role: "name" (selector)`` where ``n``
is its 1-based position in the fused list; the same numbers are drawn on the
overlay, so the reasoning service can answer with mark numbers instead of
coordinates. Replies are validated against ``GroundingReply`` and turned into
a ``GroundingResult`` under the confidence policy.
"""

import json
from typing import Any, List, Optional, Sequence

from pydantic import ValidationError

from ..core.config import CONFIDENCE_THRESHOLD, GENERIC_ROLE, MULTI_CANDIDATE_THRESHOLD
from ..core.errors import ReplyParseError
from ..core.types import (
    ElementDescriptor,
    GroundingReply,
    GroundingResult,
    Prompt,
    SelectedElement,
)

REPLY_SCHEMA_EXAMPLE = """{
  "interpretation": "Clear explanation of what the user wants",
  "confidence": 0.0-1.0,
  "candidates": [
    {
      "markNumber": 3,
      "selector": ".countdown-box",
      "reasoning": "Why this element matches the user's intent"
    }
  ],
  "needsDisambiguation": false
}"""

REFINEMENT_NOTE = (
    "CONTEXT: This is a refinement request. The user is modifying previously generated code. "
    "Elements marked with (generated_code) were created by that code and may not exist in the original DOM."
)


def format_element_list(descriptors: Sequence[ElementDescriptor]) -> str:
    lines = []
    for ordinal, el in enumerate(descriptors, start=1):
        role = el.role or GENERIC_ROLE
        line = f"[{ordinal}] {role}"
        if el.name:
            line += f': "{el.name}"'
        if el.selector:
            line += f" ({el.selector})"
        lines.append(line)
    return "\n".join(lines)


def build_prompt(
    query: str,
    descriptors: Sequence[ElementDescriptor],
    overlay: Optional[str] = None,
    threshold: float = CONFIDENCE_THRESHOLD,
    refinement: bool = False,
) -> Prompt:
    """Build the grounding prompt. `overlay` is the marked screenshot as a data URL."""
    header = (
        "Available elements (numbered on the screenshot):"
        if overlay is not None
        else "Available elements:"
    )

    text = (
        f'The user wants to: "{query}"\n'
        "\n"
        f"{header}\n"
        f"{format_element_list(descriptors)}\n"
        "\n"
        "Task: Which element(s) does the user want to modify? "
        "Reference them ONLY by their [number] from the list above.\n"
        "\n"
        "Return your answer as JSON:\n"
        f"{REPLY_SCHEMA_EXAMPLE}\n"
        "\n"
        f"If your confidence is below {threshold:g}, or multiple elements could plausibly match, "
        "set needsDisambiguation: true."
    )
    if refinement:
        text += "\n\n" + REFINEMENT_NOTE

    return Prompt(text=text, image=overlay, has_image=overlay is not None)


def _strip_code_fence(text: str) -> str:
    if "```json" in text:
        return text.split("```json")[1].split("```")[0].strip()
    if "```" in text:
        return text.split("```")[1].split("```")[0].strip()
    return text


def parse_reply(raw: Any) -> GroundingReply:
    """Validate a raw reply (JSON text or dict). Raises ReplyParseError."""
    if isinstance(raw, GroundingReply):
        return raw

    data = raw
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        try:
            data = json.loads(_strip_code_fence(raw.strip()))
        except json.JSONDecodeError as e:
            raise ReplyParseError(f"Reply is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ReplyParseError(f"Expected a JSON object, got {type(data).__name__}")

    try:
        return GroundingReply.model_validate(data)
    except ValidationError as e:
        raise ReplyParseError(f"Reply does not match the grounding schema: {e}") from e


def resolve_mark(descriptors: Sequence[ElementDescriptor], mark_number: Optional[int]) -> Optional[ElementDescriptor]:
    if mark_number is None or not 1 <= mark_number <= len(descriptors):
        return None
    return descriptors[mark_number - 1]


def decide_disambiguation(
    service_flag: bool,
    confidence: float,
    selected_count: int,
    threshold: float = CONFIDENCE_THRESHOLD,
) -> bool:
    # Multi-candidate answers are second-guessed even at high confidence.
    return (
        service_flag
        or confidence < threshold
        or (selected_count > 1 and confidence < MULTI_CANDIDATE_THRESHOLD)
    )


def interpret(
    raw_reply: Any,
    descriptors: Sequence[ElementDescriptor],
    threshold: float = CONFIDENCE_THRESHOLD,
) -> GroundingResult:
    """Turn the service reply into a GroundingResult. Never raises on bad replies."""
    try:
        reply = parse_reply(raw_reply)
    except ReplyParseError as e:
        print(f"[SoM] Failed to parse reasoning reply: {e}")
        return GroundingResult(
            interpretation="",
            confidence=0.0,
            needs_disambiguation=True,
            parse_error=str(e),
        )

    selected: List[SelectedElement] = []
    unresolved: List[Optional[int]] = []
    for candidate in reply.candidates:
        desc = resolve_mark(descriptors, candidate.mark_number)
        if desc is None:
            print(f"[SoM] Reply referenced unknown mark {candidate.mark_number}; dropping it")
            unresolved.append(candidate.mark_number)
            continue
        selected.append(
            SelectedElement(
                **desc.model_dump(),
                mark_number=candidate.mark_number,
                reasoning=candidate.reasoning,
            )
        )

    needs_disambiguation = decide_disambiguation(
        reply.needs_disambiguation, reply.confidence, len(selected), threshold
    )
    # Unknown mark numbers always need a clarifying step.
    if unresolved:
        needs_disambiguation = True

    return GroundingResult(
        interpretation=reply.interpretation,
        confidence=reply.confidence,
        selected_elements=selected,
        needs_disambiguation=needs_disambiguation,
        reasoning="; ".join(c.reasoning for c in reply.candidates),
        unresolved_marks=unresolved,
    )
