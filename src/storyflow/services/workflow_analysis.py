"""Pre-run analysis: support levels and generation-trigger detection."""

from __future__ import annotations

from typing import Any, Iterable, NamedTuple, Optional

from storyflow.constants import (
    SKIP_AI_TOOLS,
    SKIP_CANVAS,
    SKIP_DEPTH_POSE,
    SKIP_MASK,
    SKIP_MOODBOARD,
)
from storyflow.model.instructions import Instruction, InstructionKind as K, parse_instruction

FULL = "full"
PARTIAL = "partial"
NOT_SUPPORTED = "not_supported"


class SupportLevel(NamedTuple):
    level: str
    reason: Optional[str] = None


class WorkflowAnalysis(NamedTuple):
    full: int
    partial: int
    unsupported: int
    has_generation_trigger: bool


_PARTIAL_REASONS = {
    K.MASK_LOAD: "Mask will be loaded but requires explicit generation trigger",
    K.MOODBOARD_ADD: "Image tracked but moodboard not used by API",
    K.INPAINT_TOOLS: "Some settings applied to config",
}

_UNSUPPORTED_REASONS = {
    K.CANVAS_CLEAR: SKIP_CANVAS,
    K.MOVE_SCALE: SKIP_CANVAS,
    K.ADAPT_SIZE: SKIP_CANVAS,
    K.CROP: SKIP_CANVAS,
    K.MOODBOARD_CLEAR: SKIP_MOODBOARD,
    K.MOODBOARD_CANVAS: SKIP_MOODBOARD,
    K.MOODBOARD_REMOVE: SKIP_MOODBOARD,
    K.MOODBOARD_WEIGHTS: SKIP_MOODBOARD,
    K.LOOP_ADD_MOODBOARD: SKIP_MOODBOARD,
    K.MASK_CLEAR: SKIP_MASK,
    K.MASK_GET: SKIP_MASK,
    K.MASK_BACKGROUND: SKIP_MASK,
    K.MASK_FOREGROUND: SKIP_MASK,
    K.MASK_BODY: SKIP_MASK,
    K.MASK_ASK: SKIP_MASK,
    K.DEPTH_EXTRACT: SKIP_DEPTH_POSE,
    K.DEPTH_CANVAS: SKIP_DEPTH_POSE,
    K.DEPTH_TO_CANVAS: SKIP_DEPTH_POSE,
    K.POSE_EXTRACT: SKIP_DEPTH_POSE,
    K.POSE_JSON: SKIP_DEPTH_POSE,
    K.REMOVE_BACKGROUND: SKIP_AI_TOOLS,
    K.FACE_ZOOM: SKIP_AI_TOOLS,
    K.ASK_ZOOM: SKIP_AI_TOOLS,
    K.XL_MAGIC: "XL Magic requires Draw Things internal state",
}


def support_level(instruction: Instruction) -> SupportLevel:
    if instruction.kind in _UNSUPPORTED_REASONS:
        return SupportLevel(NOT_SUPPORTED, _UNSUPPORTED_REASONS[instruction.kind])
    if instruction.kind in _PARTIAL_REASONS:
        return SupportLevel(PARTIAL, _PARTIAL_REASONS[instruction.kind])
    return SupportLevel(FULL)


def skip_reason(instruction: Instruction) -> Optional[str]:
    """Reason an instruction is skipped at run time, or None if it executes."""
    return _UNSUPPORTED_REASONS.get(instruction.kind)


def has_generation_trigger(instructions: Iterable[Any]) -> bool:
    for raw in instructions:
        parsed = parse_instruction(raw)
        if isinstance(parsed, Instruction) and parsed.is_generation_trigger:
            return True
    return False


def analyze_workflow(instructions: Iterable[Any]) -> WorkflowAnalysis:
    full = partial = unsupported = 0
    trigger = False
    for raw in instructions:
        parsed = parse_instruction(raw)
        if not isinstance(parsed, Instruction):
            unsupported += 1
            continue
        level = support_level(parsed).level
        if level == FULL:
            full += 1
        elif level == PARTIAL:
            partial += 1
        else:
            unsupported += 1
        trigger = trigger or parsed.is_generation_trigger
    return WorkflowAnalysis(full, partial, unsupported, trigger)
