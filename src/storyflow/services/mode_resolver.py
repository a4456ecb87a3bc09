"""Generation mode inference from canvas, mask and prompt presence."""

from __future__ import annotations

from enum import Enum

from storyflow.errors import NoPromptOrCanvasError


class GenerationMode(str, Enum):
    TXT2IMG = "txt2img"
    IMG2IMG = "img2img"
    INPAINT = "inpaint"


def resolve_mode(canvas_present: bool, mask_present: bool, prompt_non_empty: bool) -> GenerationMode:
    """Pick the generation mode for a trigger instruction.

    Every mode needs a prompt. Without a canvas the mask is irrelevant and the
    result is txt2img. A canvas with no prompt is not generated from; callers
    that only persist the canvas handle that case themselves.
    """
    if not prompt_non_empty:
        if canvas_present:
            raise NoPromptOrCanvasError("No prompt set for generation")
        raise NoPromptOrCanvasError()
    if not canvas_present:
        return GenerationMode.TXT2IMG
    if mask_present:
        return GenerationMode.INPAINT
    return GenerationMode.IMG2IMG


def resolve_mode_for(state) -> GenerationMode:
    return resolve_mode(state.has_canvas, state.has_mask, state.has_prompt)
