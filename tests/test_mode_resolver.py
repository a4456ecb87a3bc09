import pytest
from PIL import Image

from storyflow.errors import NoPromptOrCanvasError
from storyflow.services.execution_state import ExecutionState
from storyflow.services.mode_resolver import GenerationMode, resolve_mode, resolve_mode_for


def test_no_canvas_with_prompt_is_txt2img():
    assert resolve_mode(canvas_present=False, mask_present=False, prompt_non_empty=True) == GenerationMode.TXT2IMG


def test_canvas_without_mask_is_img2img():
    assert resolve_mode(canvas_present=True, mask_present=False, prompt_non_empty=True) == GenerationMode.IMG2IMG


def test_canvas_with_mask_is_inpaint():
    assert resolve_mode(canvas_present=True, mask_present=True, prompt_non_empty=True) == GenerationMode.INPAINT


def test_nothing_to_generate_from_raises():
    with pytest.raises(NoPromptOrCanvasError):
        resolve_mode(canvas_present=False, mask_present=False, prompt_non_empty=False)


def test_mask_without_canvas_is_ignored():
    assert resolve_mode(canvas_present=False, mask_present=True, prompt_non_empty=True) == GenerationMode.TXT2IMG


def test_canvas_with_empty_prompt_is_not_generated_from():
    with pytest.raises(NoPromptOrCanvasError) as excinfo:
        resolve_mode(canvas_present=True, mask_present=False, prompt_non_empty=False)
    assert "No prompt set" in str(excinfo.value)


def test_whitespace_prompt_counts_as_set():
    state = ExecutionState(prompt="   ")
    assert resolve_mode_for(state) == GenerationMode.TXT2IMG
    state.canvas = Image.new("RGB", (4, 4))
    assert resolve_mode_for(state) == GenerationMode.IMG2IMG

    with pytest.raises(NoPromptOrCanvasError):
        resolve_mode_for(ExecutionState(canvas=Image.new("RGB", (4, 4))))
