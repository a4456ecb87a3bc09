import json

import pytest
from PIL import Image

from storyflow.errors import GenerationCancelled, ProviderError
from storyflow.model.instructions import InstructionKind
from storyflow.services.executor import (
    ExecutionStatus,
    RuntimeErrorKind,
    StepOutcome,
    WorkflowExecutor,
    loop_save_filename,
)
from storyflow.services.image_storage import ImageStorage
from storyflow.services.mode_resolver import GenerationMode
from storyflow.services.provider import GenerationProgress, GenerationProvider


class FakeProvider(GenerationProvider):
    """Records requests and returns a small solid image per call."""

    transport = "fake"

    def __init__(self, errors=None, on_generate=None):
        self.requests = []
        self.errors = list(errors or [])
        self.on_generate = on_generate

    def check_connection(self):
        return True

    def generate(self, request):
        self.requests.append(request)
        if self.on_generate:
            self.on_generate(request)
        if self.errors:
            error = self.errors.pop(0)
            if error is not None:
                raise error
        request.report(GenerationProgress.complete())
        shade = len(self.requests) * 10
        return [Image.new("RGB", (8, 8), (shade, shade, shade))]


def write_image(path, color=(255, 0, 0)):
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", (8, 8), color).save(path)


def make_executor(tmp_path, provider=None, **kwargs):
    provider = provider or FakeProvider()
    return WorkflowExecutor(provider, ImageStorage(tmp_path), **kwargs), provider


def test_loop_save_produces_indices_from_zero(tmp_path):
    executor, provider = make_executor(tmp_path)
    result = executor.execute([
        {"prompt": "a lighthouse"},
        {"loop": {"loop": 3, "start": 0}},
        {"loopSave": "variation_"},
        {"loopEnd": True},
    ])

    assert result.status == ExecutionStatus.COMPLETED
    assert len(provider.requests) == 3
    assert [r.filename for r in result.images] == ["variation_0.png", "variation_1.png", "variation_2.png"]
    for i in range(3):
        assert (tmp_path / f"variation_{i}.png").exists()
        assert (tmp_path / f"variation_{i}.json").exists()


def test_loop_start_offset_shifts_indices(tmp_path):
    executor, provider = make_executor(tmp_path)
    result = executor.execute([
        {"prompt": "a lighthouse"},
        {"loop": {"loop": 2, "start": 5}},
        {"loopSave": "out/frame_"},
        {"loopEnd": True},
    ])

    assert [r.filename for r in result.images] == ["out/frame_5.png", "out/frame_6.png"]
    assert not (tmp_path / "out" / "frame_0.png").exists()


def test_loop_body_runs_exactly_count_times(tmp_path):
    executor, provider = make_executor(tmp_path)
    result = executor.execute([
        {"loop": {"loop": 3, "start": 0}},
        {"prompt": "a fox"},
        {"canvasSave": "fox.png"},
        {"loopEnd": True},
    ])

    assert len(provider.requests) == 3
    assert len(result.images) == 3
    assert (tmp_path / "fox.png").exists()


def test_loop_with_zero_count_skips_body(tmp_path):
    executor, provider = make_executor(tmp_path)
    result = executor.execute([
        {"prompt": "a fox"},
        {"loop": 0},
        {"loopSave": "never_"},
        {"loopEnd": True},
        {"generate": True},
    ])

    assert len(provider.requests) == 1
    assert result.images[0].filename is None
    assert not list(tmp_path.glob("never_*"))


def test_missing_trigger_completes_without_images(tmp_path):
    executor, provider = make_executor(tmp_path)
    result = executor.execute([
        {"prompt": "a"},
        {"config": {"width": 512}},
    ])

    assert result.status == ExecutionStatus.COMPLETED
    assert result.images == []
    assert result.missing_generation_trigger is True
    assert provider.requests == []
    assert result.final_state.config.width == 512


def test_canvas_load_then_save_calls_provider_once_with_source(tmp_path):
    write_image(tmp_path / "in.png")
    executor, provider = make_executor(tmp_path)
    result = executor.execute([
        {"canvasLoad": "in.png"},
        {"prompt": "enhance"},
        {"canvasSave": "out.png"},
    ])

    assert len(provider.requests) == 1
    assert provider.requests[0].source_image is not None
    assert result.images[0].mode == GenerationMode.IMG2IMG
    assert (tmp_path / "out.png").exists()
    metadata = json.loads((tmp_path / "out.json").read_text(encoding="utf-8"))
    assert metadata["prompt"] == "enhance"
    assert metadata["mode"] == "img2img"


def test_canvas_and_mask_resolve_to_inpaint(tmp_path):
    write_image(tmp_path / "in.png")
    write_image(tmp_path / "mask.png", (255, 255, 255))
    executor, provider = make_executor(tmp_path)
    result = executor.execute([
        {"canvasLoad": "in.png"},
        {"maskLoad": "mask.png"},
        {"prompt": "fix the sky"},
        {"generate": True},
    ])

    assert provider.requests[0].mask is not None
    assert result.images[0].mode == GenerationMode.INPAINT


def test_generated_image_becomes_canvas(tmp_path):
    executor, provider = make_executor(tmp_path)
    executor.execute([
        {"prompt": "a tree"},
        {"generate": True},
        {"generate": True},
    ])

    assert provider.requests[0].source_image is None
    assert provider.requests[1].source_image is not None


def test_end_stops_execution(tmp_path):
    executor, provider = make_executor(tmp_path)
    result = executor.execute([
        {"prompt": "a"},
        {"end": True},
        {"generate": True},
    ])

    assert result.status == ExecutionStatus.STOPPED
    assert len(result.steps) == 2
    assert provider.requests == []


def test_cancel_is_honoured_at_next_instruction(tmp_path):
    executor, provider = make_executor(tmp_path)
    provider.on_generate = lambda request: executor.cancel()
    result = executor.execute([
        {"prompt": "a"},
        {"generate": True},
        {"generate": True},
    ])

    assert result.status == ExecutionStatus.CANCELLED
    assert len(provider.requests) == 1
    assert len(result.steps) == 2


def test_cancelled_generation_halts_run(tmp_path):
    provider = FakeProvider(errors=[GenerationCancelled()])
    executor, _ = make_executor(tmp_path, provider)
    result = executor.execute([
        {"prompt": "a"},
        {"generate": True},
        {"generate": True},
    ])

    assert result.status == ExecutionStatus.CANCELLED
    assert result.steps[-1].error_kind == RuntimeErrorKind.CANCELLED
    assert len(provider.requests) == 1


def test_provider_failure_continues_by_default(tmp_path):
    provider = FakeProvider(errors=[ProviderError("boom", 500), None])
    executor, _ = make_executor(tmp_path, provider)
    result = executor.execute([
        {"prompt": "a"},
        {"canvasSave": "first.png"},
        {"canvasSave": "second.png"},
    ])

    assert result.status == ExecutionStatus.COMPLETED
    assert result.failed_count == 1
    assert result.steps[1].error_kind == RuntimeErrorKind.PROVIDER_FAILURE
    assert "boom" in result.steps[1].message
    assert not (tmp_path / "first.png").exists()
    assert (tmp_path / "second.png").exists()


def test_provider_failure_aborts_when_configured(tmp_path):
    provider = FakeProvider(errors=[ProviderError("boom")])
    executor, _ = make_executor(tmp_path, provider, abort_on_provider_failure=True)
    result = executor.execute([
        {"prompt": "a"},
        {"canvasSave": "first.png"},
        {"canvasSave": "second.png"},
    ])

    assert result.status == ExecutionStatus.ABORTED
    assert len(result.steps) == 2
    assert "boom" in result.error_message
    assert len(provider.requests) == 1


def test_trigger_without_prompt_or_canvas_fails(tmp_path):
    executor, provider = make_executor(tmp_path)
    result = executor.execute([{"canvasSave": "out.png"}])

    assert result.steps[0].outcome == StepOutcome.FAILED
    assert result.steps[0].error_kind == RuntimeErrorKind.NO_PROMPT_OR_CANVAS
    assert provider.requests == []


def test_missing_canvas_file_is_failed_step(tmp_path):
    executor, _ = make_executor(tmp_path)
    result = executor.execute([
        {"canvasLoad": "missing.png"},
        {"prompt": "a"},
        {"generate": True},
    ])

    assert result.steps[0].error_kind == RuntimeErrorKind.FILE_NOT_FOUND
    assert result.images[0].mode == GenerationMode.TXT2IMG


def test_loop_load_out_of_range(tmp_path):
    write_image(tmp_path / "frames" / "f_1.png")
    write_image(tmp_path / "frames" / "f_2.png")
    executor, provider = make_executor(tmp_path)
    result = executor.execute([
        {"prompt": "restyle"},
        {"loop": {"loop": 3, "start": 0}},
        {"loopLoad": "frames"},
        {"loopSave": "out_"},
        {"loopEnd": True},
    ])

    failed = [s for s in result.steps if s.outcome == StepOutcome.FAILED]
    assert len(failed) == 1
    assert failed[0].error_kind == RuntimeErrorKind.LOOP_INDEX_OUT_OF_RANGE
    assert len(provider.requests) == 3


def test_loop_load_uses_natural_order(tmp_path):
    write_image(tmp_path / "frames" / "f_10.png", (0, 0, 255))
    write_image(tmp_path / "frames" / "f_2.png", (0, 255, 0))
    executor, provider = make_executor(tmp_path)
    executor.execute([
        {"prompt": "restyle"},
        {"loop": {"loop": 1, "start": 0}},
        {"loopLoad": "frames"},
        {"generate": True},
        {"loopEnd": True},
    ])

    assert provider.requests[0].source_image.getpixel((0, 0)) == (0, 255, 0)


def test_config_instructions_merge(tmp_path):
    executor, provider = make_executor(tmp_path)
    executor.execute([
        {"prompt": "a"},
        {"config": {"steps": 20, "seed": 42}},
        {"config": {"width": 512}},
        {"generate": True},
    ])

    config = provider.requests[0].config
    assert config.steps == 20
    assert config.seed == 42
    assert config.width == 512


def test_negative_prompt_in_config_routes_to_state(tmp_path):
    executor, provider = make_executor(tmp_path)
    executor.execute([
        {"prompt": "a"},
        {"negPrompt": "ugly"},
        {"config": {"negativePrompt": "blurry", "steps": 4}},
        {"generate": True},
    ])

    request = provider.requests[0]
    assert request.negative_prompt == "blurry"
    assert "negativePrompt" not in request.config.extras


def test_inpaint_tools_strength_merges_into_config(tmp_path):
    executor, provider = make_executor(tmp_path)
    executor.execute([
        {"prompt": "a"},
        {"inpaintTools": {"strength": 0.6, "maskBlur": 4}},
        {"generate": True},
    ])

    assert provider.requests[0].config.strength == 0.6


def test_unknown_and_unsupported_instructions_do_not_stop_run(tmp_path):
    executor, provider = make_executor(tmp_path)
    result = executor.execute([
        {"prompt": "a"},
        {"frobnicate": True},
        {"removeBkgd": True},
        {"note": "just a note"},
        {"generate": True},
    ])

    assert result.steps[1].error_kind == RuntimeErrorKind.INVALID_INSTRUCTION
    assert result.steps[2].outcome == StepOutcome.SKIPPED
    assert "internal state" in result.steps[2].message
    assert result.steps[3].outcome == StepOutcome.SKIPPED
    assert len(provider.requests) == 1


@pytest.mark.parametrize("inner_count", [2, 0])
def test_nested_loop_is_refused_at_runtime(tmp_path, inner_count):
    executor, provider = make_executor(tmp_path)
    result = executor.execute([
        {"prompt": "a"},
        {"loop": 2},
        {"loop": inner_count},
        {"generate": True},
        {"loopEnd": True},
    ])

    assert result.steps[2].error_kind == RuntimeErrorKind.LOOP_ERROR
    assert len(provider.requests) == 2


def test_callbacks_receive_steps_and_progress(tmp_path):
    executor, _ = make_executor(tmp_path)
    started, completed, progress = [], [], []
    executor.on_instruction_start = lambda item, index, total: started.append((index, total))
    executor.on_instruction_complete = completed.append
    executor.on_progress = progress.append

    executor.execute([{"prompt": "a"}, {"generate": True}])

    assert started == [(0, 2), (1, 2)]
    assert [s.index for s in completed] == [0, 1]
    assert progress[-1].stage == "complete"


def test_initial_config_is_used(tmp_path):
    from storyflow.model.generation_config import GenerationConfig

    executor, provider = make_executor(tmp_path, initial_config=GenerationConfig().merged({"steps": 30}))
    executor.execute([{"prompt": "a"}, {"generate": True}])

    assert provider.requests[0].config.steps == 30


def test_loop_save_filename():
    assert loop_save_filename("variation_", 3) == "variation_3.png"
    assert loop_save_filename("shot.png", 2) == "shot2.png"


def test_final_state_reflects_run(tmp_path):
    executor, _ = make_executor(tmp_path)
    result = executor.execute([
        {"prompt": "a"},
        {"frames": 16},
        {"generate": True},
    ])

    assert result.final_state.prompt == "a"
    assert result.final_state.frame_count == 16
    assert result.final_state.has_canvas
    assert result.steps[1].instruction.kind == InstructionKind.FRAMES


def test_canvas_save_without_prompt_saves_canvas_unchanged(tmp_path):
    write_image(tmp_path / "in.png", (12, 34, 56))
    executor, provider = make_executor(tmp_path)
    result = executor.execute([
        {"canvasLoad": "in.png"},
        {"canvasSave": "out.png"},
        {"loop": 2},
        {"loopSave": "copy_"},
        {"loopEnd": True},
    ])

    assert provider.requests == []
    assert result.failed_count == 0
    assert result.images == []
    with Image.open(tmp_path / "out.png") as saved:
        assert saved.convert("RGB").getpixel((0, 0)) == (12, 34, 56)
    assert (tmp_path / "copy_0.png").exists()
    assert (tmp_path / "copy_1.png").exists()


def test_generate_with_canvas_but_no_prompt_fails(tmp_path):
    write_image(tmp_path / "in.png")
    executor, provider = make_executor(tmp_path)
    result = executor.execute([
        {"canvasLoad": "in.png"},
        {"generate": True},
    ])

    assert provider.requests == []
    assert result.steps[1].error_kind == RuntimeErrorKind.NO_PROMPT_OR_CANVAS
    assert "No prompt set" in result.steps[1].message


def test_rejected_config_leaves_state_untouched(tmp_path):
    executor, provider = make_executor(tmp_path)
    result = executor.execute([
        {"prompt": "a"},
        {"negPrompt": "ugly"},
        {"config": {"negativePrompt": "blurry", "width": "wide"}},
        {"generate": True},
    ])

    assert result.steps[2].outcome == StepOutcome.FAILED
    assert result.final_state.negative_prompt == "ugly"
    assert provider.requests[0].negative_prompt == "ugly"
    assert provider.requests[0].config.width == 1024
