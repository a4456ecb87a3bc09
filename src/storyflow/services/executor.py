"""Workflow execution - walks an instruction list against one canvas session."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from PIL import Image

from storyflow.errors import (
    GenerationCancelled,
    ImageNotFoundError,
    LoopIndexOutOfRangeError,
    NestedLoopError,
    NoPromptOrCanvasError,
    StorageError,
)
from storyflow.model.generation_config import GenerationConfig
from storyflow.model.instructions import (
    Instruction,
    InstructionKind as K,
    InstructionProblem,
    ParsedInstruction,
    parse_workflow,
)
from storyflow.services.execution_state import ExecutionState
from storyflow.services.image_storage import ImageStorage
from storyflow.services.loop_controller import LoopController
from storyflow.services.mode_resolver import GenerationMode, resolve_mode_for
from storyflow.services.provider import GenerationProvider, GenerationRequest, ProgressCallback
from storyflow.services.workflow_analysis import has_generation_trigger, skip_reason


class StepOutcome(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


class ExecutionStatus(str, Enum):
    COMPLETED = "completed"
    STOPPED = "stopped"  # halted by an `end` instruction
    CANCELLED = "cancelled"
    ABORTED = "aborted"  # provider failure with abort_on_provider_failure


class RuntimeErrorKind(str, Enum):
    NO_PROMPT_OR_CANVAS = "no_prompt_or_canvas"
    FILE_NOT_FOUND = "file_not_found"
    LOOP_INDEX_OUT_OF_RANGE = "loop_index_out_of_range"
    PROVIDER_FAILURE = "provider_failure"
    CANCELLED = "cancelled"
    INVALID_INSTRUCTION = "invalid_instruction"
    LOOP_ERROR = "loop_error"
    STORAGE_ERROR = "storage_error"


@dataclass(frozen=True)
class GeneratedImageRecord:
    """A generated image with the prompt and config it was made from."""

    image: Image.Image
    prompt: str
    negative_prompt: str
    config: GenerationConfig
    mode: GenerationMode
    filename: Optional[str] = None
    generated_at: float = field(default_factory=time.time)

    def to_metadata(self) -> Dict[str, Any]:
        return {
            "prompt": self.prompt,
            "negative_prompt": self.negative_prompt,
            "mode": self.mode.value,
            "config": self.config.to_dict(),
            "generated_at": time.strftime("%Y-%m-%dT%H:%M:%S", time.localtime(self.generated_at)),
        }


@dataclass(frozen=True)
class ExecutionStepResult:
    index: int
    instruction: ParsedInstruction
    outcome: StepOutcome
    message: str
    images: Tuple[GeneratedImageRecord, ...] = ()
    error_kind: Optional[RuntimeErrorKind] = None

    @property
    def title(self) -> str:
        return self.instruction.title


@dataclass
class ExecutionResult:
    status: ExecutionStatus
    steps: List[ExecutionStepResult]
    images: List[GeneratedImageRecord]
    missing_generation_trigger: bool
    final_state: ExecutionState
    error_message: Optional[str] = None
    elapsed_ms: int = 0

    @property
    def success(self) -> bool:
        return self.status in (ExecutionStatus.COMPLETED, ExecutionStatus.STOPPED) and not self.failed_count

    @property
    def skipped_count(self) -> int:
        return sum(1 for s in self.steps if s.outcome == StepOutcome.SKIPPED)

    @property
    def failed_count(self) -> int:
        return sum(1 for s in self.steps if s.outcome == StepOutcome.FAILED)

    @property
    def executed_count(self) -> int:
        return len(self.steps) - self.skipped_count - self.failed_count


def loop_save_filename(prefix: str, iteration: int) -> str:
    """variation_ + 3 -> variation_3.png (a trailing .png on the prefix is kept last)."""
    if prefix.lower().endswith(".png"):
        prefix = prefix[:-4]
    return f"{prefix}{iteration}.png"


class _Run:
    """Bookkeeping for a single `execute` call."""

    def __init__(self, instructions: List[ParsedInstruction], config: GenerationConfig):
        self.instructions = instructions
        self.state = ExecutionState(config=config)
        self.loops = LoopController()
        self.steps: List[ExecutionStepResult] = []
        self.images: List[GeneratedImageRecord] = []
        self.pc = 0
        self.status = ExecutionStatus.COMPLETED
        self.error_message: Optional[str] = None
        self.halted = False


class WorkflowExecutor:
    """Executes StoryFlow workflows by translating instructions to provider calls.

    Instructions are processed strictly in order using an explicit program
    counter; loop bodies are index jumps. Only trigger instructions
    (canvasSave, loopSave, generate) call the provider.
    """

    def __init__(
        self,
        provider: GenerationProvider,
        storage: ImageStorage,
        logger: Optional[logging.Logger] = None,
        abort_on_provider_failure: bool = False,
        initial_config: Optional[GenerationConfig] = None,
    ):
        self.provider = provider
        self.storage = storage
        self.logger = logger or logging.getLogger(__name__)
        self.abort_on_provider_failure = abort_on_provider_failure
        self.initial_config = initial_config or GenerationConfig()
        self._cancel_event = threading.Event()

        self.on_instruction_start: Optional[Callable[[ParsedInstruction, int, int], None]] = None
        self.on_instruction_complete: Optional[Callable[[ExecutionStepResult], None]] = None
        self.on_progress: Optional[ProgressCallback] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def cancel(self) -> None:
        """Request cancellation; honoured at the next instruction boundary."""
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def execute(self, instructions: Iterable[Any]) -> ExecutionResult:
        started = time.monotonic()
        self._cancel_event.clear()

        run = _Run(parse_workflow(list(instructions)), self.initial_config)
        missing_trigger = not has_generation_trigger(run.instructions)
        if missing_trigger:
            self.logger.warning("Workflow has no generation trigger (canvasSave, loopSave or generate)")

        total = len(run.instructions)
        self.logger.info(f"Executing workflow with {total} instruction(s)")

        while run.pc < total and not run.halted:
            if self._cancel_event.is_set():
                run.status = ExecutionStatus.CANCELLED
                break

            index = run.pc
            item = run.instructions[index]
            if self.on_instruction_start:
                self.on_instruction_start(item, index, total)

            step = self._dispatch(run, index, item)
            run.steps.append(step)
            run.images.extend(step.images)
            self._log_step(step)

            if self.on_instruction_complete:
                self.on_instruction_complete(step)

        if run.status == ExecutionStatus.CANCELLED:
            run.error_message = "Execution cancelled"
            self.logger.warning("Workflow execution cancelled")

        elapsed_ms = int((time.monotonic() - started) * 1000)
        self.logger.info(
            f"Workflow {run.status.value}: {len(run.steps)} step(s), "
            f"{len(run.images)} image(s), {elapsed_ms} ms"
        )
        return ExecutionResult(
            status=run.status,
            steps=run.steps,
            images=run.images,
            missing_generation_trigger=missing_trigger,
            final_state=run.state.snapshot(),
            error_message=run.error_message,
            elapsed_ms=elapsed_ms,
        )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    def _dispatch(self, run: _Run, index: int, item: ParsedInstruction) -> ExecutionStepResult:
        # Every handler leaves run.pc pointing at the next instruction.
        run.pc = index + 1

        if isinstance(item, InstructionProblem):
            return self._failed(index, item, item.message, RuntimeErrorKind.INVALID_INSTRUCTION)

        reason = skip_reason(item)
        if reason is not None:
            return self._skipped(index, item, reason)

        kind = item.kind
        state = run.state

        if kind == K.NOTE:
            return self._skipped(index, item, "Note")
        if kind == K.PROMPT:
            state.prompt = item.payload
            return self._success(index, item, "Prompt set")
        if kind == K.NEGATIVE_PROMPT:
            state.negative_prompt = item.payload
            return self._success(index, item, "Negative prompt set")
        if kind == K.CONFIG:
            try:
                state.apply_config(item.payload)
            except ValueError as exc:
                return self._failed(index, item, str(exc), RuntimeErrorKind.INVALID_INSTRUCTION)
            return self._success(index, item, "Config applied")
        if kind == K.FRAMES:
            state.frame_count = item.payload
            return self._success(index, item, f"Frames set to {item.payload}")
        if kind == K.INPAINT_TOOLS:
            if item.payload.strength is not None:
                state.config = state.config.merged({"strength": item.payload.strength})
            return self._success(index, item, "Inpaint strength applied")

        if kind in (K.CANVAS_LOAD, K.MASK_LOAD, K.MOODBOARD_ADD):
            return self._load_image(run, index, item)

        if kind == K.LOOP:
            return self._open_loop(run, index, item)
        if kind == K.LOOP_END:
            return self._loop_end(run, index, item)
        if kind == K.END:
            run.status = ExecutionStatus.STOPPED
            run.halted = True
            self.logger.info("Workflow ended by 'end' instruction")
            return self._success(index, item, "Stopped by instruction")
        if kind == K.LOOP_LOAD:
            return self._loop_load(run, index, item)

        if kind == K.CANVAS_SAVE:
            return self._trigger(run, index, item, persist_as=item.payload)
        if kind == K.GENERATE:
            return self._trigger(run, index, item, persist_as=None)
        if kind == K.LOOP_SAVE:
            frame = run.loops.current
            if frame is None:
                return self._failed(index, item, "loopSave must be inside a loop", RuntimeErrorKind.LOOP_ERROR)
            filename = loop_save_filename(item.payload, run.loops.iteration_value(frame))
            return self._trigger(run, index, item, persist_as=filename)

        return self._skipped(index, item, f"{item.title} is not supported")  # pragma: no cover

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------
    def _open_loop(self, run: _Run, index: int, item: Instruction) -> ExecutionStepResult:
        bounds = item.payload
        try:
            if run.loops.is_open:
                raise NestedLoopError(index)
            if bounds.count <= 0:
                run.pc = self._after_matching_loop_end(run, index)
                return self._success(index, item, "Loop skipped (0 iterations)")
            run.loops.open(index + 1, bounds.count, bounds.start)
        except NestedLoopError as exc:
            return self._failed(index, item, str(exc), RuntimeErrorKind.LOOP_ERROR)
        return self._success(index, item, f"Loop started ({bounds.count} iteration(s) from {bounds.start})")

    @staticmethod
    def _after_matching_loop_end(run: _Run, index: int) -> int:
        for j in range(index + 1, len(run.instructions)):
            candidate = run.instructions[j]
            if isinstance(candidate, Instruction) and candidate.kind == K.LOOP_END:
                return j + 1
        return len(run.instructions)

    def _loop_end(self, run: _Run, index: int, item: Instruction) -> ExecutionStepResult:
        frame = run.loops.current
        if frame is None:
            return self._failed(index, item, "Loop end without matching loop start", RuntimeErrorKind.LOOP_ERROR)
        advanced = run.loops.advance(frame)
        if run.loops.should_continue(advanced):
            run.pc = advanced.return_index
            return self._success(
                index, item,
                f"Loop iteration {advanced.current_iteration + 1}/{advanced.total_iterations}",
            )
        run.loops.close()
        return self._success(index, item, "Loop completed")

    def _loop_load(self, run: _Run, index: int, item: Instruction) -> ExecutionStepResult:
        frame = run.loops.current
        if frame is None:
            return self._failed(index, item, "loopLoad must be inside a loop", RuntimeErrorKind.LOOP_ERROR)
        try:
            path, image = self.storage.load_indexed(item.payload, run.loops.iteration_value(frame))
        except LoopIndexOutOfRangeError as exc:
            return self._failed(index, item, str(exc), RuntimeErrorKind.LOOP_INDEX_OUT_OF_RANGE)
        except ImageNotFoundError as exc:
            return self._failed(index, item, str(exc), RuntimeErrorKind.FILE_NOT_FOUND)
        except StorageError as exc:
            return self._failed(index, item, str(exc), RuntimeErrorKind.STORAGE_ERROR)
        run.state.canvas = image
        return self._success(index, item, f"Loaded: {path.name}")

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------
    def _load_image(self, run: _Run, index: int, item: Instruction) -> ExecutionStepResult:
        path = item.payload
        try:
            image = self.storage.load_image(path)
        except ImageNotFoundError as exc:
            return self._failed(index, item, str(exc), RuntimeErrorKind.FILE_NOT_FOUND)
        except StorageError as exc:
            return self._failed(index, item, str(exc), RuntimeErrorKind.STORAGE_ERROR)

        state = run.state
        if item.kind == K.CANVAS_LOAD:
            state.canvas = image
            return self._success(index, item, f"Canvas loaded: {path}")
        if item.kind == K.MASK_LOAD:
            state.mask = image
            return self._success(index, item, f"Mask loaded: {path}")
        state.moodboard.append(image)
        return self._skipped(index, item, "Moodboard image loaded but API doesn't support moodboard")

    def _trigger(
        self,
        run: _Run,
        index: int,
        item: Instruction,
        persist_as: Optional[str],
    ) -> ExecutionStepResult:
        state = run.state
        if persist_as is not None and state.has_canvas and not state.has_prompt:
            return self._save_canvas(index, item, state, persist_as)

        try:
            mode = resolve_mode_for(state)
        except NoPromptOrCanvasError as exc:
            return self._failed(index, item, str(exc), RuntimeErrorKind.NO_PROMPT_OR_CANVAS)

        request = GenerationRequest(
            prompt=state.prompt,
            negative_prompt=state.negative_prompt,
            config=state.config,
            source_image=state.canvas,
            mask=state.mask,
            on_progress=self.on_progress,
            cancel_event=self._cancel_event,
        )
        self.logger.info(f"Generating via {mode.value} ({self.provider.transport})")

        try:
            generated = self.provider.generate(request)
        except GenerationCancelled as exc:
            run.status = ExecutionStatus.CANCELLED
            run.halted = True
            return self._failed(index, item, str(exc), RuntimeErrorKind.CANCELLED)
        except Exception as exc:  # pylint: disable=broad-except
            message = f"Generation failed ({mode.value}): {exc}"
            if self.abort_on_provider_failure:
                run.status = ExecutionStatus.ABORTED
                run.error_message = message
                run.halted = True
            return self._failed(index, item, message, RuntimeErrorKind.PROVIDER_FAILURE)

        if not generated:
            return self._failed(index, item, "No image generated", RuntimeErrorKind.PROVIDER_FAILURE)

        records = tuple(
            GeneratedImageRecord(
                image=image,
                prompt=state.prompt,
                negative_prompt=state.negative_prompt,
                config=state.config,
                mode=mode,
                filename=persist_as if i == 0 else None,
            )
            for i, image in enumerate(generated)
        )
        state.canvas = generated[0]

        if persist_as is None:
            return self._success(
                index, item, f"Generated {len(generated)} image(s) via {mode.value}", records
            )

        try:
            self.storage.save_image(generated[0], persist_as, metadata=records[0].to_metadata())
        except StorageError as exc:
            return ExecutionStepResult(
                index=index,
                instruction=item,
                outcome=StepOutcome.FAILED,
                message=str(exc),
                images=records,
                error_kind=RuntimeErrorKind.STORAGE_ERROR,
            )
        return self._success(index, item, f"Saved: {persist_as} ({mode.value})", records)

    def _save_canvas(self, index: int, item: Instruction, state: ExecutionState, path: str) -> ExecutionStepResult:
        """Persist the current canvas as-is (no prompt, so nothing to generate)."""
        try:
            self.storage.save_image(state.canvas, path)
        except StorageError as exc:
            return self._failed(index, item, str(exc), RuntimeErrorKind.STORAGE_ERROR)
        return self._success(index, item, f"Saved canvas: {path}")

    # ------------------------------------------------------------------
    # Step helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _success(index, item, message: str, images: Tuple[GeneratedImageRecord, ...] = ()) -> ExecutionStepResult:
        return ExecutionStepResult(index, item, StepOutcome.SUCCESS, message, images)

    @staticmethod
    def _skipped(index, item, reason: str) -> ExecutionStepResult:
        return ExecutionStepResult(index, item, StepOutcome.SKIPPED, reason)

    @staticmethod
    def _failed(index, item, message: str, kind: RuntimeErrorKind) -> ExecutionStepResult:
        return ExecutionStepResult(index, item, StepOutcome.FAILED, message, (), kind)

    def _log_step(self, step: ExecutionStepResult) -> None:
        line = f"[{step.index}] {step.title}: {step.message}"
        if step.outcome == StepOutcome.FAILED:
            self.logger.error(f"Instruction failed: {line}")
        elif step.outcome == StepOutcome.SKIPPED:
            self.logger.info(f"Skipped {line}")
        else:
            self.logger.debug(line)
