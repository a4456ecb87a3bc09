"""StoryFlow instruction model.

A workflow is an ordered list of single-key JSON objects such as
``{"prompt": "a lighthouse at dusk"}`` or ``{"loop": {"loop": 3, "start": 0}}``.
This module decodes those objects into :class:`Instruction` values (a kind tag
plus a typed payload) and encodes them back.

Decoding never raises: an object with zero or several keys, an unknown key, or
a payload of the wrong shape becomes an :class:`InstructionProblem` so that the
validator can report it by index and the executor can log it as a failed step.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Union


class InstructionKind(str, Enum):
    # Flow control
    NOTE = "note"
    LOOP = "loop"
    LOOP_END = "loopEnd"
    END = "end"
    # Prompts & config
    PROMPT = "prompt"
    NEGATIVE_PROMPT = "negPrompt"
    CONFIG = "config"
    FRAMES = "frames"
    # Canvas
    CANVAS_CLEAR = "canvasClear"
    CANVAS_LOAD = "canvasLoad"
    CANVAS_SAVE = "canvasSave"
    GENERATE = "generate"
    MOVE_SCALE = "moveScale"
    ADAPT_SIZE = "adaptSize"
    CROP = "crop"
    # Moodboard
    MOODBOARD_CLEAR = "moodboardClear"
    MOODBOARD_CANVAS = "moodboardCanvas"
    MOODBOARD_ADD = "moodboardAdd"
    MOODBOARD_REMOVE = "moodboardRemove"
    MOODBOARD_WEIGHTS = "moodboardWeights"
    LOOP_ADD_MOODBOARD = "loopAddMB"
    # Mask
    MASK_CLEAR = "maskClear"
    MASK_LOAD = "maskLoad"
    MASK_GET = "maskGet"
    MASK_BACKGROUND = "maskBkgd"
    MASK_FOREGROUND = "maskFG"
    MASK_BODY = "maskBody"
    MASK_ASK = "maskAsk"
    # Depth & pose
    DEPTH_EXTRACT = "depthExtract"
    DEPTH_CANVAS = "depthCanvas"
    DEPTH_TO_CANVAS = "depthToCanvas"
    POSE_EXTRACT = "poseExtract"
    POSE_JSON = "poseJSON"
    # Advanced tools
    REMOVE_BACKGROUND = "removeBkgd"
    FACE_ZOOM = "faceZoom"
    ASK_ZOOM = "askZoom"
    INPAINT_TOOLS = "inpaintTools"
    XL_MAGIC = "xlMagic"
    # Loop-scoped
    LOOP_LOAD = "loopLoad"
    LOOP_SAVE = "loopSave"


# Wire key -> kind. "negativePrompt" is accepted as an alias of "negPrompt".
WIRE_KEYS: Dict[str, InstructionKind] = {kind.value: kind for kind in InstructionKind}
WIRE_KEYS["negativePrompt"] = InstructionKind.NEGATIVE_PROMPT

GENERATION_TRIGGERS = frozenset(
    {InstructionKind.CANVAS_SAVE, InstructionKind.LOOP_SAVE, InstructionKind.GENERATE}
)

# Instructions whose payload is a bare flag (the value is ignored, usually `true`).
_FLAG_KINDS = frozenset(
    {
        InstructionKind.LOOP_END,
        InstructionKind.END,
        InstructionKind.CANVAS_CLEAR,
        InstructionKind.GENERATE,
        InstructionKind.CROP,
        InstructionKind.MOODBOARD_CLEAR,
        InstructionKind.MOODBOARD_CANVAS,
        InstructionKind.MASK_CLEAR,
        InstructionKind.MASK_GET,
        InstructionKind.MASK_BACKGROUND,
        InstructionKind.MASK_FOREGROUND,
        InstructionKind.DEPTH_EXTRACT,
        InstructionKind.DEPTH_CANVAS,
        InstructionKind.DEPTH_TO_CANVAS,
        InstructionKind.POSE_EXTRACT,
        InstructionKind.REMOVE_BACKGROUND,
        InstructionKind.FACE_ZOOM,
    }
)

_TEXT_KINDS = frozenset(
    {
        InstructionKind.NOTE,
        InstructionKind.PROMPT,
        InstructionKind.NEGATIVE_PROMPT,
        InstructionKind.CANVAS_LOAD,
        InstructionKind.CANVAS_SAVE,
        InstructionKind.MOODBOARD_ADD,
        InstructionKind.LOOP_ADD_MOODBOARD,
        InstructionKind.MASK_LOAD,
        InstructionKind.MASK_ASK,
        InstructionKind.ASK_ZOOM,
        InstructionKind.LOOP_LOAD,
        InstructionKind.LOOP_SAVE,
    }
)

TITLES: Dict[InstructionKind, str] = {
    InstructionKind.NOTE: "Note",
    InstructionKind.LOOP: "Loop",
    InstructionKind.LOOP_END: "Loop End",
    InstructionKind.END: "End",
    InstructionKind.PROMPT: "Prompt",
    InstructionKind.NEGATIVE_PROMPT: "Negative Prompt",
    InstructionKind.CONFIG: "Config",
    InstructionKind.FRAMES: "Frames",
    InstructionKind.CANVAS_CLEAR: "Clear Canvas",
    InstructionKind.CANVAS_LOAD: "Load Canvas",
    InstructionKind.CANVAS_SAVE: "Save Canvas",
    InstructionKind.GENERATE: "Generate",
    InstructionKind.MOVE_SCALE: "Move & Scale",
    InstructionKind.ADAPT_SIZE: "Adapt Size",
    InstructionKind.CROP: "Crop",
    InstructionKind.MOODBOARD_CLEAR: "Clear Moodboard",
    InstructionKind.MOODBOARD_CANVAS: "Canvas to Moodboard",
    InstructionKind.MOODBOARD_ADD: "Add to Moodboard",
    InstructionKind.MOODBOARD_REMOVE: "Remove from Moodboard",
    InstructionKind.MOODBOARD_WEIGHTS: "Moodboard Weights",
    InstructionKind.LOOP_ADD_MOODBOARD: "Loop Add Moodboard",
    InstructionKind.MASK_CLEAR: "Clear Mask",
    InstructionKind.MASK_LOAD: "Load Mask",
    InstructionKind.MASK_GET: "Get Mask",
    InstructionKind.MASK_BACKGROUND: "Mask Background",
    InstructionKind.MASK_FOREGROUND: "Mask Foreground",
    InstructionKind.MASK_BODY: "Mask Body",
    InstructionKind.MASK_ASK: "AI Mask",
    InstructionKind.DEPTH_EXTRACT: "Extract Depth",
    InstructionKind.DEPTH_CANVAS: "Canvas to Depth",
    InstructionKind.DEPTH_TO_CANVAS: "Depth to Canvas",
    InstructionKind.POSE_EXTRACT: "Extract Pose",
    InstructionKind.POSE_JSON: "Pose JSON",
    InstructionKind.REMOVE_BACKGROUND: "Remove Background",
    InstructionKind.FACE_ZOOM: "Face Zoom",
    InstructionKind.ASK_ZOOM: "AI Zoom",
    InstructionKind.INPAINT_TOOLS: "Inpaint Tools",
    InstructionKind.XL_MAGIC: "XL Magic",
    InstructionKind.LOOP_LOAD: "Loop Load",
    InstructionKind.LOOP_SAVE: "Loop Save",
}


# ----------------------------------------------------------------------
# Structured payloads
# ----------------------------------------------------------------------
class LoopBounds(NamedTuple):
    count: int
    start: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"loop": self.count, "start": self.start}


class MoveScale(NamedTuple):
    position_x: float = 0.0
    position_y: float = 0.0
    canvas_scale: float = 1.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position_X": self.position_x,
            "position_Y": self.position_y,
            "canvas_scale": self.canvas_scale,
        }


class AdaptSize(NamedTuple):
    max_width: int
    max_height: int

    def to_dict(self) -> Dict[str, Any]:
        return {"maxWidth": self.max_width, "maxHeight": self.max_height}


class MaskBody(NamedTuple):
    upper: Optional[bool] = None
    lower: Optional[bool] = None
    clothes: Optional[bool] = None
    neck: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in self._asdict().items() if v is not None}


class InpaintTools(NamedTuple):
    strength: Optional[float] = None
    mask_blur: Optional[int] = None
    mask_blur_outset: Optional[int] = None
    restore_original: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.strength is not None:
            out["strength"] = self.strength
        if self.mask_blur is not None:
            out["maskBlur"] = self.mask_blur
        if self.mask_blur_outset is not None:
            out["maskBlurOutset"] = self.mask_blur_outset
        if self.restore_original is not None:
            out["restoreOriginalAfterInpaint"] = self.restore_original
        return out


class XLMagic(NamedTuple):
    original: Optional[float] = None
    target: Optional[float] = None
    negative: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in self._asdict().items() if v is not None}


# ----------------------------------------------------------------------
# Decoded instructions
# ----------------------------------------------------------------------
class Instruction(NamedTuple):
    """A decoded instruction: exactly one kind and the payload that kind implies."""

    kind: InstructionKind
    payload: Any = None
    key: str = ""  # wire key as written (keeps the negPrompt/negativePrompt spelling)

    @property
    def title(self) -> str:
        return TITLES[self.kind]

    @property
    def is_generation_trigger(self) -> bool:
        return self.kind in GENERATION_TRIGGERS

    def to_dict(self) -> Dict[str, Any]:
        key = self.key or self.kind.value
        payload = self.payload
        if self.kind in _FLAG_KINDS:
            return {key: True}
        if self.kind == InstructionKind.MOODBOARD_WEIGHTS:
            return {key: {f"index_{i}": w for i, w in sorted(payload.items())}}
        if hasattr(payload, "to_dict"):
            return {key: payload.to_dict()}
        if isinstance(payload, dict):
            return {key: dict(payload)}
        return {key: payload}


class InstructionProblem(NamedTuple):
    """An object that could not be decoded into an :class:`Instruction`."""

    kind: str  # "invalid_structure" | "unknown_instruction"
    key: Optional[str]
    message: str
    raw: Any = None

    @property
    def title(self) -> str:
        return self.key or "Invalid instruction"


INVALID_STRUCTURE = "invalid_structure"
UNKNOWN_INSTRUCTION = "unknown_instruction"

ParsedInstruction = Union[Instruction, InstructionProblem]


class _PayloadError(ValueError):
    pass


def _as_int(value: Any, name: str) -> int:
    # bool is an int subclass; `true` is never a valid count
    if isinstance(value, bool):
        raise _PayloadError(f"{name} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    raise _PayloadError(f"{name} must be an integer")


def _as_float(value: Any, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise _PayloadError(f"{name} must be a number")
    return float(value)


def _as_bool(value: Any, name: str) -> bool:
    if not isinstance(value, bool):
        raise _PayloadError(f"{name} must be true or false")
    return value


def _as_str(value: Any, name: str) -> str:
    if not isinstance(value, str):
        raise _PayloadError(f"{name} must be a string")
    return value


def _as_mapping(value: Any, name: str) -> Mapping:
    if not isinstance(value, Mapping):
        raise _PayloadError(f"{name} must be an object")
    return value


def _opt(mapping: Mapping, key: str, conv, name: str):
    value = mapping.get(key)
    if value is None:
        return None
    return conv(value, f"{name}.{key}")


def _decode_payload(kind: InstructionKind, key: str, value: Any) -> Any:
    if kind in _FLAG_KINDS:
        return None
    if kind in _TEXT_KINDS:
        return _as_str(value, key)

    if kind == InstructionKind.LOOP:
        if isinstance(value, Mapping):
            count = _as_int(value.get("loop"), f"{key}.loop")
            start = value.get("start", 0)
            start = 0 if start is None else _as_int(start, f"{key}.start")
            return LoopBounds(count=count, start=start)
        return LoopBounds(count=_as_int(value, key))

    if kind == InstructionKind.CONFIG:
        return dict(_as_mapping(value, key))

    if kind in (InstructionKind.FRAMES, InstructionKind.MOODBOARD_REMOVE):
        return _as_int(value, key)

    if kind == InstructionKind.MOVE_SCALE:
        m = _as_mapping(value, key)
        scale = _opt(m, "canvas_scale", _as_float, key)
        return MoveScale(
            position_x=_opt(m, "position_X", _as_float, key) or 0.0,
            position_y=_opt(m, "position_Y", _as_float, key) or 0.0,
            canvas_scale=1.0 if scale is None else scale,
        )

    if kind == InstructionKind.ADAPT_SIZE:
        m = _as_mapping(value, key)
        return AdaptSize(
            max_width=_as_int(m.get("maxWidth"), f"{key}.maxWidth"),
            max_height=_as_int(m.get("maxHeight"), f"{key}.maxHeight"),
        )

    if kind == InstructionKind.MOODBOARD_WEIGHTS:
        m = _as_mapping(value, key)
        weights: Dict[int, float] = {}
        for k, w in m.items():
            raw_index = str(k)[len("index_"):] if str(k).startswith("index_") else str(k)
            if not raw_index.isdigit():
                raise _PayloadError(f"{key} has an invalid index '{k}'")
            weights[int(raw_index)] = _as_float(w, f"{key}.{k}")
        return weights

    if kind == InstructionKind.MASK_BODY:
        m = _as_mapping(value, key)
        return MaskBody(
            upper=_opt(m, "upper", _as_bool, key),
            lower=_opt(m, "lower", _as_bool, key),
            clothes=_opt(m, "clothes", _as_bool, key),
            neck=_opt(m, "neck", _as_int, key),
        )

    if kind == InstructionKind.POSE_JSON:
        return dict(_as_mapping(value, key))

    if kind == InstructionKind.INPAINT_TOOLS:
        m = _as_mapping(value, key)
        return InpaintTools(
            strength=_opt(m, "strength", _as_float, key),
            mask_blur=_opt(m, "maskBlur", _as_int, key),
            mask_blur_outset=_opt(m, "maskBlurOutset", _as_int, key),
            restore_original=_opt(m, "restoreOriginalAfterInpaint", _as_bool, key),
        )

    if kind == InstructionKind.XL_MAGIC:
        m = _as_mapping(value, key)
        return XLMagic(
            original=_opt(m, "original", _as_float, key),
            target=_opt(m, "target", _as_float, key),
            negative=_opt(m, "negative", _as_float, key),
        )

    raise _PayloadError(f"No decoder for {key}")  # pragma: no cover


def parse_instruction(raw: Any) -> ParsedInstruction:
    """Decode one wire object. Already-decoded instructions pass through."""
    if isinstance(raw, (Instruction, InstructionProblem)):
        return raw
    if not isinstance(raw, Mapping) or len(raw) != 1:
        return InstructionProblem(
            kind=INVALID_STRUCTURE,
            key=None,
            message="Instruction must be an object with exactly one key",
            raw=raw,
        )

    key, value = next(iter(raw.items()))
    kind = WIRE_KEYS.get(key)
    if kind is None:
        return InstructionProblem(
            kind=UNKNOWN_INSTRUCTION,
            key=str(key),
            message=f"Unknown instruction '{key}'",
            raw=raw,
        )

    try:
        payload = _decode_payload(kind, key, value)
    except _PayloadError as exc:
        return InstructionProblem(kind=INVALID_STRUCTURE, key=key, message=str(exc), raw=raw)
    return Instruction(kind=kind, payload=payload, key=key)


def parse_workflow(raw_instructions: List[Any]) -> List[ParsedInstruction]:
    return [parse_instruction(item) for item in raw_instructions]


# ----------------------------------------------------------------------
# Builders
# ----------------------------------------------------------------------
def note(text: str) -> Instruction:
    return Instruction(InstructionKind.NOTE, text, "note")


def prompt(text: str) -> Instruction:
    return Instruction(InstructionKind.PROMPT, text, "prompt")


def negative_prompt(text: str) -> Instruction:
    return Instruction(InstructionKind.NEGATIVE_PROMPT, text, "negPrompt")


def config(**fields: Any) -> Instruction:
    return Instruction(InstructionKind.CONFIG, dict(fields), "config")


def frames(count: int) -> Instruction:
    return Instruction(InstructionKind.FRAMES, count, "frames")


def loop(count: int, start: int = 0) -> Instruction:
    return Instruction(InstructionKind.LOOP, LoopBounds(count, start), "loop")


def loop_end() -> Instruction:
    return Instruction(InstructionKind.LOOP_END, None, "loopEnd")


def end() -> Instruction:
    return Instruction(InstructionKind.END, None, "end")


def canvas_load(path: str) -> Instruction:
    return Instruction(InstructionKind.CANVAS_LOAD, path, "canvasLoad")


def canvas_save(path: str) -> Instruction:
    return Instruction(InstructionKind.CANVAS_SAVE, path, "canvasSave")


def generate() -> Instruction:
    return Instruction(InstructionKind.GENERATE, None, "generate")


def mask_load(path: str) -> Instruction:
    return Instruction(InstructionKind.MASK_LOAD, path, "maskLoad")


def loop_load(folder: str) -> Instruction:
    return Instruction(InstructionKind.LOOP_LOAD, folder, "loopLoad")


def loop_save(prefix: str) -> Instruction:
    return Instruction(InstructionKind.LOOP_SAVE, prefix, "loopSave")
