"""Generation configuration and partial merging of `config` instructions."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional

from storyflow.constants import (
    DEFAULT_GUIDANCE_SCALE,
    DEFAULT_HEIGHT,
    DEFAULT_SAMPLER,
    DEFAULT_SEED,
    DEFAULT_SEED_MODE,
    DEFAULT_SHIFT,
    DEFAULT_STEPS,
    DEFAULT_STRENGTH,
    DEFAULT_WIDTH,
)


@dataclass(frozen=True)
class LoRA:
    file: str
    weight: float = 1.0
    mode: str = "all"

    def to_dict(self) -> Dict[str, Any]:
        return {"file": self.file, "weight": self.weight, "mode": self.mode}


# Wire name (as written in a `config` instruction) -> (attribute, converter)
_FIELDS = {
    "width": ("width", int),
    "height": ("height", int),
    "steps": ("steps", int),
    "guidanceScale": ("guidance_scale", float),
    "guidance_scale": ("guidance_scale", float),
    "seed": ("seed", int),
    "seedMode": ("seed_mode", str),
    "seed_mode": ("seed_mode", str),
    "model": ("model", str),
    "samplerName": ("sampler", str),
    "sampler": ("sampler", str),
    "shift": ("shift", float),
    "strength": ("strength", float),
    "batchSize": ("batch_size", int),
    "batch_size": ("batch_size", int),
    "batchCount": ("batch_count", int),
    "batch_count": ("batch_count", int),
}

# Keys handled outside the config itself.
NEGATIVE_PROMPT_KEYS = ("negativePrompt", "negative_prompt", "negPrompt")


def _parse_loras(raw: Any) -> List[LoRA]:
    loras: List[LoRA] = []
    if not isinstance(raw, list):
        raise ValueError("loras must be a list")
    for item in raw:
        if not isinstance(item, Mapping):
            continue
        file = item.get("file")
        if not isinstance(file, str) or not file:
            continue
        loras.append(
            LoRA(
                file=file,
                weight=float(item.get("weight", 1.0)),
                mode=str(item.get("mode", "all")),
            )
        )
    return loras


@dataclass(frozen=True)
class GenerationConfig:
    """Merged generation settings for the canvas session.

    Unknown keys from `config` instructions are kept in `extras` and passed to
    the backend untouched (e.g. ``clipSkip``, ``numFrames``).
    """

    width: int = DEFAULT_WIDTH
    height: int = DEFAULT_HEIGHT
    steps: int = DEFAULT_STEPS
    guidance_scale: float = DEFAULT_GUIDANCE_SCALE
    seed: int = DEFAULT_SEED
    seed_mode: str = DEFAULT_SEED_MODE
    sampler: str = DEFAULT_SAMPLER
    model: str = ""
    shift: float = DEFAULT_SHIFT
    strength: float = DEFAULT_STRENGTH
    batch_size: int = 1
    batch_count: int = 1
    loras: List[LoRA] = field(default_factory=list)
    extras: Dict[str, Any] = field(default_factory=dict)

    def merged(self, patch: Optional[Mapping[str, Any]]) -> "GenerationConfig":
        """Return a copy with only the fields present in `patch` changed.

        Keys whose value is ``None`` are treated as unset. Negative-prompt keys
        are ignored here; the execution state owns the negative prompt.
        """
        if not patch:
            return self
        changes: Dict[str, Any] = {}
        extras = dict(self.extras)
        for key, value in patch.items():
            if value is None or key in NEGATIVE_PROMPT_KEYS:
                continue
            if key == "loras":
                changes["loras"] = _parse_loras(value)
                continue
            entry = _FIELDS.get(key)
            if entry is None:
                extras[key] = copy.deepcopy(value)
                continue
            attr, conv = entry
            if conv in (int, float) and isinstance(value, bool):
                raise ValueError(f"{key} must be a number")
            try:
                changes[attr] = conv(value)
            except (TypeError, ValueError) as exc:
                raise ValueError(f"Invalid value for {key}: {value!r}") from exc
        changes["extras"] = extras
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe snapshot using wire names."""
        out: Dict[str, Any] = {
            "width": self.width,
            "height": self.height,
            "steps": self.steps,
            "guidanceScale": self.guidance_scale,
            "seed": self.seed,
            "seedMode": self.seed_mode,
            "samplerName": self.sampler,
            "model": self.model,
            "shift": self.shift,
            "strength": self.strength,
            "batchSize": self.batch_size,
            "batchCount": self.batch_count,
            "loras": [lora.to_dict() for lora in self.loras],
        }
        for key, value in self.extras.items():
            out.setdefault(key, copy.deepcopy(value))
        return out

    def to_request_body(self, prompt: str, negative_prompt: str = "") -> Dict[str, Any]:
        """Build an A1111-compatible request body (Draw Things HTTP API)."""
        body: Dict[str, Any] = {
            "prompt": prompt,
            "negative_prompt": negative_prompt,
            "width": self.width,
            "height": self.height,
            "steps": self.steps,
            "guidance_scale": self.guidance_scale,
            "seed": self.seed,
            "seed_mode": self.seed_mode,
            "sampler": self.sampler,
            "shift": self.shift,
            "strength": self.strength,
            "batch_size": self.batch_size,
            "batch_count": self.batch_count,
        }
        if self.model:
            body["model"] = self.model
        if self.loras:
            body["loras"] = [lora.to_dict() for lora in self.loras]
        for key, value in self.extras.items():
            body.setdefault(key, copy.deepcopy(value))
        return body
