"""Mutable session state for one workflow run."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, List, Mapping, Optional

from PIL import Image

from storyflow.model.generation_config import NEGATIVE_PROMPT_KEYS, GenerationConfig


@dataclass
class ExecutionState:
    """State owned by a single executor run; never shared between runs.

    `negative_prompt` is the only place the negative prompt lives. A
    `negativePrompt` key inside a `config` instruction is routed here instead
    of into `config`.
    """

    prompt: str = ""
    negative_prompt: str = ""
    config: GenerationConfig = field(default_factory=GenerationConfig)
    canvas: Optional[Image.Image] = None
    mask: Optional[Image.Image] = None
    frame_count: Optional[int] = None
    moodboard: List[Image.Image] = field(default_factory=list)

    @property
    def has_canvas(self) -> bool:
        return self.canvas is not None

    @property
    def has_mask(self) -> bool:
        return self.mask is not None

    @property
    def has_prompt(self) -> bool:
        return bool(self.prompt)

    def apply_config(self, patch: Mapping[str, Any]) -> None:
        """Merge a partial config; fields absent from `patch` keep their value.

        Raises ValueError on a bad value, leaving the state unchanged.
        """
        merged = self.config.merged(patch)
        negative_prompt = self.negative_prompt
        for key in NEGATIVE_PROMPT_KEYS:
            value = patch.get(key)
            if isinstance(value, str):
                negative_prompt = value
        self.config = merged
        self.negative_prompt = negative_prompt

    def snapshot(self) -> "ExecutionState":
        # Images are never modified in place, so sharing them is safe.
        return replace(self, moodboard=list(self.moodboard))
