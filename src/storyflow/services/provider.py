"""Generation-provider capability consumed by the executor.

The executor only ever sees an already-constructed provider. Host, port and
transport selection live with whoever builds it (see `provider_factory`).
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, List, NamedTuple, Optional

from PIL import Image

from storyflow.model.generation_config import GenerationConfig


class GenerationProgress(NamedTuple):
    stage: str  # starting | sampling | decoding | complete | failed
    step: int = 0
    total_steps: int = 0
    message: str = ""

    @classmethod
    def starting(cls) -> "GenerationProgress":
        return cls("starting", message="Starting...")

    @classmethod
    def sampling(cls, step: int, total_steps: int) -> "GenerationProgress":
        return cls("sampling", step, total_steps, f"Sampling {step}/{total_steps}")

    @classmethod
    def decoding(cls) -> "GenerationProgress":
        return cls("decoding", message="Decoding image...")

    @classmethod
    def complete(cls) -> "GenerationProgress":
        return cls("complete", message="Complete")

    @classmethod
    def failed(cls, message: str) -> "GenerationProgress":
        return cls("failed", message=f"Failed: {message}")

    @property
    def fraction(self) -> float:
        if self.stage == "sampling":
            return self.step / max(self.total_steps, 1)
        if self.stage == "decoding":
            return 0.95
        if self.stage == "complete":
            return 1.0
        return 0.0


ProgressCallback = Callable[[GenerationProgress], None]


@dataclass
class GenerationRequest:
    prompt: str
    negative_prompt: str
    config: GenerationConfig
    source_image: Optional[Image.Image] = None
    mask: Optional[Image.Image] = None
    on_progress: Optional[ProgressCallback] = None
    cancel_event: Optional[threading.Event] = None

    def report(self, progress: GenerationProgress) -> None:
        if self.on_progress is not None:
            self.on_progress(progress)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()


class GenerationProvider(ABC):
    """A backend that turns a generation request into images.

    Implementations must tolerate sequential reuse across runs; the executor
    never issues two calls at once.
    """

    @property
    @abstractmethod
    def transport(self) -> str:
        """Short transport name, e.g. 'http' or 'comfyui'."""

    @abstractmethod
    def check_connection(self) -> bool:
        """Return True if the backend is reachable."""

    @abstractmethod
    def generate(self, request: GenerationRequest) -> List[Image.Image]:
        """Generate one or more images.

        Raises:
            ProviderError: on transport or model failure.
            GenerationCancelled: if `request.cancel_event` interrupted the call.
        """
