"""Single, non-nestable loop frame tracking for the executor."""

from __future__ import annotations

from typing import NamedTuple, Optional

from storyflow.errors import NestedLoopError


class LoopFrame(NamedTuple):
    """Runtime record of an open loop."""
    return_index: int  # first instruction of the loop body
    total_iterations: int
    start_offset: int
    current_iteration: int = 0

    @property
    def iteration_value(self) -> int:
        """Index exposed to the loop body (file suffixes, folder indexing)."""
        return self.start_offset + self.current_iteration


class LoopController:
    """Holds at most one open frame."""

    def __init__(self):
        self._frame: Optional[LoopFrame] = None

    @property
    def current(self) -> Optional[LoopFrame]:
        return self._frame

    @property
    def is_open(self) -> bool:
        return self._frame is not None

    def open(self, at_index: int, iterations: int, start: int = 0) -> LoopFrame:
        """Open a frame whose body starts at `at_index`.

        Raises NestedLoopError if a frame is already open.
        """
        if self._frame is not None:
            raise NestedLoopError(at_index - 1)
        self._frame = LoopFrame(
            return_index=at_index,
            total_iterations=iterations,
            start_offset=start,
            current_iteration=0,
        )
        return self._frame

    @staticmethod
    def should_continue(frame: LoopFrame) -> bool:
        return frame.current_iteration < frame.total_iterations

    def advance(self, frame: LoopFrame) -> LoopFrame:
        advanced = frame._replace(current_iteration=frame.current_iteration + 1)
        if self._frame == frame:
            self._frame = advanced
        return advanced

    def close(self) -> Optional[LoopFrame]:
        frame, self._frame = self._frame, None
        return frame

    def iteration_value(self, frame: Optional[LoopFrame] = None) -> Optional[int]:
        frame = frame or self._frame
        return frame.iteration_value if frame else None
