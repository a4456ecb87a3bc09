"""Exception types raised by the StoryFlow runner."""

from __future__ import annotations

from typing import Optional


class StoryflowError(Exception):
    """Base class for all runner errors."""


class WorkflowFileError(StoryflowError):
    """A workflow file could not be read or does not hold an instruction list."""


class StorageError(StoryflowError):
    """Reading or writing an image in the working directory failed."""


class ImageNotFoundError(StorageError):
    def __init__(self, path: str):
        super().__init__(f"File not found: {path}")
        self.path = path


class LoopIndexOutOfRangeError(StorageError):
    def __init__(self, folder: str, index: int, count: int):
        super().__init__(f"Loop index {index} exceeds file count {count} in '{folder}'")
        self.folder = folder
        self.index = index
        self.count = count


class NoPromptOrCanvasError(StoryflowError):
    def __init__(self, message: str = "No prompt or canvas to generate from"):
        super().__init__(message)


class NestedLoopError(StoryflowError):
    def __init__(self, index: int):
        super().__init__(f"Nested loop at index {index} - loops cannot be nested")
        self.index = index


class ProviderError(StoryflowError):
    """Transport or model failure reported by a generation provider."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class GenerationCancelled(ProviderError):
    def __init__(self, message: str = "Generation cancelled"):
        super().__init__(message)
