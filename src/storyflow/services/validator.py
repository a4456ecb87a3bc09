"""Structural validation of StoryFlow instruction lists."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, NamedTuple, Optional, Tuple

from storyflow.constants import IMAGE_LOAD_EXTENSIONS, IMAGE_SAVE_EXTENSIONS
from storyflow.model.instructions import (
    INVALID_STRUCTURE,
    Instruction,
    InstructionKind,
    InstructionProblem,
    parse_instruction,
)


class ValidationErrorKind(str, Enum):
    INVALID_STRUCTURE = "invalid_structure"
    UNKNOWN_INSTRUCTION = "unknown_instruction"
    NESTED_LOOP = "nested_loop"
    UNEXPECTED_LOOP_END = "unexpected_loop_end"
    INVALID_FILE_PATH = "invalid_file_path"


class ValidationWarningKind(str, Enum):
    UNCLOSED_LOOP = "unclosed_loop"


class ValidationIssue(NamedTuple):
    kind: Enum
    index: Optional[int] = None
    key: Optional[str] = None
    path: Optional[str] = None
    message: str = ""

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True)
class ValidationResult:
    errors: Tuple[ValidationIssue, ...] = ()
    warnings: Tuple[ValidationIssue, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def is_perfect(self) -> bool:
        return not self.errors and not self.warnings

    @property
    def summary(self) -> str:
        if self.is_perfect:
            return "Valid workflow"
        if self.is_valid:
            return f"{len(self.warnings)} warning(s)"
        return f"{len(self.errors)} error(s), {len(self.warnings)} warning(s)"


# Save-type keys need .png, load-type keys accept any loadable image.
_SAVE_PATH_KINDS = frozenset({InstructionKind.CANVAS_SAVE})
_LOAD_PATH_KINDS = frozenset(
    {InstructionKind.CANVAS_LOAD, InstructionKind.MOODBOARD_ADD, InstructionKind.MASK_LOAD}
)


def is_valid_file_path(path: str, kind: InstructionKind) -> bool:
    if not path or not path.strip():
        return False
    lowered = path.lower()
    if kind in _SAVE_PATH_KINDS:
        return lowered.endswith(IMAGE_SAVE_EXTENSIONS)
    if kind in _LOAD_PATH_KINDS:
        return lowered.endswith(IMAGE_LOAD_EXTENSIONS)
    return True


def _error(kind: ValidationErrorKind, index: int, message: str, key=None, path=None) -> ValidationIssue:
    return ValidationIssue(kind=kind, index=index, key=key, path=path, message=message)


def validate(instructions: Iterable[Any]) -> ValidationResult:
    """Validate an instruction list without executing anything.

    Accepts raw wire objects or already-parsed instructions. Each instruction
    contributes at most one error (the first check that fails); errors from
    different instructions accumulate.
    """
    errors = []
    warnings = []
    loop_open = False
    loop_closed = False

    for index, raw in enumerate(instructions):
        parsed = parse_instruction(raw)

        if isinstance(parsed, InstructionProblem):
            if parsed.kind == INVALID_STRUCTURE:
                errors.append(_error(
                    ValidationErrorKind.INVALID_STRUCTURE, index,
                    f"Invalid instruction structure at index {index}: {parsed.message}",
                    key=parsed.key,
                ))
            else:
                errors.append(_error(
                    ValidationErrorKind.UNKNOWN_INSTRUCTION, index,
                    f"Unknown instruction '{parsed.key}' at index {index}",
                    key=parsed.key,
                ))
            continue

        instruction: Instruction = parsed
        kind = instruction.kind

        if kind == InstructionKind.LOOP:
            if loop_open:
                errors.append(_error(
                    ValidationErrorKind.NESTED_LOOP, index,
                    f"Nested loop at index {index} - loops cannot be nested",
                    key=instruction.key,
                ))
                continue
            loop_open = True
            loop_closed = False
            continue

        if kind == InstructionKind.LOOP_END:
            if not loop_open:
                errors.append(_error(
                    ValidationErrorKind.UNEXPECTED_LOOP_END, index,
                    f"Unexpected loopEnd at index {index} - no matching loop",
                    key=instruction.key,
                ))
                continue
            loop_open = False
            loop_closed = True
            continue

        if kind in _SAVE_PATH_KINDS or kind in _LOAD_PATH_KINDS:
            path = instruction.payload
            if not is_valid_file_path(path, kind):
                errors.append(_error(
                    ValidationErrorKind.INVALID_FILE_PATH, index,
                    f"Invalid file path '{path}' at index {index}",
                    key=instruction.key,
                    path=path,
                ))

    if loop_open and not loop_closed:
        warnings.append(ValidationIssue(
            kind=ValidationWarningKind.UNCLOSED_LOOP,
            message="Loop is never closed with loopEnd",
        ))

    return ValidationResult(errors=tuple(errors), warnings=tuple(warnings))


def is_valid_instruction(raw: Any) -> bool:
    """Quick check that a single object decodes to a known instruction."""
    return isinstance(parse_instruction(raw), Instruction)
