"""Reading and writing StoryFlow workflow files (JSON or YAML)."""

from __future__ import annotations

import json
from collections import Counter
from pathlib import Path
from typing import Any, Dict, Iterable, List

import yaml

from storyflow.errors import WorkflowFileError
from storyflow.model.instructions import Instruction, InstructionProblem, parse_instruction

YAML_SUFFIXES = (".yaml", ".yml")


def load_workflow(path: Path | str) -> List[Any]:
    """Return the raw instruction objects stored in `path`.

    The file holds either a top-level list or an object with an
    ``instructions`` list. Instructions are not decoded here so that the
    validator can report problems by index.
    """
    workflow_path = Path(path)
    if not workflow_path.exists():
        raise WorkflowFileError(f"Workflow file not found: {workflow_path}")

    try:
        with open(workflow_path, "r", encoding="utf-8") as fh:
            if workflow_path.suffix.lower() in YAML_SUFFIXES:
                data = yaml.safe_load(fh)
            else:
                data = json.load(fh)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise WorkflowFileError(f"Could not parse workflow file {workflow_path}: {exc}") from exc
    except OSError as exc:
        raise WorkflowFileError(f"Could not read workflow file {workflow_path}: {exc}") from exc

    if isinstance(data, dict) and "instructions" in data:
        data = data["instructions"]
    if not isinstance(data, list):
        raise WorkflowFileError(
            f"Workflow file {workflow_path} must contain a list of instructions "
            "or an object with an 'instructions' list"
        )
    return data


def _to_wire(item: Any) -> Any:
    if isinstance(item, Instruction):
        return item.to_dict()
    if isinstance(item, InstructionProblem):
        return item.raw
    return item


def dump_workflow(instructions: Iterable[Any], path: Path | str, compact: bool = False) -> Path:
    """Write instructions as a JSON (or YAML, by suffix) array."""
    workflow_path = Path(path)
    data = [_to_wire(item) for item in instructions]
    workflow_path.parent.mkdir(parents=True, exist_ok=True)
    with open(workflow_path, "w", encoding="utf-8") as fh:
        if workflow_path.suffix.lower() in YAML_SUFFIXES:
            yaml.safe_dump(data, fh, default_flow_style=compact, sort_keys=False)
        elif compact:
            json.dump(data, fh, separators=(",", ":"))
        else:
            json.dump(data, fh, indent=2)
            fh.write("\n")
    return workflow_path


def instruction_summary(instructions: Iterable[Any]) -> Dict[str, int]:
    """Count instructions by wire key; undecodable entries count as 'invalid'."""
    counts: Counter = Counter()
    for raw in instructions:
        parsed = parse_instruction(raw)
        if isinstance(parsed, Instruction):
            counts[parsed.kind.value] += 1
        else:
            counts["invalid"] += 1
    return dict(counts)
