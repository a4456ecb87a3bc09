import json
import textwrap

import pytest

from storyflow.errors import WorkflowFileError
from storyflow.io.workflow_file import dump_workflow, instruction_summary, load_workflow
from storyflow.model import instructions as ins


def test_load_json_list(tmp_path):
    path = tmp_path / "flow.json"
    path.write_text(json.dumps([{"prompt": "a"}, {"generate": True}]), encoding="utf-8")
    assert load_workflow(path) == [{"prompt": "a"}, {"generate": True}]


def test_load_yaml_object_with_instructions(tmp_path):
    path = tmp_path / "flow.yaml"
    path.write_text(
        textwrap.dedent(
            """
            name: demo
            instructions:
              - prompt: a castle
              - loop:
                  loop: 2
                  start: 1
              - loopSave: castle_
              - loopEnd: true
            """
        ),
        encoding="utf-8",
    )
    data = load_workflow(path)
    assert data[1] == {"loop": {"loop": 2, "start": 1}}
    assert len(data) == 4


def test_load_keeps_bad_entries_for_validator(tmp_path):
    path = tmp_path / "flow.json"
    path.write_text(json.dumps([{"prompt": "a", "note": "b"}, {"frobnicate": 1}]), encoding="utf-8")
    assert len(load_workflow(path)) == 2


@pytest.mark.parametrize("content", ["{not json", "{\"steps\": 4}", "42"])
def test_load_rejects_bad_files(tmp_path, content):
    path = tmp_path / "flow.json"
    path.write_text(content, encoding="utf-8")
    with pytest.raises(WorkflowFileError):
        load_workflow(path)


def test_load_missing_file(tmp_path):
    with pytest.raises(WorkflowFileError):
        load_workflow(tmp_path / "missing.json")


def test_dump_and_reload(tmp_path):
    workflow = [ins.prompt("a"), ins.loop(2, 5), ins.loop_save("x_"), ins.loop_end()]
    path = dump_workflow(workflow, tmp_path / "out" / "flow.json")

    assert load_workflow(path) == [
        {"prompt": "a"},
        {"loop": {"loop": 2, "start": 5}},
        {"loopSave": "x_"},
        {"loopEnd": True},
    ]


def test_dump_compact_and_yaml(tmp_path):
    compact = dump_workflow([{"prompt": "a"}], tmp_path / "flow.json", compact=True)
    assert compact.read_text(encoding="utf-8") == '[{"prompt":"a"}]'

    yaml_path = dump_workflow([ins.canvas_save("a.png")], tmp_path / "flow.yml")
    assert load_workflow(yaml_path) == [{"canvasSave": "a.png"}]


def test_instruction_summary():
    summary = instruction_summary([
        {"prompt": "a"},
        {"prompt": "b"},
        {"negativePrompt": "c"},
        {"frobnicate": True},
    ])
    assert summary == {"prompt": 2, "negPrompt": 1, "invalid": 1}
