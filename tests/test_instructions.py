import pytest

from storyflow.model import instructions as ins
from storyflow.model.instructions import (
    INVALID_STRUCTURE,
    UNKNOWN_INSTRUCTION,
    Instruction,
    InstructionKind,
    InstructionProblem,
    LoopBounds,
    parse_instruction,
    parse_workflow,
)


def test_parse_loop_object_and_bare_count():
    assert parse_instruction({"loop": {"loop": 3, "start": 2}}).payload == LoopBounds(3, 2)
    assert parse_instruction({"loop": {"loop": 3}}).payload == LoopBounds(3, 0)
    assert parse_instruction({"loop": 4}).payload == LoopBounds(4, 0)


def test_negative_prompt_alias_keeps_spelling():
    parsed = parse_instruction({"negativePrompt": "blurry"})
    assert parsed.kind == InstructionKind.NEGATIVE_PROMPT
    assert parsed.to_dict() == {"negativePrompt": "blurry"}
    assert ins.negative_prompt("blurry").to_dict() == {"negPrompt": "blurry"}


def test_flag_instructions_ignore_value():
    parsed = parse_instruction({"loopEnd": True})
    assert parsed == Instruction(InstructionKind.LOOP_END, None, "loopEnd")
    assert parsed.to_dict() == {"loopEnd": True}


def test_generation_triggers():
    assert parse_instruction({"canvasSave": "a.png"}).is_generation_trigger
    assert parse_instruction({"loopSave": "a_"}).is_generation_trigger
    assert parse_instruction({"generate": True}).is_generation_trigger
    assert not parse_instruction({"prompt": "x"}).is_generation_trigger


def test_unknown_key():
    parsed = parse_instruction({"frobnicate": True})
    assert isinstance(parsed, InstructionProblem)
    assert parsed.kind == UNKNOWN_INSTRUCTION
    assert parsed.key == "frobnicate"


@pytest.mark.parametrize("raw", [{}, {"prompt": "a", "note": "b"}, 42])
def test_key_arity(raw):
    assert parse_instruction(raw).kind == INVALID_STRUCTURE


@pytest.mark.parametrize(
    "raw",
    [
        {"prompt": 5},
        {"frames": True},
        {"config": "steps=4"},
        {"adaptSize": {"maxWidth": 512}},
        {"maskBody": {"upper": "yes"}},
        {"moodboardWeights": {"first": 0.5}},
    ],
)
def test_bad_payloads_are_invalid_structure(raw):
    parsed = parse_instruction(raw)
    assert isinstance(parsed, InstructionProblem)
    assert parsed.kind == INVALID_STRUCTURE


def test_structured_payloads():
    move = parse_instruction({"moveScale": {"position_X": 10, "position_Y": -4, "canvas_scale": 0}})
    assert move.payload.canvas_scale == 0.0
    assert move.payload.position_x == 10.0

    weights = parse_instruction({"moodboardWeights": {"index_0": 0.5, "index_2": 1}})
    assert weights.payload == {0: 0.5, 2: 1.0}
    assert weights.to_dict() == {"moodboardWeights": {"index_0": 0.5, "index_2": 1.0}}

    tools = parse_instruction({"inpaintTools": {"strength": 0.7, "restoreOriginalAfterInpaint": True}})
    assert tools.payload.strength == 0.7
    assert tools.payload.mask_blur is None
    assert tools.to_dict() == {"inpaintTools": {"strength": 0.7, "restoreOriginalAfterInpaint": True}}


def test_builders_round_trip_through_wire_form():
    workflow = [
        ins.note("intro"),
        ins.prompt("a fox"),
        ins.config(width=512, steps=20),
        ins.loop(3, start=1),
        ins.loop_save("fox_"),
        ins.loop_end(),
        ins.end(),
    ]
    wire = [item.to_dict() for item in workflow]
    assert wire[3] == {"loop": {"loop": 3, "start": 1}}
    assert parse_workflow(wire) == workflow


def test_decoded_values_pass_through():
    item = ins.prompt("x")
    assert parse_instruction(item) is item


def test_titles():
    assert ins.canvas_save("a.png").title == "Save Canvas"
    assert parse_instruction({"bogus": 1}).title == "bogus"
