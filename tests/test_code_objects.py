'''Instruction model and program builder'''

import json
import pytest
from code_objects import Instruction, Program, ProgramBuilder, Purpose, \
    BranchRangeError, BuilderStateError, ProgramEncoder, ORACLE


def test_instruction_fields():
    insn = Instruction(0x15, 1, 2, 0x800)
    assert (insn.opcode, insn.jt, insn.jf, insn.k) == (0x15, 1, 2, 0x800)
    assert insn.obj_dump() == (0x15, 1, 2, 0x800)
    assert insn.purpose is None


@pytest.mark.parametrize("fields", [
    (0x10000, 0, 0, 0),
    (0x15, 256, 0, 0),
    (0x15, 0, -1, 0),
    (0x06, 0, 0, 0x100000000),
])
def test_instruction_out_of_range(fields):
    with pytest.raises(ValueError):
        Instruction(*fields)


def test_instruction_equality_ignores_purpose():
    tagged = Instruction(0x06, 0, 0, 0, purpose=Purpose.REJECT)
    untagged = Instruction(0x06, 0, 0, 0)
    assert tagged == untagged
    assert hash(tagged) == hash(untagged)
    assert Instruction(0x06, 0, 0, 1) != untagged


def test_instruction_repr():
    assert repr(Instruction(0x28, 0, 0, 12)) == "{ 0x0028,   0,   0, 0x0000000c }"


def test_builder_positions_and_backpatch():
    builder = ProgramBuilder()
    assert builder.add_instruction(0x28, 0, 0, 12) == 0
    assert builder.add_instruction(0x15, 0, 0, 0x800) == 1
    assert builder.next_position == 2
    builder.update_branch_targets(1, 3, 4)
    insn = builder.get_instruction(1)
    assert (insn.jt, insn.jf) == (3, 4)


def test_builder_rejects_unknown_position():
    builder = ProgramBuilder()
    builder.add_instruction(0x06, 0, 0, 0)
    with pytest.raises(IndexError):
        builder.update_branch_targets(5, 1, 1)
    with pytest.raises(IndexError):
        builder.update_branch_targets(-1, 1, 1)


@pytest.mark.parametrize("jt, jf", [(256, 0), (0, 300), (-1, 0)])
def test_builder_rejects_jump_too_far(jt, jf):
    builder = ProgramBuilder()
    builder.add_instruction(0x15, 0, 0, 6)
    with pytest.raises(BranchRangeError):
        builder.update_branch_targets(0, jt, jf)
    # nothing was changed
    assert builder.get_instruction(0).jt == 0


def test_builder_boundary_jump_fits():
    builder = ProgramBuilder()
    builder.add_instruction(0x15, 0, 0, 6)
    builder.update_branch_targets(0, 255, 0)
    assert builder.get_instruction(0).jt == 255


def test_builder_finalize():
    builder = ProgramBuilder()
    builder.add_instruction(0x06, 0, 0, 0x40000, purpose=Purpose.ACCEPT)
    builder.record_optimization("note")
    program = builder.finalize(filter_expr="tcp", rationale="why")
    assert isinstance(program.instructions, tuple)
    assert program.instruction_count == 1
    assert program.optimizations == ("note",)
    assert program.rationale == "why"
    assert program.filter_expr == "tcp"
    assert program.instructions[0].purpose == Purpose.ACCEPT


def test_builder_is_single_use():
    builder = ProgramBuilder()
    builder.add_instruction(0x06, 0, 0, 0)
    builder.finalize()
    with pytest.raises(BuilderStateError):
        builder.add_instruction(0x06, 0, 0, 0)
    with pytest.raises(BuilderStateError):
        builder.update_branch_targets(0, 1, 1)
    with pytest.raises(BuilderStateError):
        builder.finalize()


def test_optimization_notes_do_not_change_code():
    first = ProgramBuilder()
    second = ProgramBuilder()
    for builder in (first, second):
        builder.add_instruction(0x06, 0, 0, 0)
    second.record_optimization("something clever")
    assert first.finalize() == second.finalize()


def test_program_dumps():
    program = Program([Instruction(0x28, 0, 0, 12), Instruction(0x06, 0, 0, 0)])
    assert program.ddd() == "2\n40 0 0 12\n6 0 0 0\n"
    assert program.iptables() == "2,40 0 0 12,6 0 0 0"


def test_program_equality_is_code_only():
    code = [Instruction(0x06, 0, 0, 0)]
    assert Program(code, filter_expr="a", rationale="x") == \
        Program(code, filter_expr="b", mocked=True, origin=ORACLE)


def test_json_serialization():
    builder = ProgramBuilder()
    builder.add_instruction(0x28, 0, 0, 12, purpose=Purpose.LOAD_ETHERTYPE)
    builder.add_instruction(0x06, 0, 0, 0)
    builder.record_optimization("note")
    program = builder.finalize(filter_expr="tcp", rationale="why")

    data = json.loads(json.dumps(program, cls=ProgramEncoder))

    assert data["instructions"] == [
        {"code": [0x28, 0, 0, 12], "purpose": "LOAD_ETHERTYPE"},
        {"code": [0x06, 0, 0, 0]},
    ]
    assert data["optimizations"] == ["note"]
    assert data["filter_expr"] == "tcp"
    assert data["rationale"] == "why"
    assert data["origin"] == "generated"
