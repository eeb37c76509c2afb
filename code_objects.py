''' cBPF filter generation and validation.
Instruction model, programs and the program builder.
'''


#
# Copyright (c) 2023 Red Hat, Inc., Anton Ivanov <anivanov@redhat.com>
# Copyright (c) 2023 Cambridge Greys Ltd <anton.ivanov@cambridgegreys.com>
#

import json
import logging
from enum import Enum

LOG = logging.getLogger(__name__)

U8_MAX = 0xFF
U16_MAX = 0xFFFF
U32_MAX = 0xFFFFFFFF

GENERATED = "generated"
ORACLE = "oracle"


class Purpose(Enum):
    '''What an instruction is for, independent of how it is encoded'''
    LOAD_ETHERTYPE = "Load Ethernet Type"
    CHECK_ETHERTYPE = "Check IP Protocol"
    LOAD_PROTOCOL = "Load IP Protocol"
    CHECK_PROTOCOL = "Check Protocol"
    LOAD_SRC_ADDR = "Load Source IP"
    CHECK_SRC_ADDR = "Check Source IP"
    LOAD_DST_ADDR = "Load Dest IP"
    CHECK_DST_ADDR = "Check Dest IP"
    LOAD_FRAG_INFO = "Load Fragment Info"
    CHECK_FRAGMENT = "Check Fragment"
    LOAD_HEADER_LEN = "Load Header Length"
    LOAD_SRC_PORT = "Load Source Port"
    LOAD_DST_PORT = "Load Dest Port"
    CHECK_SRC_PORT = "Check Source Port"
    CHECK_DST_PORT = "Check Dest Port"
    ACCEPT = "Accept Packet"
    REJECT = "Reject Packet"
    UNKNOWN = "Unknown"

    def __str__(self):
        return self.value


class BranchRangeError(ValueError):
    '''A resolved jump does not fit into the 8 bit jt/jf fields'''


class BuilderStateError(RuntimeError):
    '''Builder used after it has produced its program'''


def _check_range(name, value, limit):
    '''Verify that a field fits into its wire representation'''
    if not isinstance(value, int) or value < 0 or value > limit:
        raise ValueError(f"{name} {value!r} does not fit in 0..{limit}")


class Instruction():
    '''Classic BPF instruction - opcode, jt, jf and k.

    jt and jf are forward offsets counted in instructions. Equality
    looks at the four wire fields only, the purpose is an annotation
    attached by whoever emitted the instruction.
    '''

    __slots__ = ("_fields", "_purpose")

    def __init__(self, opcode, jt=0, jf=0, k=0, purpose=None):
        _check_range("opcode", opcode, U16_MAX)
        _check_range("jt", jt, U8_MAX)
        _check_range("jf", jf, U8_MAX)
        _check_range("k", k, U32_MAX)
        self._fields = (opcode, jt, jf, k)
        self._purpose = purpose

    @property
    def opcode(self):
        '''opcode getter'''
        return self._fields[0]

    @property
    def jt(self):
        '''jump if true getter'''
        return self._fields[1]

    @property
    def jf(self):
        '''jump if false getter'''
        return self._fields[2]

    @property
    def k(self):
        '''immediate getter'''
        return self._fields[3]

    @property
    def purpose(self):
        '''Purpose tag assigned at generation time, None if untyped'''
        return self._purpose

    def obj_dump(self):
        '''Dump bytecode'''
        return self._fields

    def __eq__(self, other):
        '''Equal - needed for tests'''
        if not isinstance(other, Instruction):
            return NotImplemented
        return self._fields == other.obj_dump()

    def __hash__(self):
        return hash(self._fields)

    def __repr__(self):
        return "{{ 0x{:04x}, {:3d}, {:3d}, 0x{:08x} }}".format(*self._fields)


class Program():
    '''A finished filter program plus a description of where it came from.

    Programs are compared by their instruction sequence, everything else
    is provenance.
    '''
    def __init__(self, instructions, filter_expr="", rationale=None,
                 optimizations=None, mocked=None, raw_output=None, origin=GENERATED):
        self._instructions = tuple(instructions)
        self.attribs = {
            "filter_expr": filter_expr,
            "origin": origin,
            "rationale": rationale,
            "optimizations": list(optimizations) if optimizations else [],
            "mocked": mocked,
            "raw_output": raw_output,
        }

    @property
    def instructions(self):
        '''Instruction sequence'''
        return self._instructions

    @property
    def instruction_count(self):
        '''Number of instructions'''
        return len(self._instructions)

    @property
    def filter_expr(self):
        '''Filter expression which produced the program'''
        return self.attribs["filter_expr"]

    @property
    def origin(self):
        '''generated or oracle'''
        return self.attribs["origin"]

    @property
    def rationale(self):
        '''Generator narrative'''
        return self.attribs["rationale"]

    @property
    def optimizations(self):
        '''Generator optimization notes'''
        return tuple(self.attribs["optimizations"])

    @property
    def mocked(self):
        '''True if the oracle program is a synthetic fallback'''
        return self.attribs["mocked"]

    @property
    def raw_output(self):
        '''Raw oracle output if any'''
        return self.attribs["raw_output"]

    def __len__(self):
        return len(self._instructions)

    def __iter__(self):
        return iter(self._instructions)

    def __eq__(self, other):
        '''Programs are equal if they have the same code'''
        if not isinstance(other, Program):
            return NotImplemented
        return self._instructions == other.instructions

    def __hash__(self):
        return hash(self._instructions)

    def ddd(self):
        '''tcpdump -ddd style decimal dump'''
        lines = [f"{len(self._instructions)}"]
        for insn in self._instructions:
            lines.append("{} {} {} {}".format(*insn.obj_dump()))
        return "\n".join(lines) + "\n"

    def iptables(self):
        '''xt_bpf "--bytecode" form'''
        res = f"{len(self._instructions)}"
        for insn in self._instructions:
            res += ",{} {} {} {}".format(*insn.obj_dump())
        return res


class ProgramBuilder():
    '''Append-only construction of an instruction sequence.

    Instructions stay mutable only inside the builder so that jumps can
    be backpatched once their targets are known. finalize() hands out an
    immutable Program and retires the builder.
    '''
    def __init__(self):
        self._insns = []
        self._optimizations = []
        self._finalized = False

    def _check_state(self):
        if self._finalized:
            raise BuilderStateError("Invalid state - program already finalized")

    def __len__(self):
        return len(self._insns)

    @property
    def next_position(self):
        '''Position the next instruction will occupy'''
        return len(self._insns)

    def add_instruction(self, opcode, jt=0, jf=0, k=0, purpose=None):
        '''Append an instruction, return its position'''
        self._check_state()
        # validate early, a bad field is a generator bug
        Instruction(opcode, jt, jf, k)
        self._insns.append([opcode, jt, jf, k, purpose])
        return len(self._insns) - 1

    def update_branch_targets(self, position, jt, jf):
        '''Backpatch jt/jf of a previously added instruction'''
        self._check_state()
        if position < 0 or position >= len(self._insns):
            raise IndexError(f"No instruction at position {position}")
        if jt < 0 or jf < 0 or jt > U8_MAX or jf > U8_MAX:
            raise BranchRangeError(f"A jump of {jt} {jf} is a jump too far")
        self._insns[position][1] = jt
        self._insns[position][2] = jf

    def get_instruction(self, position):
        '''Snapshot of an instruction under construction'''
        return Instruction(*self._insns[position])

    def record_optimization(self, note):
        '''Add an informational note, does not affect code'''
        self._check_state()
        self._optimizations.append(note)

    def finalize(self, filter_expr="", rationale=None):
        '''Produce the finished program'''
        self._check_state()
        self._finalized = True
        program = Program(
            [Instruction(*insn) for insn in self._insns],
            filter_expr=filter_expr,
            rationale=rationale,
            optimizations=self._optimizations,
            origin=GENERATED
        )
        LOG.debug("finalized %d instructions for %r", len(program), filter_expr)
        return program


class ProgramEncoder(json.JSONEncoder):
    '''Serializer to JSON'''

    def default(self, o):
        if isinstance(o, Program):
            res = o.attribs.copy()
            res["instructions"] = list(o.instructions)
            return res
        if isinstance(o, Instruction):
            res = {"code": list(o.obj_dump())}
            if o.purpose is not None:
                res["purpose"] = o.purpose.name
            return res
        if isinstance(o, Purpose):
            return o.name
        return json.JSONEncoder.default(self, o)

