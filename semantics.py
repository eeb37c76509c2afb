''' cBPF filter generation and validation.
Semantic classification of cBPF instructions.

Instructions are classified by what they are for rather than by how
they are encoded, so that programs from different generators can be
compared. Programs from our generator carry the purpose of each
instruction; for untyped instruction streams (tcpdump) the purpose is
inferred from opcode and immediate. The inference is lossy: any jeq
immediate in 1..65535 is taken to be a destination port and any
immediate at or above 0xc0000000 a source address.
'''


#
# Copyright (c) 2023 Red Hat, Inc., Anton Ivanov <anivanov@redhat.com>
# Copyright (c) 2023 Cambridge Greys Ltd <anton.ivanov@cambridgegreys.com>
#

from typing import NamedTuple
from header_constants import ETH_PROTOS, IP_PROTOS, FRAG_OFFSET_MASK, \
    OFF_ETHERTYPE, OFF_PROTO, OFF_FRAG, OFF_SRC_ADDR, OFF_DST_ADDR, \
    OFF_SRC_PORT, OFF_DST_PORT
from code_objects import Purpose
from bpf_objects import LDH_ABS, LDB_ABS, LD_ABS, LDH_IND, LDXB_MSH, JEQ_K, JSET_K, RET_K

PROTO_NAMES = {value: name.upper() for (name, value) in IP_PROTOS.items()}

# Lower bound for a jeq immediate to be taken as an address
ADDR_HEURISTIC_MIN = 0xc0000000


class SemanticInstruction(NamedTuple):
    '''Purpose of a single instruction, read-only'''
    purpose: Purpose
    value: int
    description: str
    index: int

    def __repr__(self):
        return f"[{self.index:2d}] {self.purpose}: {self.description}"

    def to_dict(self):
        '''Serializable form'''
        return {
            "purpose": self.purpose.name,
            "value": self.value,
            "description": self.description,
            "index": self.index,
        }


def _classify_ldh(k):
    if k == OFF_ETHERTYPE:
        return (Purpose.LOAD_ETHERTYPE, "Load Ethernet type field")
    if k == OFF_FRAG:
        return (Purpose.LOAD_FRAG_INFO, "Load IP fragment information")
    return (Purpose.UNKNOWN, f"Load half-word from offset 0x{k:x}")

def _classify_ldb(k):
    if k == OFF_PROTO:
        return (Purpose.LOAD_PROTOCOL, "Load IP protocol field")
    return (Purpose.UNKNOWN, f"Load byte from offset 0x{k:x}")

def _classify_ld(k):
    if k == OFF_SRC_ADDR:
        return (Purpose.LOAD_SRC_ADDR, "Load source IP address")
    if k == OFF_DST_ADDR:
        return (Purpose.LOAD_DST_ADDR, "Load destination IP address")
    return (Purpose.UNKNOWN, f"Load word from offset 0x{k:x}")

def _classify_ldh_ind(k):
    if k == OFF_SRC_PORT:
        return (Purpose.LOAD_SRC_PORT, "Load source port (with header offset)")
    if k == OFF_DST_PORT:
        return (Purpose.LOAD_DST_PORT, "Load destination port (with header offset)")
    return (Purpose.UNKNOWN, f"Load half-word with offset 0x{k:x}")

def _classify_jeq(k):
    if k == ETH_PROTOS["ip"]:
        return (Purpose.CHECK_ETHERTYPE, f"Check if packet is IP (0x{k:x})")
    if k in PROTO_NAMES:
        return (Purpose.CHECK_PROTOCOL, f"Check if protocol is {PROTO_NAMES[k]} ({k})")
    if 1 <= k <= 65535:
        return (Purpose.CHECK_DST_PORT, f"Check if destination port is {k}")
    if k >= ADDR_HEURISTIC_MIN:
        return (Purpose.CHECK_SRC_ADDR, f"Check source IP (0x{k:08x})")
    return (Purpose.UNKNOWN, f"Check if value equals 0x{k:08x}")

def _classify_jset(k):
    if k == FRAG_OFFSET_MASK:
        return (Purpose.CHECK_FRAGMENT, "Check for IP fragmentation")
    return (Purpose.UNKNOWN, f"Check if bits 0x{k:08x} are set")

def _classify_ldxb(k):
    return (Purpose.LOAD_HEADER_LEN, "Load IP header length into index register")

def _classify_ret(k):
    if k > 0:
        return (Purpose.ACCEPT, f"Accept packet (return {k} bytes)")
    return (Purpose.REJECT, "Reject packet (return 0)")


CLASSIFIERS = {
    LDH_ABS: _classify_ldh,
    LDB_ABS: _classify_ldb,
    LD_ABS: _classify_ld,
    LDH_IND: _classify_ldh_ind,
    JEQ_K: _classify_jeq,
    JSET_K: _classify_jset,
    LDXB_MSH: _classify_ldxb,
    RET_K: _classify_ret,
}


def describe(purpose, k):
    '''Description for a tagged instruction the inference gets wrong'''
    if purpose == Purpose.CHECK_PROTOCOL:
        return f"Check if protocol is {PROTO_NAMES.get(k, k)} ({k})"
    if purpose == Purpose.CHECK_SRC_ADDR:
        return f"Check source IP (0x{k:08x})"
    if purpose == Purpose.CHECK_DST_ADDR:
        return f"Check destination IP (0x{k:08x})"
    if purpose == Purpose.CHECK_SRC_PORT:
        return f"Check if source port is {k}"
    if purpose == Purpose.CHECK_DST_PORT:
        return f"Check if destination port is {k}"
    return str(purpose)


#pylint: disable=unused-argument
def classify(opcode, jt, jf, k, index, purpose=None):
    '''Classify one instruction. Pure and total.

    A purpose assigned at generation time is trusted as is; otherwise
    the purpose is inferred from opcode first and immediate second.
    '''
    try:
        (inferred, description) = CLASSIFIERS[opcode](k)
    except KeyError:
        (inferred, description) = (Purpose.UNKNOWN, f"Unknown instruction: 0x{opcode:04x} k=0x{k:08x}")
    if purpose is None or purpose == inferred:
        return SemanticInstruction(inferred, k, description, index)
    return SemanticInstruction(purpose, k, describe(purpose, k), index)


def classify_program(program, trust_tags=True):
    '''Classify every instruction of a program'''
    result = []
    for (index, insn) in enumerate(program.instructions):
        (opcode, jt, jf, k) = insn.obj_dump()
        purpose = insn.purpose if trust_tags else None
        result.append(classify(opcode, jt, jf, k, index, purpose=purpose))
    return result


def is_tagged(program):
    '''Every instruction carries its generation time purpose'''
    return all(insn.purpose is not None for insn in program.instructions)
