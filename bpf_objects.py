''' cBPF filter generation and validation.
cBPF backend - opcodes, disassembler and the filter code generator.
'''


#
# Copyright (c) 2023 Red Hat, Inc., Anton Ivanov <anivanov@redhat.com>
# Copyright (c) 2023 Cambridge Greys Ltd <anton.ivanov@cambridgegreys.com>
#

import ipaddress
import logging
from header_constants import ETH_PROTOS, IP_PROTOS, FRAG_OFFSET_MASK, \
    ACCEPT_SNAPLEN, REJECT, OFF_ETHERTYPE, OFF_IP_HEADER, OFF_PROTO, \
    OFF_FRAG, OFF_SRC_ADDR, OFF_DST_ADDR, OFF_SRC_PORT, OFF_DST_PORT
from code_objects import ProgramBuilder, Purpose

LOG = logging.getLogger(__name__)

FORMATS = [
    "x",                      # 0  register x
    "[0x{:04X}]",             # 1  offset k in the packet
    "[x + 0x{:04X}]",         # 2  offset k + x in the packet
    "M[0x{:04X}]",            # 3  offset k in M
    "#0x{:04X}",              # 4  k literal
    "4*([0x{:04X}]&0xf)",     # 5  Lower nibble * 4 at byte offset k in the packet
    "#pktlen",                # 6  packet length
    "a",                      # 7  accumulator
]

BPF_LD      =   0x00
BPF_LDX     =   0x01
BPF_ST      =   0x02
BPF_STX     =   0x03
BPF_ALU     =   0x04
BPF_JMP     =   0x05
BPF_RET     =   0x06
BPF_MISC    =   0x07

# ld/ldx fields
# define BPF_SIZE(code)  ((code) & 0x18)
BPF_W       =   0x00      # 32-bit
BPF_H       =   0x08      # 16-bit
BPF_B       =   0x10      # 8-bit

#define BPF_MODE(code)  ((code) & 0xe0)

BPF_IMM     =   0x00
BPF_ABS     =   0x20
BPF_IND     =   0x40
BPF_MEM     =   0x60
BPF_LEN     =   0x80
BPF_MSH     =   0xa0

# alu/jmp fields
# define BPF_OP(code)    ((code) & 0xf0)
BPF_ADD     =   0x00
BPF_SUB     =   0x10
BPF_MUL     =   0x20
BPF_DIV     =   0x30
BPF_OR      =   0x40
BPF_AND     =   0x50
BPF_LSH     =   0x60
BPF_RSH     =   0x70
BPF_NEG     =   0x80
BPF_MOD     =   0x90
BPF_XOR     =   0xa0

BPF_JA      =   0x00
BPF_JEQ     =   0x10
BPF_JGT     =   0x20
BPF_JGE     =   0x30
BPF_JSET    =   0x40
#BPF_SRC(code)   ((code) & 0x08)
BPF_K       =   0x00
BPF_X       =   0x08

BPF_A       =   0x10

#define BPF_MISCOP(code) ((code) & 0xf8)
BPF_TAX     =   0x00
BPF_TXA     =   0x80

# The handful of complete opcodes the generator emits

LDH_ABS = BPF_LD + BPF_H + BPF_ABS      # 0x28 ldh [k]
LDB_ABS = BPF_LD + BPF_B + BPF_ABS      # 0x30 ldb [k]
LD_ABS = BPF_LD + BPF_W + BPF_ABS       # 0x20 ld [k]
LDH_IND = BPF_LD + BPF_H + BPF_IND      # 0x48 ldh [x + k]
LDXB_MSH = BPF_LDX + BPF_B + BPF_MSH    # 0xb1 ldxb 4*([k]&0xf)
JEQ_K = BPF_JMP + BPF_JEQ + BPF_K       # 0x15 jeq #k
JSET_K = BPF_JMP + BPF_JSET + BPF_K     # 0x45 jset #k
RET_K = BPF_RET + BPF_K                 # 0x06 ret #k

SIZE_MODS = {BPF_W: "", BPF_H: "h", BPF_B: "b"}

MODE_FORMATS = {
    BPF_IMM: 4,
    BPF_ABS: 1,
    BPF_IND: 2,
    BPF_MEM: 3,
    BPF_LEN: 6,
    BPF_MSH: 5,
}

ALU_NAMES = {
    BPF_ADD: "add",
    BPF_SUB: "sub",
    BPF_MUL: "mul",
    BPF_DIV: "div",
    BPF_OR: "or",
    BPF_AND: "and",
    BPF_LSH: "lsh",
    BPF_RSH: "rsh",
    BPF_NEG: "neg",
    BPF_MOD: "mod",
    BPF_XOR: "xor",
}

JMP_NAMES = {
    BPF_JA: "ja",
    BPF_JEQ: "jeq",
    BPF_JGT: "jgt",
    BPF_JGE: "jge",
    BPF_JSET: "jset",
}


def _operand(opcode, k):
    '''Source operand of an ALU or jump instruction'''
    if opcode & BPF_X:
        return FORMATS[0]
    return FORMATS[4].format(k)


def disassemble(insn):
    '''Printable form of a cBPF instruction.
       Jump offsets are printed as they are encoded, relative to the
       instruction, because oracle and generator count them differently.
    '''
    (opcode, jt, jf, k) = insn.obj_dump()
    opclass = opcode & 0x07

    if opclass in (BPF_LD, BPF_LDX):
        name = "ld" if opclass == BPF_LD else "ldx"
        try:
            name += SIZE_MODS[opcode & 0x18]
            return name + "\t" + FORMATS[MODE_FORMATS[opcode & 0xe0]].format(k)
        except KeyError:
            pass
    elif opclass in (BPF_ST, BPF_STX):
        name = "st" if opclass == BPF_ST else "stx"
        return name + "\t" + FORMATS[3].format(k)
    elif opclass == BPF_ALU:
        try:
            name = ALU_NAMES[opcode & 0xf0]
            if opcode & 0xf0 == BPF_NEG:
                return name
            return name + "\t" + _operand(opcode, k)
        except KeyError:
            pass
    elif opclass == BPF_JMP:
        try:
            name = JMP_NAMES[opcode & 0xf0]
            if opcode & 0xf0 == BPF_JA:
                return f"{name}\t+{k}"
            return f"{name}\t{_operand(opcode, k)} jt +{jt} jf +{jf}"
        except KeyError:
            pass
    elif opclass == BPF_RET:
        rval = opcode & 0x18
        if rval == BPF_A:
            return "ret\t" + FORMATS[7]
        if rval == BPF_X:
            return "ret\t" + FORMATS[0]
        return "ret\t" + FORMATS[4].format(k)
    else:
        if opcode & 0xf8 == BPF_TAX:
            return "tax"
        if opcode & 0xf8 == BPF_TXA:
            return "txa"

    return f".word\t0x{opcode:04x} {jt} {jf} 0x{k:08x}"


def listing(program):
    '''Numbered assembly listing'''
    res = []
    for (counter, insn) in enumerate(program.instructions):
        res.append(f"({counter:03d}) {disassemble(insn)}")
    return res


def ipv4_to_word(addr):
    '''Dotted quad to the 32 bit word found in the packet'''
    return int(ipaddress.IPv4Address(addr))


class CBPFGenerator():
    '''Fail-fast cBPF code generator.

    The program is produced in five stages, each present only if the
    filter asks for it:

    1. ethertype gate - always
    2. IP protocol gate
    3. source and/or destination address gates
    4. fragment aware source and/or destination port gates
    5. accept/reject pair - always

    Every check is emitted with placeholder jumps and its position is
    recorded. Once the accept/reject pair exists, resolve_refs() points
    the true branch of each check at accept and the false branch at
    reject. The fragment check is patched as soon as the port checks
    are out, sending non-initial fragments to the reject slot.

    A generator compiles exactly one program; the builder is owned by
    compile() and passed down to each stage.
    '''

    def __init__(self, spec):
        self.spec = spec
        self.checks = []
        self.reasoning = []

    def compile(self):
        '''Compile the filter into a Program'''
        builder = ProgramBuilder()

        self.compile_l2(builder)
        self.compile_l3(builder)
        self.compile_addresses(builder)
        self.compile_ports(builder)
        (accept, reject) = self.compile_terminals(builder)
        self.resolve_refs(builder, accept, reject)
        self.add_optimizations(builder)

        program = builder.finalize(
            filter_expr=self.spec.label(),
            rationale="Fail-fast approach: " + ", ".join(self.reasoning)
        )
        LOG.info("generated %d instructions for %s", len(program), program.filter_expr)
        return program

    def add_check(self, builder, opcode, k, purpose):
        '''Emit a check with placeholder jumps and remember it'''
        position = builder.add_instruction(opcode, 0, 0, k, purpose=purpose)
        self.checks.append(position)
        return position

    def compile_l2(self, builder):
        '''Stage 1 - is it IPv4 at all'''
        self.reasoning.append("1) Early IP validation")
        builder.add_instruction(LDH_ABS, 0, 0, OFF_ETHERTYPE, purpose=Purpose.LOAD_ETHERTYPE)
        self.add_check(builder, JEQ_K, ETH_PROTOS["ip"], Purpose.CHECK_ETHERTYPE)

    def compile_l3(self, builder):
        '''Stage 2 - IP protocol'''
        if not self.spec.protocol:
            return
        self.reasoning.append("2) Protocol-specific filtering")
        builder.add_instruction(LDB_ABS, 0, 0, OFF_PROTO, purpose=Purpose.LOAD_PROTOCOL)
        self.add_check(builder, JEQ_K, IP_PROTOS[self.spec.protocol], Purpose.CHECK_PROTOCOL)

    def compile_addresses(self, builder):
        '''Stage 3 - source and destination addresses'''
        if not (self.spec.src_ip or self.spec.dst_ip):
            return
        self.reasoning.append("3) IP address filtering")
        if self.spec.src_ip:
            builder.add_instruction(LD_ABS, 0, 0, OFF_SRC_ADDR, purpose=Purpose.LOAD_SRC_ADDR)
            self.add_check(builder, JEQ_K, ipv4_to_word(self.spec.src_ip), Purpose.CHECK_SRC_ADDR)
        if self.spec.dst_ip:
            builder.add_instruction(LD_ABS, 0, 0, OFF_DST_ADDR, purpose=Purpose.LOAD_DST_ADDR)
            self.add_check(builder, JEQ_K, ipv4_to_word(self.spec.dst_ip), Purpose.CHECK_DST_ADDR)

    def compile_ports(self, builder):
        '''Stage 4 - ports, only present in the first fragment'''
        if not self.spec.has_ports():
            return
        self.reasoning.append("4) Fragment-aware port filtering")

        builder.add_instruction(LDH_ABS, 0, 0, OFF_FRAG, purpose=Purpose.LOAD_FRAG_INFO)
        frag_check = builder.add_instruction(
            JSET_K, 0, 0, FRAG_OFFSET_MASK, purpose=Purpose.CHECK_FRAGMENT)
        builder.add_instruction(LDXB_MSH, 0, 0, OFF_IP_HEADER, purpose=Purpose.LOAD_HEADER_LEN)

        if self.spec.src_port is not None:
            builder.add_instruction(LDH_IND, 0, 0, OFF_SRC_PORT, purpose=Purpose.LOAD_SRC_PORT)
            self.add_check(builder, JEQ_K, self.spec.src_port, Purpose.CHECK_SRC_PORT)

        if self.spec.dst_port is not None:
            builder.add_instruction(LDH_IND, 0, 0, OFF_DST_PORT, purpose=Purpose.LOAD_DST_PORT)
            self.add_check(builder, JEQ_K, self.spec.dst_port, Purpose.CHECK_DST_PORT)

        # accept goes right after the last port check, reject after accept
        reject_slot = builder.next_position + 1
        builder.update_branch_targets(frag_check, reject_slot - frag_check, 1)

    def compile_terminals(self, builder):
        '''Stage 5 - accept/reject pair'''
        self.reasoning.append("5) Optimized accept/reject with minimal instructions")
        accept = builder.add_instruction(RET_K, 0, 0, ACCEPT_SNAPLEN, purpose=Purpose.ACCEPT)
        reject = builder.add_instruction(RET_K, 0, 0, REJECT, purpose=Purpose.REJECT)
        return (accept, reject)

    def resolve_refs(self, builder, accept, reject):
        '''Second pass - point every check at accept/reject'''
        for position in self.checks:
            builder.update_branch_targets(position, accept - position, reject - position)
            LOG.debug("check at %d: %r", position, builder.get_instruction(position))

    def add_optimizations(self, builder):
        '''Descriptive notes for the field combination being compiled'''
        if self.spec.protocol and self.spec.has_ports():
            builder.record_optimization("Combined protocol and port filtering in single pass")
        if self.spec.src_ip and self.spec.dst_ip:
            builder.record_optimization("Dual IP address filtering with early termination")
        if self.spec.has_ports():
            builder.record_optimization("Fragment-aware port filtering prevents false matches")
        builder.record_optimization("Minimal instruction count with structured validation")


def generate(spec):
    '''Generate a cBPF program for a validated filter spec'''
    return CBPFGenerator(spec).compile()
