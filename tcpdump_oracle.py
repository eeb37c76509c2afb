''' cBPF filter generation and validation.
Reference programs produced by tcpdump.

tcpdump -ddd prints the instruction count on the first line followed by
one instruction per line as four decimal numbers: code jt jf k. When
tcpdump is not installed a synthetic tcpdump-shaped program is used
instead and marked as mocked.
'''


#
# Copyright (c) 2023 Red Hat, Inc., Anton Ivanov <anivanov@redhat.com>
# Copyright (c) 2023 Cambridge Greys Ltd <anton.ivanov@cambridgegreys.com>
#

import sys
import shutil
import logging
import subprocess
from header_constants import ETH_PROTOS, IP_PROTOS, FRAG_OFFSET_MASK, \
    ACCEPT_SNAPLEN, REJECT, OFF_ETHERTYPE, OFF_IP_HEADER, OFF_PROTO, \
    OFF_FRAG, OFF_SRC_ADDR, OFF_DST_ADDR, OFF_SRC_PORT, OFF_DST_PORT
from code_objects import Instruction, Program, ORACLE
from bpf_objects import LDH_ABS, LDB_ABS, LD_ABS, LDH_IND, LDXB_MSH, \
    JEQ_K, JSET_K, RET_K, ipv4_to_word

LOG = logging.getLogger(__name__)

TCPDUMP = "tcpdump"

# branch which leaves the fail-fast chain for the reject instruction
ON_TRUE = "jt"
ON_FALSE = "jf"


class OracleError(RuntimeError):
    '''tcpdump could not produce a usable program'''


def parse_ddd(output):
    '''Parse tcpdump -ddd output into instructions'''
    lines = output.strip().splitlines()
    if len(lines) == 0:
        raise OracleError("empty tcpdump output")

    try:
        count = int(lines[0].strip())
    except ValueError as exc:
        raise OracleError(f"invalid instruction count: {lines[0].strip()!r}") from exc

    if len(lines) != count + 1:
        raise OracleError(f"expected {count} instructions, got {len(lines) - 1} lines")

    instructions = []
    for lineno in range(1, count + 1):
        line = lines[lineno].strip()
        parts = line.split()
        if len(parts) != 4:
            raise OracleError(f"invalid instruction format at line {lineno}: {line}")
        try:
            instructions.append(Instruction(*[int(part) for part in parts]))
        except ValueError as exc:
            raise OracleError(f"invalid instruction at line {lineno}: {exc}") from exc
    return instructions


def synthetic_program(spec):
    '''tcpdump-shaped program for when tcpdump is not available.
       Jumps use the cBPF convention - relative to the next instruction.
    '''
    code = [
        (LDH_ABS, OFF_ETHERTYPE, None),
        (JEQ_K, ETH_PROTOS["ip"], ON_FALSE),
    ]
    if spec.protocol:
        code.extend([
            (LDB_ABS, OFF_PROTO, None),
            (JEQ_K, IP_PROTOS[spec.protocol], ON_FALSE),
        ])
    if spec.src_ip:
        code.extend([
            (LD_ABS, OFF_SRC_ADDR, None),
            (JEQ_K, ipv4_to_word(spec.src_ip), ON_FALSE),
        ])
    if spec.dst_ip:
        code.extend([
            (LD_ABS, OFF_DST_ADDR, None),
            (JEQ_K, ipv4_to_word(spec.dst_ip), ON_FALSE),
        ])
    if spec.has_ports():
        code.extend([
            (LDH_ABS, OFF_FRAG, None),
            (JSET_K, FRAG_OFFSET_MASK, ON_TRUE),
            (LDXB_MSH, OFF_IP_HEADER, None),
        ])
        if spec.src_port is not None:
            code.extend([
                (LDH_IND, OFF_SRC_PORT, None),
                (JEQ_K, spec.src_port, ON_FALSE),
            ])
        if spec.dst_port is not None:
            code.extend([
                (LDH_IND, OFF_DST_PORT, None),
                (JEQ_K, spec.dst_port, ON_FALSE),
            ])
    code.extend([
        (RET_K, ACCEPT_SNAPLEN, None),
        (RET_K, REJECT, None),
    ])

    reject = len(code) - 1
    instructions = []
    for (counter, (opcode, k, branch)) in enumerate(code):
        jt = 0
        jf = 0
        if branch == ON_TRUE:
            jt = reject - counter - 1
        elif branch == ON_FALSE:
            jf = reject - counter - 1
        instructions.append(Instruction(opcode, jt, jf, k))
    return instructions


def generate(spec, tcpdump=None):
    '''Produce the reference program for a validated spec'''
    expr = spec.to_tcpdump()
    if len(expr) == 0:
        raise OracleError("empty filter expression")

    path = shutil.which(tcpdump or TCPDUMP)
    if path is None:
        LOG.warning("tcpdump not available on %s, using synthetic reference", sys.platform)
        instructions = synthetic_program(spec)
        return Program(
            instructions,
            filter_expr=expr,
            mocked=True,
            raw_output=Program(instructions).ddd(),
            origin=ORACLE
        )

    cmd = [path, "-ddd", expr]
    LOG.info("executing: %s", " ".join(cmd))
    try:
        proc = subprocess.run(cmd, capture_output=True, check=True, text=True)
    except subprocess.CalledProcessError as exc:
        raise OracleError(f"tcpdump failed: {exc}\nStderr: {exc.stderr}") from exc
    except OSError as exc:
        raise OracleError(f"failed to execute tcpdump: {exc}") from exc

    LOG.debug("raw tcpdump output:\n%s", proc.stdout)
    instructions = parse_ddd(proc.stdout)
    LOG.info("parsed %d instructions", len(instructions))
    return Program(instructions, filter_expr=expr, mocked=False, raw_output=proc.stdout, origin=ORACLE)


def load_dump(path, filter_expr=""):
    '''Reference program from a saved -ddd dump'''
    with open(path, "r", encoding="ascii") as dump:
        output = dump.read()
    return Program(parse_ddd(output), filter_expr=filter_expr, mocked=False,
                   raw_output=output, origin=ORACLE)
