#!/usr/bin/python3

'''Generate a cBPF filter and validate it against tcpdump'''


#
# Copyright (c) 2023 Red Hat, Inc., Anton Ivanov <anivanov@redhat.com>
# Copyright (c) 2023 Cambridge Greys Ltd <anton.ivanov@cambridgegreys.com>
#

import sys
import json
import logging
from argparse import ArgumentParser
from code_objects import ProgramEncoder
from filter_spec import FilterSpec, FilterSpecError, from_expression
from lexer_defs import FilterSyntaxError
import bpf_objects
import comparison
import report
import tcpdump_oracle

FORMATS = ["report", "json", "asm", "ddd", "iptables"]

LOG_LEVELS = [logging.WARNING, logging.INFO, logging.DEBUG]


def build_parser():
    '''Command line definition'''
    aparser = ArgumentParser(description=main.__doc__)
    aparser.add_argument(
       '--protocol',
        help='protocol (tcp, udp, icmp)',
        type=str,
        default=""
        )
    aparser.add_argument(
       '--src-ip',
        help='source IP address',
        type=str
        )
    aparser.add_argument(
       '--dst-ip',
        help='destination IP address',
        type=str
        )
    aparser.add_argument(
       '--src-port',
        help='source port',
        type=int
        )
    aparser.add_argument(
       '--dst-port',
        help='destination port',
        type=int
        )
    aparser.add_argument(
       '--expression',
        help='pcap expression, f.e. "tcp and dst port 80", overrides the individual fields',
        type=str
        )
    aparser.add_argument(
       '--filter-file',
        help='JSON file with protocol, src_ip, dst_ip, src_port, dst_port',
        type=str
        )
    aparser.add_argument(
       '--reference-dump',
        help='saved tcpdump -ddd output to use instead of running tcpdump',
        type=str
        )
    aparser.add_argument(
       '--tcpdump',
        help='tcpdump binary',
        type=str,
        default=tcpdump_oracle.TCPDUMP
        )
    aparser.add_argument(
       '--format',
        help='output format ' + ", ".join(FORMATS),
        choices=FORMATS,
        type=str,
        default="report"
        )
    aparser.add_argument(
       '--output',
        help='output file, if absent - stdout',
        type=str
        )
    aparser.add_argument(
       '--debug',
        help='debug level',
        type=int,
        default=0
        )
    return aparser


def load_spec(args):
    '''Filter spec from expression, file or individual fields'''
    if args["expression"] is not None:
        spec = from_expression(args["expression"])
    elif args["filter_file"] is not None:
        with open(args["filter_file"], "r", encoding="utf-8") as ffile:
            spec = FilterSpec.from_dict(json.load(ffile))
    else:
        spec = FilterSpec(
            protocol=args["protocol"],
            src_ip=args["src_ip"],
            dst_ip=args["dst_ip"],
            src_port=args["src_port"],
            dst_port=args["dst_port"]
        )
    return spec.validate()


def render(fmt, spec, reference, generated, result):
    '''Produce the requested output'''
    if fmt == "json":
        return json.dumps(result.to_dict(), cls=ProgramEncoder, indent=4) + "\n"
    if fmt == "asm":
        out = ""
        for program in (reference, generated):
            out += f"; {program.origin}: {program.filter_expr}\n"
            out += "\n".join(bpf_objects.listing(program)) + "\n"
        return out
    if fmt == "ddd":
        return generated.ddd()
    if fmt == "iptables":
        return generated.iptables() + "\n"
    return f"Filter: {spec.describe()}\n\n" + \
        report.format_program(reference) + "\n" + \
        report.format_program(generated) + "\n" + \
        report.format_comparison(result)


def run(args):
    '''Generate, compare and render'''
    spec = load_spec(args)

    if args["debug"] > 0:
        sys.stderr.write(json.dumps(spec, indent=4))
        sys.stderr.write("\n")

    if args["reference_dump"] is not None:
        reference = tcpdump_oracle.load_dump(args["reference_dump"], filter_expr=spec.to_tcpdump())
    else:
        reference = tcpdump_oracle.generate(spec, tcpdump=args["tcpdump"])

    generated = bpf_objects.generate(spec)

    if args["debug"] > 1:
        sys.stderr.write(json.dumps(generated, cls=ProgramEncoder, indent=4))
        sys.stderr.write("\n")
        for line in bpf_objects.listing(generated):
            sys.stderr.write(f"{line}\n")

    result = comparison.compare(reference, generated)
    return render(args["format"], spec, reference, generated, result)


def main(argv=None):
    '''Generate a cBPF program for a packet filter and check
    that it does the same things as the program tcpdump generates
    '''
    args = vars(build_parser().parse_args(argv))

    logging.basicConfig(
        level=LOG_LEVELS[min(max(args["debug"], 0), len(LOG_LEVELS) - 1)],
        format="%(levelname)s %(name)s: %(message)s"
    )

    try:
        output = run(args)
    except (FilterSpecError, FilterSyntaxError, json.JSONDecodeError,
            tcpdump_oracle.OracleError, OSError) as exc:
        sys.stderr.write(f"Error: {exc}\n")
        return 1

    if args["output"] is not None:
        with open(args["output"], "w", encoding="utf-8") as out:
            out.write(output)
    else:
        sys.stdout.write(output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
