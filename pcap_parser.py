# !/usr/bin/python3

''' cBPF filter generation and validation.
Parser for tcpdump style filter expressions.

Only a conjunction of simple terms is understood:

    tcp | udp | icmp
    src|dst [host] A.B.C.D
    src|dst port N

joined by "and" or "&&". The result is a FilterSpec.
'''

#
# Copyright (c) 2022 Red Hat, Inc., Anton Ivanov <anivanov@redhat.com>
# Copyright (c) 2022 Cambridge Greys Ltd <anton.ivanov@cambridgegreys.com>
#
# Dual Licensed under the GNU Public License Version 2.0 and BSD 3-clause
#
#

import ply.lex as lex
import ply.yacc as yacc
from lexer_defs import tokens, FilterSyntaxError
import lexer_defs
from filter_spec import FilterSpec, PROTOCOL, SRC_IP, DST_IP, SRC_PORT, DST_PORT

ADDR_FIELDS = {"src": SRC_IP, "dst": DST_IP}
PORT_FIELDS = {"src": SRC_PORT, "dst": DST_PORT}


def p_expression(p):
    '''expression : term
                  | expression AND term
    '''
    if len(p) == 2:
        p[0] = [p[1]]
    else:
        p[0] = p[1] + [p[3]]

def p_term(p):
    '''term    : pname
               | address
               | port
    '''
    p[0] = p[1]

def p_pname(p):
    '''pname    : TCP
                | UDP
                | ICMP
    '''
    p[0] = (PROTOCOL, p[1].lower())

def p_address(p):
    '''address  : dqual ADDR_V4
                | dqual HOST ADDR_V4
    '''
    p[0] = (ADDR_FIELDS[p[1]], p[len(p) - 1])

def p_port(p):
    '''port     : dqual PORT NUM
    '''
    p[0] = (PORT_FIELDS[p[1]], p[3])

def p_dqual(p):
    '''dqual : SRC
             | DST
    '''
    p[0] = p[1].lower()

def p_error(p):
    if p is None:
        raise FilterSyntaxError("Unexpected end of expression")
    raise FilterSyntaxError(f"Syntax error at '{p.value}'")


LEXER = lex.lex(module=lexer_defs)
PARSER = yacc.yacc(debug=False, write_tables=False)


def parse(text):
    '''Parse an expression into an (unvalidated) FilterSpec'''
    if text is None or len(text.strip()) == 0:
        raise FilterSyntaxError("Empty filter expression")

    terms = PARSER.parse(text, lexer=LEXER.clone())

    fields = {}
    for (field, value) in terms:
        if field in fields:
            raise FilterSyntaxError(f"'{field}' specified more than once")
        fields[field] = value
    return FilterSpec(**fields)
