# !/usr/bin/python3

''' cBPF filter generation and validation.
Lexer for the subset of the pcap language the generator understands.
'''

#
# Copyright (c) 2022 Red Hat, Inc., Anton Ivanov <anivanov@redhat.com>
# Copyright (c) 2022 Cambridge Greys Ltd <anton.ivanov@cambridgegreys.com>
#
# Dual Licensed under the GNU Public License Version 2.0 and BSD 3-clause
#
#

reserved = {
    'dst' : 'DST',
    'src' : 'SRC',
    'host' : 'HOST',
    'port' : 'PORT',
    'tcp' : 'TCP',
    'udp' : 'UDP',
    'icmp' : 'ICMP',
    'and' : 'AND',
}

tokens = [
    'NUM', 'ADDR_V4',
] + list(reserved.values())

t_ignore = ' \t'


class FilterSyntaxError(ValueError):
    '''Filter expression cannot be parsed'''


def t_and_alternative(t):
    r'&&'
    t.type = 'AND'
    return t

def t_addr_v4(t):
    r'\d+\.\d+\.\d+\.\d+'
    t.type = 'ADDR_V4'
    return t

def t_ZZ_STRING_LITERAL(t):
    r'\w+'
    if t.value.isnumeric():
        t.value = int(t.value)
        t.type = 'NUM'
        return t
    try:
        t.type = reserved[t.value.lower()]
    except KeyError as exc:
        raise FilterSyntaxError(f"Unsupported keyword '{t.value}'") from exc
    return t

def t_error(t):
    raise FilterSyntaxError(f"Illegal character '{t.value[0]}' at {t.lexpos}")
