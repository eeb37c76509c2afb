''' cBPF filter generation and validation.
Structured filter specification.
'''

#
# Copyright (c) 2023 Red Hat, Inc., Anton Ivanov <anivanov@redhat.com>
# Copyright (c) 2023 Cambridge Greys Ltd <anton.ivanov@cambridgegreys.com>
#

import ipaddress
from header_constants import IP_PROTOS, PORT_PROTOS

PROTOCOL = "protocol"
SRC_IP = "src_ip"
DST_IP = "dst_ip"
SRC_PORT = "src_port"
DST_PORT = "dst_port"

FIELDS = [PROTOCOL, SRC_IP, DST_IP, SRC_PORT, DST_PORT]


class FilterSpecError(ValueError):
    '''Filter specification is not valid'''


# Inherits from dict, this makes it trivial to serialize.
# Unset fields are None, protocol may also be the empty string.

class FilterSpec(dict):
    '''Packet filter - protocol, addresses and ports'''
    def __init__(self, protocol="", src_ip=None, dst_ip=None, src_port=None, dst_port=None):
        super().__init__()
        self[PROTOCOL] = protocol or ""
        self[SRC_IP] = src_ip or None
        self[DST_IP] = dst_ip or None
        self[SRC_PORT] = src_port
        self[DST_PORT] = dst_port

    @classmethod
    def from_dict(cls, obj):
        '''Build from a plain dict, f.e. a JSON filter file'''
        if not isinstance(obj, dict):
            raise FilterSpecError("filter must be an object")
        unknown = set(obj.keys()) - set(FIELDS)
        if unknown:
            raise FilterSpecError(f"unknown filter fields: {', '.join(sorted(unknown))}")
        return cls(**obj)

    @property
    def protocol(self):
        '''protocol getter'''
        return self[PROTOCOL]

    @property
    def src_ip(self):
        '''source address getter'''
        return self[SRC_IP]

    @property
    def dst_ip(self):
        '''destination address getter'''
        return self[DST_IP]

    @property
    def src_port(self):
        '''source port getter'''
        return self[SRC_PORT]

    @property
    def dst_port(self):
        '''destination port getter'''
        return self[DST_PORT]

    def has_ports(self):
        '''Any port set'''
        return self.src_port is not None or self.dst_port is not None

    def is_empty(self):
        '''No criteria at all'''
        return not self.protocol and self.src_ip is None and self.dst_ip is None \
            and not self.has_ports()

    def validate(self):
        '''Normalize and check the spec, raise FilterSpecError if it
           cannot be compiled. Returns self for chaining.
        '''
        if self.protocol:
            protocol = str(self.protocol).lower()
            if protocol not in IP_PROTOS:
                raise FilterSpecError(
                    f"invalid protocol '{self.protocol}', must be tcp, udp, or icmp")
            self[PROTOCOL] = protocol

        for (field, name) in [(SRC_IP, "source"), (DST_IP, "destination")]:
            if self[field] is None:
                continue
            try:
                addr = ipaddress.ip_address(self[field])
            except ValueError as exc:
                raise FilterSpecError(f"invalid {name} IP address: {self[field]}") from exc
            if not isinstance(addr, ipaddress.IPv4Address):
                raise FilterSpecError(f"only IPv4 {name} addresses are supported: {self[field]}")

        for (field, name) in [(SRC_PORT, "source"), (DST_PORT, "destination")]:
            port = self[field]
            if port is None:
                continue
            if isinstance(port, bool) or not isinstance(port, int) or port < 0 or port > 65535:
                raise FilterSpecError(f"invalid {name} port {port}, must be 0-65535")

        if self.is_empty():
            raise FilterSpecError("at least one filter criterion must be specified")

        if self.protocol and self.protocol not in PORT_PROTOS and self.has_ports():
            raise FilterSpecError(f"{self.protocol.upper()} protocol does not support port filtering")

        return self

    def describe(self):
        '''Human readable form'''
        parts = []
        if self.protocol:
            parts.append(f"Protocol: {self.protocol}")
        if self.src_ip:
            parts.append(f"Source IP: {self.src_ip}")
        if self.dst_ip:
            parts.append(f"Destination IP: {self.dst_ip}")
        if self.src_port is not None:
            parts.append(f"Source Port: {self.src_port}")
        if self.dst_port is not None:
            parts.append(f"Destination Port: {self.dst_port}")
        return ", ".join(parts)

    def label(self):
        '''Short label attached to generated programs'''
        parts = []
        if self.protocol:
            parts.append(self.protocol)
        if self.src_ip:
            parts.append(f"src={self.src_ip}")
        if self.dst_ip:
            parts.append(f"dst={self.dst_ip}")
        if self.src_port is not None:
            parts.append(f"sport={self.src_port}")
        if self.dst_port is not None:
            parts.append(f"dport={self.dst_port}")
        return " ".join(parts)

    def to_tcpdump(self):
        '''tcpdump/pcap filter syntax'''
        parts = []
        if self.protocol:
            parts.append(self.protocol)
        if self.src_ip:
            parts.append(f"src {self.src_ip}")
        if self.dst_ip:
            parts.append(f"dst {self.dst_ip}")
        if self.src_port is not None:
            parts.append(f"src port {self.src_port}")
        if self.dst_port is not None:
            parts.append(f"dst port {self.dst_port}")
        return " and ".join(parts)


def from_expression(text):
    '''Parse a tcpdump style expression into a FilterSpec'''
    # pcap_parser builds FilterSpec objects, import it late
    #pylint: disable=import-outside-toplevel
    from pcap_parser import parse
    return parse(text)
