''' cBPF filter generation and validation.
Packet header constants
'''


#
# Copyright (c) 2023 Red Hat, Inc., Anton Ivanov <anivanov@redhat.com>
# Copyright (c) 2023 Cambridge Greys Ltd <anton.ivanov@cambridgegreys.com>
#


# Ethernet

ETHER = {
    "proto": 12,
    "size": 14
}

# IPv4, offsets relative to the start of the IP header

IP = {
    "frag": 6,
    "proto": 9,
    "src": 12,
    "dst": 16,
}

# TCP/UDP, offsets relative to the start of the transport header

PORT = {
    "src": 0,
    "dst": 2
}

ETH_PROTOS = {
    "ip": 0x0800,                   # Internet Protocol version 4 (IPv4)
}

IP_PROTOS = {
    "icmp":         1,  # internet control message protocol
    "tcp":          6,  # transmission control protocol
    "udp":          17, # user datagram protocol
}

# Protocols which carry 16 bit ports right at the start of the payload

PORT_PROTOS = ["tcp", "udp"]

# Fragment offset bits in the IPv4 flags/fragment half-word

FRAG_OFFSET_MASK = 0x1FFF

# cBPF convention is 0 for failure and non negative
# packet "size" for success

ACCEPT_SNAPLEN = 0x40000
REJECT = 0

# Absolute packet offsets used by the generator and the classifier.

OFF_ETHERTYPE = ETHER["proto"]
OFF_IP_HEADER = ETHER["size"]
OFF_PROTO = ETHER["size"] + IP["proto"]
OFF_FRAG = ETHER["size"] + IP["frag"]
OFF_SRC_ADDR = ETHER["size"] + IP["src"]
OFF_DST_ADDR = ETHER["size"] + IP["dst"]
OFF_SRC_PORT = ETHER["size"] + PORT["src"]
OFF_DST_PORT = ETHER["size"] + PORT["dst"]
