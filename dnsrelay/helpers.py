"""EDNS Client Subnet helpers."""

from __future__ import annotations

import ipaddress

import dns.edns
import dns.message

DEFAULT_ECS_V4 = 24
"""Default network mask length for an IPv4 address in the ECS option."""

DEFAULT_ECS_V6 = 56
"""Default network mask length for an IPv6 address in the ECS option.

Seven octets is a reasonable minimum, since some public resolvers refuse
requests with longer masks.
"""

_ECS_UDP_SIZE = 4096
_FAMILY_BITS = {1: 32, 2: 128}


def ecs_from_msg(msg: dns.message.Message):
    """Return the ECS subnet of msg and its scope, or (None, 0) if absent."""
    if msg.edns < 0:
        return None, 0
    for option in msg.options:
        if not isinstance(option, dns.edns.ECSOption):
            continue
        if option.family not in _FAMILY_BITS:
            continue
        address = ipaddress.ip_address(option.address)
        subnet = ipaddress.ip_network(f"{address}/{option.srclen}", strict=False)
        return subnet, int(option.scopelen)
    return None, 0


def set_ecs(msg: dns.message.Message, ip, scope: int = 0):
    """Add an ECS option for ip to msg and return the masked subnet."""
    address = ipaddress.ip_address(ip)
    if address.version == 6 and address.ipv4_mapped is not None:
        address = address.ipv4_mapped
    prefix = DEFAULT_ECS_V4 if address.version == 4 else DEFAULT_ECS_V6
    subnet = ipaddress.ip_network(f"{address}/{prefix}", strict=False)
    option = dns.edns.ECSOption(str(subnet.network_address), prefix, scope)

    # Servers may answer FORMERR to several OPT records, so reuse an existing one.
    if msg.edns >= 0:
        msg.use_edns(
            msg.edns, msg.ednsflags, msg.payload, options=[*msg.options, option]
        )
    else:
        msg.use_edns(0, 0, _ECS_UDP_SIZE, options=[option])
    return subnet