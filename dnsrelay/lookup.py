"""Resolving host names to IP addresses through a request resolver."""

from __future__ import annotations

import ipaddress
from concurrent.futures import ThreadPoolExecutor
from typing import Callable

import dns.message
import dns.rdatatype

from dnsrelay.dnscontext import PROTO_UDP, DNSContext


class EmptyHostError(ValueError):
    """Raised when the host to look up is empty."""

    def __init__(self, message: str = "host is empty") -> None:
        super().__init__(message)


def _lookup(resolve: Callable[[DNSContext], None], host: str, qtype):
    req = dns.message.make_query(host, qtype)
    dctx = DNSContext(proto=PROTO_UDP, req=req)
    resolve(dctx)
    return dctx.res


def lookup_net_ip(
    resolve: Callable[[DNSContext], None], host: str, prefer_ipv6: bool = False
) -> list:
    """Resolve host's A and AAAA records in parallel and return the addresses.

    resolve takes a DNSContext, fills in its response and raises on failure.
    An error is raised only if no address was found at all.
    """
    if not host:
        raise EmptyHostError()
    if not host.endswith("."):
        host += "."

    addrs: list = []
    errors: list[Exception] = []
    with ThreadPoolExecutor(max_workers=2) as pool:
        futures = [
            pool.submit(_lookup, resolve, host, qtype)
            for qtype in (dns.rdatatype.A, dns.rdatatype.AAAA)
        ]
        for future in futures:
            try:
                res = future.result()
            except Exception as err:
                errors.append(err)
                continue
            if res is not None:
                addrs = append_answer_addrs(addrs, res.answer)

    if not addrs and errors:
        raise errors[0]

    if prefer_ipv6:
        addrs.sort(key=lambda a: a.version == 4)
    else:
        addrs.sort(key=lambda a: a.version == 6)
    return addrs


def append_answer_addrs(addrs: list, answers) -> list:
    """Return addrs extended with the addresses of A and AAAA answers."""
    result = list(addrs)
    for rrset in answers:
        if rrset.rdtype not in (dns.rdatatype.A, dns.rdatatype.AAAA):
            continue
        result.extend(ipaddress.ip_address(rdata.address) for rdata in rrset)
    return result