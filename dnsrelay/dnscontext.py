"""Per-request state of a DNS query and custom upstream configuration."""

from __future__ import annotations

import enum
import ipaddress
from dataclasses import dataclass
from typing import Any

import dns.exception
import dns.flags
import dns.message
import dns.rrset

from dnsrelay.cache import Cache

PROTO_UDP = "udp"
PROTO_TCP = "tcp"
PROTO_TLS = "tls"
PROTO_HTTPS = "https"
PROTO_QUIC = "quic"
PROTO_DNSCRYPT = "dnscrypt"

DEFAULT_UDP_BUF_SIZE = 2048
MIN_MSG_SIZE = 512
MAX_MSG_SIZE = 65535


class DoQVersion(enum.IntEnum):
    """Supported DNS-over-QUIC protocol versions."""

    DOQ_V1_DRAFT = 0x00
    DOQ_V1 = 0x01


class CustomUpstreamConfig:
    """Upstreams used for particular requests, with an optional cache."""

    def __init__(
        self,
        upstream_config: Any,
        cache_enabled: bool = False,
        cache_size: int = 0,
        enable_ecs: bool = False,
    ) -> None:
        self.upstream_config = upstream_config
        self.cache = Cache(cache_size, enable_ecs, False) if cache_enabled else None

    def close(self) -> None:
        """Close the upstream configuration, if any."""
        if self.upstream_config is None:
            return
        self.upstream_config.close()

    def clear_cache(self) -> None:
        """Remove all items from the cache, if it is enabled."""
        if self.cache is None:
            return
        self.cache.clear_items()
        self.cache.clear_items_with_subnet()


@dataclass
class DNSContext:
    """State of a single DNS request while it is being processed."""

    proto: str = PROTO_UDP
    req: dns.message.Message | None = None
    res: dns.message.Message | None = None
    addr: tuple[str, int] | None = None
    upstream: Any = None
    conn: Any = None
    quic_connection: Any = None
    quic_stream: Any = None
    dnscrypt_response_writer: Any = None
    http_response_writer: Any = None
    http_request: Any = None
    req_ecs: ipaddress.IPv4Network | ipaddress.IPv6Network | None = None
    custom_upstream_config: CustomUpstreamConfig | None = None
    query_statistics: Any = None
    requested_private_rdns: ipaddress.IPv4Network | ipaddress.IPv6Network | None = None
    local_ip: ipaddress.IPv4Address | ipaddress.IPv6Address | None = None
    doq_version: DoQVersion = DoQVersion.DOQ_V1_DRAFT
    request_id: int = 0
    is_private_client: bool = False
    udp_size: int = 0
    ad_bit: bool = False
    has_edns0: bool = False
    do_bit: bool = False

    def calc_flags_and_size(self) -> None:
        """Compute the request's AD, DO, EDNS presence and UDP size once."""
        if self.udp_size != 0 or self.req is None:
            return
        self.ad_bit = bool(self.req.flags & dns.flags.AD)
        self.udp_size = DEFAULT_UDP_BUF_SIZE
        if self.req.edns >= 0:
            self.has_edns0 = True
            self.do_bit = bool(self.req.ednsflags & dns.flags.DO)
            self.udp_size = self.req.payload

    def scrub(self) -> None:
        """Prepare the response for writing, truncating it if needed."""
        if self.res is None or self.req is None:
            return
        self.calc_flags_and_size()

        # A response must carry EDNS0 if and only if the request did (RFC 6891).
        if self.has_edns0 and self.res.edns < 0:
            self.res.use_edns(
                0, dns.flags.DO if self.do_bit else 0, self.udp_size
            )

        _truncate(self.res, dns_size(self.proto == PROTO_UDP, self.req))


def dns_size(is_udp: bool, req: dns.message.Message) -> int:
    """Return the response size limit advertised by req for the transport."""
    if not is_udp:
        return MAX_MSG_SIZE
    size = req.payload if req.edns >= 0 else 0
    return max(MIN_MSG_SIZE, size)


def _wire_len(msg: dns.message.Message) -> int:
    try:
        return len(msg.to_wire(max_size=MAX_MSG_SIZE))
    except dns.exception.TooBig:
        return MAX_MSG_SIZE + 1


def _truncate(msg: dns.message.Message, size: int) -> None:
    """Drop trailing records so that msg fits size; set TC if answers were cut."""
    size = min(max(size, MIN_MSG_SIZE), MAX_MSG_SIZE)
    if _wire_len(msg) <= size:
        return

    sections = (msg.answer, msg.authority, msg.additional)
    originals = [list(section) for section in sections]
    answer_count = sum(len(rrset) for rrset in originals[0])
    for section in sections:
        section.clear()

    fits = True
    for section, rrsets in zip(sections, originals):
        for rrset in rrsets:
            if not fits:
                break
            section.append(rrset)
            if _wire_len(msg) <= size:
                continue
            section.pop()
            partial = dns.rrset.RRset(
                rrset.name, rrset.rdclass, rrset.rdtype, rrset.covers
            )
            section.append(partial)
            for rdata in rrset:
                partial.add(rdata, rrset.ttl)
                if _wire_len(msg) > size:
                    partial.discard(rdata)
                    break
            if len(partial) == 0:
                section.pop()
            fits = False

    if sum(len(rrset) for rrset in msg.answer) < answer_count:
        msg.flags |= dns.flags.TC