"""DNS64 synthesis of AAAA records from A records (RFC 6147)."""

from __future__ import annotations

import ipaddress
import logging
import secrets
from typing import Any, Callable, Sequence

import dns.flags
import dns.message
import dns.rcode
import dns.rdata
import dns.rdataclass
import dns.rdatatype
import dns.rrset

MAX_NAT64_PREFIX_BIT_LEN = 96
"""Maximum length of a NAT64 prefix in bits."""

NAT64_PREFIX_LENGTH = 16 - 4
"""Length of a NAT64 prefix in bytes."""

MAX_DNS64_SYN_TTL = 600
"""Maximum TTL of synthesized records when no SOA record came back."""

DNS64_WELL_KNOWN_PREFIX = ipaddress.IPv6Network("64:ff9b::/96")
"""The default prefix for the algorithmic DNS64 mapping (RFC 6052)."""

_logger = logging.getLogger(__name__)


def setup_dns64_prefixes(use_dns64: bool, prefixes) -> list[ipaddress.IPv6Network]:
    """Return the validated, masked NAT64 prefixes to use.

    An empty result means DNS64 is disabled.  If DNS64 is enabled and no
    prefixes are given, the Well-Known Prefix is used.
    """
    if not use_dns64:
        return []
    if not prefixes:
        return [DNS64_WELL_KNOWN_PREFIX]

    result = []
    for index, pref in enumerate(prefixes):
        network = ipaddress.ip_network(pref, strict=False)
        if network.version != 6:
            raise ValueError(f"prefix at index {index}: {str(pref)!r} is not an IPv6 prefix")
        if network.prefixlen > MAX_NAT64_PREFIX_BIT_LEN:
            raise ValueError(f"prefix at index {index}: {str(pref)!r} is too long for DNS64")
        result.append(network)
    return result


def _ip_from_reversed(name: str):
    """Parse a complete in-addr.arpa or ip6.arpa name into an address."""
    text = name.lower().rstrip(".")
    if text.endswith(".in-addr.arpa"):
        labels = text[: -len(".in-addr.arpa")].split(".")
        if len(labels) != 4 or not all(label.isdigit() for label in labels):
            raise ValueError(f"bad arpa domain name {name!r}")
        return ipaddress.IPv4Address(".".join(reversed(labels)))
    if text.endswith(".ip6.arpa"):
        labels = text[: -len(".ip6.arpa")].split(".")
        if len(labels) != 32 or not all(
            len(label) == 1 and label in "0123456789abcdef" for label in labels
        ):
            raise ValueError(f"bad arpa domain name {name!r}")
        return ipaddress.IPv6Address(int("".join(reversed(labels)), 16))
    raise ValueError(f"not an arpa domain name: {name!r}")


class DNS64:
    """DNS64 handling for a set of NAT64 prefixes."""

    def __init__(self, prefixes: Sequence = (), logger: logging.Logger | None = None) -> None:
        self.prefixes = [ipaddress.ip_network(p, strict=False) for p in prefixes]
        self.logger = logger or _logger

    def _contains(self, addr) -> bool:
        return any(addr in prefix for prefix in self.prefixes)

    def check(self, req, resp):
        """Return an A request to resolve for DNS64, or None if not needed.

        For a NOERROR response, answers inside the NAT64 prefixes are
        removed from resp.
        """
        if not self.prefixes:
            return None

        q = req.question[0]
        if q.rdtype != dns.rdatatype.AAAA or q.rdclass != dns.rdataclass.IN:
            return None

        rcode = resp.rcode()
        if rcode == dns.rcode.NXDOMAIN:
            return None
        if rcode == dns.rcode.NOERROR:
            filtered, has_answers = self.filter_nat64_answers(resp.answer)
            resp.answer = filtered
            if has_answers:
                return None

        dns64_req = dns.message.from_wire(req.to_wire())
        dns64_req.id = secrets.randbits(16)
        dns64_req.question = [dns.rrset.RRset(q.name, q.rdclass, dns.rdatatype.A)]
        return dns64_req

    def filter_nat64_answers(self, rrsets):
        """Drop AAAA records inside the prefixes.

        Returns the remaining RRsets and whether any AAAA outside the
        prefixes, CNAME or DNAME remained.
        """
        filtered = []
        has_answers = False
        for rrset in rrsets:
            if rrset.rdtype == dns.rdatatype.AAAA:
                kept = dns.rrset.RRset(rrset.name, rrset.rdclass, rrset.rdtype)
                for rdata in rrset:
                    try:
                        addr = ipaddress.IPv6Address(rdata.address)
                    except ValueError as err:
                        self.logger.error("bad aaaa record: %s", err)
                        continue
                    if addr.ipv4_mapped is not None:
                        addr = addr.ipv4_mapped
                    if self._contains(addr):
                        continue
                    kept.add(rdata, rrset.ttl)
                if len(kept):
                    filtered.append(kept)
                    has_answers = True
            elif rrset.rdtype in (dns.rdatatype.CNAME, dns.rdatatype.DNAME):
                # Chains are not followed; treat them as passable answers.
                filtered.append(rrset)
                has_answers = True
            else:
                filtered.append(rrset)
        return filtered, has_answers

    def synth(self, orig_req, orig_resp, resp) -> bool:
        """Rewrite orig_resp from the A response resp; return True if changed."""
        if not resp.answer:
            return False

        soa_ttl = MAX_DNS64_SYN_TTL
        qname = orig_req.question[0].name
        for rrset in orig_resp.authority:
            if rrset.rdtype == dns.rdatatype.SOA and rrset.name == qname:
                soa_ttl = rrset.ttl
                break

        new_answer = []
        for rrset in resp.answer:
            synthesized = self.synth_rr(rrset, soa_ttl)
            if synthesized is None:
                return False
            new_answer.append(synthesized)

        orig_resp.answer = new_answer
        orig_resp.authority = list(resp.authority)
        orig_resp.additional = list(resp.additional)
        return True

    def should_strip(self, req) -> bool:
        """Return True for a PTR request of an address inside any DNS64 prefix."""
        if not self.prefixes:
            return False

        q = req.question[0]
        if q.rdtype != dns.rdatatype.PTR:
            return False

        try:
            ip = _ip_from_reversed(q.name.to_text())
        except ValueError as err:
            self.logger.debug("failed to parse ip from ptr request: %s", err)
            return False

        if self._contains(ip):
            self.logger.debug("the ip is within dns64 custom prefix set: %s", ip)
        elif ip in DNS64_WELL_KNOWN_PREFIX:
            self.logger.debug("the ip is within dns64 well-known prefix: %s", ip)
        else:
            return False
        return True

    def map_address(self, addr) -> ipaddress.IPv6Address:
        """Map the IPv4 addr into the first configured prefix."""
        if not self.prefixes:
            raise RuntimeError("dns64 is not configured")
        prefix = self.prefixes[0].network_address.packed[:NAT64_PREFIX_LENGTH]
        return ipaddress.IPv6Address(prefix + ipaddress.IPv4Address(addr).packed)

    def synth_rr(self, rrset, soa_ttl: int):
        """Turn an A RRset into a synthesized AAAA one; other RRsets pass as is.

        Returns None if an A record is invalid.
        """
        if rrset.rdtype != dns.rdatatype.A:
            return rrset

        aaaa = dns.rrset.RRset(rrset.name, rrset.rdclass, dns.rdatatype.AAAA)
        ttl = min(rrset.ttl, soa_ttl)
        for rdata in rrset:
            try:
                mapped = self.map_address(rdata.address)
            except ValueError as err:
                self.logger.error("bad a record: %s", err)
                return None
            aaaa.add(
                dns.rdata.from_text(rrset.rdclass, dns.rdatatype.AAAA, str(mapped)),
                ttl,
            )
        return aaaa

    def perform(
        self,
        orig_req,
        orig_resp,
        exchange: Callable[[Any, Any], tuple[Any, Any]],
        upstreams,
    ):
        """Do DNS64 for orig_resp; return the upstream used, or None.

        exchange takes a request and the upstreams and returns the response
        and the upstream that gave it, raising on failure.
        """
        if orig_resp is None:
            return None

        dns64_req = self.check(orig_req, orig_resp)
        if dns64_req is None:
            return None

        host = orig_req.question[0].name
        self.logger.debug("received an empty aaaa response, checking dns64: %s", host)

        try:
            dns64_resp, upstream = exchange(dns64_req, upstreams)
        except Exception as err:
            self.logger.error("dns64 request failed: %s", err)
            return None

        if dns64_resp is not None and self.synth(orig_req, orig_resp, dns64_resp):
            self.logger.debug("synthesized aaaa response: %s", host)
            return upstream
        return None