"""Response cache keyed by question and, optionally, by client subnet."""

from __future__ import annotations

import ipaddress
import logging
import struct
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any

import dns.exception
import dns.flags
import dns.message
import dns.rcode
import dns.rdatatype

from dnsrelay.clock import Clock, RealClock

logger = logging.getLogger(__name__)

DEFAULT_CACHE_SIZE = 64 * 1024
OPTIMISTIC_TTL = 10
SERVFAIL_MAX_CACHE_TTL = 30

_PACKED_MSG_LEN_SZ = 2
_EXP_TIME_SZ = 4
_MIN_PACKED_LEN = _EXP_TIME_SZ + _PACKED_MSG_LEN_SZ
_KEY_MASK_INDEX = 1 + 2 * _PACKED_MSG_LEN_SZ
_KEY_IP_INDEX = _KEY_MASK_INDEX + 1
_MAX_UINT32 = 0xFFFFFFFF

_DNSSEC_TYPES = frozenset(
    {
        dns.rdatatype.NSEC,
        dns.rdatatype.NSEC3,
        dns.rdatatype.DS,
        dns.rdatatype.RRSIG,
        dns.rdatatype.SIG,
        dns.rdatatype.DNSKEY,
    }
)


class _LRUCache:
    """Byte-bounded LRU map from bytes keys to bytes values."""

    def __init__(self, max_size: int) -> None:
        self.max_size = max_size
        self._data: OrderedDict[bytes, bytes] = OrderedDict()
        self._size = 0

    def get(self, key: bytes) -> bytes | None:
        value = self._data.get(bytes(key))
        if value is not None:
            self._data.move_to_end(bytes(key))
        return value

    def set(self, key: bytes, value: bytes) -> None:
        key = bytes(key)
        need = len(key) + len(value)
        if need > self.max_size:
            return
        self.delete(key)
        while self._data and self._size + need > self.max_size:
            old_key, old_value = self._data.popitem(last=False)
            self._size -= len(old_key) + len(old_value)
        self._data[key] = value
        self._size += need

    def delete(self, key: bytes) -> None:
        value = self._data.pop(bytes(key), None)
        if value is not None:
            self._size -= len(key) + len(value)

    def clear(self) -> None:
        self._data.clear()
        self._size = 0

    def __len__(self) -> int:
        return len(self._data)


def _upstream_address(upstream: Any) -> str:
    return "" if upstream is None else upstream.address


def _has_do(msg: dns.message.Message) -> bool:
    return msg.edns >= 0 and bool(msg.ednsflags & dns.flags.DO)


@dataclass
class CacheItem:
    """A cached response, the upstream that gave it and its TTL."""

    msg: dns.message.Message
    upstream: str = ""
    ttl: int = 0

    def pack(self, now: int) -> bytes:
        """Serialise the item with an expiry time of now plus its TTL."""
        wire = self.msg.to_wire()
        expire = (int(now) + self.ttl) & _MAX_UINT32
        return (
            struct.pack(">IH", expire, len(wire) & 0xFFFF)
            + wire
            + self.upstream.encode()
        )


class Cache:
    """DNS response cache with an optional per-subnet store."""

    def __init__(
        self,
        size: int = 0,
        with_ecs: bool = False,
        optimistic: bool = False,
        clock: Clock | None = None,
    ) -> None:
        max_size = size if size > 0 else DEFAULT_CACHE_SIZE
        self.items = _LRUCache(max_size)
        self.items_with_subnet = _LRUCache(max_size) if with_ecs else None
        self.optimistic = optimistic
        self._clock = clock or RealClock()
        self._items_lock = threading.RLock()
        self._subnet_lock = threading.RLock()

    def _now(self) -> int:
        return int(self._clock.now())

    def resp_to_item(self, msg, upstream) -> CacheItem | None:
        """Return a cache item for msg, or None if msg is not cacheable."""
        ttl = cache_ttl(msg)
        if ttl == 0:
            return None
        return CacheItem(msg=msg, upstream=_upstream_address(upstream), ttl=ttl)

    def unpack_item(self, data: bytes, req) -> tuple[CacheItem | None, bool]:
        """Decode data into an item answering req; also report expiry."""
        if len(data) < _MIN_PACKED_LEN:
            return None, False
        expire, length = struct.unpack_from(">IH", data)
        now = self._now()
        expired = expire <= now
        if expired:
            if not self.optimistic:
                return None, True
            ttl = OPTIMISTIC_TTL
        else:
            ttl = expire - now
        if length == 0:
            return None, expired
        body = data[_MIN_PACKED_LEN:_MIN_PACKED_LEN + length]
        try:
            cached = dns.message.from_wire(body)
        except (dns.exception.DNSException, ValueError):
            return None, expired

        res = dns.message.make_response(req)
        res.use_edns(False)
        res.set_rcode(cached.rcode())
        res.flags &= ~(dns.flags.AD | dns.flags.RA)
        res.flags |= cached.flags & (dns.flags.AD | dns.flags.RA)

        filter_msg(res, cached, bool(req.flags & dns.flags.AD), _has_do(req), ttl)
        upstream = data[_MIN_PACKED_LEN + length:].decode()
        return CacheItem(msg=res, upstream=upstream), expired

    def get(self, req) -> tuple[CacheItem | None, bool, bytes | None]:
        """Look req up; return the item, whether it expired, and the key."""
        with self._items_lock:
            if req is None or len(req.question) != 1:
                return None, False, None
            key = msg_to_key(req)
            data = self.items.get(key)
            if data is None:
                return None, False, key
            item, expired = self.unpack_item(data, req)
            if item is None:
                self.items.delete(key)
            return item, expired, key

    def get_with_subnet(self, req, subnet):
        """Look req up by the longest cached prefix of subnet."""
        with self._subnet_lock:
            store = self.items_with_subnet
            if store is None or req is None or len(req.question) != 1:
                return None, False, None

            if subnet is None:
                ecs_ip, m = b"", 0
            else:
                ecs_ip, m = subnet.network_address.packed, subnet.prefixlen
            ip_len = len(ecs_ip)

            key = bytearray(msg_to_key_with_subnet(req, ecs_ip, m))
            data = store.get(key)
            bitmask = 0xFF
            while m >= 0 and data is None:
                key[_KEY_MASK_INDEX] = m
                if m == 0:
                    del key[_KEY_IP_INDEX:_KEY_IP_INDEX + ip_len]
                    data = store.get(key)
                    m -= 1
                    continue
                bitmask = 0xFF if m % 8 == 0 else (bitmask << 1) & 0xFF
                key[_KEY_IP_INDEX + m // 8] &= bitmask
                data = store.get(key)
                m -= 1

            key = bytes(key)
            if data is None:
                return None, False, key
            item, expired = self.unpack_item(data, req)
            if item is None:
                store.delete(key)
            return item, expired, key

    def set(self, msg, upstream) -> None:
        """Store msg resolved by upstream if it is cacheable."""
        item = self.resp_to_item(msg, upstream)
        if item is None:
            return
        key = msg_to_key(msg)
        packed = item.pack(self._now())
        with self._items_lock:
            self.items.set(key, packed)

    def set_with_subnet(self, msg, upstream, subnet) -> None:
        """Store msg in the subnet store under subnet, which may be None."""
        item = self.resp_to_item(msg, upstream)
        if item is None or self.items_with_subnet is None:
            return
        if subnet is None:
            key = msg_to_key_with_subnet(msg, b"", 0)
        else:
            key = msg_to_key_with_subnet(
                msg, subnet.network_address.packed, subnet.prefixlen
            )
        packed = item.pack(self._now())
        with self._subnet_lock:
            self.items_with_subnet.set(key, packed)

    def clear_items(self) -> None:
        """Empty the plain store."""
        with self._items_lock:
            self.items.clear()

    def clear_items_with_subnet(self) -> None:
        """Empty the subnet store, if there is one."""
        if self.items_with_subnet is None:
            return
        with self._subnet_lock:
            self.items_with_subnet.clear()


def cache_ttl(msg) -> int:
    """Return how many seconds msg may be cached, following RFC 2308."""
    if msg is None:
        return 0
    if msg.flags & dns.flags.TC:
        logger.debug("truncated message; not caching")
        return 0
    if len(msg.question) != 1:
        logger.debug("message with wrong number of questions; not caching")
        return 0
    ttl = calculate_ttl(msg)
    if ttl == 0:
        logger.debug("ttl calculated to be 0; not caching")
        return 0

    rcode = msg.rcode()
    if rcode == dns.rcode.NOERROR:
        if is_cacheable_succeeded(msg):
            return ttl
        logger.debug("not a cacheable noerror response; not caching")
    elif rcode == dns.rcode.NXDOMAIN:
        if is_cacheable_negative(msg):
            return ttl
        logger.debug("not a cacheable nxdomain response; not caching")
    elif rcode == dns.rcode.SERVFAIL:
        return ttl
    else:
        logger.debug("response code %s; not caching", dns.rcode.to_text(rcode))
    return 0


def calculate_ttl(msg) -> int:
    """Return the lowest TTL among msg's records, or 0 if it has none."""
    ttl = _MAX_UINT32
    for section in (msg.answer, msg.authority, msg.additional):
        for rrset in section:
            if rrset.rdtype == dns.rdatatype.OPT:
                continue
            ttl = min(ttl, rrset.ttl)
            if ttl == 0:
                return 0
    if msg.rcode() == dns.rcode.SERVFAIL and ttl > SERVFAIL_MAX_CACHE_TTL:
        return SERVFAIL_MAX_CACHE_TTL
    if ttl == _MAX_UINT32:
        return 0
    return ttl


def respect_ttl_overrides(ttl: int, cache_min_ttl: int, cache_max_ttl: int) -> int:
    """Clamp ttl into the configured range; a zero maximum means no limit."""
    if ttl < cache_min_ttl:
        return cache_min_ttl
    if cache_max_ttl != 0 and ttl > cache_max_ttl:
        return cache_max_ttl
    return ttl


def has_ip_answer(msg) -> bool:
    """Return True if the answer section holds an A or AAAA record."""
    return any(
        rrset.rdtype in (dns.rdatatype.A, dns.rdatatype.AAAA) for rrset in msg.answer
    )


def is_cacheable_succeeded(msg) -> bool:
    """Return True if a NOERROR msg carries data worth caching."""
    qtype = msg.question[0].rdtype
    return (
        qtype not in (dns.rdatatype.A, dns.rdatatype.AAAA)
        or has_ip_answer(msg)
        or is_cacheable_negative(msg)
    )


def is_cacheable_negative(msg) -> bool:
    """Return True if authority has an SOA and no NS records."""
    ok = False
    for rrset in msg.authority:
        if rrset.rdtype == dns.rdatatype.SOA:
            ok = True
        elif rrset.rdtype == dns.rdatatype.NS:
            return False
    return ok


def msg_to_key(msg) -> bytes:
    """Build the cache key from the question's type, class and name."""
    q = msg.question[0]
    return struct.pack(">HH", q.rdtype, q.rdclass) + q.name.to_text().lower().encode()


def msg_to_key_with_subnet(msg, ecs_ip, mask: int) -> bytes:
    """Build the subnet cache key; ecs_ip must already be masked."""
    if isinstance(ecs_ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        ip = ecs_ip.packed
    else:
        ip = bytes(ecs_ip or b"")
    q = msg.question[0]
    key = bytearray(_KEY_IP_INDEX)
    key[0] = 1 if _has_do(msg) else 0
    # The question type is written from the first byte and so covers the DO byte.
    key[0:2] = struct.pack(">H", q.rdtype)
    key[1 + _PACKED_MSG_LEN_SZ:3 + _PACKED_MSG_LEN_SZ] = struct.pack(">H", q.rdclass)
    key[_KEY_MASK_INDEX] = mask & 0xFF
    if mask != 0:
        key += ip
    key += q.name.to_text().lower().encode()
    return bytes(key)


def is_dnssec(rdtype) -> bool:
    """Return True for NSEC, NSEC3, DS, RRSIG, SIG and DNSKEY."""
    return rdtype in _DNSSEC_TYPES


def filter_rrsets(rrsets, do: bool, ttl: int, except_type) -> list:
    """Copy rrsets without OPT, and without DNSSEC unless do or except_type."""
    filtered = []
    for rrset in rrsets:
        if rrset.rdtype == dns.rdatatype.OPT:
            continue
        if not do and is_dnssec(rrset.rdtype) and rrset.rdtype != except_type:
            continue
        copied = rrset.copy()
        if ttl != 0:
            copied.ttl = ttl
        filtered.append(copied)
    return filtered


def filter_msg(dst, msg, ad: bool, do: bool, ttl: int) -> None:
    """Fill dst's sections from msg, filtering records and the AD bit."""
    if not (ad or do):
        dst.flags &= ~dns.flags.AD
    dst.answer = filter_rrsets(msg.answer, do, ttl, msg.question[0].rdtype)
    dst.authority = filter_rrsets(msg.authority, do, ttl, dns.rdatatype.NONE)
    dst.additional = filter_rrsets(msg.additional, do, ttl, dns.rdatatype.NONE)