# dnsrelay

Building blocks for a forwarding DNS proxy, built on top of `dnspython`.

## Modules

- `dnsrelay.cache` — `Cache`, a byte-bounded LRU response cache keyed by
  question type, class and lower-cased name. With `with_ecs=True` it also keeps
  a second store keyed by client subnet; `get_with_subnet` finds the entry with
  the longest cached prefix. In optimistic mode an expired entry is still
  returned, flagged as expired, with a TTL of 10 seconds. `cache_ttl` decides
  how long a response may be cached, following RFC 2308 for NXDOMAIN and NODATA
  answers; SERVFAIL responses are cached for at most 30 seconds.
  `respect_ttl_overrides` clamps a TTL to a configured minimum and maximum.
  Cached answers have OPT records removed, and DNSSEC records too unless the
  request set the DO bit.
- `dnsrelay.dns64` — `DNS64` synthesizes AAAA records from A answers
  (RFC 6147) using the first configured NAT64 prefix, drops AAAA answers inside
  the prefixes, and recognises PTR requests for addresses inside them.
  `setup_dns64_prefixes` validates prefixes and falls back to the well-known
  `64:ff9b::/96`.
- `dnsrelay.exchange` — `LoadBalancer` sends a request to upstreams chosen at
  random, weighted by the inverse of each one's mean round-trip time, trying
  the next one on failure and raising `ExchangeError` if all fail. An upstream
  is any object with an `address` attribute and an `exchange(request)` method.
- `dnsrelay.dnscontext` — `DNSContext` holds the state of one request;
  `scrub()` adds EDNS0 to the response when the request had it and truncates
  the response to the size the request allows (`dns_size`).
  `CustomUpstreamConfig` pairs an upstream configuration with an optional cache.
- `dnsrelay.helpers` — `ecs_from_msg` and `set_ecs` read and add the EDNS
  Client Subnet option (default masks /24 for IPv4, /56 for IPv6).
- `dnsrelay.lookup` — `lookup_net_ip` resolves a host's A and AAAA records in
  parallel through a resolve function and returns the addresses, IPv4 or IPv6
  first as asked.
- `dnsrelay.config` — `Config`, the proxy settings, with checks for rate-limit
  subnet lengths, upstream mode and listen addresses that raise `ConfigError`.
- `dnsrelay.clock` — `RealClock`, the wall clock used by the cache and the
  load balancer; any object with a `now()` method can replace it in tests.
- `dnsrelay.errors` — `is_epipe` tells whether an error, or one it was raised
  from, is a broken pipe.

## What it does not do

The package runs no server: it opens no UDP, TCP, TLS, HTTPS, QUIC or DNSCrypt
listeners and has no command to start. It contains no upstream transports
either; upstream objects are supplied by the caller. Only the load-balancing
mode of choosing upstreams is implemented; `UpstreamMode.PARALLEL` and
`UpstreamMode.FASTEST_ADDR` are accepted by `Config` but nothing acts on them.
Expired entries served in optimistic mode are not refreshed by the package.

## Installation

```
pip install dnsrelay
```

## Example

```python
import dns.message
import dns.rdatatype
import dns.rrset

from dnsrelay.cache import Cache

cache = Cache(4096, False, False)

req = dns.message.make_query("example.com.", dns.rdatatype.A)
resp = dns.message.make_response(req)
resp.answer.append(
    dns.rrset.from_text("example.com.", 300, "IN", "A", "192.0.2.1")
)

cache.set(resp, None)
item, expired, key = cache.get(req)
print(item.msg.answer, expired)
```

## Running the tests

```
pip install -e ".[test]"
pytest
```