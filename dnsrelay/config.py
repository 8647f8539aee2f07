"""Proxy configuration and its validation."""

from __future__ import annotations

import enum
import ipaddress
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

LOG_PREFIX = "dnsrelay"
"""Name of the logger used when none is configured."""

IPV4_BIT_LEN = 32
IPV6_BIT_LEN = 128


class ConfigError(ValueError):
    """Raised when the proxy configuration is invalid."""


class UpstreamMode(str, enum.Enum):
    """The logic through which upstreams are used."""

    LOAD_BALANCE = "load_balance"
    PARALLEL = "parallel"
    FASTEST_ADDR = "fastest_addr"


def check_inclusion(n: int, min_n: int, max_n: int) -> None:
    """Raise ConfigError unless min_n <= n <= max_n."""
    if n < min_n:
        raise ConfigError(f"value {n} less than min {min_n}")
    if n > max_n:
        raise ConfigError(f"value {n} greater than max {max_n}")


@dataclass
class Config:
    """All the settings of a proxy."""

    logger: logging.Logger | None = None
    trusted_proxies: Any = None
    private_subnets: Any = None
    message_constructor: Any = None
    before_request_handler: Any = None
    request_handler: Callable[..., Any] | None = None
    response_handler: Callable[..., Any] | None = None
    upstream_config: Any = None
    private_rdns_upstream_config: Any = None
    fallbacks: Any = None
    userinfo: Any = None
    tls_config: Any = None
    dnscrypt_resolver_cert: Any = None
    dnscrypt_provider_name: str = ""
    https_server_name: str = ""
    upstream_mode: UpstreamMode | str = ""

    udp_listen_addr: list | None = None
    tcp_listen_addr: list | None = None
    https_listen_addr: list | None = None
    tls_listen_addr: list | None = None
    quic_listen_addr: list | None = None
    dnscrypt_udp_listen_addr: list | None = None
    dnscrypt_tcp_listen_addr: list | None = None

    bogus_nxdomain: list = field(default_factory=list)
    dns64_prefs: list | None = None
    ratelimit_whitelist: list = field(default_factory=list)
    edns_addr: ipaddress.IPv4Address | ipaddress.IPv6Address | None = None

    ratelimit_subnet_len_ipv4: int = 0
    ratelimit_subnet_len_ipv6: int = 0
    ratelimit: int = 0

    cache_size_bytes: int = 0
    cache_min_ttl: int = 0
    cache_max_ttl: int = 0
    max_goroutines: int = 0
    udp_buffer_size: int = 0
    fastest_ping_timeout: float = 0.0

    refuse_any: bool = False
    http3: bool = False
    enable_edns_client_subnet: bool = False
    cache_enabled: bool = False
    cache_optimistic: bool = False
    use_dns64: bool = False
    use_private_rdns: bool = False
    prefer_ipv6: bool = False

    def validate_ratelimit(self) -> None:
        """Raise ConfigError if rate limiting is on with bad subnet lengths."""
        if self.ratelimit == 0:
            return
        try:
            check_inclusion(self.ratelimit_subnet_len_ipv4, 0, IPV4_BIT_LEN)
        except ConfigError as err:
            raise ConfigError(f"ratelimit subnet len ipv4 is invalid: {err}") from err
        try:
            check_inclusion(self.ratelimit_subnet_len_ipv6, 0, IPV6_BIT_LEN)
        except ConfigError as err:
            raise ConfigError(f"ratelimit subnet len ipv6 is invalid: {err}") from err

    def validate_upstream_mode(self) -> None:
        """Raise ConfigError if the upstream mode is not a known one."""
        mode = self.upstream_mode
        if mode is None or mode == "":
            return
        try:
            UpstreamMode(mode)
        except ValueError as err:
            text = mode.value if isinstance(mode, UpstreamMode) else mode
            raise ConfigError(f'bad upstream mode: "{text}"') from err

    def validate_listen_addrs(self) -> None:
        """Raise ConfigError if the listen addresses are not set up properly."""
        if not self.has_listen_addrs():
            raise ConfigError("no listen address specified")
        try:
            self.validate_tls_config()
        except ConfigError as err:
            raise ConfigError(f"invalid tls configuration: {err}") from err

        if self.dnscrypt_resolver_cert is None or not self.dnscrypt_provider_name:
            if self.dnscrypt_tcp_listen_addr is not None:
                raise ConfigError(
                    "cannot create dnscrypt tcp listener without dnscrypt config"
                )
            if self.dnscrypt_udp_listen_addr is not None:
                raise ConfigError(
                    "cannot create dnscrypt udp listener without dnscrypt config"
                )

    def validate_tls_config(self) -> None:
        """Raise ConfigError if a TLS listener lacks a TLS configuration."""
        if self.tls_config is not None:
            return
        if self.tls_listen_addr is not None:
            raise ConfigError("tls listener configuration not found")
        if self.https_listen_addr is not None:
            raise ConfigError("https listener configuration not found")
        if self.quic_listen_addr is not None:
            raise ConfigError("quic listener configuration not found")

    def has_listen_addrs(self) -> bool:
        """Return True if any listen address is configured."""
        return any(
            addrs is not None
            for addrs in (
                self.udp_listen_addr,
                self.tcp_listen_addr,
                self.tls_listen_addr,
                self.https_listen_addr,
                self.quic_listen_addr,
                self.dnscrypt_udp_listen_addr,
                self.dnscrypt_tcp_listen_addr,
            )
        )

    def log_config_info(self, logger: logging.Logger | None = None) -> None:
        """Log the notable parts of the configuration."""
        log = logger or self.logger or logging.getLogger(LOG_PREFIX)
        if self.cache_min_ttl > 0 or self.cache_max_ttl > 0:
            log.info(
                "cache ttl override is enabled: min=%s max=%s",
                self.cache_min_ttl,
                self.cache_max_ttl,
            )
        if self.ratelimit > 0:
            log.info(
                "ratelimit is enabled: rps=%s ipv4_subnet_mask_len=%s "
                "ipv6_subnet_mask_len=%s",
                self.ratelimit,
                self.ratelimit_subnet_len_ipv4,
                self.ratelimit_subnet_len_ipv6,
            )
        if self.refuse_any:
            log.info("server will refuse requests of type any")
        if self.bogus_nxdomain:
            log.info(
                "bogus-nxdomain ip specified: prefix_len=%s", len(self.bogus_nxdomain)
            )
        if self.upstream_mode:
            mode = self.upstream_mode
            text = mode.value if isinstance(mode, UpstreamMode) else mode
            log.info("upstream mode is set: mode=%s", text)