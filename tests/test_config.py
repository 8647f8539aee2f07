import logging

import pytest

from dnsrelay.config import Config, ConfigError, UpstreamMode, check_inclusion


@pytest.mark.parametrize("n", [0, 5, 10])
def test_check_inclusion_within_range(n):
    assert check_inclusion(n, 0, 10) is None


def test_check_inclusion_below_min():
    with pytest.raises(ConfigError, match="value -1 less than min 0"):
        check_inclusion(-1, 0, 10)


def test_check_inclusion_above_max():
    with pytest.raises(ConfigError, match="value 11 greater than max 10"):
        check_inclusion(11, 0, 10)


def test_validate_ratelimit_disabled_ignores_lengths():
    conf = Config(ratelimit=0, ratelimit_subnet_len_ipv4=99)
    assert conf.validate_ratelimit() is None


def test_validate_ratelimit_good_lengths():
    conf = Config(ratelimit=10, ratelimit_subnet_len_ipv4=24, ratelimit_subnet_len_ipv6=64)
    assert conf.validate_ratelimit() is None


def test_validate_ratelimit_bad_ipv4():
    conf = Config(ratelimit=10, ratelimit_subnet_len_ipv4=33, ratelimit_subnet_len_ipv6=64)
    with pytest.raises(ConfigError) as info:
        conf.validate_ratelimit()
    assert str(info.value).startswith("ratelimit subnet len ipv4 is invalid")
    assert "value 33 greater than max 32" in str(info.value)


def test_validate_ratelimit_bad_ipv6():
    conf = Config(ratelimit=10, ratelimit_subnet_len_ipv4=24, ratelimit_subnet_len_ipv6=129)
    with pytest.raises(ConfigError) as info:
        conf.validate_ratelimit()
    assert str(info.value).startswith("ratelimit subnet len ipv6 is invalid")


@pytest.mark.parametrize(
    "mode", ["", None, UpstreamMode.PARALLEL, "load_balance", UpstreamMode.FASTEST_ADDR]
)
def test_validate_upstream_mode_accepts(mode):
    assert Config(upstream_mode=mode).validate_upstream_mode() is None


def test_validate_upstream_mode_rejects_unknown():
    with pytest.raises(ConfigError, match='bad upstream mode: "bogus"'):
        Config(upstream_mode="bogus").validate_upstream_mode()


def test_has_listen_addrs():
    assert not Config().has_listen_addrs()
    assert Config(udp_listen_addr=[("127.0.0.1", 0)]).has_listen_addrs()
    assert Config(dnscrypt_tcp_listen_addr=[]).has_listen_addrs()


def test_validate_listen_addrs_none():
    with pytest.raises(ConfigError, match="no listen address specified"):
        Config().validate_listen_addrs()


def test_validate_listen_addrs_plain_ok():
    conf = Config(udp_listen_addr=[("127.0.0.1", 0)], tcp_listen_addr=[("127.0.0.1", 0)])
    assert conf.validate_listen_addrs() is None


@pytest.mark.parametrize(
    ("field_name", "message"),
    [
        ("tls_listen_addr", "tls listener configuration not found"),
        ("https_listen_addr", "https listener configuration not found"),
        ("quic_listen_addr", "quic listener configuration not found"),
    ],
)
def test_validate_tls_config_missing(field_name, message):
    conf = Config(**{field_name: [("127.0.0.1", 0)]})
    with pytest.raises(ConfigError, match=message):
        conf.validate_tls_config()
    with pytest.raises(ConfigError, match="invalid tls configuration: " + message):
        conf.validate_listen_addrs()


def test_validate_tls_config_present():
    conf = Config(tls_listen_addr=[("127.0.0.1", 0)], tls_config=object())
    assert conf.validate_tls_config() is None
    assert conf.validate_listen_addrs() is None


def test_dnscrypt_tcp_without_config():
    conf = Config(dnscrypt_tcp_listen_addr=[("127.0.0.1", 0)])
    with pytest.raises(ConfigError, match="cannot create dnscrypt tcp listener"):
        conf.validate_listen_addrs()


def test_dnscrypt_udp_without_config():
    conf = Config(dnscrypt_udp_listen_addr=[("127.0.0.1", 0)], dnscrypt_provider_name="x")
    with pytest.raises(ConfigError, match="cannot create dnscrypt udp listener"):
        conf.validate_listen_addrs()


def test_dnscrypt_with_config():
    conf = Config(
        dnscrypt_udp_listen_addr=[("127.0.0.1", 0)],
        dnscrypt_resolver_cert=object(),
        dnscrypt_provider_name="2.dnscrypt-cert.example.org",
    )
    assert conf.validate_listen_addrs() is None


def test_log_config_info(caplog):
    conf = Config(
        cache_min_ttl=20,
        cache_max_ttl=40,
        ratelimit=5,
        refuse_any=True,
        upstream_mode=UpstreamMode.PARALLEL,
    )
    log = logging.getLogger("test_config_info")
    with caplog.at_level(logging.INFO, logger="test_config_info"):
        conf.log_config_info(log)
    text = caplog.text
    assert "cache ttl override is enabled" in text
    assert "ratelimit is enabled" in text
    assert "server will refuse requests of type any" in text
    assert "mode=parallel" in text
    assert "bogus-nxdomain" not in text


def test_log_config_info_quiet_by_default(caplog):
    log = logging.getLogger("test_config_quiet")
    with caplog.at_level(logging.INFO, logger="test_config_quiet"):
        Config().log_config_info(log)
    assert caplog.records == []