import random

import dns.message
import dns.rdatatype
import pytest

from dnsrelay.exchange import (
    DEFAULT_TIMEOUT,
    ExchangeError,
    LoadBalancer,
    UpstreamRTTStats,
)


class StepClock:
    def __init__(self):
        self.t = 0.0

    def now(self):
        return self.t


class FakeUpstream:
    def __init__(self, address, clock=None, rtt=0.0, fail_every=0, always_fail=False):
        self.address = address
        self.clock = clock
        self.rtt = rtt
        self.fail_every = fail_every
        self.always_fail = always_fail
        self.calls = 0

    def exchange(self, req):
        self.calls += 1
        if self.clock is not None:
            self.clock.t += self.rtt
        if self.always_fail:
            raise RuntimeError(f"{self.address} failed")
        if self.fail_every and self.calls % self.fail_every == 0:
            raise RuntimeError(f"{self.address} failed")
        return dns.message.make_response(req)


def make_req():
    return dns.message.make_query("google-public-dns-a.google.com.", dns.rdatatype.A)


def test_stats_update_in_microseconds():
    stats = UpstreamRTTStats().update(0.01)
    assert stats.rtt_sum == 10000
    assert stats.req_num == 1
    stats = stats.update(0.03)
    assert stats.rtt_sum == 40000
    assert stats.req_num == 2


def test_calc_weights_default_and_measured():
    lb = LoadBalancer(StepClock(), random.Random(1))
    ups = [FakeUpstream("a"), FakeUpstream("b")]
    assert lb.calc_weights(ups) == [1.0, 1.0]
    lb.update_rtt("a", 0.01)
    weights = lb.calc_weights(ups)
    assert weights[0] == pytest.approx(1 / 10000)
    assert weights[1] == 1.0


def test_exchange_measures_duration():
    clock = StepClock()
    lb = LoadBalancer(clock, random.Random(1))
    up = FakeUpstream("u", clock=clock, rtt=0.5)
    req = make_req()
    resp, dur = lb.exchange(up, req)
    assert resp.id == req.id
    assert dur == pytest.approx(0.5)


def test_single_upstream():
    lb = LoadBalancer(StepClock(), random.Random(1))
    up = FakeUpstream("only")
    req = make_req()
    resp, used = lb.exchange_upstreams(req, [up])
    assert used is up
    assert resp.id == req.id


def test_single_upstream_error_is_raised():
    lb = LoadBalancer(StepClock(), random.Random(1))
    up = FakeUpstream("bad", always_fail=True)
    with pytest.raises(RuntimeError, match="bad failed"):
        lb.exchange_upstreams(make_req(), [up])


def test_no_upstreams():
    lb = LoadBalancer(StepClock(), random.Random(1))
    with pytest.raises(ExchangeError) as info:
        lb.exchange_upstreams(make_req(), [])
    assert info.value.errors == []


def test_all_bad():
    lb = LoadBalancer(StepClock(), random.Random(42))
    ups = [FakeUpstream("error2", always_fail=True), FakeUpstream("error1", always_fail=True)]
    requests = 50
    for _ in range(requests):
        with pytest.raises(ExchangeError) as info:
            lb.exchange_upstreams(make_req(), ups)
        assert len(info.value.errors) == 2
    assert [u.calls for u in ups] == [requests, requests]
    assert lb.upstream_rtt_stats["error1"].rtt_sum == int(DEFAULT_TIMEOUT * 1e6) * requests


def test_all_good_prefers_fast():
    clock = StepClock()
    lb = LoadBalancer(clock, random.Random(42))
    slowest = FakeUpstream("slowest", clock, rtt=0.5)
    slower = FakeUpstream("slower", clock, rtt=0.1)
    fast = FakeUpstream("fast", clock, rtt=0.01)
    requests = 2000
    for _ in range(requests):
        _, used = lb.exchange_upstreams(make_req(), [slowest, slower, fast])
        assert used.address in {"slowest", "slower", "fast"}
    assert slowest.calls + slower.calls + fast.calls == requests
    assert fast.calls > slower.calls > slowest.calls


def test_one_bad_is_avoided():
    clock = StepClock()
    lb = LoadBalancer(clock, random.Random(42))
    fast = FakeUpstream("fast", clock, rtt=0.01)
    err = FakeUpstream("error1", always_fail=True)
    slower = FakeUpstream("slower", clock, rtt=0.1)
    requests = 2000
    for _ in range(requests):
        lb.exchange_upstreams(make_req(), [fast, err, slower])
    assert fast.calls + slower.calls == requests
    assert err.calls < 50
    assert fast.calls > slower.calls


def test_error_each_nth_still_answers():
    clock = StepClock()
    lb = LoadBalancer(clock, random.Random(42))
    ups = [
        FakeUpstream("each_200", clock, rtt=0.02, fail_every=200),
        FakeUpstream("each_100", clock, rtt=0.02, fail_every=100),
        FakeUpstream("each_50", clock, rtt=0.02, fail_every=50),
    ]
    for _ in range(1000):
        resp, used = lb.exchange_upstreams(make_req(), ups)
        assert used in ups
    total = sum(u.calls for u in ups)
    assert total >= 1000