import time

from dnsrelay.clock import RealClock


def test_now_is_within_wall_clock_bounds():
    before = time.time()
    now = RealClock().now()
    after = time.time()
    assert before <= now <= after


def test_now_does_not_go_backwards_between_calls():
    clock = RealClock()
    first = clock.now()
    second = clock.now()
    assert second >= first