"""Exchanging requests with upstreams, balanced by measured round-trip time."""

from __future__ import annotations

import logging
import random
import threading
from dataclasses import dataclass
from typing import Any, Iterator, Sequence

from dnsrelay.clock import Clock, RealClock

DEFAULT_TIMEOUT = 10.0
"""Round-trip time, in seconds, charged to an upstream that failed."""

_logger = logging.getLogger(__name__)


class ExchangeError(Exception):
    """Raised when every upstream failed to answer a request."""

    def __init__(self, errors: Sequence[BaseException] = ()) -> None:
        self.errors = list(errors)
        detail = "\n".join(str(err) for err in self.errors)
        message = "all upstreams failed to exchange request"
        super().__init__(f"{message}: {detail}" if detail else message)


@dataclass(frozen=True)
class UpstreamRTTStats:
    """Accumulated round-trip times of one upstream."""

    rtt_sum: float = 0.0
    """Sum of all round-trip times in microseconds."""

    req_num: float = 0.0
    """Number of requests made to the upstream."""

    def update(self, rtt: float) -> UpstreamRTTStats:
        """Return the stats with one more request that took rtt seconds."""
        return UpstreamRTTStats(
            rtt_sum=self.rtt_sum + int(round(rtt * 1_000_000)),
            req_num=self.req_num + 1,
        )


def _weighted_order(weights: Sequence[float], rng: random.Random) -> Iterator[int]:
    """Yield indexes sampled by weight, each at most once."""
    remaining = [(i, w) for i, w in enumerate(weights) if w > 0]
    while remaining:
        point = rng.random() * sum(w for _, w in remaining)
        chosen = len(remaining) - 1
        for pos, (_, weight) in enumerate(remaining):
            point -= weight
            if point < 0:
                chosen = pos
                break
        yield remaining.pop(chosen)[0]


class LoadBalancer:
    """Sends requests to upstreams, preferring those that answer faster."""

    def __init__(
        self,
        clock: Clock | None = None,
        rng: random.Random | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.clock = clock or RealClock()
        self.rng = rng or random.Random()
        self.logger = logger or _logger
        self.upstream_rtt_stats: dict[str, UpstreamRTTStats] = {}
        self._rtt_lock = threading.Lock()

    def exchange_upstreams(self, req, upstreams: Sequence[Any]):
        """Resolve req with upstreams; return the response and the upstream used.

        Raises the upstream's error when there is only one upstream and
        ExchangeError when all of several upstreams failed.
        """
        if len(upstreams) == 1:
            upstream = upstreams[0]
            resp, _ = self.exchange(upstream, req)
            return resp, upstream

        errors: list[BaseException] = []
        for index in _weighted_order(self.calc_weights(upstreams), self.rng):
            upstream = upstreams[index]
            try:
                resp, elapsed = self.exchange(upstream, req)
            except Exception as err:
                errors.append(err)
                self.update_rtt(upstream.address, DEFAULT_TIMEOUT)
                continue
            self.update_rtt(upstream.address, elapsed)
            return resp, upstream

        raise ExchangeError(errors)

    def exchange(self, upstream, req):
        """Exchange req with upstream; return the response and elapsed seconds."""
        start = self.clock.now()
        question = req.question[0] if req.question else None
        try:
            resp = upstream.exchange(req)
        except Exception as err:
            duration = self.clock.now() - start
            self.logger.error(
                "exchange failed: upstream=%s question=%s duration=%s error=%s",
                upstream.address,
                question,
                duration,
                err,
            )
            raise
        duration = self.clock.now() - start
        self.logger.debug(
            "exchange successfully finished: upstream=%s question=%s duration=%s",
            upstream.address,
            question,
            duration,
        )
        return resp, duration

    def calc_weights(self, upstreams: Sequence[Any]) -> list[float]:
        """Return a weight for each upstream, inverse to its mean round trip."""
        with self._rtt_lock:
            weights = []
            for upstream in upstreams:
                stat = self.upstream_rtt_stats.get(upstream.address, UpstreamRTTStats())
                if stat.rtt_sum == 0 or stat.req_num == 0:
                    weights.append(1.0)
                else:
                    weights.append(1 / (stat.rtt_sum / stat.req_num))
            return weights

    def update_rtt(self, address: str, rtt: float) -> None:
        """Record a round trip of rtt seconds for the upstream at address."""
        with self._rtt_lock:
            current = self.upstream_rtt_stats.get(address, UpstreamRTTStats())
            self.upstream_rtt_stats[address] = current.update(rtt)