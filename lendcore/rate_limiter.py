"""
rate_limiter.py - Sliding-window cap on aggregate outflow

The market charges every outflow (in USD) to a single RateLimiter. Time is
split into consecutive windows of window_duration seconds. The outflow seen
at time `now` is the current window's total plus the previous window's
total, weighted by how much of the previous window still overlaps a
window-length lookback:

    outflow(now) = prev_qty * (D - (now - window_start + 1)) / D + cur_qty

A charge is rejected if it would push outflow(now) above max_outflow.

Like the other aggregates, RateLimiter is frozen: process_qty returns a new
limiter and leaves the original untouched.
"""

from __future__ import annotations
from dataclasses import dataclass, replace

from .config import RateLimiterConfig
from .core import RateLimitExceededError
from .fixed import Fixed, ZERO


@dataclass(frozen=True, slots=True)
class RateLimiter:
    config: RateLimiterConfig
    window_start: int
    cur_qty: Fixed = ZERO
    prev_qty: Fixed = ZERO

    @classmethod
    def create(cls, config: RateLimiterConfig, now: int) -> RateLimiter:
        return cls(config=config, window_start=now)

    def _advance(self, now: int) -> RateLimiter:
        """Roll the windows forward so that `now` falls in the current one."""
        if now < self.window_start:
            raise ValueError(f"Time went backwards: now={now} < window_start={self.window_start}")
        duration = self.config.window_duration
        if now < self.window_start + duration:
            return self
        if now < self.window_start + 2 * duration:
            return replace(
                self,
                prev_qty=self.cur_qty,
                window_start=self.window_start + duration,
                cur_qty=ZERO,
            )
        return replace(self, prev_qty=ZERO, window_start=now, cur_qty=ZERO)

    def current_outflow(self, now: int) -> Fixed:
        limiter = self._advance(now)
        duration = limiter.config.window_duration
        elapsed = now - limiter.window_start + 1
        prev_weight = Fixed.from_int(duration - elapsed) / duration
        return limiter.prev_qty * prev_weight + limiter.cur_qty

    def remaining_outflow(self, now: int) -> Fixed:
        return self.config.max_outflow.saturating_sub(self.current_outflow(now))

    def process_qty(self, now: int, qty: Fixed) -> RateLimiter:
        """
        Charge an outflow of `qty` at time `now`.

        Raises:
            RateLimitExceededError: if the outflow would exceed max_outflow.
            ValueError: if `now` precedes the current window.
        """
        limiter = self._advance(now)
        limiter = replace(limiter, cur_qty=limiter.cur_qty + qty)
        outflow = limiter.current_outflow(now)
        if outflow > self.config.max_outflow:
            raise RateLimitExceededError(
                f"Outflow of {outflow} USD would exceed the limit of {self.config.max_outflow} "
                f"per {self.config.window_duration}s"
            )
        return limiter

    def reconfigure(self, config: RateLimiterConfig, now: int) -> RateLimiter:
        """A new config starts a fresh, empty window."""
        return RateLimiter.create(config, now)
