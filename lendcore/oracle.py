"""
oracle.py - Price readings and price sources

The engine never fetches or verifies prices itself. An external oracle
collaborator produces PriceReadings that are already attested; the engine
only checks that they are flagged valid, that the bounds are consistent,
and that they are not stale.

Classes:
- PriceReading: One attested observation (spot plus confidence bounds)
- PriceSource: Protocol for anything that can supply readings by coin type
- StaticPriceSource: Fixed readings, restamped at the requested time
- TimeSeriesPriceSource: Historical readings with point-in-time lookup

All prices are USD per whole token.
"""

from __future__ import annotations
from bisect import bisect_right
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Protocol, runtime_checkable

from .fixed import Fixed


@dataclass(frozen=True, slots=True)
class PriceReading:
    """
    An attested price observation.

    Attributes:
        spot: Best estimate of the price.
        lower: Lower confidence bound (used to value collateral).
        upper: Upper confidence bound (used to value debt).
        timestamp_s: When the observation was made.
        valid: False when the oracle itself flags the reading as unusable.
    """
    spot: Fixed
    lower: Fixed
    upper: Fixed
    timestamp_s: int
    valid: bool = True

    def __post_init__(self):
        for name in ('spot', 'lower', 'upper'):
            if not isinstance(getattr(self, name), Fixed):
                raise ValueError(f"PriceReading {name} must be Fixed, got {type(getattr(self, name))}")
        if self.timestamp_s < 0:
            raise ValueError(f"PriceReading timestamp_s cannot be negative, got {self.timestamp_s}")

    @classmethod
    def exact(cls, price: Fixed, timestamp_s: int) -> PriceReading:
        """A reading with no uncertainty: lower == spot == upper."""
        return cls(spot=price, lower=price, upper=price, timestamp_s=timestamp_s)

    @classmethod
    def from_confidence(cls, price: Fixed, confidence: Fixed, timestamp_s: int) -> PriceReading:
        """Bounds at price -/+ confidence, the lower one clamped at zero."""
        return cls(
            spot=price,
            lower=price.saturating_sub(confidence),
            upper=price + confidence,
            timestamp_s=timestamp_s,
        )

    def is_consistent(self) -> bool:
        return self.valid and Fixed(0) < self.lower <= self.spot <= self.upper

    def restamped(self, timestamp_s: int) -> PriceReading:
        return PriceReading(self.spot, self.lower, self.upper, timestamp_s, self.valid)


@runtime_checkable
class PriceSource(Protocol):
    """
    Protocol for price sources.

    Implementations return the reading in force at a given time, or None
    when they have nothing for that coin type.
    """

    def get_reading(self, coin_type: str, timestamp_s: int) -> Optional[PriceReading]:
        ...

    def get_readings(self, coin_types: Iterable[str], timestamp_s: int) -> Dict[str, PriceReading]:
        ...


class StaticPriceSource:
    """
    Price source with time-independent prices.

    Each request returns the stored reading stamped with the requested time,
    so static readings are never stale.
    """

    def __init__(self, readings: Optional[Dict[str, PriceReading]] = None):
        self.readings: Dict[str, PriceReading] = dict(readings or {})

    @classmethod
    def from_prices(cls, prices: Dict[str, Fixed]) -> StaticPriceSource:
        return cls({coin: PriceReading.exact(price, 0) for coin, price in prices.items()})

    def get_reading(self, coin_type: str, timestamp_s: int) -> Optional[PriceReading]:
        reading = self.readings.get(coin_type)
        if reading is None:
            return None
        return reading.restamped(timestamp_s)

    def get_readings(self, coin_types: Iterable[str], timestamp_s: int) -> Dict[str, PriceReading]:
        readings = {}
        for coin_type in coin_types:
            reading = self.get_reading(coin_type, timestamp_s)
            if reading is not None:
                readings[coin_type] = reading
        return readings

    def set_reading(self, coin_type: str, reading: PriceReading):
        self.readings[coin_type] = reading

    def set_price(self, coin_type: str, price: Fixed):
        self.readings[coin_type] = PriceReading.exact(price, 0)

    def __repr__(self):
        return f"StaticPriceSource({len(self.readings)} coins)"


class TimeSeriesPriceSource:
    """
    Price source with historical readings.

    Returns the most recent reading at or before the requested time, with
    its ORIGINAL timestamp, so a reserve refreshed from an old observation
    will correctly be reported as stale.

    Example:
        source = TimeSeriesPriceSource({
            "SUI": [PriceReading.exact(Fixed.from_int(2), 0),
                    PriceReading.exact(Fixed.from_decimal("1.8"), 60)],
        })
        source.get_reading("SUI", 30).spot  # 2
    """

    def __init__(self, history: Optional[Dict[str, List[PriceReading]]] = None):
        self.history: Dict[str, List[PriceReading]] = {}
        if history:
            for coin_type, readings in history.items():
                if not readings:
                    continue
                self.history[coin_type] = sorted(readings, key=lambda r: r.timestamp_s)

    def add_reading(self, coin_type: str, reading: PriceReading):
        path = self.history.setdefault(coin_type, [])
        path.append(reading)
        path.sort(key=lambda r: r.timestamp_s)

    def get_reading(self, coin_type: str, timestamp_s: int) -> Optional[PriceReading]:
        path = self.history.get(coin_type)
        if not path:
            return None
        timestamps = [r.timestamp_s for r in path]
        idx = bisect_right(timestamps, timestamp_s)
        if idx == 0:
            return None
        return path[idx - 1]

    def get_readings(self, coin_types: Iterable[str], timestamp_s: int) -> Dict[str, PriceReading]:
        readings = {}
        for coin_type in coin_types:
            reading = self.get_reading(coin_type, timestamp_s)
            if reading is not None:
                readings[coin_type] = reading
        return readings

    def timestamps(self, coin_type: Optional[str] = None) -> List[int]:
        """Sorted observation times for one coin, or the union over all coins."""
        if coin_type is not None:
            return [r.timestamp_s for r in self.history.get(coin_type, [])]
        times = set()
        for path in self.history.values():
            times.update(r.timestamp_s for r in path)
        return sorted(times)

    def __repr__(self):
        total = sum(len(path) for path in self.history.values())
        return f"TimeSeriesPriceSource({len(self.history)} coins, {total} observations)"
