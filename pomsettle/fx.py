"""
FX Engine

Routes a withdrawal whose asset the treasury does not hold through the
external market. The destination amount is always exact; the engine never
prices anything itself and never consults an oracle. It bounds only how much
more of the source asset it is willing to send than the market quoted.

    send_max  = estimate * (100 + max_slippage_percent) / 100
    slippage  = (actual - expected) * 100 / expected    (integer percent)

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from pomsettle.failures import SettlementError, SettlementFailure
from pomsettle.models import Asset
from pomsettle.observability import Component, get_logger

logger = get_logger("engine", Component.FX)

DEFAULT_MAX_SLIPPAGE_PERCENT = 1


@dataclass(frozen=True)
class PathQuote:
    """One market route delivering the exact destination amount."""
    source_amount: int
    path: Tuple[Asset, ...] = ()


@dataclass(frozen=True)
class FxPath:
    send_asset: Asset
    dest_asset: Asset
    dest_amount: int
    send_amount_estimate: int
    send_max: int
    path: Tuple[Asset, ...]

    def to_dict(self) -> Dict:
        return {
            "send_asset": self.send_asset.to_dict(),
            "dest_asset": self.dest_asset.to_dict(),
            "dest_amount": str(self.dest_amount),
            "send_amount_estimate": str(self.send_amount_estimate),
            "send_max": str(self.send_max),
            "path": [a.to_dict() for a in self.path],
        }


class MarketAdapter(Protocol):
    def find_paths(self, send_asset: Asset, dest_asset: Asset, dest_amount: int) -> Sequence[PathQuote]:
        """Strict-receive routes; may be empty."""
        ...


class StaticMarket:
    """
    In-memory market with fixed integer rates.

    A rate (numerator, denominator) means one unit of dest costs
    numerator/denominator units of send, rounded up.
    """

    def __init__(self):
        self._rates: Dict[Tuple[Asset, Asset], List[Tuple[int, int, Tuple[Asset, ...]]]] = {}
        self._lock = threading.Lock()
        self.queries = 0

    def set_rate(
        self,
        send_asset: Asset,
        dest_asset: Asset,
        numerator: int,
        denominator: int = 1,
        path: Tuple[Asset, ...] = (),
    ) -> None:
        with self._lock:
            self._rates.setdefault((send_asset, dest_asset), []).append((numerator, denominator, path))

    def clear_rates(self, send_asset: Asset, dest_asset: Asset) -> None:
        with self._lock:
            self._rates.pop((send_asset, dest_asset), None)

    def find_paths(self, send_asset: Asset, dest_asset: Asset, dest_amount: int) -> List[PathQuote]:
        with self._lock:
            self.queries += 1
            routes = list(self._rates.get((send_asset, dest_asset), []))
        return [
            PathQuote(source_amount=-(-dest_amount * num // den), path=path)
            for num, den, path in routes
        ]


class FXEngine:
    """Path discovery and slippage bounds over a MarketAdapter."""

    def __init__(self, market: MarketAdapter, max_slippage_percent: int = DEFAULT_MAX_SLIPPAGE_PERCENT):
        if max_slippage_percent < 0:
            raise ValueError("max_slippage_percent must be >= 0")
        self.market = market
        self.max_slippage_percent = max_slippage_percent

    def calculate_send_max(self, send_amount_estimate: int) -> int:
        return send_amount_estimate * (100 + self.max_slippage_percent) // 100

    def discover_path(self, send_asset: Asset, dest_asset: Asset, dest_amount: int) -> FxPath:
        """
        Cheapest route that delivers exactly dest_amount of dest_asset.

        Raises SettlementError(PATH_NOT_FOUND) when the market has no route
        or the market query itself fails.
        """
        if dest_amount <= 0:
            raise ValueError("dest_amount must be positive")

        try:
            quotes = list(self.market.find_paths(send_asset, dest_asset, dest_amount))
        except SettlementError:
            raise
        except Exception as e:
            raise SettlementError(
                SettlementFailure.PATH_NOT_FOUND,
                f"Path discovery failed: {e}",
                {"send_asset": str(send_asset), "dest_asset": str(dest_asset)},
            ) from e

        quotes = [q for q in quotes if q.source_amount > 0]
        if not quotes:
            raise SettlementError(
                SettlementFailure.PATH_NOT_FOUND,
                f"No path found from {send_asset.code} to {dest_asset.code}",
                {
                    "send_asset": send_asset.to_dict(),
                    "dest_asset": dest_asset.to_dict(),
                    "dest_amount": str(dest_amount),
                },
            )

        best = min(quotes, key=lambda q: q.source_amount)
        return FxPath(
            send_asset=send_asset,
            dest_asset=dest_asset,
            dest_amount=dest_amount,
            send_amount_estimate=best.source_amount,
            send_max=self.calculate_send_max(best.source_amount),
            path=tuple(best.path),
        )

    def validate_slippage(self, expected: int, actual: int, max_percent: Optional[int] = None) -> bool:
        """True when actual is no worse than expected by more than max_percent."""
        limit = self.max_slippage_percent if max_percent is None else max_percent
        if actual <= expected:
            return True
        if expected <= 0:
            return False
        return (actual - expected) * 100 // expected <= limit

    def prepare_conversion(self, send_asset: Asset, dest_asset: Asset, dest_amount: int) -> FxPath:
        """
        Quote, re-quote just before execution, and enforce the slippage bound.

        The returned path keeps the first quote's send_max so that price
        movement beyond the bound can never be absorbed silently.
        """
        quoted = self.discover_path(send_asset, dest_asset, dest_amount)
        current = self.discover_path(send_asset, dest_asset, dest_amount)

        if not self.validate_slippage(quoted.send_amount_estimate, current.send_amount_estimate):
            raise SettlementError(
                SettlementFailure.SLIPPAGE_EXCEEDED,
                f"Slippage above {self.max_slippage_percent}% for {dest_asset.code}",
                {
                    "expected": str(quoted.send_amount_estimate),
                    "actual": str(current.send_amount_estimate),
                    "max_percent": self.max_slippage_percent,
                },
            )

        logger.debug(
            "FX conversion prepared",
            dest_asset=str(dest_asset),
            dest_amount=dest_amount,
            estimate=current.send_amount_estimate,
            send_max=quoted.send_max,
        )
        return FxPath(
            send_asset=send_asset,
            dest_asset=dest_asset,
            dest_amount=dest_amount,
            send_amount_estimate=current.send_amount_estimate,
            send_max=quoted.send_max,
            path=current.path,
        )
