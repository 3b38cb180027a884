"""Order-block detection and break checks."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal

from futures_agent.types import Candle, Direction, OrderBlockMetadata

MIN_BLOCK_CANDLES = 5
BODY_RATIO = 1.5


@dataclass(slots=True)
class OrderBlock:
    side: Literal["BULLISH", "BEARISH"]
    price_low: float
    price_high: float
    volume: float
    timestamp: int
    broken: bool = False

    def to_metadata(self) -> OrderBlockMetadata:
        return OrderBlockMetadata(
            block_type=self.side,
            block_low=self.price_low,
            block_high=self.price_high,
            block_timestamp=self.timestamp,
        )


class OrderBlockBreaker:
    """Finds reversal order blocks and reports when price breaks through one.

    A block only fires once per process: after a break is reported it is
    remembered per symbol and returned as broken on later scans.
    """

    def __init__(self) -> None:
        self._broken: set[tuple[str, str, int]] = set()

    def detect_order_blocks(self, candles: Sequence[Candle], symbol: str = "") -> list[OrderBlock]:
        """Mark a block where a candle is followed by an opposite candle with a body over 1.5x larger."""
        if len(candles) < MIN_BLOCK_CANDLES:
            return []

        blocks: list[OrderBlock] = []
        for i in range(2, len(candles) - 1):
            current = candles[i]
            following = candles[i + 1]
            current_body = abs(current.close - current.open)
            following_body = abs(following.close - following.open)

            side: Literal["BULLISH", "BEARISH"] | None = None
            if current.close < current.open and following.close > following.open:
                side = "BULLISH"
            elif current.close > current.open and following.close < following.open:
                side = "BEARISH"
            if side is None or following_body <= current_body * BODY_RATIO:
                continue

            blocks.append(
                OrderBlock(
                    side=side,
                    price_low=current.low,
                    price_high=current.high,
                    volume=current.volume,
                    timestamp=current.timestamp,
                    broken=(symbol, side, current.timestamp) in self._broken,
                )
            )
        return blocks

    def check_order_block_break(
        self,
        current_price: float,
        blocks: Sequence[OrderBlock],
        symbol: str = "",
    ) -> tuple[OrderBlock, Direction] | None:
        """Return the first unbroken block the price has crossed, with the implied direction."""
        for block in blocks:
            if block.broken:
                continue
            direction: Direction | None = None
            if block.side == "BULLISH" and current_price > block.price_high:
                direction = "LONG"
            elif block.side == "BEARISH" and current_price < block.price_low:
                direction = "SHORT"
            if direction is not None:
                block.broken = True
                self._broken.add((symbol, block.side, block.timestamp))
                return block, direction
        return None
