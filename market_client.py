"""
Market client: owns the trading and market-data feeds and produces records
onto three bounded queues (positions, balances, faults).

- trading feed: private positions/account channels when credentials are valid,
  otherwise public tickers for a fixed demo list
- market-data feed: always public tickers, used to keep position prices fresh

The client never reads the consumer's tables back; it only produces.
"""

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Set, Tuple

from credentials import Credentials
from feed_connection import (
    HEARTBEAT_INTERVAL,
    OKX_PRIVATE_WS_URL,
    OKX_PUBLIC_WS_URL,
    TRANSPORT_ERRORS,
    ConnectError,
    FeedConnection,
    FeedState,
    report,
)
from okx_models import SIDE_LONG, SIDE_SHORT, Balance, Position, now_ms
from stream_decoder import (
    CHANNEL_ACCOUNT,
    CHANNEL_POSITIONS,
    CHANNEL_TICKERS,
    DataBatch,
    decode_balances,
    decode_position,
    decode_ticker,
)

logger = logging.getLogger(__name__)

POSITION_QUEUE_SIZE = 100
BALANCE_QUEUE_SIZE = 100
FAULT_QUEUE_SIZE = 10

DEMO_INSTRUMENTS = ("BTC-USDT-SWAP", "ETH-USDT-SWAP", "SOL-USDT-SWAP")


@dataclass(frozen=True)
class DemoPosition:
    instrument_id: str
    side: str
    size: float
    average_price: float
    leverage: float


DEMO_POSITIONS = (
    DemoPosition("BTC-USDT-SWAP", SIDE_LONG, 0.5, 43250.0, 10.0),
    DemoPosition("ETH-USDT-SWAP", SIDE_SHORT, 4.0, 2380.0, 5.0),
    DemoPosition("SOL-USDT-SWAP", SIDE_LONG, 120.0, 98.5, 5.0),
    DemoPosition("XRP-USDT-SWAP", SIDE_SHORT, 5000.0, 0.62, 3.0),
    DemoPosition("DOGE-USDT-SWAP", SIDE_LONG, 25000.0, 0.085, 3.0),
    DemoPosition("ADA-USDT-SWAP", SIDE_LONG, 8000.0, 0.52, 2.0),
    DemoPosition("AVAX-USDT-SWAP", SIDE_SHORT, 150.0, 36.4, 5.0),
    DemoPosition("LINK-USDT-SWAP", SIDE_LONG, 300.0, 14.75, 4.0),
    DemoPosition("DOT-USDT-SWAP", SIDE_SHORT, 900.0, 7.2, 3.0),
    DemoPosition("LTC-USDT-SWAP", SIDE_LONG, 40.0, 71.3, 2.0),
)
DEMO_BALANCE_CURRENCY = "USDT"
DEMO_TOTAL_EQUITY = Decimal("10000")
DEMO_AVAILABLE_BALANCE = Decimal("7500")


def ticker_channels(instruments: Iterable[str]) -> List[Dict[str, str]]:
    return [{"channel": CHANNEL_TICKERS, "instId": inst_id} for inst_id in instruments]


def make_queues() -> Tuple[asyncio.Queue, asyncio.Queue, asyncio.Queue]:
    """Position, balance and fault queues with the standard capacities."""
    return (
        asyncio.Queue(maxsize=POSITION_QUEUE_SIZE),
        asyncio.Queue(maxsize=BALANCE_QUEUE_SIZE),
        asyncio.Queue(maxsize=FAULT_QUEUE_SIZE),
    )


class MarketClient:
    """Drives both OKX feeds and publishes normalized records."""

    def __init__(
        self,
        position_queue: asyncio.Queue,
        balance_queue: asyncio.Queue,
        fault_queue: asyncio.Queue,
        credentials: Optional[Credentials] = None,
        connector=None,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
    ) -> None:
        self.position_queue = position_queue
        self.balance_queue = balance_queue
        self.fault_queue = fault_queue
        self.credentials = credentials if credentials and credentials.is_complete else None

        # (instrument, side) keys with a non-zero size; instruments derive from these.
        self._open_keys: Set[Tuple[str, str]] = set()
        self.demo_positions: Dict[str, Position] = {}
        self.market_feed_connected = False

        self.market_feed = FeedConnection(
            "market-data",
            OKX_PUBLIC_WS_URL,
            self._on_market_batch,
            fault_queue,
            subscriptions=self._market_channels,
            connector=connector,
            heartbeat_interval=heartbeat_interval,
        )
        self.trading_feed = FeedConnection(
            "trading",
            OKX_PUBLIC_WS_URL if self.demo_mode else OKX_PRIVATE_WS_URL,
            self._on_trading_batch,
            fault_queue,
            credentials=self.credentials,
            subscriptions=self._trading_channels,
            connector=connector,
            heartbeat_interval=heartbeat_interval,
        )

    @property
    def demo_mode(self) -> bool:
        return self.credentials is None

    @property
    def working_set(self) -> Set[str]:
        return {inst_id for inst_id, _ in self._open_keys}

    async def _report(self, message: str, info: bool = False) -> None:
        await report(self.fault_queue, message, info=info)

    # ------------------------------------------------------------------
    # Subscription providers
    # ------------------------------------------------------------------
    def _trading_channels(self) -> List[Dict[str, str]]:
        if self.demo_mode:
            return ticker_channels(DEMO_INSTRUMENTS)
        return [
            {"channel": CHANNEL_POSITIONS, "instType": "SWAP"},
            {"channel": CHANNEL_ACCOUNT},
        ]

    def _market_channels(self) -> List[Dict[str, str]]:
        instruments = sorted(self.working_set) or list(DEMO_INSTRUMENTS)
        return ticker_channels(instruments)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def connect(self) -> None:
        """Connect market data (best effort), seed demo data if needed, then trading."""
        try:
            await self.market_feed.connect()
            self.market_feed_connected = True
        except ConnectError as exc:
            await self._report(f"Market data feed unavailable, prices will not update: {exc}")

        if self.demo_mode:
            await self._report("Running in demo mode - invalid or missing API credentials", info=True)
            await self.seed_demo()
        else:
            await self._report("Running in authenticated mode with valid API credentials", info=True)

        try:
            await self.trading_feed.connect()
        except ConnectError as exc:
            await self._report(f"Failed to connect to OKX: {exc}")
            try:
                await self.market_feed.close()
            except TRANSPORT_ERRORS as close_exc:
                logger.warning("Error while closing market data feed: %s", close_exc)
            raise

    async def start_listening(self) -> None:
        """Run both read loops; returns when the trading feed ends."""
        tasks = [asyncio.create_task(self.trading_feed.start_listening(), name="trading-feed")]
        if self.market_feed_connected:
            tasks.append(asyncio.create_task(self.market_feed.start_listening(), name="market-data-feed"))
        try:
            await tasks[0]
        finally:
            try:
                await self.close()
            except TRANSPORT_ERRORS as exc:
                logger.warning("Error while closing feeds: %s", exc)
            for task in tasks:
                if not task.done():
                    task.cancel()
                with suppress(asyncio.CancelledError):
                    await task

    async def close(self) -> None:
        errors = []
        for feed in (self.market_feed, self.trading_feed):
            try:
                await feed.close()
            except TRANSPORT_ERRORS as exc:
                errors.append(exc)
        if errors:
            for extra in errors[1:]:
                logger.warning("Additional close error: %s", extra)
            raise errors[0]

    # ------------------------------------------------------------------
    # Demo mode
    # ------------------------------------------------------------------
    async def seed_demo(self) -> None:
        timestamp = now_ms()
        for entry in DEMO_POSITIONS:
            position = Position(
                instrument_id=entry.instrument_id,
                position_side=entry.side,
                size=entry.size,
                average_price=entry.average_price,
                current_price=entry.average_price,
                leverage=entry.leverage,
                timestamp=timestamp,
            )
            self.demo_positions[entry.instrument_id] = position
            self._open_keys.add(position.key)
            await self.position_queue.put(replace(position))

        await self.balance_queue.put(
            Balance(
                currency=DEMO_BALANCE_CURRENCY,
                total_equity=DEMO_TOTAL_EQUITY,
                available_balance=DEMO_AVAILABLE_BALANCE,
                timestamp=timestamp,
            )
        )
        await self._report(f"Seeded {len(DEMO_POSITIONS)} demo positions", info=True)
        await self._refresh_market_subscription(removed=set())

    # ------------------------------------------------------------------
    # Record handling (runs on the owning feed's read loop)
    # ------------------------------------------------------------------
    async def _on_trading_batch(self, batch: DataBatch) -> None:
        if batch.channel == CHANNEL_ACCOUNT:
            await self._handle_balances(batch)
        elif batch.channel == CHANNEL_TICKERS:
            await self._handle_tickers(batch)
        elif batch.channel in (CHANNEL_POSITIONS, None):
            await self._handle_positions(batch)
        else:
            await self._report(f"Ignoring trading data on channel {batch.channel}", info=True)

    async def _on_market_batch(self, batch: DataBatch) -> None:
        if batch.channel in (CHANNEL_TICKERS, None):
            await self._handle_tickers(batch)
        else:
            await self._report(f"Ignoring market data on channel {batch.channel}", info=True)

    async def _handle_balances(self, batch: DataBatch) -> None:
        await self._report(f"Received {len(batch.items)} balance items", info=True)
        for item in batch.items:
            for balance in decode_balances(item):
                await self.balance_queue.put(balance)

    async def _handle_positions(self, batch: DataBatch) -> None:
        await self._report(f"Received {len(batch.items)} position items", info=True)
        before = self.working_set
        for item in batch.items:
            position = decode_position(item)
            if position is None:
                await self._report("Skipping position record without instId", info=True)
                continue
            if position.size > 0:
                self._open_keys.add(position.key)
            else:
                self._open_keys.discard(position.key)
            await self.position_queue.put(position)

        removed = before - self.working_set
        if self.working_set != before:
            await self._refresh_market_subscription(removed=removed)

    async def _handle_tickers(self, batch: DataBatch) -> None:
        for item in batch.items:
            ticker = decode_ticker(item)
            if ticker is None or ticker.last_price <= 0:
                continue
            demo = self.demo_positions.get(ticker.instrument_id)
            if demo is not None:
                demo.reprice(ticker.last_price, ticker.timestamp)
                await self.position_queue.put(replace(demo))
            else:
                await self.position_queue.put(
                    Position.price_update(ticker.instrument_id, ticker.last_price, ticker.timestamp)
                )

    async def _refresh_market_subscription(self, removed: Set[str]) -> None:
        """Re-subscribe market data to the whole working set, dropping removed instruments."""
        feed = self.market_feed
        if not self.market_feed_connected or feed.state in (FeedState.FAULTED, FeedState.CLOSED):
            return

        channels = self._market_channels()
        subscribed = {channel["instId"] for channel in channels}
        try:
            stale = sorted(removed - subscribed)
            if stale:
                await feed.unsubscribe(ticker_channels(stale))
            await feed.subscribe(channels)
        except TRANSPORT_ERRORS as exc:
            await self._report(f"Market data re-subscription failed: {exc}")
