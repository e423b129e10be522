#!/usr/bin/env python3
"""Live terminal view of OKX positions and balances, fed by the market client queues."""

import argparse
import asyncio
import logging
import signal
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from rich import box
from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from credentials import load_credentials
from feed_connection import INFO_PREFIX, ConnectError, report
from market_client import MarketClient, make_queues
from okx_models import Balance, Position
from state_reducer import StateReducer

logger = logging.getLogger(__name__)

MAX_DEBUG_LINES = 10
RENDER_INTERVAL = 1.0
LOG_FILE = "okx_monitor.log"


@dataclass(frozen=True)
class DisplayConfig:
    """Styles used by the renderer; passed in rather than kept as globals."""
    title: str = "OKX Position Monitor"
    title_style: str = "bold cyan"
    border_style: str = "blue"
    label_style: str = "grey62"
    value_style: str = "white"
    positive_style: str = "green"
    negative_style: str = "red"
    neutral_style: str = "white"
    header_style: str = "bold magenta"
    error_style: str = "bold red"
    debug_style: str = "grey50"
    debug_header_style: str = "bold orange3"


def format_price(value: float) -> str:
    if value < 0.001:
        return f"{value:.5f}"
    return f"{value:,.2f}"


def signed(value: float, suffix: str = "") -> str:
    text = f"{value:,.2f}{suffix}"
    return f"+{text}" if value > 0 else text


def sign_style(value, config: DisplayConfig) -> str:
    if value > 0:
        return config.positive_style
    if value < 0:
        return config.negative_style
    return config.neutral_style


class TerminalDashboard:
    """Owns the reducer plus the error/debug surfaces and renders them."""

    def __init__(self, show_debug: bool = False, config: Optional[DisplayConfig] = None) -> None:
        self.state = StateReducer()
        self.config = config or DisplayConfig()
        self.show_debug = show_debug
        self.debug_messages = deque(maxlen=MAX_DEBUG_LINES)
        self.error_message = ""
        self.dirty = asyncio.Event()

    # ------------------------------------------------------------------
    # Message surfaces
    # ------------------------------------------------------------------
    def set_error(self, message: str) -> None:
        self.error_message = message

    def clear_error(self) -> None:
        self.error_message = ""

    def add_debug(self, message: str) -> None:
        if not self.show_debug:
            return
        self.debug_messages.append(f"[{datetime.now().strftime('%H:%M:%S')}] {message}")

    # ------------------------------------------------------------------
    # Data ingestion
    # ------------------------------------------------------------------
    def handle_position(self, position: Position) -> None:
        if self.state.apply_position(position):
            if position.is_price_update:
                self.add_debug(f"Ticker updated: {position.instrument_id} @ {format_price(position.current_price)}")
            else:
                self.add_debug(
                    f"Position updated: {position.instrument_id} {position.position_side} "
                    f"{position.size:.4f} @ {format_price(position.current_price)}"
                )
        self.clear_error()

    def handle_balance(self, balance: Balance) -> None:
        self.state.apply_balance(balance)
        self.add_debug(
            f"Balance updated: {balance.currency} Total: {balance.total_equity:.4f} "
            f"Available: {balance.available_balance:.4f}"
        )

    def handle_fault(self, message: str) -> None:
        if message.startswith(INFO_PREFIX):
            self.add_debug(message[len(INFO_PREFIX):].strip())
        else:
            self.set_error(message)

    async def consume(self, queue: asyncio.Queue, handler: Callable) -> None:
        while True:
            item = await queue.get()
            handler(item)
            self.dirty.set()

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------
    def _render_balance(self) -> Text:
        total = self.state.total_equity()
        if not self.state.balances or total == 0:
            return Text("")
        cfg = self.config
        trend_styles = {
            "up": cfg.positive_style,
            "down": cfg.negative_style,
            "flat": cfg.neutral_style,
        }
        style = trend_styles.get(self.state.balance_trend(), cfg.value_style)
        text = Text("Balance: ", style=cfg.label_style)
        text.append(f"{total:,.2f} {self.state.main_currency()}", style=style)
        return text

    def _render_header(self, now: datetime) -> Table:
        cfg = self.config
        last_update = self.state.last_update
        times = Text(now.strftime("%Y-%m-%d %H:%M:%S"), style="bold")
        times.append("\nLast update: ", style=cfg.label_style)
        times.append(last_update.strftime("%H:%M:%S") if last_update else "--:--:--", style=cfg.label_style)

        header = Table.grid(expand=True)
        header.add_column(justify="left")
        header.add_column(justify="center")
        header.add_column(justify="right")
        header.add_row(Text(cfg.title, style=cfg.title_style), self._render_balance(), times)
        return header

    def _render_positions(self, now: datetime):
        cfg = self.config
        positions = self.state.sorted_positions()
        if not positions:
            if self.state.last_update is None:
                status, detail = "Initializing...", "Starting OKX connection\nPlease wait while we connect to the API"
            else:
                status, detail = "Connected - No Positions", "Successfully connected to OKX\nNo open positions found"
            body = Text("Status: ", style=cfg.label_style)
            body.append(status, style=cfg.value_style)
            body.append("\nTime: ", style=cfg.label_style)
            body.append(now.strftime("%H:%M:%S"), style=cfg.value_style)
            body.append(f"\n\n{detail}", style=cfg.neutral_style)
            return Panel(body, box=box.ROUNDED, expand=False)

        table = Table(box=box.SIMPLE_HEAVY, header_style=cfg.header_style, expand=True)
        table.add_column("Instrument", style="bold yellow")
        table.add_column("Side")
        table.add_column("Size", justify="right")
        table.add_column("Entry", justify="right")
        table.add_column("Current", justify="right")
        table.add_column("PnL", justify="right")
        table.add_column("PnL %", justify="right")
        table.add_column("Leverage", justify="right")

        for pos in positions:
            table.add_row(
                pos.instrument_id,
                pos.position_side,
                f"{pos.size:.4f}",
                format_price(pos.average_price),
                format_price(pos.current_price),
                Text(signed(pos.unrealized_pnl), style=sign_style(pos.unrealized_pnl, cfg)),
                Text(signed(pos.unrealized_pnl_ratio, "%"), style=sign_style(pos.unrealized_pnl_ratio, cfg)),
                f"{pos.leverage:.0f}x",
            )
        return table

    def _render_debug(self) -> Panel:
        body = Text("\n".join(self.debug_messages), style=self.config.debug_style)
        return Panel(
            body,
            title=Text("Debug Output", style=self.config.debug_header_style),
            title_align="left",
            box=box.ROUNDED,
        )

    def render(self, now: Optional[datetime] = None) -> Panel:
        now = now or datetime.now()
        cfg = self.config
        parts = [self._render_header(now), Text(""), self._render_positions(now)]

        if self.show_debug and self.debug_messages:
            parts.append(self._render_debug())

        if self.error_message:
            parts.append(Text(f"Error: {self.error_message}", style=cfg.error_style))

        debug_status = "ON" if self.show_debug else "OFF"
        parts.append(Text(f"Press Ctrl+C to quit | Debug: {debug_status}", style=cfg.label_style))
        return Panel(Group(*parts), border_style=cfg.border_style, box=box.ROUNDED)

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------
    async def render_loop(self, live: Live, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            live.update(self.render(), refresh=True)
            self.dirty.clear()
            try:
                await asyncio.wait_for(self.dirty.wait(), timeout=RENDER_INTERVAL)
            except asyncio.TimeoutError:
                continue


def log_task_failure(task: asyncio.Task) -> None:
    """Done callback: record a background task that died with an exception."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background task %s failed: %s", task.get_name(), exc, exc_info=exc)


async def run_client(client: MarketClient) -> None:
    try:
        await client.connect()
    except ConnectError:
        # Already on the fault queue; the display keeps showing it.
        return
    await client.start_listening()


def configure_logging(level: str, log_file: str) -> None:
    # File only; console output would tear the live display.
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.FileHandler(log_file)],
    )


async def run_dashboard(args: argparse.Namespace) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _handle_signal(signum, frame):  # noqa: ARG001
        if not stop_event.is_set():
            loop.call_soon_threadsafe(stop_event.set)

    for sig in (signal.SIGINT, getattr(signal, "SIGTERM", signal.SIGINT)):
        try:
            signal.signal(sig, _handle_signal)
        except (ValueError, OSError):
            pass

    position_queue, balance_queue, fault_queue = make_queues()
    dashboard = TerminalDashboard(show_debug=args.debug)

    consumers = {
        asyncio.create_task(dashboard.consume(position_queue, dashboard.handle_position)),
        asyncio.create_task(dashboard.consume(balance_queue, dashboard.handle_balance)),
        asyncio.create_task(dashboard.consume(fault_queue, dashboard.handle_fault)),
    }

    credentials, valid = load_credentials(args.env_file)
    if not valid:
        await report(fault_queue, "To use live data, set valid OKX API credentials in .env", info=True)

    client = MarketClient(position_queue, balance_queue, fault_queue, credentials=credentials)
    client_task = asyncio.create_task(run_client(client), name="market-client")

    with Live(dashboard.render(), console=Console(), screen=True, auto_refresh=False) as live:
        render_task = asyncio.create_task(dashboard.render_loop(live, stop_event))
        tasks = consumers | {client_task, render_task}
        for task in tasks:
            task.add_done_callback(log_task_failure)

        waiters = {asyncio.create_task(stop_event.wait())}
        if args.duration > 0:
            waiters.add(asyncio.create_task(asyncio.sleep(args.duration)))
        await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)

        stop_event.set()
        pending = tasks | waiters
        for task in pending:
            if not task.done():
                task.cancel()
        # Failures were already logged by log_task_failure.
        await asyncio.gather(*pending, return_exceptions=True)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Live OKX position and balance monitor")
    parser.add_argument("-d", "--debug", action="store_true", help="Show the debug output panel")
    parser.add_argument(
        "--duration",
        type=int,
        default=0,
        help="Seconds to run before auto exit (<=0 to run until interrupted)",
    )
    parser.add_argument("--env-file", default=None, help="Path to a .env file with OKX credentials")
    parser.add_argument("--log-level", default="INFO", help="Logging level for the log file")
    parser.add_argument("--log-file", default=LOG_FILE, help="Where to write the log")
    return parser.parse_args(argv)


def main() -> None:
    args = parse_args()
    configure_logging(args.log_level, args.log_file)
    asyncio.run(run_dashboard(args))


if __name__ == "__main__":
    main()
