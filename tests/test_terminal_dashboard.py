import asyncio
import logging
from contextlib import suppress
from datetime import datetime
from decimal import Decimal

import pytest
from rich.console import Console

from feed_connection import INFO_PREFIX
from okx_models import SIDE_LONG, SIDE_SHORT, Balance, Position
from terminal_dashboard import (
    LOG_FILE,
    MAX_DEBUG_LINES,
    TerminalDashboard,
    format_price,
    log_task_failure,
    parse_args,
    signed,
)

NOW = datetime(2024, 1, 2, 12, 30, 0)


def render_text(dashboard):
    console = Console(record=True, width=160, color_system=None)
    console.print(dashboard.render(now=NOW))
    return console.export_text()


def test_info_faults_go_to_debug_buffer():
    dashboard = TerminalDashboard(show_debug=True)

    dashboard.handle_fault(f"{INFO_PREFIX} Subscribed to tickers")
    dashboard.handle_fault("WebSocket read error on trading feed: reset")

    assert dashboard.error_message == "WebSocket read error on trading feed: reset"
    assert len(dashboard.debug_messages) == 1
    assert dashboard.debug_messages[0].endswith("] Subscribed to tickers")


def test_debug_buffer_only_filled_when_enabled():
    dashboard = TerminalDashboard(show_debug=False)
    dashboard.handle_fault(f"{INFO_PREFIX} hidden")
    assert not dashboard.debug_messages

    verbose = TerminalDashboard(show_debug=True)
    for index in range(MAX_DEBUG_LINES + 5):
        verbose.add_debug(f"line {index}")
    assert len(verbose.debug_messages) == MAX_DEBUG_LINES
    assert verbose.debug_messages[-1].endswith(f"line {MAX_DEBUG_LINES + 4}")


def test_position_update_clears_error():
    dashboard = TerminalDashboard()
    dashboard.set_error("Failed to connect to OKX: refused")

    dashboard.handle_position(Position("BTC-USDT-SWAP", SIDE_LONG, size=1.0, average_price=1.0))

    assert dashboard.error_message == ""


def test_render_status_panels():
    dashboard = TerminalDashboard()
    assert "Initializing..." in render_text(dashboard)

    dashboard.handle_balance(Balance("USDT", Decimal("10000"), Decimal("7500"), timestamp=0))
    text = render_text(dashboard)
    assert "Connected - No Positions" in text
    assert "10,000.00 USDT" in text


def test_render_positions_sorted_with_error_and_footer():
    dashboard = TerminalDashboard()
    dashboard.handle_position(Position("SOL-USDT-SWAP", SIDE_LONG, size=2.0, average_price=100.0, current_price=110.0,
                                       unrealized_pnl=20.0, unrealized_pnl_ratio=10.0, leverage=5.0))
    dashboard.handle_position(Position("BTC-USDT-SWAP", SIDE_SHORT, size=0.5, average_price=40000.0,
                                       current_price=41000.0, unrealized_pnl=-500.0, unrealized_pnl_ratio=-2.5,
                                       leverage=10.0))
    dashboard.set_error("OKX error: bad request")

    text = render_text(dashboard)

    assert text.index("BTC-USDT-SWAP") < text.index("SOL-USDT-SWAP")
    assert "+20.00" in text
    assert "-500.00" in text
    assert "-2.50%" in text
    assert "10x" in text
    assert "Error: OKX error: bad request" in text
    assert "Press Ctrl+C to quit | Debug: OFF" in text
    assert "Debug Output" not in text


def test_render_debug_panel_when_enabled():
    dashboard = TerminalDashboard(show_debug=True)
    dashboard.handle_fault(f"{INFO_PREFIX} Market data subscribed")

    text = render_text(dashboard)

    assert "Debug Output" in text
    assert "Market data subscribed" in text
    assert "Debug: ON" in text


def test_price_formatting():
    assert format_price(43250.0) == "43,250.00"
    assert format_price(0.0005) == "0.00050"
    assert signed(1.5) == "+1.50"
    assert signed(-1.5, "%") == "-1.50%"
    assert signed(0.0) == "0.00"


@pytest.mark.asyncio()
async def test_consume_applies_records_and_marks_dirty():
    dashboard = TerminalDashboard()
    queue = asyncio.Queue()
    task = asyncio.create_task(dashboard.consume(queue, dashboard.handle_balance))

    await queue.put(Balance("USDT", Decimal("5"), Decimal("5"), timestamp=0))
    await asyncio.wait_for(dashboard.dirty.wait(), timeout=1)

    assert "USDT" in dashboard.state.balances
    task.cancel()
    with suppress(asyncio.CancelledError):
        await task


def test_parse_args_defaults_and_flags():
    args = parse_args([])
    assert not args.debug
    assert args.duration == 0
    assert args.env_file is None
    assert args.log_file == LOG_FILE

    args = parse_args(["-d", "--duration", "30", "--env-file", "prod.env", "--log-level", "DEBUG"])
    assert args.debug
    assert args.duration == 30
    assert args.env_file == "prod.env"
    assert args.log_level == "DEBUG"


@pytest.mark.asyncio()
async def test_failed_background_task_is_logged_and_shutdown_continues(caplog):
    async def broken():
        raise RuntimeError("client exploded")

    task = asyncio.create_task(broken(), name="market-client")
    task.add_done_callback(log_task_failure)
    idle = asyncio.create_task(asyncio.Event().wait())
    idle.add_done_callback(log_task_failure)

    with caplog.at_level(logging.ERROR, logger="terminal_dashboard"):
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        idle.cancel()
        results = await asyncio.gather(task, idle, return_exceptions=True)

    assert isinstance(results[0], RuntimeError)
    assert isinstance(results[1], asyncio.CancelledError)
    [record] = [r for r in caplog.records if r.name == "terminal_dashboard"]
    assert "market-client" in record.getMessage()
    assert "client exploded" in record.getMessage()
