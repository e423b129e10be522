from decimal import Decimal

import pytest

from stream_decoder import (
    ControlFrame,
    DataBatch,
    Unrecognized,
    decode,
    decode_balances,
    decode_position,
    decode_ticker,
)


def test_decode_control_frames():
    login = decode({"event": "login", "code": "0", "msg": ""})
    assert login == ControlFrame(event="login", code="0", detail=None)
    assert login.ok
    assert not ControlFrame(event="login").ok

    error = decode({"event": "error", "code": "60012", "msg": "Invalid request"})
    assert isinstance(error, ControlFrame)
    assert error.detail == "Invalid request"
    assert not error.ok


def test_decode_data_batches():
    batch = decode({"arg": {"channel": "tickers", "instId": "BTC-USDT-SWAP"}, "data": [{"instId": "BTC-USDT-SWAP"}, "junk"]})
    assert isinstance(batch, DataBatch)
    assert batch.channel == "tickers"
    assert batch.items == [{"instId": "BTC-USDT-SWAP"}]

    legacy = decode({"data": [{"instId": "ETH-USDT-SWAP"}]})
    assert isinstance(legacy, DataBatch)
    assert legacy.channel is None


@pytest.mark.parametrize("message", [{"foo": 1}, ["not", "a", "dict"], "pong", {"data": "nope"}])
def test_decode_unrecognized(message):
    assert isinstance(decode(message), Unrecognized)


def test_full_position_record():
    pos = decode_position({
        "instId": "BTC-USDT-SWAP", "posSide": "short", "pos": "2", "avgPx": "100",
        "markPx": "110", "lever": "10", "uTime": "1700000000000",
    })
    assert pos.position_side == "short"
    assert pos.size == 2.0
    assert pos.average_price == 100.0
    assert pos.current_price == 110.0
    assert pos.unrealized_pnl == pytest.approx(-20.0)
    assert pos.unrealized_pnl_ratio == pytest.approx(-10.0)
    assert pos.leverage == 10.0
    assert pos.timestamp == 1700000000000


def test_ticker_shaped_record_uses_defaults_and_last_price():
    pos = decode_position({"instId": "ETH-USDT-SWAP", "last": "50000"})
    assert pos.position_side == "long"
    assert pos.size == 1.0
    assert pos.average_price == 50000.0
    assert pos.current_price == 50000.0
    assert pos.unrealized_pnl == 0.0
    assert pos.leverage == 1.0


def test_explicit_upl_wins_over_computed():
    pos = decode_position({"instId": "X", "pos": "2", "avgPx": "100", "markPx": "110", "upl": "5.5"})
    assert pos.unrealized_pnl == 5.5


def test_pnl_fallback_order_and_zero_guard():
    pos = decode_position({"instId": "X", "pos": "2", "avgPx": "100", "markPx": "110", "upl": "0", "pnl": "7"})
    assert pos.unrealized_pnl == 7.0

    computed = decode_position({"instId": "X", "pos": "2", "avgPx": "100", "markPx": "110", "upl": "", "pnl": "0"})
    assert computed.unrealized_pnl == pytest.approx(20.0)


def test_ratio_fields_are_scaled_to_percent():
    pos = decode_position({"instId": "X", "pos": "1", "avgPx": "100", "markPx": "100", "uplRatio": "0.25", "pnlRatio": "0.5"})
    assert pos.unrealized_pnl_ratio == pytest.approx(25.0)

    fallback = decode_position({"instId": "X", "pos": "1", "avgPx": "100", "markPx": "100", "pnlRatio": "0.5"})
    assert fallback.unrealized_pnl_ratio == pytest.approx(50.0)


def test_malformed_numbers_fall_through_to_defaults():
    pos = decode_position({"instId": "X", "pos": "abc", "avgPx": "??", "last": "42", "lever": None, "upl": "n/a"})
    assert pos is not None
    assert pos.size == 1.0
    assert pos.average_price == 42.0
    assert pos.current_price == 42.0
    assert pos.leverage == 1.0
    assert pos.unrealized_pnl == 0.0


def test_net_side_maps_by_size_sign():
    assert decode_position({"instId": "X", "posSide": "net", "pos": "-3"}).position_side == "short"
    assert decode_position({"instId": "X", "posSide": "net", "pos": "3"}).position_side == "long"
    assert decode_position({"instId": "X", "posSide": "net", "pos": "-3"}).size == 3.0


def test_position_without_instrument_is_dropped():
    assert decode_position({"pos": "1"}) is None
    assert decode_position({"instId": ""}) is None


def test_flat_balance_record():
    [balance] = decode_balances({"ccy": "USDT", "totalEq": "1234.5", "availBal": "bad"})
    assert balance.currency == "USDT"
    assert balance.total_equity == Decimal("1234.5")
    assert balance.available_balance == Decimal("0")


def test_account_snapshot_details():
    balances = decode_balances({
        "totalEq": "20000",
        "details": [
            {"ccy": "USDT", "eq": "15000", "availBal": "9000"},
            {"ccy": "BTC", "eq": "0.1", "eqUsd": "5000", "availBal": "0.1"},
            {"availBal": "1"},
        ],
    })
    assert [b.currency for b in balances] == ["USDT", "BTC"]
    assert balances[0].total_equity == Decimal("15000")
    assert balances[1].total_equity == Decimal("5000")
    assert balances[1].available_balance == Decimal("0.1")


def test_balance_without_currency_is_dropped():
    assert decode_balances({"ccy": "", "totalEq": "1"}) == []
    assert decode_balances({}) == []


def test_decode_ticker():
    ticker = decode_ticker({"instId": "SOL-USDT-SWAP", "last": "101.5", "bidPx": "101.4", "askPx": "101.6", "vol24h": "9", "ts": "1700000000001"})
    assert ticker.instrument_id == "SOL-USDT-SWAP"
    assert ticker.last_price == 101.5
    assert ticker.bid_price == 101.4
    assert ticker.ask_price == 101.6
    assert ticker.volume == 9.0
    assert ticker.timestamp == 1700000000001
    assert decode_ticker({"last": "1"}) is None
