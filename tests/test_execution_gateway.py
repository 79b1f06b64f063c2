"""Tests for the Execution Service client: payloads, classification, retries."""

import asyncio
import json
import logging

import httpx
import pytest

from conftest import MINT
from flipit.services.execution_gateway import (
    NO_BALANCE,
    TRANSIENT,
    UNCLASSIFIED,
    ExecutionGateway,
    classify_error,
    first_signature,
)

URL = "https://exec.test/swap"


def _gateway(handler, **kwargs) -> ExecutionGateway:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ExecutionGateway(url=URL, client=client, **kwargs)


# ---------------------------------------------------------------------------
# Classification helpers
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("code,message,status,expected", [
    ("NO_BALANCE", "", 400, NO_BALANCE),
    ("BALANCE_CHECK_FAILED", None, 400, NO_BALANCE),
    (None, "No token accounts found for owner", 400, NO_BALANCE),
    (None, "Token has already been sold", 400, NO_BALANCE),
    (None, "Token balance is 0", 200, NO_BALANCE),
    ("INSUFFICIENT_LIQUIDITY", "", 400, TRANSIENT),
    (None, "Request timed out", 400, TRANSIENT),
    (None, "Internal error", 503, TRANSIENT),
    (None, "Invalid wallet", 400, UNCLASSIFIED),
])
def test_classify_error(code, message, status, expected):
    assert classify_error(code, message, status) == expected


@pytest.mark.parametrize("payload,expected", [
    ({"signature": "abc"}, "abc"),
    ({"signatures": ["s1", "s2"]}, "s1"),
    ({"data": {"signatures": ["nested"]}}, "nested"),
    ({"signatures": []}, None),
    ({}, None),
    ("not-a-dict", None),
])
def test_first_signature(payload, expected):
    assert first_signature(payload) == expected


# ---------------------------------------------------------------------------
# Mock mode
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_mock_mode_returns_sequential_signatures(caplog):
    gateway = ExecutionGateway(url="")
    with caplog.at_level(logging.INFO, logger="flipit.services.execution_gateway"):
        first = await gateway.buy(MINT, 10.0)
        second = await gateway.sell(MINT)

    assert (first.success, first.signature) == (True, "mock-1")
    assert (second.success, second.signature) == (True, "mock-2")
    assert "MOCK BUY" in caplog.text
    assert "MOCK SELL" in caplog.text


# ---------------------------------------------------------------------------
# Wire format
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_buy_payload_shape():
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"signature": "sig-buy"})

    result = await _gateway(handler).buy(MINT, 12.5, slippage_bps=700, priority_fee_mode="high", wallet_id="w-1")

    assert result.success is True
    assert result.signature == "sig-buy"
    assert seen == [{
        "side": "buy",
        "tokenMint": MINT,
        "amountUsd": 12.5,
        "slippageBps": 700,
        "priorityFeeMode": "high",
        "walletId": "w-1",
    }]


@pytest.mark.asyncio
async def test_sell_payload_sells_all():
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"signatures": ["sig-sell"]})

    result = await _gateway(handler).sell(MINT, slippage_bps=2000)

    assert result.signature == "sig-sell"
    assert seen[0]["side"] == "sell"
    assert seen[0]["sellAll"] is True
    assert "amountUsd" not in seen[0]
    assert seen[0]["slippageBps"] == 2000


# ---------------------------------------------------------------------------
# Error responses
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_no_balance_response():
    handler = lambda r: httpx.Response(400, json={"error_code": "NO_BALANCE", "error": "No token balance"})
    result = await _gateway(handler).sell(MINT)

    assert result.success is False
    assert result.no_balance is True
    assert result.error_code == "NO_BALANCE"
    assert result.error == "No token balance"


@pytest.mark.asyncio
async def test_server_error_is_transient():
    result = await _gateway(lambda r: httpx.Response(502, text="bad gateway")).sell(MINT)

    assert result.success is False
    assert result.error_class == TRANSIENT
    assert result.error == "HTTP 502"


@pytest.mark.asyncio
async def test_success_without_signature_is_a_failure():
    result = await _gateway(lambda r: httpx.Response(200, json={"ok": True})).buy(MINT, 1.0)

    assert result.success is False
    assert result.error == "Execution service returned no signature"


@pytest.mark.asyncio
async def test_connect_error_is_retried():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200, json={"signature": "after-retry"})

    result = await _gateway(handler, connect_retries=1).buy(MINT, 5.0)

    assert result.signature == "after-retry"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_read_timeout_is_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ReadTimeout("slow", request=request)

    result = await _gateway(handler, connect_retries=3).sell(MINT)

    assert result.success is False
    assert result.error_class == TRANSIENT
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_unreachable_service_gives_up():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    result = await _gateway(handler, connect_retries=0).sell(MINT)

    assert result.success is False
    assert result.error_class == TRANSIENT
    assert "unreachable" in result.error


@pytest.mark.asyncio
async def test_hung_service_is_cut_off_at_deadline():
    async def handler(request):
        await asyncio.sleep(5)
        return httpx.Response(200, json={"signature": "too-late"})

    gateway = _gateway(handler, timeout=0.05, connect_retries=0)
    result = await gateway.buy(MINT, 5.0)

    assert gateway.deadline == pytest.approx(0.1)
    assert result.success is False
    assert result.error_class == TRANSIENT
    assert result.error == "Timed out after 0.1s"
