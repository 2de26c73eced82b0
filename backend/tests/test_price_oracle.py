import sys
from pathlib import Path
from unittest.mock import AsyncMock

import httpx
import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from services.errors import PriceUnavailable, UpstreamUnavailable
from services.price_oracle import PriceOracle, normalize_pair
from utils.retry import RetryConfig


def _oracle(handler, **kwargs) -> PriceOracle:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return PriceOracle(
        base_url="https://binance.test",
        client=client,
        retry_config=RetryConfig(max_attempts=3, base_delay=0.25, exponential_base=2.0),
        **kwargs,
    )


@pytest.fixture
def no_sleep(monkeypatch):
    sleep_mock = AsyncMock()
    monkeypatch.setattr("utils.retry.asyncio.sleep", sleep_mock)
    return sleep_mock


def test_normalize_pair():
    assert normalize_pair(" btc/usdt ") == "BTCUSDT"
    assert normalize_pair("eth-usdt") == "ETHUSDT"
    assert normalize_pair(None) == ""


@pytest.mark.asyncio
async def test_get_price_parses_ticker():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"symbol": "BTCUSDT", "price": "91234.50000000"})

    oracle = _oracle(handler)
    price = await oracle.get_price("btc/usdt")
    await oracle.close()

    assert price == 91234.5
    assert seen[0].url.path == "/api/v3/ticker/price"
    assert seen[0].url.params["symbol"] == "BTCUSDT"


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [{"price": "0"}, {"price": "-3"}, {"price": "nan"}, {}, {"price": "x"}])
async def test_get_price_rejects_invalid_prices(payload):
    oracle = _oracle(lambda request: httpx.Response(200, json=payload))
    with pytest.raises(UpstreamUnavailable):
        await oracle.get_price("BTCUSDT")
    await oracle.close()


@pytest.mark.asyncio
async def test_get_price_retries_transient_errors_with_backoff(no_sleep):
    attempts = {"n": 0}

    def handler(request):
        attempts["n"] += 1
        if attempts["n"] < 3:
            return httpx.Response(503, json={"msg": "busy"})
        return httpx.Response(200, json={"price": "3400.1"})

    oracle = _oracle(handler)
    assert await oracle.get_price("ETHUSDT") == 3400.1
    await oracle.close()

    assert attempts["n"] == 3
    assert [call.args[0] for call in no_sleep.await_args_list] == [0.25, 0.5]


@pytest.mark.asyncio
async def test_get_price_gives_up_after_three_attempts(no_sleep):
    attempts = {"n": 0}

    def handler(request):
        attempts["n"] += 1
        raise httpx.ConnectError("connection refused", request=request)

    oracle = _oracle(handler)
    with pytest.raises(UpstreamUnavailable):
        await oracle.get_price("BTCUSDT")
    await oracle.close()

    assert attempts["n"] == 3


@pytest.mark.asyncio
async def test_client_errors_are_not_retried(no_sleep):
    attempts = {"n": 0}

    def handler(request):
        attempts["n"] += 1
        return httpx.Response(400, json={"code": -1121, "msg": "Invalid symbol."})

    oracle = _oracle(handler)
    with pytest.raises(UpstreamUnavailable):
        await oracle.get_price("NOPEUSDT")
    await oracle.close()

    assert attempts["n"] == 1
    no_sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_fallback_used_when_upstream_down(no_sleep):
    oracle = _oracle(lambda request: httpx.Response(500), fallback_prices={"SOLUSDT": 190.0})
    assert await oracle.get_price_or_fallback("sol/usdt") == 190.0
    await oracle.close()


@pytest.mark.asyncio
async def test_missing_fallback_raises_price_unavailable(no_sleep):
    oracle = _oracle(lambda request: httpx.Response(500), fallback_prices={"SOLUSDT": 190.0})
    with pytest.raises(PriceUnavailable):
        await oracle.get_price_or_fallback("DOGEUSDT")
    await oracle.close()


def test_default_fallback_table():
    oracle = PriceOracle()
    assert oracle.fallback_price("BTCUSDT") == 91000.0
    assert oracle.fallback_price("ETHUSDT") == 3400.0
    assert oracle.fallback_price("XRPUSDT") == 0.60
    assert oracle.fallback_price("ADAUSDT") == 0.55
    assert oracle.fallback_price("DOGEUSDT") is None


@pytest.mark.asyncio
async def test_rate_limit_waits_for_retry_after(no_sleep):
    attempts = {"n": 0}

    def handler(request):
        attempts["n"] += 1
        if attempts["n"] == 1:
            return httpx.Response(429, headers={"Retry-After": "2"})
        return httpx.Response(200, json={"price": "190.5"})

    oracle = _oracle(handler)
    assert await oracle.get_price("SOLUSDT") == 190.5
    await oracle.close()

    assert [call.args[0] for call in no_sleep.await_args_list] == [2.0]
