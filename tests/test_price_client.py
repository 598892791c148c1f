import httpx
import pytest

from ledger_mirror.api.prices import PriceClient
from ledger_mirror.errors import PriceFetchError

PUMP_MINT = "7GCihgDB8fe6KNjn2MYtkzZcRjQy3t9GHdC8uHYmpump"
PLAIN_MINT = "So11111111111111111111111111111111111111112"


@pytest.fixture(autouse=True)
def no_optional_sources(monkeypatch):
    monkeypatch.delenv("HELIUS_RPC_URL", raising=False)
    monkeypatch.delenv("BIRDEYE_API_KEY", raising=False)


def _client(handler, **kwargs) -> PriceClient:
    return PriceClient(transport=httpx.MockTransport(handler), **kwargs)


def _dexscreener(price="0.00123"):
    return {"pairs": [
        {"priceUsd": "0.5", "liquidity": {"usd": 10}},
        {"priceUsd": price, "liquidity": {"usd": 50_000}},
    ]}


@pytest.mark.asyncio
async def test_pump_mints_prefer_dexscreener():
    hosts = []

    def handler(request):
        hosts.append(request.url.host)
        return httpx.Response(200, json=_dexscreener())

    async with _client(handler) as client:
        price = await client.fetch_token_price_usd(PUMP_MINT)

    assert price == pytest.approx(0.00123)
    assert hosts == ["api.dexscreener.com"]


@pytest.mark.asyncio
async def test_other_mints_prefer_jupiter_then_fall_back():
    hosts = []

    def handler(request):
        hosts.append(request.url.host)
        if request.url.host == "api.jup.ag":
            assert request.url.params["ids"] == PLAIN_MINT
            return httpx.Response(200, json={"data": {PLAIN_MINT: None}})
        return httpx.Response(200, json=_dexscreener("142.5"))

    async with _client(handler) as client:
        price = await client.fetch_token_price_usd(PLAIN_MINT)

    assert price == 142.5
    assert hosts == ["api.jup.ag", "api.dexscreener.com"]


@pytest.mark.asyncio
async def test_optional_sources_are_tried_last():
    seen = []

    def handler(request):
        seen.append(request.url.host)
        if request.url.host == "public-api.birdeye.so":
            assert request.headers["X-API-KEY"] == "secret"
            return httpx.Response(200, json={"data": {"value": 0.02}})
        if request.url.host == "rpc.example.test":
            return httpx.Response(200, json={"result": {"token_info": {}}})
        return httpx.Response(200, json={})

    async with _client(handler, helius_url="https://rpc.example.test", birdeye_api_key="secret") as client:
        price = await client.fetch_token_price_usd(PLAIN_MINT)

    assert price == 0.02
    assert seen == ["api.jup.ag", "api.dexscreener.com", "rpc.example.test", "public-api.birdeye.so"]


@pytest.mark.asyncio
async def test_no_price_anywhere_returns_none():
    async with _client(lambda request: httpx.Response(200, json={})) as client:
        assert await client.fetch_token_price_usd(PLAIN_MINT) is None


@pytest.mark.asyncio
async def test_every_source_failing_raises():
    async with _client(lambda request: httpx.Response(503)) as client:
        with pytest.raises(PriceFetchError):
            await client.fetch_token_price_usd(PUMP_MINT)


@pytest.mark.asyncio
async def test_client_requires_context_manager():
    with pytest.raises(RuntimeError):
        await PriceClient().fetch_token_price_usd(PLAIN_MINT)
