"""
Tests for the HTTP collaborators: wallet and model registry clients.
"""
import json

import httpx
import pytest

from pagesmith.errors import BalanceError, ConfigError, CreatorError, ErrorCode
from pagesmith.services.registry import HttpModelRegistry, StaticModelRegistry
from pagesmith.services.wallet import HttpWalletClient


def _wallet(handler, seen):
    def _wrapped(request):
        seen.append(request)
        return handler(request)

    return HttpWalletClient(base_url="https://wallet.test", api_key="w-key",
                            transport=httpx.MockTransport(_wrapped))


class TestHttpWalletClient:
    async def test_balance(self):
        seen = []
        client = _wallet(lambda r: httpx.Response(200, json={"balance": 42}), seen)
        assert await client.get_balance("u1") == 42
        assert seen[0].url.path == "/balance/u1"
        assert seen[0].headers["Authorization"] == "Bearer w-key"

    async def test_debit_returns_account_no(self):
        seen = []
        client = _wallet(lambda r: httpx.Response(200, json={"accountNo": "A-1"}), seen)
        assert await client.debit("u1", 40, {"type": "image"}) == "A-1"
        assert json.loads(seen[0].content) == {"userId": "u1", "amount": 40, "metadata": {"type": "image"}}

    async def test_debit_402_is_insufficient_balance(self):
        client = _wallet(lambda r: httpx.Response(402, json={"error": "poor"}), [])
        with pytest.raises(BalanceError) as exc:
            await client.debit("u1", 40, {})
        assert exc.value.code == ErrorCode.INSUFFICIENT_BALANCE

    async def test_credit_failure_code(self):
        client = _wallet(lambda r: httpx.Response(500, text="down"), [])
        with pytest.raises(CreatorError) as exc:
            await client.credit("u1", 40, {})
        assert exc.value.code == ErrorCode.BILLING_ROLLBACK_FAILED

    async def test_unreachable_wallet(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = _wallet(handler, [])
        with pytest.raises(CreatorError) as exc:
            await client.get_balance("u1")
        assert exc.value.code == ErrorCode.BILLING_DEDUCT_FAILED


class TestModelRegistries:
    async def test_static_registry(self):
        registry = StaticModelRegistry({"m": {"model": "gpt-x", "apiKey": "k"}})
        info = await registry.get_model_info("m")
        assert (info.model, info.provider) == ("gpt-x", "openai")
        assert await registry.get_provider_secret("m") == {"apiKey": "k", "baseUrl": None}
        with pytest.raises(ConfigError):
            await registry.get_model_info("other")

    async def test_http_registry(self):
        def handler(request):
            if request.url.path == "/models/m":
                return httpx.Response(200, json={"model": "gpt-x", "provider": "azure"})
            if request.url.path == "/models/m/secret":
                return httpx.Response(200, json={"apiKey": "k", "baseUrl": "https://b"})
            return httpx.Response(404)

        registry = HttpModelRegistry(base_url="https://registry.test", api_key="r",
                                     transport=httpx.MockTransport(handler))
        assert (await registry.get_model_info("m")).provider == "azure"
        assert (await registry.get_provider_secret("m"))["baseUrl"] == "https://b"
        with pytest.raises(ConfigError):
            await registry.get_model_info("missing")
