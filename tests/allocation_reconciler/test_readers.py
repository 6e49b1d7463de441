"""
Tests for the JSON-RPC readers.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from allocation_reconciler import JsonRpcClient, JsonRpcStrategyBalanceReader, JsonRpcVaultReader
from allocation_reconciler.readers import (
    SELECTOR_BALANCE_OF,
    SELECTOR_BALANCE_OF_SELF,
    decode_uint,
    encode_address,
    encode_uint,
)
from core.exceptions import ChainReadError

from conftest import ALICE, CONSERVATIVE_VAULT


STRATEGY = "0x" + "5a" * 20


def word(value: int) -> str:
    return "0x" + format(value, "064x")


class TestAbiHelpers:

    def test_encode_address(self):
        encoded = encode_address(ALICE)
        assert len(encoded) == 64
        assert encoded.endswith(ALICE[2:])

    def test_encode_uint_range(self):
        assert encode_uint(255) == "0" * 62 + "ff"
        with pytest.raises(ValueError):
            encode_uint(-1)
        with pytest.raises(ValueError):
            encode_uint(2 ** 256)

    def test_decode_uint(self):
        assert decode_uint(word(10 ** 30)) == 10 ** 30
        with pytest.raises(ChainReadError):
            decode_uint("0x")
        with pytest.raises(ChainReadError):
            decode_uint("0xzz")


class TestReaders:

    @pytest.fixture
    def client(self):
        return AsyncMock(spec=JsonRpcClient)

    @pytest.mark.asyncio
    async def test_strategy_balances(self, client):
        client.eth_call.return_value = word(1234)
        reader = JsonRpcStrategyBalanceReader(client, {CONSERVATIVE_VAULT: {"aave": STRATEGY}})

        balances = await reader.read_balances(CONSERVATIVE_VAULT, ["aave"])

        assert balances == {"aave": 1234}
        client.eth_call.assert_awaited_once_with(STRATEGY, SELECTOR_BALANCE_OF_SELF)

    @pytest.mark.asyncio
    async def test_unconfigured_strategy(self, client):
        reader = JsonRpcStrategyBalanceReader(client, {})
        with pytest.raises(ChainReadError):
            await reader.read_balances(CONSERVATIVE_VAULT, ["aave"])

    @pytest.mark.asyncio
    async def test_vault_reads(self, client):
        client.eth_call.side_effect = [word(500), word(520)]
        reader = JsonRpcVaultReader(client)

        shares = await reader.balance_of(CONSERVATIVE_VAULT, ALICE)
        assets = await reader.convert_to_assets(CONSERVATIVE_VAULT, shares)

        assert (shares, assets) == (500, 520)
        first_call = client.eth_call.await_args_list[0]
        assert first_call.args == (CONSERVATIVE_VAULT, SELECTOR_BALANCE_OF + encode_address(ALICE))

    @pytest.mark.asyncio
    async def test_zero_shares_skip_call(self, client):
        assert await JsonRpcVaultReader(client).convert_to_assets(CONSERVATIVE_VAULT, 0) == 0
        client.eth_call.assert_not_awaited()


class TestJsonRpcClient:

    def make_session(self, status=200, payload=None):
        response = MagicMock()
        response.status = status
        response.json = AsyncMock(return_value=payload)
        response.text = AsyncMock(return_value="bad gateway")
        session = MagicMock()
        session.closed = False
        session.post.return_value.__aenter__.return_value = response
        return session

    @pytest.mark.asyncio
    async def test_call_returns_result(self):
        session = self.make_session(payload={"jsonrpc": "2.0", "id": 1, "result": "0x1"})
        client = JsonRpcClient("http://rpc", session=session)

        assert await client.eth_call(CONSERVATIVE_VAULT, "0x00") == "0x1"
        payload = session.post.call_args.kwargs["json"]
        assert payload["method"] == "eth_call"
        assert payload["params"][1] == "latest"

    @pytest.mark.asyncio
    async def test_rpc_error(self):
        session = self.make_session(payload={"error": {"code": -32000, "message": "reverted"}})
        client = JsonRpcClient("http://rpc", session=session)

        with pytest.raises(ChainReadError):
            await client.call("eth_call", [])

    @pytest.mark.asyncio
    async def test_http_error(self):
        client = JsonRpcClient("http://rpc", session=self.make_session(status=502))

        with pytest.raises(ChainReadError) as exc_info:
            await client.call("eth_call", [])
        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_injected_session_not_closed(self):
        session = self.make_session()
        session.close = AsyncMock()
        client = JsonRpcClient("http://rpc", session=session)

        await client.close()

        session.close.assert_not_awaited()
