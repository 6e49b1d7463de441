"""
Allocation Reconciler - On-chain Readers.

============================================================
PURPOSE
============================================================
Read-only access to on-chain balances over JSON-RPC.

- StrategyBalanceReader: realized balance per strategy
- VaultReader: balanceOf(user) and convertToAssets(shares) on a vault

Readers never write on-chain and never retry; retry policy belongs
to the caller.

============================================================
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import aiohttp

from core.exceptions import ChainReadError
from core.types import normalize_address


logger = logging.getLogger(__name__)


# Function selectors
SELECTOR_BALANCE_OF_SELF = "0x722713f7"      # balanceOf()
SELECTOR_BALANCE_OF = "0x70a08231"           # balanceOf(address)
SELECTOR_CONVERT_TO_ASSETS = "0x07a2d13a"    # convertToAssets(uint256)


def encode_address(address: str) -> str:
    """ABI-encode an address argument (32-byte word, no 0x)."""
    return normalize_address(address)[2:].rjust(64, "0")


def encode_uint(value: int) -> str:
    """ABI-encode a uint256 argument (32-byte word, no 0x)."""
    if value < 0 or value >= 2 ** 256:
        raise ValueError(f"uint256 out of range: {value}")
    return format(value, "x").rjust(64, "0")


def decode_uint(result: Optional[str]) -> int:
    """Decode a single uint256 return value."""
    if not result or result == "0x":
        raise ChainReadError("Empty eth_call result", method="eth_call")
    try:
        return int(result, 16)
    except (TypeError, ValueError) as e:
        raise ChainReadError(f"Invalid eth_call result: {result!r}", method="eth_call", cause=e)


# ============================================================
# JSON-RPC CLIENT
# ============================================================

class JsonRpcClient:
    """
    Minimal async JSON-RPC client.

    Owns its aiohttp session unless one is injected.
    """

    DEFAULT_TIMEOUT = 12.0

    def __init__(
        self,
        url: str,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._url = url
        self._timeout = timeout
        self._session = session
        self._owns_session = session is None
        self._id = 0

    async def __aenter__(self) -> "JsonRpcClient":
        await self._get_session()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session and self._owns_session and not self._session.closed:
            await self._session.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
                headers={"Content-Type": "application/json"},
            )
            self._owns_session = True
        return self._session

    async def call(self, method: str, params: List[Any]) -> Any:
        """
        Issue one JSON-RPC request.

        Raises:
            ChainReadError: Transport failure, HTTP error or RPC error
        """
        session = await self._get_session()
        self._id += 1
        payload = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params}

        try:
            async with session.post(self._url, json=payload) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise ChainReadError(
                        f"HTTP {response.status} from RPC: {body[:200]}",
                        method=method,
                        status_code=response.status,
                    )
                data = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise ChainReadError(f"Connection error: {e}", method=method, cause=e)
        except asyncio.TimeoutError as e:
            raise ChainReadError("RPC request timed out", method=method, cause=e)

        if "error" in data:
            raise ChainReadError(f"RPC error: {data['error']}", method=method)
        return data.get("result")

    async def eth_call(self, to: str, data: str, block: str = "latest") -> str:
        return await self.call("eth_call", [{"to": to, "data": data}, block])


# ============================================================
# STRATEGY BALANCES
# ============================================================

class StrategyBalanceReader(ABC):
    """Source of realized per-strategy balances."""

    @abstractmethod
    async def read_balances(self, vault_address: str, strategy_ids: List[str]) -> Dict[str, int]:
        """
        Read the realized balance of each strategy.

        Raises:
            Exception: Any failure; the reconciler treats it as a
                failed read attempt
        """
        pass


class JsonRpcStrategyBalanceReader(StrategyBalanceReader):
    """Reads balanceOf() on each strategy contract."""

    def __init__(self, client: JsonRpcClient, strategy_contracts: Dict[str, Dict[str, str]]):
        """
        Args:
            client: JSON-RPC client
            strategy_contracts: vault address -> {strategy_id: contract}
        """
        self._client = client
        self._contracts = {
            normalize_address(vault): {k: normalize_address(v) for k, v in strategies.items()}
            for vault, strategies in strategy_contracts.items()
        }

    async def read_balances(self, vault_address: str, strategy_ids: List[str]) -> Dict[str, int]:
        contracts = self._contracts.get(normalize_address(vault_address), {})
        balances: Dict[str, int] = {}
        for strategy_id in strategy_ids:
            contract = contracts.get(strategy_id)
            if contract is None:
                raise ChainReadError(f"No contract configured for strategy {strategy_id}")
            result = await self._client.eth_call(contract, SELECTOR_BALANCE_OF_SELF)
            balances[strategy_id] = decode_uint(result)
        logger.debug(f"Strategy balances for {vault_address}: {balances}")
        return balances


# ============================================================
# VAULT READS
# ============================================================

class VaultReader(ABC):
    """Authoritative vault state for position re-sync."""

    @abstractmethod
    async def balance_of(self, vault_address: str, user: str) -> int:
        """Share balance of a user."""
        pass

    @abstractmethod
    async def convert_to_assets(self, vault_address: str, shares: int) -> int:
        """Asset value of a share amount."""
        pass


class JsonRpcVaultReader(VaultReader):
    """ERC-4626 reads over JSON-RPC."""

    def __init__(self, client: JsonRpcClient):
        self._client = client

    async def balance_of(self, vault_address: str, user: str) -> int:
        data = SELECTOR_BALANCE_OF + encode_address(user)
        return decode_uint(await self._client.eth_call(normalize_address(vault_address), data))

    async def convert_to_assets(self, vault_address: str, shares: int) -> int:
        if shares == 0:
            return 0
        data = SELECTOR_CONVERT_TO_ASSETS + encode_uint(shares)
        return decode_uint(await self._client.eth_call(normalize_address(vault_address), data))
