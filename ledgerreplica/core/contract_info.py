"""
Contract metadata resolution for LedgerReplica.

Contract accounts are decorated with token metadata (name, symbol, decimals, total
supply) and a contract type. Metadata is read over JSON-RPC ``eth_call`` against an EVM
endpoint; the null resolver is used when no endpoint is configured.
"""

import itertools
import logging
from typing import Any

import httpx
from eth_abi import decode as abi_decode, encode as abi_encode
from eth_abi.exceptions import DecodingError as AbiDecodingError

from ledgerreplica.core.types import ContractType

logger = logging.getLogger(__name__)

NAME_SELECTOR = "0x06fdde03"
SYMBOL_SELECTOR = "0x95d89b41"
DECIMALS_SELECTOR = "0x313ce567"
TOTAL_SUPPLY_SELECTOR = "0x18160ddd"
SUPPORTS_INTERFACE_SELECTOR = "0x01ffc9a7"

ERC721_INTERFACE_ID = bytes.fromhex("80ac58cd")
ERC1155_INTERFACE_ID = bytes.fromhex("d9b67a26")


class ContractInfoResolver:
    """Resolves (contract_info, contract_type) for a contract address."""

    async def resolve(self, address: str) -> tuple[dict[str, Any], ContractType]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class NullContractInfoResolver(ContractInfoResolver):
    """Resolver used when contract metadata decoding is disabled or unreachable."""

    async def resolve(self, address: str) -> tuple[dict[str, Any], ContractType]:
        return {}, ContractType.GENERIC


class RpcContractInfoResolver(ContractInfoResolver):
    """
    Resolve contract metadata with ``eth_call`` over JSON-RPC.

    Args:
        rpc_url: EVM JSON-RPC endpoint
        timeout: Per-call timeout in seconds
        client: Optional pre-built httpx.AsyncClient (used by tests)
    """

    def __init__(self, rpc_url: str, timeout: float = 10.0, client: httpx.AsyncClient | None = None):
        self.rpc_url = rpc_url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._ids = itertools.count(1)

    async def _eth_call(self, address: str, data: str) -> bytes | None:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": "eth_call",
            "params": [{"to": address, "data": data}, "latest"],
        }
        try:
            response = await self._client.post(self.rpc_url, json=payload)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"eth_call {data[:10]} on {address} failed: {e}")
            return None
        result = body.get("result") if isinstance(body, dict) else None
        if not isinstance(result, str) or result in ("", "0x"):
            return None
        try:
            return bytes.fromhex(result[2:] if result.startswith("0x") else result)
        except ValueError:
            logger.warning(f"eth_call {data[:10]} on {address} returned a non-hex result")
            return None

    async def _call_typed(self, address: str, selector: str, abi_type: str) -> Any:
        raw = await self._eth_call(address, selector)
        if raw is None:
            return None
        try:
            (value,) = abi_decode([abi_type], raw)
        except (AbiDecodingError, ValueError) as e:
            logger.debug(f"Unable to decode {selector} result of {address} as {abi_type}: {e}")
            return None
        return value

    async def _supports_interface(self, address: str, interface_id: bytes) -> bool:
        data = SUPPORTS_INTERFACE_SELECTOR + abi_encode(["bytes4"], [interface_id]).hex()
        return bool(await self._call_typed(address, data, "bool"))

    async def resolve(self, address: str) -> tuple[dict[str, Any], ContractType]:
        info: dict[str, Any] = {}
        name = await self._call_typed(address, NAME_SELECTOR, "string")
        symbol = await self._call_typed(address, SYMBOL_SELECTOR, "string")
        decimals = await self._call_typed(address, DECIMALS_SELECTOR, "uint8")
        total_supply = await self._call_typed(address, TOTAL_SUPPLY_SELECTOR, "uint256")
        if name is not None:
            info["name"] = name
        if symbol is not None:
            info["symbol"] = symbol
        if decimals is not None:
            info["decimals"] = str(decimals)
        if total_supply is not None:
            info["totalSupply"] = str(total_supply)

        if await self._supports_interface(address, ERC1155_INTERFACE_ID):
            contract_type = ContractType.ERC_1155
        elif await self._supports_interface(address, ERC721_INTERFACE_ID):
            contract_type = ContractType.ERC_721
        elif decimals is not None and total_supply is not None:
            contract_type = ContractType.ERC_20
        else:
            contract_type = ContractType.GENERIC
        logger.debug(f"Resolved contract {address}: {contract_type.name} {info}")
        return info, contract_type

    async def close(self) -> None:
        await self._client.aclose()


def create_contract_info_resolver(config) -> ContractInfoResolver:
    """Pick the resolver for the configured EVM endpoint."""
    if config.DECODE_CONTRACT_INFO and config.EVM_RPC_URL:
        return RpcContractInfoResolver(config.EVM_RPC_URL)
    return NullContractInfoResolver()
