"""Unit tests for contract metadata resolution over JSON-RPC."""

import json

import httpx
import pytest
from eth_abi import encode as abi_encode

from ledgerreplica.core.contract_info import (
    DECIMALS_SELECTOR,
    NAME_SELECTOR,
    SYMBOL_SELECTOR,
    TOTAL_SUPPLY_SELECTOR,
    NullContractInfoResolver,
    RpcContractInfoResolver,
)
from ledgerreplica.core.types import ContractType

TOKEN = "0x3333333333333333333333333333333333333333"


def _resolver(handler) -> RpcContractInfoResolver:
    return RpcContractInfoResolver("http://rpc.test",
                                   client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def _result(data: bytes) -> dict:
    return {"jsonrpc": "2.0", "id": 1, "result": "0x" + data.hex()}


@pytest.mark.asyncio
async def test_erc20_metadata():
    answers = {
        NAME_SELECTOR: abi_encode(["string"], ["Token"]),
        SYMBOL_SELECTOR: abi_encode(["string"], ["TKN"]),
        DECIMALS_SELECTOR: abi_encode(["uint8"], [18]),
        TOTAL_SUPPLY_SELECTOR: abi_encode(["uint256"], [10 ** 21]),
    }

    def handler(request):
        call = json.loads(request.content)["params"][0]
        return httpx.Response(200, json=_result(answers.get(call["data"], abi_encode(["bool"], [False]))))

    resolver = _resolver(handler)
    info, contract_type = await resolver.resolve(TOKEN)
    await resolver.close()

    assert contract_type is ContractType.ERC_20
    assert info == {"name": "Token", "symbol": "TKN", "decimals": "18", "totalSupply": str(10 ** 21)}


@pytest.mark.parametrize("status, body", [
    (200, {"json": []}),
    (200, {"json": {"result": "0xabc"}}),
    (200, {"json": {"result": "0xzz"}}),
    (200, {"json": {"result": 12}}),
    (200, {"content": b"not json"}),
    (500, {"json": {"error": "down"}}),
])
@pytest.mark.asyncio
async def test_misbehaving_endpoint_yields_generic_contract(status, body):
    resolver = _resolver(lambda request: httpx.Response(status, **body))
    info, contract_type = await resolver.resolve(TOKEN)
    await resolver.close()

    assert info == {}
    assert contract_type is ContractType.GENERIC


@pytest.mark.asyncio
async def test_null_resolver():
    info, contract_type = await NullContractInfoResolver().resolve(TOKEN)
    assert info == {}
    assert contract_type is ContractType.GENERIC
