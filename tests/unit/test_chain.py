from __future__ import annotations

import json

import httpx
import pytest

from omni_upgrades.abi import OWNABLE_UNAUTHORIZED, encode_args
from omni_upgrades.chain import JsonRpcChain
from omni_upgrades.errors import ChainRevert, JsonRpcCode, RpcError
from omni_upgrades.introspect import IMPLEMENTATION_SLOT
from omni_upgrades.rpc import RpcClient

DEPLOYER = "0x" + "11" * 20
TARGET = "0x" + "22" * 20
MALLORY = "0x" + "33" * 20
CREATED = "0x" + "44" * 20


class Node:
    """Scripted JSON-RPC node; `handlers` maps method -> callable(params) -> result or raises."""

    def __init__(self, **handlers):
        self.handlers = handlers
        self.calls = []
        self.status = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        method, params = body["method"], body["params"]
        self.calls.append((method, params))
        if method in self.status:
            return httpx.Response(self.status.pop(method))
        handler = self.handlers.get(method)
        if handler is None:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": None})
        try:
            result = handler(params)
        except RpcError as e:
            return httpx.Response(
                200,
                json={
                    "jsonrpc": "2.0",
                    "id": body["id"],
                    "error": {"code": e.code, "message": e.message, "data": e.data},
                },
            )
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    def methods(self):
        return [m for m, _ in self.calls]


def _chain(node, **kw):
    rpc = RpcClient("http://node.test", transport=httpx.MockTransport(node), backoff_base=0, backoff_jitter=0)
    return JsonRpcChain(rpc, poll_interval=0, **kw)


def _receipt(status="0x1", **extra):
    return {"status": status, "transactionHash": "0xabc", "blockNumber": "0x5", **extra}


def test_storage_read_is_padded_to_a_word():
    node = Node(eth_getStorageAt=lambda p: "0x" + "44" * 20)
    word = _chain(node, sender=DEPLOYER).get_storage_at(TARGET, IMPLEMENTATION_SLOT)
    assert word == b"\x00" * 12 + b"\x44" * 20
    assert node.calls[0] == ("eth_getStorageAt", [TARGET, hex(IMPLEMENTATION_SLOT), "latest"])


def test_storage_read_accepts_a_quantity():
    node = Node(eth_getStorageAt=lambda p: "0x0")
    assert _chain(node).get_storage_at(TARGET, 0) == b"\x00" * 32


def test_chain_id_and_default_sender_from_node():
    node = Node(eth_chainId=lambda p: "0x7a69", eth_accounts=lambda p: [DEPLOYER])
    chain = _chain(node)
    assert chain.chain_id() == 31337
    assert chain.sender == DEPLOYER
    assert chain.sender == DEPLOYER
    assert node.methods().count("eth_accounts") == 1


def test_deploy_returns_the_created_address():
    node = Node(
        eth_sendTransaction=lambda p: "0xabc",
        eth_getTransactionReceipt=lambda p: _receipt(contractAddress=CREATED),
    )
    assert _chain(node, sender=DEPLOYER).deploy(b"\x60\x80") == CREATED
    _, params = node.calls[0]
    assert params == [{"from": DEPLOYER, "data": "0x6080"}]


def test_receipt_is_polled_until_mined():
    pending = iter([None, None, _receipt()])
    node = Node(eth_sendTransaction=lambda p: "0xabc", eth_getTransactionReceipt=lambda p: next(pending))
    receipt = _chain(node, sender=DEPLOYER).transact(TARGET, b"\x01")
    assert receipt["status"] == "0x1"
    assert node.methods().count("eth_getTransactionReceipt") == 3


def _reverting(params):
    data = "0x" + (OWNABLE_UNAUTHORIZED + encode_args(["address"], [MALLORY])).hex()
    raise RpcError(code=JsonRpcCode.EXECUTION_ERROR, message="execution reverted", data=data)


def test_revert_on_send_carries_the_payload():
    node = Node(eth_sendTransaction=_reverting)
    with pytest.raises(ChainRevert) as ei:
        _chain(node, sender=DEPLOYER).transact(TARGET, b"\x01")
    assert ei.value.data[:4] == OWNABLE_UNAUTHORIZED


def test_mined_failure_is_replayed_for_its_revert_data():
    node = Node(
        eth_sendTransaction=lambda p: "0xabc",
        eth_getTransactionReceipt=lambda p: _receipt(status="0x0"),
        eth_call=_reverting,
    )
    with pytest.raises(ChainRevert) as ei:
        _chain(node, sender=DEPLOYER).transact(TARGET, b"\x01")
    assert ei.value.tx_hash == "0xabc"
    assert ei.value.data[:4] == OWNABLE_UNAUTHORIZED
    assert node.calls[-1][1][1] == "0x5"


def test_non_revert_rpc_errors_propagate():
    def boom(params):
        raise RpcError(code=JsonRpcCode.INVALID_PARAMS, message="bad params")

    node = Node(eth_call=boom)
    with pytest.raises(RpcError):
        _chain(node, sender=DEPLOYER).call(TARGET, b"")


def test_impersonation_is_scoped_and_restored_on_failure():
    node = Node(eth_sendTransaction=_reverting)
    chain = _chain(node, sender=DEPLOYER)
    with pytest.raises(ChainRevert):
        with chain.impersonate(MALLORY):
            assert chain.sender == MALLORY
            chain.transact(TARGET, b"\x01")
    assert chain.sender == DEPLOYER
    assert node.methods() == ["anvil_impersonateAccount", "eth_sendTransaction", "anvil_stopImpersonatingAccount"]
    assert node.calls[1][1][0]["from"] == MALLORY


def test_failing_stop_does_not_hide_the_revert(caplog):
    def stop(params):
        raise RpcError(code=JsonRpcCode.METHOD_NOT_FOUND, message="method not found")

    node = Node(eth_sendTransaction=_reverting, anvil_stopImpersonatingAccount=stop)
    chain = _chain(node, sender=DEPLOYER)
    with pytest.raises(ChainRevert):
        with chain.impersonate(MALLORY):
            chain.transact(TARGET, b"\x01")
    assert chain.sender == DEPLOYER
    assert "could not stop impersonating" in caplog.text


def test_failing_stop_after_a_clean_body_is_raised():
    def stop(params):
        raise RpcError(code=JsonRpcCode.METHOD_NOT_FOUND, message="method not found")

    node = Node(anvil_stopImpersonatingAccount=stop)
    chain = _chain(node, sender=DEPLOYER)
    with pytest.raises(RpcError):
        with chain.impersonate(MALLORY):
            pass
    assert chain.sender == DEPLOYER


def test_execution_error_code_is_a_revert_whatever_the_message():
    def custom(params):
        raise RpcError(code=JsonRpcCode.EXECUTION_ERROR, message="custom error 0x118cdaa7", data="0x118cdaa7")

    node = Node(eth_call=custom)
    with pytest.raises(ChainRevert) as ei:
        _chain(node, sender=DEPLOYER).call(TARGET, b"")
    assert ei.value.data == bytes.fromhex("118cdaa7")


def test_hardhat_namespace():
    node = Node()
    chain = _chain(node, sender=DEPLOYER, impersonation_namespace="hardhat")
    with chain.impersonate(MALLORY):
        pass
    assert node.methods() == ["hardhat_impersonateAccount", "hardhat_stopImpersonatingAccount"]


def test_transient_http_status_is_retried():
    node = Node(eth_chainId=lambda p: "0x1")
    node.status["eth_chainId"] = 503
    assert _chain(node).chain_id() == 1
    assert node.methods() == ["eth_chainId", "eth_chainId"]


def test_retries_are_bounded():
    def always_busy(request):
        return httpx.Response(429)

    transport = httpx.MockTransport(always_busy)
    rpc = RpcClient("http://node.test", max_retries=2, transport=transport, backoff_base=0, backoff_jitter=0)
    with pytest.raises(RpcError) as ei:
        rpc.request("eth_chainId")
    assert ei.value.code == JsonRpcCode.TRANSPORT
