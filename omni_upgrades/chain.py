"""
omni_upgrades.chain
===================

The chain boundary: everything the orchestrator needs from a node, and nothing
more. Reading raw storage slots, creating contracts, sending a call, and a
scoped "act as this caller" construct for test networks.

`Chain` is a Protocol so tests can drive the orchestrator against an in-memory
simulator; `JsonRpcChain` is the production adapter over standard `eth_*`
JSON-RPC methods. Signing is left to the node (`eth_sendTransaction` with an
unlocked or impersonated account); gas is estimated by the node.

Impersonation
-------------
`impersonate(address)` uses the dev-node methods
`<namespace>_impersonateAccount` / `<namespace>_stopImpersonatingAccount`
(namespace "anvil" or "hardhat"). The caller is pushed for the duration of the
`with` block only and the previous caller is restored on both the success and
the failure path.
"""

from __future__ import annotations

import contextlib
import logging
import time
from typing import Any, ContextManager, Dict, Iterator, List, Optional, Protocol

from .abi import from_hex, normalize_address, to_hex
from .errors import ChainRevert, JsonRpcCode, RpcError
from .rpc import RpcClient

log = logging.getLogger(__name__)

Receipt = Dict[str, Any]


class Chain(Protocol):
    @property
    def sender(self) -> Optional[str]: ...

    def chain_id(self) -> int: ...

    def get_storage_at(self, address: str, slot: int) -> bytes: ...

    def get_code(self, address: str) -> bytes: ...

    def call(self, to: str, data: bytes) -> bytes: ...

    def deploy(self, creation_code: bytes) -> str: ...

    def transact(self, to: str, data: bytes, value: int = 0) -> Receipt: ...

    def impersonate(self, address: str) -> ContextManager[None]: ...


def _revert_payload(err: RpcError) -> bytes:
    """Dig the raw revert bytes out of the shapes nodes put in `error.data`."""
    data = err.data
    if isinstance(data, dict):
        data = data.get("data") or data.get("result")
    if isinstance(data, str) and data.startswith("0x"):
        try:
            return from_hex(data)
        except ValueError:
            return b""
    return b""


def _is_revert(err: RpcError) -> bool:
    return err.code_enum is JsonRpcCode.EXECUTION_ERROR or "revert" in err.message.lower()


class JsonRpcChain:
    """Chain adapter over a JSON-RPC node (anvil, hardhat, geth dev mode, ...)."""

    def __init__(
        self,
        rpc: RpcClient,
        *,
        sender: Optional[str] = None,
        impersonation_namespace: str = "anvil",
        poll_interval: float = 0.25,
    ) -> None:
        self._rpc = rpc
        self._default_sender = normalize_address(sender) if sender else None
        self._namespace = impersonation_namespace
        self._poll_interval = poll_interval
        self._callers: List[str] = []

    # ------------------------------------------------------------------ identity

    @property
    def sender(self) -> Optional[str]:
        if self._callers:
            return self._callers[-1]
        if self._default_sender is None:
            accounts = self._rpc.request("eth_accounts") or []
            if accounts:
                self._default_sender = normalize_address(accounts[0])
        return self._default_sender

    def chain_id(self) -> int:
        return int(str(self._rpc.request("eth_chainId")), 16)

    # ------------------------------------------------------------------ reads

    def get_storage_at(self, address: str, slot: int) -> bytes:
        word = self._rpc.request("eth_getStorageAt", [normalize_address(address), hex(slot), "latest"])
        # some nodes return a quantity ("0x0") rather than a full word
        return int(str(word), 16).to_bytes(32, "big")

    def get_code(self, address: str) -> bytes:
        return from_hex(str(self._rpc.request("eth_getCode", [normalize_address(address), "latest"])))

    def call(self, to: str, data: bytes) -> bytes:
        tx: Dict[str, Any] = {"to": normalize_address(to), "data": to_hex(data)}
        if self.sender:
            tx["from"] = self.sender
        try:
            return from_hex(str(self._rpc.request("eth_call", [tx, "latest"])))
        except RpcError as e:
            if _is_revert(e):
                raise ChainRevert(e.message, data=_revert_payload(e)) from e
            raise

    # ------------------------------------------------------------------ writes

    def deploy(self, creation_code: bytes) -> str:
        receipt = self._send({"data": to_hex(creation_code)})
        addr = receipt.get("contractAddress")
        if not addr:
            raise ChainRevert("creation receipt carries no contractAddress", tx_hash=receipt.get("transactionHash"))
        return normalize_address(addr)

    def transact(self, to: str, data: bytes, value: int = 0) -> Receipt:
        tx: Dict[str, Any] = {"to": normalize_address(to), "data": to_hex(data)}
        if value:
            tx["value"] = hex(value)
        return self._send(tx)

    @contextlib.contextmanager
    def impersonate(self, address: str) -> Iterator[None]:
        who = normalize_address(address)
        self._rpc.request(f"{self._namespace}_impersonateAccount", [who])
        self._callers.append(who)
        log.debug("chain: impersonating %s", who)
        try:
            yield
        except BaseException:
            self._callers.pop()
            try:
                self._stop_impersonating(who)
            except RpcError as stop_err:
                log.warning("chain: could not stop impersonating %s: %s", who, stop_err)
            raise
        self._callers.pop()
        self._stop_impersonating(who)

    def _stop_impersonating(self, who: str) -> None:
        self._rpc.request(f"{self._namespace}_stopImpersonatingAccount", [who])
        log.debug("chain: stopped impersonating %s", who)

    # ------------------------------------------------------------------ internals

    def _send(self, tx: Dict[str, Any]) -> Receipt:
        sender = self.sender
        if sender:
            tx = {"from": sender, **tx}
        try:
            tx_hash = str(self._rpc.request("eth_sendTransaction", [tx]))
        except RpcError as e:
            if _is_revert(e):
                raise ChainRevert(e.message, data=_revert_payload(e)) from e
            raise
        receipt = self._wait_receipt(tx_hash)
        if int(str(receipt.get("status", "0x1")), 16) == 0:
            raise ChainRevert("transaction reverted", data=self._replay_revert(tx, receipt), tx_hash=tx_hash)
        return receipt

    def _wait_receipt(self, tx_hash: str) -> Receipt:
        while True:
            receipt = self._rpc.request("eth_getTransactionReceipt", [tx_hash])
            if receipt:
                return dict(receipt)
            time.sleep(self._poll_interval)

    def _replay_revert(self, tx: Dict[str, Any], receipt: Receipt) -> bytes:
        """Re-run a mined, failed tx as eth_call at its block to recover the revert data."""
        block = receipt.get("blockNumber", "latest")
        try:
            self._rpc.request("eth_call", [tx, block])
        except RpcError as e:
            return _revert_payload(e)
        return b""


__all__ = ["Chain", "JsonRpcChain", "Receipt"]
