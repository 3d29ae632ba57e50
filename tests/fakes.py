# -*- coding: utf-8 -*-
"""
tests.fakes
===========

In-memory stand-ins for the orchestrator's collaborators.

- `FakeChain` implements the `omni_upgrades.chain.Chain` protocol with just
  enough EVM-like behaviour for the OpenZeppelin v5 proxy building blocks:
  ERC1967Proxy, TransparentUpgradeableProxy (+ its own ProxyAdmin),
  UpgradeableBeacon and BeaconProxy, plus a few Ownable/Initializable
  implementations (Greeter, GreeterV2, Exploding). Proxies keep their metadata
  in the real ERC-1967 slots so introspection reads the same words it would on
  a node. Every deploy/transact is atomic: a revert restores all state.
- `StubValidator` implements `Validator` with canned verdicts and records every
  request it receives.
- `write_artifact` writes Foundry-shaped build artifacts whose creation code
  `FakeChain` knows how to instantiate.

This is NOT an EVM. Contract "code" is a 32-byte tag derived from the contract
name; constructor arguments are whatever follows it.
"""
from __future__ import annotations

import contextlib
import copy
import hashlib
import json
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple, Type

from omni_upgrades.abi import (
    ERROR_STRING,
    OWNABLE_UNAUTHORIZED,
    PROXY_DENIED_ADMIN_ACCESS,
    ZERO_ADDRESS,
    decode_args,
    encode_args,
    from_hex,
    function_selector as sel,
    normalize_address,
)
from omni_upgrades.errors import ChainRevert
from omni_upgrades.introspect import ADMIN_SLOT, BEACON_SLOT, IMPLEMENTATION_SLOT, slot_to_address
from omni_upgrades.validation import Diagnostic, Severity, ValidationRequest, ValidationResult

ZERO_WORD = b"\x00" * 32
UPGRADE_INTERFACE_VERSION = "5.0.0"


def det_address(tag: str) -> str:
    """Stable 20-byte hex address (0x...) from a tag."""
    return "0x" + hashlib.sha3_256(tag.encode("utf-8")).hexdigest()[:40]


def creation_code(name: str) -> bytes:
    return hashlib.sha3_256(b"creation|" + name.encode("utf-8")).digest()


def runtime_code(name: str) -> bytes:
    return hashlib.sha3_256(b"runtime|" + name.encode("utf-8")).digest()


def address_word(addr: str) -> bytes:
    return b"\x00" * 12 + from_hex(normalize_address(addr))


def error_string(message: str) -> bytes:
    return ERROR_STRING + encode_args(["string"], [message])


def revert(data: bytes = b"", message: str = "execution reverted") -> None:
    raise ChainRevert(message, data=data)


# --- simulated contracts ------------------------------------------------------


class FakeContract:
    def __init__(self, chain: "FakeChain", address: str, name: str) -> None:
        self.chain = chain
        self.address = address
        self.name = name
        self.code = runtime_code(name)
        self.storage: Dict[int, bytes] = {}
        self.state: Dict[str, Any] = {}

    def construct(self, sender: str, args: bytes) -> None:
        if args:
            revert(error_string(f"{self.name} takes no constructor arguments"))

    def handle(self, sender: str, data: bytes) -> bytes:
        revert()
        return b""  # pragma: no cover

    def slot_address(self, slot: int) -> str:
        return slot_to_address(self.storage.get(slot, ZERO_WORD))


class GreeterLogic(FakeContract):
    """Ownable + Initializable + UUPSUpgradeable implementation."""

    def run(self, host: FakeContract, sender: str, data: bytes) -> bytes:
        s, body = data[:4], data[4:]
        if s == sel("initialize(string)"):
            if host.state.get("initialized"):
                revert(sel("InvalidInitialization()"))
            (greeting,) = decode_args(["string"], body)
            host.state.update(initialized=True, greeting=greeting, owner=sender)
            return b""
        if s == sel("greeting()"):
            return encode_args(["string"], [host.state.get("greeting", "")])
        if s == sel("owner()"):
            return encode_args(["address"], [host.state.get("owner", ZERO_ADDRESS)])
        if s == sel("UPGRADE_INTERFACE_VERSION()"):
            return encode_args(["string"], [UPGRADE_INTERFACE_VERSION])
        if s == sel("proxiableUUID()"):
            if host is not self:
                revert(sel("UUPSUnauthorizedCallContext()"))
            return encode_args(["uint256"], [IMPLEMENTATION_SLOT])
        if s == sel("upgradeToAndCall(address,bytes)"):
            if sender != host.state.get("owner"):
                revert(OWNABLE_UNAUTHORIZED + encode_args(["address"], [sender]))
            impl, payload = decode_args(["address", "bytes"], body)
            logic = self.chain.logic_at(impl)
            host.storage[IMPLEMENTATION_SLOT] = address_word(impl)
            if payload:
                logic.run(host, sender, payload)
            return b""
        return self.extra(host, sender, s, body)

    def extra(self, host: FakeContract, sender: str, s: bytes, body: bytes) -> bytes:
        revert()
        return b""  # pragma: no cover

    def handle(self, sender: str, data: bytes) -> bytes:
        return self.run(self, sender, data)


class GreeterV2Logic(GreeterLogic):
    def extra(self, host: FakeContract, sender: str, s: bytes, body: bytes) -> bytes:
        if s == sel("resetGreeting()"):
            host.state["greeting"] = ""
            return b""
        if s == sel("version()"):
            return encode_args(["uint256"], [2])
        return super().extra(host, sender, s, body)


class ExplodingLogic(GreeterLogic):
    def run(self, host: FakeContract, sender: str, data: bytes) -> bytes:
        if data[:4] == sel("initialize(string)"):
            revert(error_string("boom"))
        return super().run(host, sender, data)


class ERC1967ProxyContract(FakeContract):
    def construct(self, sender: str, args: bytes) -> None:
        impl, data = decode_args(["address", "bytes"], args)
        self.chain.logic_at(impl)
        self.storage[IMPLEMENTATION_SLOT] = address_word(impl)
        if data:
            self.delegate(sender, data)

    def implementation(self) -> str:
        return self.slot_address(IMPLEMENTATION_SLOT)

    def delegate(self, sender: str, data: bytes) -> bytes:
        return self.chain.logic_at(self.implementation()).run(self, sender, data)

    def handle(self, sender: str, data: bytes) -> bytes:
        return self.delegate(sender, data)


class TransparentProxyContract(ERC1967ProxyContract):
    def construct(self, sender: str, args: bytes) -> None:
        logic, owner, data = decode_args(["address", "address", "bytes"], args)
        admin = self.chain.create("ProxyAdmin", ProxyAdminContract, self.address, encode_args(["address"], [owner]))
        self.storage[ADMIN_SLOT] = address_word(admin.address)
        super().construct(sender, encode_args(["address", "bytes"], [logic, data]))

    def handle(self, sender: str, data: bytes) -> bytes:
        if sender == self.slot_address(ADMIN_SLOT):
            if data[:4] != sel("upgradeToAndCall(address,bytes)"):
                revert(PROXY_DENIED_ADMIN_ACCESS)
            impl, payload = decode_args(["address", "bytes"], data[4:])
            self.chain.logic_at(impl)
            self.storage[IMPLEMENTATION_SLOT] = address_word(impl)
            if payload:
                self.delegate(sender, payload)
            return b""
        return self.delegate(sender, data)


class OwnableContract(FakeContract):
    def only_owner(self, sender: str) -> None:
        if sender != self.state.get("owner"):
            revert(OWNABLE_UNAUTHORIZED + encode_args(["address"], [sender]))

    def handle_owner(self, s: bytes) -> Optional[bytes]:
        if s == sel("owner()"):
            return encode_args(["address"], [self.state["owner"]])
        return None


class ProxyAdminContract(OwnableContract):
    def construct(self, sender: str, args: bytes) -> None:
        (owner,) = decode_args(["address"], args)
        self.state["owner"] = owner

    def handle(self, sender: str, data: bytes) -> bytes:
        s, body = data[:4], data[4:]
        out = self.handle_owner(s)
        if out is not None:
            return out
        if s == sel("UPGRADE_INTERFACE_VERSION()"):
            return encode_args(["string"], [UPGRADE_INTERFACE_VERSION])
        if s == sel("upgradeAndCall(address,address,bytes)"):
            self.only_owner(sender)
            proxy, impl, payload = decode_args(["address", "address", "bytes"], body)
            call = sel("upgradeToAndCall(address,bytes)") + encode_args(["address", "bytes"], [impl, payload])
            return self.chain.execute(self.address, proxy, call)
        revert()
        return b""  # pragma: no cover


class UpgradeableBeaconContract(OwnableContract):
    def construct(self, sender: str, args: bytes) -> None:
        impl, owner = decode_args(["address", "address"], args)
        self.chain.logic_at(impl)
        self.state.update(implementation=impl, owner=owner)

    def handle(self, sender: str, data: bytes) -> bytes:
        s, body = data[:4], data[4:]
        out = self.handle_owner(s)
        if out is not None:
            return out
        if s == sel("implementation()"):
            return encode_args(["address"], [self.state["implementation"]])
        if s == sel("upgradeTo(address)"):
            self.only_owner(sender)
            (impl,) = decode_args(["address"], body)
            self.chain.logic_at(impl)
            self.state["implementation"] = impl
            return b""
        revert()
        return b""  # pragma: no cover


class BeaconProxyContract(FakeContract):
    def construct(self, sender: str, args: bytes) -> None:
        beacon, data = decode_args(["address", "bytes"], args)
        self.storage[BEACON_SLOT] = address_word(beacon)
        if data:
            self.handle(sender, data)

    def handle(self, sender: str, data: bytes) -> bytes:
        beacon = self.chain.contracts[self.slot_address(BEACON_SLOT)]
        return self.chain.logic_at(beacon.state["implementation"]).run(self, sender, data)


CONTRACT_KINDS: Dict[str, Type[FakeContract]] = {
    "Greeter": GreeterLogic,
    "GreeterV2": GreeterV2Logic,
    "Exploding": ExplodingLogic,
    "ERC1967Proxy": ERC1967ProxyContract,
    "TransparentUpgradeableProxy": TransparentProxyContract,
    "ProxyAdmin": ProxyAdminContract,
    "UpgradeableBeacon": UpgradeableBeaconContract,
    "BeaconProxy": BeaconProxyContract,
}


# --- chain --------------------------------------------------------------------


class FakeChain:
    """`Chain` over a dict of simulated contracts."""

    def __init__(self, deployer: str, chain_id: int = 31337) -> None:
        self.contracts: Dict[str, FakeContract] = {}
        self.transactions: List[Dict[str, Any]] = []
        self.impersonated: List[str] = []
        self._chain_id = chain_id
        self._default = normalize_address(deployer)
        self._callers: List[str] = []
        self._nonce = 0
        self._kinds: Dict[bytes, Tuple[str, Type[FakeContract]]] = {
            creation_code(name): (name, cls) for name, cls in CONTRACT_KINDS.items()
        }

    @property
    def sender(self) -> Optional[str]:
        return self._callers[-1] if self._callers else self._default

    def chain_id(self) -> int:
        return self._chain_id

    def get_storage_at(self, address: str, slot: int) -> bytes:
        c = self.contracts.get(normalize_address(address))
        return c.storage.get(slot, ZERO_WORD) if c else ZERO_WORD

    def get_code(self, address: str) -> bytes:
        c = self.contracts.get(normalize_address(address))
        return c.code if c else b""

    def call(self, to: str, data: bytes) -> bytes:
        with self._atomic(commit=False):
            return self.execute(self.sender, to, data)

    def deploy(self, creation: bytes) -> str:
        sender = self.sender
        self.transactions.append({"type": "create", "from": sender, "data": bytes(creation)})
        with self._atomic():
            for code, (name, cls) in self._kinds.items():
                if creation.startswith(code):
                    return self.create(name, cls, sender, creation[len(code):]).address
            revert(error_string("unknown creation code"))
        return ""  # pragma: no cover

    def transact(self, to: str, data: bytes, value: int = 0) -> Dict[str, Any]:
        sender = self.sender
        self.transactions.append({"type": "call", "from": sender, "to": normalize_address(to), "data": bytes(data)})
        with self._atomic():
            self.execute(sender, to, data)
        return {"status": "0x1", "transactionHash": "0x" + hashlib.sha3_256(bytes(data)).hexdigest()}

    @contextlib.contextmanager
    def impersonate(self, address: str) -> Iterator[None]:
        who = normalize_address(address)
        self.impersonated.append(who)
        self._callers.append(who)
        try:
            yield
        finally:
            self._callers.pop()

    # -- helpers used by the simulated contracts and by tests

    def create(self, name: str, cls: Type[FakeContract], sender: str, args: bytes) -> FakeContract:
        self._nonce += 1
        contract = cls(self, det_address(f"contract:{self._nonce}"), name)
        self.contracts[contract.address] = contract
        contract.construct(sender, bytes(args))
        return contract

    def execute(self, sender: str, to: str, data: bytes) -> bytes:
        c = self.contracts.get(normalize_address(to))
        if c is None:
            return b""
        return c.handle(normalize_address(sender), bytes(data))

    def logic_at(self, address: str) -> GreeterLogic:
        c = self.contracts.get(normalize_address(address))
        if not isinstance(c, GreeterLogic):
            revert(sel("ERC1967InvalidImplementation(address)") + encode_args(["address"], [address]))
        return c  # type: ignore[return-value]

    def deploys(self) -> List[Dict[str, Any]]:
        return [t for t in self.transactions if t["type"] == "create"]

    def calls(self) -> List[Dict[str, Any]]:
        return [t for t in self.transactions if t["type"] == "call"]

    def greeting(self, proxy: str) -> str:
        (g,) = decode_args(["string"], self.call(proxy, sel("greeting()")))
        return g

    @contextlib.contextmanager
    def _atomic(self, commit: bool = True) -> Iterator[None]:
        snapshot = {a: copy.deepcopy((c.storage, c.state)) for a, c in self.contracts.items()}
        nonce = self._nonce

        def restore() -> None:
            for a in list(self.contracts):
                if a not in snapshot:
                    del self.contracts[a]
            for a, (storage, state) in snapshot.items():
                self.contracts[a].storage, self.contracts[a].state = storage, state
            self._nonce = nonce

        try:
            yield
        except ChainRevert:
            restore()
            raise
        if not commit:
            restore()


# --- validator ----------------------------------------------------------------


class StubValidator:
    """Deterministic `Validator`: passes unless a contract was told to fail."""

    def __init__(self) -> None:
        self.requests: List[ValidationRequest] = []
        self._verdicts: Dict[str, ValidationResult] = {}

    def fail(self, contract_fqn: str, message: str = "Use of delegatecall is not allowed", **kw: Any) -> None:
        diag = Diagnostic(Severity.ERROR, message, **kw)
        self._verdicts[contract_fqn] = ValidationResult(passed=False, diagnostics=(diag,))

    def set(self, contract_fqn: str, result: ValidationResult) -> None:
        self._verdicts[contract_fqn] = result

    def run(self, request: ValidationRequest) -> ValidationResult:
        self.requests.append(request)
        return self._verdicts.get(request.contract, ValidationResult(passed=True))


class ExplodingValidator:
    def __init__(self, exc: Callable[[], Exception]) -> None:
        self._exc = exc

    def run(self, request: ValidationRequest) -> ValidationResult:
        raise self._exc()


# --- build output writer ------------------------------------------------------


def write_artifact(
    out: Path,
    source_path: str,
    name: str,
    *,
    upgrades_from: Optional[str] = None,
    annotation_in_ast: bool = False,
    compilation_target: bool = True,
    extra: Optional[Mapping[str, Any]] = None,
) -> Path:
    """Write one Foundry-style artifact under `out/<File.sol>/<Name>.json`."""
    devdoc: Dict[str, Any] = {"kind": "dev", "methods": {}}
    docs = f"@title {name}"
    if upgrades_from:
        if annotation_in_ast:
            docs += f"\n@custom:oz-upgrades-from {upgrades_from}"
        else:
            devdoc["custom:oz-upgrades-from"] = upgrades_from
    metadata: Dict[str, Any] = {
        "compiler": {"version": "0.8.24+commit.e11b9ed9"},
        "settings": {"compilationTarget": {source_path: name}} if compilation_target else {},
        "output": {"devdoc": devdoc, "abi": []},
    }
    doc: Dict[str, Any] = {
        "abi": [],
        "bytecode": {"object": "0x" + creation_code(name).hex()},
        "deployedBytecode": {"object": "0x" + runtime_code(name).hex()},
        "metadata": metadata,
        "ast": {
            "absolutePath": source_path,
            "nodeType": "SourceUnit",
            "nodes": [
                {"nodeType": "PragmaDirective", "literals": ["solidity", "^", "0.8", ".20"]},
                {
                    "nodeType": "ContractDefinition",
                    "name": name,
                    "documentation": {"nodeType": "StructuredDocumentation", "text": docs},
                },
            ],
        },
        "storageLayout": {"storage": [], "types": {}},
    }
    if extra:
        doc.update(extra)
    path = out / Path(source_path).name / f"{name}.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(doc, indent=2), encoding="utf-8")
    return path


OZ = "lib/openzeppelin-contracts/contracts/proxy"


def write_project(root: Path) -> Path:
    """A small Foundry project: three Greeter versions, an ambiguous file and the OZ proxies."""
    (root / "foundry.toml").write_text("[profile.default]\nsrc = 'src'\nout = 'out'\n", encoding="utf-8")
    out = root / "out"
    write_artifact(out, "src/Greeter.sol", "Greeter")
    write_artifact(out, "src/GreeterV2.sol", "GreeterV2", upgrades_from="Greeter")
    write_artifact(out, "src/Exploding.sol", "Exploding")
    write_artifact(out, "src/Multi.sol", "MultiA")
    write_artifact(out, "src/Multi.sol", "MultiB")
    write_artifact(out, f"{OZ}/ERC1967/ERC1967Proxy.sol", "ERC1967Proxy")
    write_artifact(out, f"{OZ}/transparent/TransparentUpgradeableProxy.sol", "TransparentUpgradeableProxy")
    write_artifact(out, f"{OZ}/transparent/ProxyAdmin.sol", "ProxyAdmin")
    write_artifact(out, f"{OZ}/beacon/UpgradeableBeacon.sol", "UpgradeableBeacon")
    write_artifact(out, f"{OZ}/beacon/BeaconProxy.sol", "BeaconProxy")
    (out / "build-info").mkdir(parents=True, exist_ok=True)
    build_info = {"id": "0a1b2c", "input": {}, "output": {}}
    (out / "build-info" / "0a1b2c.json").write_text(json.dumps(build_info), encoding="utf-8")
    return out
