"""
omni_upgrades.orchestrator
==========================

Deploy, upgrade and validate upgradeable proxies.

Every operation is a short run through one state machine:

    IDLE -> ARTIFACT_RESOLVED -> VALIDATED -> DEPLOYED -> APPLIED -> DONE
    (any state) -> FAILED

Ordering rules the code below never breaks:

- Nothing is deployed and no proxy is touched before the safety check for the
  candidate has passed (or was explicitly skipped with
  ``unsafe_skip_all_checks``).
- Proxy kind is read from ERC-1967 storage, never from contract calls.
- Initializer / migration call data goes into the same transaction as the
  upgrade (``upgradeToAndCall`` / ``upgradeAndCall``), never a second one.
- Failures are not retried or rolled back. The raised error carries ``step``
  ("resolve", "validate", "deploy", "apply") and ``Upgrades.last_run`` keeps the
  state history of the latest operation.

Quick start::

    from omni_upgrades import Upgrades, UpgradeOptions, UpgradesConfig
    from omni_upgrades.abi import encode_call

    up = Upgrades.from_config(UpgradesConfig.from_env())
    proxy = up.deploy_uups_proxy("Greeter.sol", encode_call("initialize(string)", "hello"), UpgradeOptions())
    up.upgrade_proxy(proxy, "GreeterV2.sol", options=UpgradeOptions(reference_contract="Greeter.sol"))
"""

from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, ContextManager, Iterator, List, Optional, Tuple

from .abi import (
    ZERO_ADDRESS,
    decode_args,
    decode_revert,
    encode_args,
    encode_call,
    is_authorization_revert,
    normalize_address,
)
from .artifacts import ArtifactResolver, BuildArtifact
from .backends import DefenderBackend, DefenderClient, DeploymentBackend, DirectBackend, select_backend
from .chain import Chain, JsonRpcChain
from .config import DefenderOptions, UpgradeOptions, UpgradesConfig
from .errors import (
    AuthorizationFailedError,
    ChainRevert,
    ConfigurationError,
    DeploymentFailedError,
    ProxyAdminCheckError,
    RemoteServiceError,
    UnrecognizedProxyError,
    UnsupportedUpgradeError,
    UpgradesError,
    ValidationFailedError,
)
from .introspect import ProxyIntrospector, ProxyKind
from .reference import ReferenceResolver
from .rpc import RpcClient
from .validation import SafetyCheckGateway, SubprocessValidator, ValidationResult, Validator

log = logging.getLogger(__name__)


class UpgradeState(str, Enum):
    IDLE = "idle"
    ARTIFACT_RESOLVED = "artifact_resolved"
    VALIDATED = "validated"
    DEPLOYED = "deployed"
    APPLIED = "applied"
    DONE = "done"
    FAILED = "failed"


@dataclass
class OperationRun:
    """State history of one orchestrator call."""

    operation: str
    state: UpgradeState = UpgradeState.IDLE
    history: List[UpgradeState] = field(default_factory=lambda: [UpgradeState.IDLE])
    failure: Optional[BaseException] = None
    result: Any = None

    def advance(self, state: UpgradeState) -> None:
        log.debug("orchestrator: %s %s -> %s", self.operation, self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def finish(self, result: Any) -> Any:
        self.result = result
        self.advance(UpgradeState.DONE)
        return result

    @contextlib.contextmanager
    def stage(self, step: str) -> Iterator[None]:
        """Run one step; on error stamp it with `step`, move to FAILED and re-raise."""
        try:
            yield
        except Exception as e:
            if isinstance(e, UpgradesError) and e.step is None:
                e.step = step
            self.failure = e
            log.info("orchestrator: %s failed during %s: %s", self.operation, step, e)
            self.advance(UpgradeState.FAILED)
            raise


@dataclass(frozen=True)
class ProxyArtifacts:
    """Identifiers of the proxy building blocks in the build output."""

    erc1967_proxy: str = "ERC1967Proxy.sol:ERC1967Proxy"
    transparent_proxy: str = "TransparentUpgradeableProxy.sol:TransparentUpgradeableProxy"
    upgradeable_beacon: str = "UpgradeableBeacon.sol:UpgradeableBeacon"
    beacon_proxy: str = "BeaconProxy.sol:BeaconProxy"


@dataclass(frozen=True)
class UpgradeProposal:
    proposal_id: str
    url: Optional[str]
    implementation: str


class Upgrades:
    """
    The upgrade orchestrator. Holds collaborators only; every behaviour switch
    comes in through the per-call `UpgradeOptions`.
    """

    def __init__(
        self,
        artifacts: ArtifactResolver,
        gateway: SafetyCheckGateway,
        chain: Chain,
        *,
        direct_backend: Optional[DeploymentBackend] = None,
        remote_backend: Optional[DeploymentBackend] = None,
        defender: Optional[DefenderClient] = None,
        proxy_artifacts: ProxyArtifacts = ProxyArtifacts(),
    ) -> None:
        self.artifacts = artifacts
        self.references = ReferenceResolver(artifacts)
        self.gateway = gateway
        self.chain = chain
        self.introspector = ProxyIntrospector(chain)
        self.direct_backend = direct_backend if direct_backend is not None else DirectBackend(chain)
        self.remote_backend = remote_backend
        self.defender = defender
        self.proxy_artifacts = proxy_artifacts
        self.last_run: Optional[OperationRun] = None

    @classmethod
    def from_config(
        cls,
        config: UpgradesConfig,
        chain: Optional[Chain] = None,
        validator: Optional[Validator] = None,
    ) -> "Upgrades":
        if chain is None:
            rpc = RpcClient(config.rpc_url, timeout=config.request_timeout, max_retries=config.max_retries)
            chain = JsonRpcChain(rpc, sender=config.sender, impersonation_namespace=config.impersonation_namespace)
        if validator is None:
            validator = SubprocessValidator(config.validator_command, cwd=config.project_root)
        defender: Optional[DefenderClient] = None
        remote: Optional[DeploymentBackend] = None
        if config.defender_url:
            defender = DefenderClient.from_config(config)
            remote = DefenderBackend(defender, chain.chain_id(), config.poll_interval)
        return cls(
            ArtifactResolver(config.out_path, config.project_root),
            SafetyCheckGateway(validator, config.build_info_path),
            chain,
            remote_backend=remote,
            defender=defender,
        )

    # ------------------------------------------------------------------ steps

    def _begin(self, operation: str) -> OperationRun:
        run = OperationRun(operation)
        self.last_run = run
        log.info("orchestrator: %s", operation)
        return run

    def _resolve(self, run: OperationRun, contract: str, *extra: str) -> Tuple[BuildArtifact, ...]:
        with run.stage("resolve"):
            found = tuple(self.artifacts.resolve(c) for c in (contract, *extra))
        run.advance(UpgradeState.ARTIFACT_RESOLVED)
        return found

    def _resolve_upgrade(
        self, run: OperationRun, contract: str, options: UpgradeOptions
    ) -> Tuple[BuildArtifact, Optional[BuildArtifact]]:
        with run.stage("resolve"):
            candidate = self.artifacts.resolve(contract)
            # a reference is only needed when the check actually runs
            reference = self.references.resolve(candidate, options, required=not options.unsafe_skip_all_checks)
        run.advance(UpgradeState.ARTIFACT_RESOLVED)
        return candidate, reference

    def _validate(
        self,
        run: OperationRun,
        candidate: BuildArtifact,
        options: UpgradeOptions,
        reference: Optional[BuildArtifact] = None,
    ) -> ValidationResult:
        with run.stage("validate"):
            if reference is not None:
                result = self.gateway.validate_upgrade(candidate, reference, options)
            else:
                result = self.gateway.validate_implementation(candidate, options)
            if not result.passed:
                raise ValidationFailedError(
                    candidate.fully_qualified_name,
                    result.diagnostics,
                    reference.fully_qualified_name if reference else None,
                )
        run.advance(UpgradeState.VALIDATED)
        return result

    def _deploy(self, run: OperationRun, artifact: BuildArtifact, options: UpgradeOptions) -> str:
        with run.stage("deploy"):
            backend = select_backend(options, self.direct_backend, self.remote_backend)
            address = backend.deploy(artifact, options.constructor_data, options)
        run.advance(UpgradeState.DEPLOYED)
        return address

    def _construct(
        self,
        run: OperationRun,
        artifact: BuildArtifact,
        types: List[str],
        values: List[Any],
        options: UpgradeOptions,
    ) -> str:
        with run.stage("apply"):
            backend = select_backend(options, self.direct_backend, self.remote_backend)
            address = backend.deploy(artifact, encode_args(types, values), options)
        run.advance(UpgradeState.APPLIED)
        return address

    def _send(self, target: str, calldata: bytes, try_caller: Optional[str]) -> None:
        caller = normalize_address(try_caller) if try_caller else None
        scope: ContextManager[None] = self.chain.impersonate(caller) if caller else contextlib.nullcontext()
        try:
            with scope:
                log.info("orchestrator: upgrade call to %s as %s", target, caller or "default sender")
                self.chain.transact(target, calldata)
        except ChainRevert as e:
            reason = decode_revert(e.data) or e.message
            if is_authorization_revert(e.data):
                raise AuthorizationFailedError(target, caller, reason) from e
            raise DeploymentFailedError(target, reason, e.data) from e

    def _answers(self, address: str, signature: str) -> Optional[bytes]:
        try:
            return self.chain.call(address, encode_call(signature))
        except ChainRevert:
            return None

    def _looks_like_proxy_admin(self, address: str) -> bool:
        """A v5 ProxyAdmin reports UPGRADE_INTERFACE_VERSION() as a string.

        UUPS implementations and anything proxying to one report it too; they
        are told apart by a populated ERC-1967 slot or a working
        ``proxiableUUID()``.
        """
        if not self.chain.get_code(address):
            return False
        out = self._answers(address, "UPGRADE_INTERFACE_VERSION()")
        if not out:
            return False
        try:
            decode_args(["string"], out)
        except ValueError:
            return False
        slots = (self.introspector.read_implementation_slot(address), self.introspector.read_beacon_slot(address))
        if any(s != ZERO_ADDRESS for s in slots):
            return False
        return self._answers(address, "proxiableUUID()") is None

    # ------------------------------------------------------------------ deploy

    def deploy_implementation(self, contract: str, options: UpgradeOptions) -> str:
        run = self._begin(f"deploy_implementation {contract}")
        (artifact,) = self._resolve(run, contract)
        self._validate(run, artifact, options)
        return run.finish(self._deploy(run, artifact, options))

    def deploy_uups_proxy(self, contract: str, initializer_data: bytes, options: UpgradeOptions) -> str:
        run = self._begin(f"deploy_uups_proxy {contract}")
        artifact, proxy_artifact = self._resolve(run, contract, self.proxy_artifacts.erc1967_proxy)
        self._validate(run, artifact, options)
        implementation = self._deploy(run, artifact, options)
        proxy = self._construct(run, proxy_artifact, ["address", "bytes"], [implementation, initializer_data], options)
        log.info("orchestrator: UUPS proxy %s -> %s", proxy, implementation)
        return run.finish(proxy)

    def deploy_transparent_proxy(
        self,
        contract: str,
        initial_owner: str,
        initializer_data: bytes,
        options: UpgradeOptions,
    ) -> str:
        run = self._begin(f"deploy_transparent_proxy {contract}")
        artifact, proxy_artifact = self._resolve(run, contract, self.proxy_artifacts.transparent_proxy)
        with run.stage("validate"):
            owner = normalize_address(initial_owner)
            if options.unsafe_skip_proxy_admin_check:
                log.warning("orchestrator: unsafe_skip_proxy_admin_check is set; not checking %s", owner)
            elif self._looks_like_proxy_admin(owner):
                raise ProxyAdminCheckError(owner)
        self._validate(run, artifact, options)
        implementation = self._deploy(run, artifact, options)
        proxy = self._construct(
            run,
            proxy_artifact,
            ["address", "address", "bytes"],
            [implementation, owner, initializer_data],
            options,
        )
        log.info("orchestrator: transparent proxy %s -> %s (owner %s)", proxy, implementation, owner)
        return run.finish(proxy)

    def deploy_beacon(self, contract: str, initial_owner: str, options: UpgradeOptions) -> str:
        run = self._begin(f"deploy_beacon {contract}")
        artifact, beacon_artifact = self._resolve(run, contract, self.proxy_artifacts.upgradeable_beacon)
        self._validate(run, artifact, options)
        implementation = self._deploy(run, artifact, options)
        beacon = self._construct(
            run, beacon_artifact, ["address", "address"], [implementation, normalize_address(initial_owner)], options
        )
        log.info("orchestrator: beacon %s -> %s", beacon, implementation)
        return run.finish(beacon)

    def deploy_beacon_proxy(self, beacon: str, data: bytes, options: UpgradeOptions) -> str:
        run = self._begin(f"deploy_beacon_proxy {beacon}")
        (proxy_artifact,) = self._resolve(run, self.proxy_artifacts.beacon_proxy)
        proxy = self._construct(run, proxy_artifact, ["address", "bytes"], [normalize_address(beacon), data], options)
        log.info("orchestrator: beacon proxy %s -> beacon %s", proxy, beacon)
        return run.finish(proxy)

    # ------------------------------------------------------------------ validate

    def validate_implementation(self, contract: str, options: UpgradeOptions) -> ValidationResult:
        run = self._begin(f"validate_implementation {contract}")
        (artifact,) = self._resolve(run, contract)
        return run.finish(self._validate(run, artifact, options))

    def validate_upgrade(self, contract: str, options: UpgradeOptions) -> ValidationResult:
        run = self._begin(f"validate_upgrade {contract}")
        candidate, reference = self._resolve_upgrade(run, contract, options)
        return run.finish(self._validate(run, candidate, options, reference))

    def prepare_upgrade(self, contract: str, options: UpgradeOptions) -> str:
        """Validate and deploy a new implementation without touching any proxy."""
        run = self._begin(f"prepare_upgrade {contract}")
        candidate, reference = self._resolve_upgrade(run, contract, options)
        self._validate(run, candidate, options, reference)
        return run.finish(self._deploy(run, candidate, options))

    # ------------------------------------------------------------------ upgrade

    def upgrade_proxy(
        self,
        proxy: str,
        contract: str,
        data: bytes = b"",
        options: Optional[UpgradeOptions] = None,
        *,
        try_caller: Optional[str] = None,
    ) -> str:
        options = options if options is not None else UpgradeOptions()
        proxy = normalize_address(proxy)
        run = self._begin(f"upgrade_proxy {proxy} to {contract}")
        candidate, reference = self._resolve_upgrade(run, contract, options)
        self._validate(run, candidate, options, reference)
        implementation = self._deploy(run, candidate, options)

        with run.stage("apply"):
            kind = self.introspector.classify(proxy)
            if kind is ProxyKind.UUPS:
                target = proxy
                calldata = encode_call("upgradeToAndCall(address,bytes)", implementation, data)
            elif kind is ProxyKind.TRANSPARENT:
                target = self.introspector.read_admin_slot(proxy)
                calldata = encode_call("upgradeAndCall(address,address,bytes)", proxy, implementation, data)
            elif kind is ProxyKind.BEACON:
                if data:
                    raise UnsupportedUpgradeError(
                        f"{proxy} is a beacon proxy; call data cannot be applied atomically with a beacon "
                        "upgrade. Upgrade the beacon and call the proxy separately."
                    )
                target = self.introspector.read_beacon_slot(proxy)
                calldata = encode_call("upgradeTo(address)", implementation)
            else:
                raise UnrecognizedProxyError(proxy)
            self._send(target, calldata, try_caller)
        run.advance(UpgradeState.APPLIED)
        log.info("orchestrator: %s proxy %s now points at %s", kind.value, proxy, implementation)
        return run.finish(implementation)

    def upgrade_beacon(
        self,
        beacon: str,
        contract: str,
        options: Optional[UpgradeOptions] = None,
        *,
        try_caller: Optional[str] = None,
    ) -> str:
        options = options if options is not None else UpgradeOptions()
        beacon = normalize_address(beacon)
        run = self._begin(f"upgrade_beacon {beacon} to {contract}")
        candidate, reference = self._resolve_upgrade(run, contract, options)
        self._validate(run, candidate, options, reference)
        implementation = self._deploy(run, candidate, options)
        with run.stage("apply"):
            self._send(beacon, encode_call("upgradeTo(address)", implementation), try_caller)
        run.advance(UpgradeState.APPLIED)
        log.info("orchestrator: beacon %s now points at %s", beacon, implementation)
        return run.finish(implementation)

    def propose_upgrade(self, proxy: str, contract: str, options: UpgradeOptions) -> UpgradeProposal:
        """
        Validate, deploy the implementation through the remote service and open
        an upgrade proposal there for someone else to approve and execute.
        """
        proxy = normalize_address(proxy)
        run = self._begin(f"propose_upgrade {proxy} to {contract}")
        with run.stage("resolve"):
            if self.defender is None or self.remote_backend is None:
                raise ConfigurationError("propose_upgrade needs the remote deployment service to be configured")
        candidate, reference = self._resolve_upgrade(run, contract, options)
        self._validate(run, candidate, options, reference)
        remote_options = options.evolve(defender=_with_remote(options))
        implementation = self._deploy(run, candidate, remote_options)

        with run.stage("apply"):
            kind = self.introspector.classify(proxy)
            payload = {
                "network": self.chain.chain_id(),
                "proxyAddress": proxy,
                "proxyKind": kind.value,
                "newImplementation": implementation,
            }
            if kind is ProxyKind.TRANSPARENT:
                payload["proxyAdminAddress"] = self.introspector.read_admin_slot(proxy)
            elif kind is ProxyKind.BEACON:
                payload["beaconAddress"] = self.introspector.read_beacon_slot(proxy)
            if options.defender.upgrade_approval_process_id:
                payload["approvalProcessId"] = options.defender.upgrade_approval_process_id
            doc = self.defender.propose_upgrade(payload)
            if not doc.get("proposalId"):
                raise RemoteServiceError("remote service returned no proposalId", payload=doc)
        run.advance(UpgradeState.APPLIED)
        proposal = UpgradeProposal(str(doc["proposalId"]), doc.get("url"), implementation)
        log.info("orchestrator: proposed upgrade of %s to %s (%s)", proxy, implementation, proposal.proposal_id)
        return run.finish(proposal)

    # ------------------------------------------------------------------ read-only

    def get_implementation_address(self, proxy: str) -> str:
        return self.introspector.read_implementation_slot(proxy)

    def get_admin_address(self, proxy: str) -> str:
        return self.introspector.read_admin_slot(proxy)

    def get_beacon_address(self, proxy: str) -> str:
        return self.introspector.read_beacon_slot(proxy)


def _with_remote(options: UpgradeOptions) -> DefenderOptions:
    return replace(options.defender, use_defender_deploy=True)


__all__ = [
    "UpgradeState",
    "OperationRun",
    "ProxyArtifacts",
    "UpgradeProposal",
    "Upgrades",
]
