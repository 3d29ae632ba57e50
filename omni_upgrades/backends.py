"""
omni_upgrades.backends
======================

Where a new contract address comes from.

- `DirectBackend` sends the artifact's creation code plus the ABI-encoded
  constructor arguments to the chain and returns the created address.
- `DefenderBackend` submits the same inputs to a remote deploy-and-approve
  service (`DefenderClient`) and polls until the service reports the address.

The orchestrator only ever sees `DeploymentBackend.deploy(...) -> address`;
`select_backend` picks one per call from `options.defender.use_defender_deploy`.

Remote service endpoints (JSON over HTTPS):

    POST {base}/deployments              -> {"deploymentId", "status", "address"?}
    GET  {base}/deployments/{id}         -> {"deploymentId", "status", "address"?, "error"?}
    POST {base}/upgrades                 -> {"proposalId", "url"?}

`status` is one of "submitted", "pending", "completed", "failed".
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Mapping, Optional, Protocol

import httpx

from .abi import decode_revert, normalize_address, to_hex
from .artifacts import BuildArtifact
from .chain import Chain
from .config import UpgradeOptions, UpgradesConfig
from .errors import ChainRevert, ConfigurationError, DeploymentFailedError, RemoteServiceError
from .version import __version__

log = logging.getLogger(__name__)


class DeploymentBackend(Protocol):
    def deploy(self, artifact: BuildArtifact, constructor_args: bytes, options: UpgradeOptions) -> str: ...


# --- direct --------------------------------------------------------------------


class DirectBackend:
    """Inline contract creation through the chain adapter."""

    def __init__(self, chain: Chain) -> None:
        self._chain = chain

    def deploy(self, artifact: BuildArtifact, constructor_args: bytes, options: UpgradeOptions) -> str:
        fqn = artifact.fully_qualified_name
        if not artifact.bytecode:
            raise DeploymentFailedError(fqn, "artifact has no creation bytecode (abstract contract or interface?)")
        try:
            address = self._chain.deploy(artifact.bytecode + bytes(constructor_args))
        except ChainRevert as e:
            raise DeploymentFailedError(fqn, decode_revert(e.data) or e.message, e.data) from e
        log.info("backend: deployed %s at %s", fqn, address)
        return normalize_address(address)


# --- remote --------------------------------------------------------------------


class DefenderClient:
    """Thin JSON client for the remote deploy-and-approve service."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.base = base_url.rstrip("/")
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": f"omni-upgrades/{__version__}",
        }
        if api_key:
            headers["X-API-Key"] = api_key
        if api_secret:
            headers["X-API-Secret"] = api_secret
        self._client = httpx.Client(timeout=timeout, headers=headers, transport=transport)

    @classmethod
    def from_config(cls, config: UpgradesConfig, transport: Optional[httpx.BaseTransport] = None) -> "DefenderClient":
        if not config.defender_url:
            raise ConfigurationError("remote deployment service URL is not configured (OMNI_UPGRADES_DEFENDER_URL)")
        return cls(
            config.defender_url,
            config.defender_api_key,
            config.defender_api_secret,
            timeout=config.request_timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def submit_deployment(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/deployments", payload)

    def get_deployment(self, deployment_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/deployments/{deployment_id}")

    def propose_upgrade(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/upgrades", payload)

    def _request(self, method: str, path: str, body: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base}{path}"
        log.debug("defender: %s %s", method, path)
        try:
            r = self._client.request(method, url, json=dict(body) if body is not None else None)
        except httpx.HTTPError as e:
            raise RemoteServiceError(f"{method} {path} failed: {e}") from e
        if r.is_error:
            try:
                payload = r.json()
            except ValueError:
                payload = {"error": r.text}
            raise RemoteServiceError(f"{method} {path} -> {r.status_code}", status=r.status_code, payload=payload)
        try:
            doc = r.json()
        except ValueError as e:
            raise RemoteServiceError(f"{method} {path} returned invalid JSON", status=r.status_code) from e
        if not isinstance(doc, dict):
            raise RemoteServiceError(f"{method} {path} returned a non-object", status=r.status_code, payload=doc)
        return doc


class DefenderBackend:
    """Submit-then-poll deployment through `DefenderClient`."""

    def __init__(self, client: DefenderClient, chain_id: int, poll_interval: float = 2.0) -> None:
        self.client = client
        self.chain_id = chain_id
        self.poll_interval = poll_interval

    def build_payload(
        self, artifact: BuildArtifact, constructor_args: bytes, options: UpgradeOptions
    ) -> Dict[str, Any]:
        d = options.defender
        payload: Dict[str, Any] = {
            "contractName": artifact.contract_name,
            "contractPath": artifact.source_path,
            "network": self.chain_id,
            "bytecode": to_hex(artifact.bytecode),
            "constructorBytecode": to_hex(constructor_args),
            "verifySourceCode": not d.skip_verify_source_code,
            "autoApprove": d.auto_approve,
        }
        if d.license_type and not d.skip_license_type:
            payload["licenseType"] = d.license_type
        if d.relayer_id:
            payload["relayerId"] = d.relayer_id
        if d.salt:
            payload["salt"] = d.salt
        if d.tx_overrides:
            payload["txOverrides"] = dict(d.tx_overrides)
        return payload

    def deploy(self, artifact: BuildArtifact, constructor_args: bytes, options: UpgradeOptions) -> str:
        fqn = artifact.fully_qualified_name
        try:
            doc = self.client.submit_deployment(self.build_payload(artifact, constructor_args, options))
        except RemoteServiceError as e:
            raise DeploymentFailedError(fqn, f"remote submission rejected: {e}") from e

        deployment_id = doc.get("deploymentId")
        log.info("defender: submitted %s as deployment %s", fqn, deployment_id)
        while True:
            status = str(doc.get("status", "")).lower()
            if status == "completed":
                address = doc.get("address")
                if not address:
                    raise DeploymentFailedError(fqn, f"deployment {deployment_id} completed without an address")
                log.info("defender: %s deployed at %s", fqn, address)
                return normalize_address(address)
            if status == "failed":
                raise DeploymentFailedError(fqn, str(doc.get("error") or f"deployment {deployment_id} failed"))
            if not deployment_id:
                raise DeploymentFailedError(fqn, "remote service returned no deploymentId")
            time.sleep(self.poll_interval)
            doc = self.client.get_deployment(str(deployment_id))


def select_backend(
    options: UpgradeOptions,
    direct: Optional[DeploymentBackend],
    remote: Optional[DeploymentBackend],
) -> DeploymentBackend:
    if options.defender.use_defender_deploy:
        if remote is None:
            raise ConfigurationError("use_defender_deploy is set but no remote deployment backend is configured")
        return remote
    if direct is None:
        raise ConfigurationError("no direct deployment backend is configured")
    return direct


__all__ = [
    "DeploymentBackend",
    "DirectBackend",
    "DefenderClient",
    "DefenderBackend",
    "select_backend",
]
