"""
Typed error classes for omni-upgrades.

Every failure the orchestrator can surface has its own class so callers (and
test suites) can assert on the exact failure mode while still being able to
catch the base `UpgradesError`.

Errors raised from inside an orchestrator operation are stamped with `step`,
the state-machine step that failed ("resolve", "validate", "deploy", "apply").
Partial progress is never rolled back; `step` tells the caller where to resume.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Optional, Tuple

__all__ = [
    "UpgradesError",
    "ConfigurationError",
    "ArtifactNotFoundError",
    "AmbiguousArtifactError",
    "MissingReferenceError",
    "ReferenceConflictError",
    "ValidationFailedError",
    "ExternalToolInvocationError",
    "UnrecognizedProxyError",
    "DeploymentFailedError",
    "AuthorizationFailedError",
    "ProxyAdminCheckError",
    "UnsupportedUpgradeError",
    "RemoteServiceError",
    "ChainRevert",
    "RpcError",
    "JsonRpcCode",
]


class UpgradesError(Exception):
    """Base class for all omni-upgrades errors."""

    step: Optional[str] = None


@dataclass(slots=True, eq=False)
class ConfigurationError(UpgradesError):
    """Raised for unusable settings (missing remote backend, bad URL, ...)."""

    message: str

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"ConfigurationError: {self.message}"


# --- artifact / reference resolution ----------------------------------------


@dataclass(slots=True, eq=False)
class ArtifactNotFoundError(UpgradesError):
    identifier: str
    searched: str = ""

    def __str__(self) -> str:
        where = f" in {self.searched}" if self.searched else ""
        return f"No build artifact matches {self.identifier!r}{where}"


@dataclass(slots=True, eq=False)
class AmbiguousArtifactError(UpgradesError):
    identifier: str
    matches: Tuple[str, ...] = ()

    def __str__(self) -> str:
        listing = ", ".join(self.matches)
        return (
            f"Contract identifier {self.identifier!r} is ambiguous; "
            f"it matches {len(self.matches)} artifacts: {listing}. "
            "Use a qualified form such as 'path/File.sol:Contract'."
        )


@dataclass(slots=True, eq=False)
class MissingReferenceError(UpgradesError):
    contract: str

    def __str__(self) -> str:
        return (
            f"No reference contract for {self.contract}: set the reference_contract "
            "option or annotate the contract with @custom:oz-upgrades-from <reference>"
        )


@dataclass(slots=True, eq=False)
class ReferenceConflictError(UpgradesError):
    contract: str
    explicit: str
    annotated: str

    def __str__(self) -> str:
        return (
            f"Reference for {self.contract} is contradictory: option says "
            f"{self.explicit}, @custom:oz-upgrades-from says {self.annotated}"
        )


# --- validation --------------------------------------------------------------


@dataclass(slots=True, eq=False)
class ValidationFailedError(UpgradesError):
    """The safety check ran and reported at least one blocking finding."""

    contract: str
    diagnostics: Tuple[Any, ...] = ()
    reference: Optional[str] = None

    def __str__(self) -> str:
        head = f"Upgrade safety validation failed for {self.contract}"
        if self.reference:
            head += f" (upgrades from {self.reference})"
        lines = [head]
        for d in self.diagnostics:
            lines.append(f"  - {d}")
        return "\n".join(lines)


@dataclass(slots=True, eq=False)
class ExternalToolInvocationError(UpgradesError):
    """The external validator could not run, crashed, or produced garbage."""

    message: str
    command: Tuple[str, ...] = ()
    returncode: Optional[int] = None
    output: str = ""

    def __str__(self) -> str:
        bits = [f"Validator invocation failed: {self.message}"]
        if self.command:
            bits.append(f"command={' '.join(self.command)!r}")
        if self.returncode is not None:
            bits.append(f"exit={self.returncode}")
        if self.output:
            bits.append(f"output={self.output[:512]!r}")
        return " ".join(bits)


# --- proxies / deployment ----------------------------------------------------


@dataclass(slots=True, eq=False)
class UnrecognizedProxyError(UpgradesError):
    address: str

    def __str__(self) -> str:
        return (
            f"{self.address} is not a recognized proxy: implementation, admin and "
            "beacon slots are all empty"
        )


@dataclass(slots=True, eq=False)
class DeploymentFailedError(UpgradesError):
    """Constructor/initializer reverted, a mutating call reverted, or the remote backend failed."""

    contract: str
    reason: str
    revert_data: bytes = b""

    def __str__(self) -> str:
        step = f" [{self.step}]" if self.step else ""
        return f"Deployment of {self.contract} failed{step}: {self.reason}"


@dataclass(slots=True, eq=False)
class AuthorizationFailedError(UpgradesError):
    """The upgrade call reverted because the caller is not the admin/owner."""

    target: str
    caller: Optional[str]
    reason: str = "caller is not authorized"

    def __str__(self) -> str:
        who = self.caller or "<default sender>"
        return f"Upgrade of {self.target} rejected for caller {who}: {self.reason}"


@dataclass(slots=True, eq=False)
class ProxyAdminCheckError(UpgradesError):
    initial_owner: str

    def __str__(self) -> str:
        return (
            f"initial_owner {self.initial_owner} looks like a ProxyAdmin contract; "
            "a transparent proxy deploys its own ProxyAdmin. Pass an EOA or set "
            "unsafe_skip_proxy_admin_check"
        )


@dataclass(slots=True, eq=False)
class UnsupportedUpgradeError(UpgradesError):
    message: str

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.message


@dataclass(slots=True, eq=False)
class RemoteServiceError(UpgradesError):
    """The remote deployment/approval service answered with an error."""

    message: str
    status: Optional[int] = None
    payload: Any = None

    def __str__(self) -> str:
        status = f" http={self.status}" if self.status is not None else ""
        return f"Remote service error{status}: {self.message}"


# --- chain / transport -------------------------------------------------------


@dataclass(slots=True, eq=False)
class ChainRevert(UpgradesError):
    """A transaction or eth_call reverted. `data` is the raw revert payload."""

    message: str
    data: bytes = b""
    tx_hash: Optional[str] = None

    def __str__(self) -> str:
        tx = f" tx={self.tx_hash}" if self.tx_hash else ""
        data = f" data=0x{self.data.hex()}" if self.data else ""
        return f"Reverted{tx}: {self.message}{data}"


class JsonRpcCode(IntEnum):
    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603
    SERVER_ERROR = -32000
    # transport failures (implementation-defined range)
    TRANSPORT = -32098
    # geth/anvil "execution reverted"
    EXECUTION_ERROR = 3


@dataclass(slots=True, eq=False)
class RpcError(UpgradesError):
    """Raised when a JSON-RPC call returns an error object or the transport fails."""

    code: int
    message: str
    method: Optional[str] = None
    data: Optional[Any] = None

    def __str__(self) -> str:  # pragma: no cover - trivial
        parts = [f"RPC[{self.method or '-'}] code={self.code} msg={self.message!r}"]
        if self.data is not None:
            parts.append(f"data={self.data!r}")
        return " ".join(parts)

    @property
    def code_enum(self) -> Optional[JsonRpcCode]:
        try:
            return JsonRpcCode(self.code)
        except ValueError:
            return None
