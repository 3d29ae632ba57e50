"""
omni-upgrades
Deploy and upgrade ERC-1967 proxies with a safety check before every change.
"""

from .version import __version__  # noqa: F401

# Config & errors
from .config import DefenderOptions, UpgradeOptions, UpgradesConfig  # noqa: F401
from .errors import (  # noqa: F401
    AmbiguousArtifactError,
    ArtifactNotFoundError,
    AuthorizationFailedError,
    ConfigurationError,
    DeploymentFailedError,
    ExternalToolInvocationError,
    MissingReferenceError,
    ProxyAdminCheckError,
    ReferenceConflictError,
    RemoteServiceError,
    UnrecognizedProxyError,
    UnsupportedUpgradeError,
    UpgradesError,
    ValidationFailedError,
)

# Building blocks
from .artifacts import ArtifactResolver, BuildArtifact  # noqa: F401
from .reference import ReferenceResolver  # noqa: F401
from .validation import (  # noqa: F401
    Diagnostic,
    SafetyCheckGateway,
    Severity,
    SubprocessValidator,
    ValidationResult,
)
from .introspect import ProxyIntrospector, ProxyKind  # noqa: F401
from .chain import Chain, JsonRpcChain  # noqa: F401
from .backends import DefenderBackend, DefenderClient, DirectBackend  # noqa: F401

# Orchestrator
from .orchestrator import ProxyArtifacts, UpgradeProposal, Upgrades, UpgradeState  # noqa: F401

__all__ = [
    "__version__",
    # Config
    "UpgradesConfig", "UpgradeOptions", "DefenderOptions",
    # Errors
    "UpgradesError", "ConfigurationError",
    "ArtifactNotFoundError", "AmbiguousArtifactError",
    "MissingReferenceError", "ReferenceConflictError",
    "ValidationFailedError", "ExternalToolInvocationError",
    "UnrecognizedProxyError", "DeploymentFailedError", "AuthorizationFailedError",
    "ProxyAdminCheckError", "UnsupportedUpgradeError", "RemoteServiceError",
    # Building blocks
    "BuildArtifact", "ArtifactResolver", "ReferenceResolver",
    "Diagnostic", "Severity", "ValidationResult", "SubprocessValidator", "SafetyCheckGateway",
    "ProxyKind", "ProxyIntrospector",
    "Chain", "JsonRpcChain",
    "DirectBackend", "DefenderClient", "DefenderBackend",
    # Orchestrator
    "Upgrades", "UpgradeState", "ProxyArtifacts", "UpgradeProposal",
]
