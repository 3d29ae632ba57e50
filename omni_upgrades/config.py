"""
Configuration for omni-upgrades.

Two layers live here:

- `UpgradesConfig`: *where things are*: project root, build output, the RPC
  endpoint, the external validator command and the remote deployment service.
  Loaded once per process from environment variables (OMNI_UPGRADES_*).
- `UpgradeOptions` / `DefenderOptions`: *how one operation behaves*: skip
  flags, reference override, remote deployment settings. Frozen records that
  are passed explicitly into every orchestrator call and never stored.
"""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from .errors import ConfigurationError

_DEFAULT_RPC = "http://127.0.0.1:8545"
_DEFAULT_VALIDATOR = "npx @openzeppelin/upgrades-core@^1.37.0 validate"


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(name)
    return v if v is not None and v != "" else default


def _ensure_scheme(url: Optional[str], allowed: tuple[str, ...]) -> Optional[str]:
    if not url:
        return url
    lower = url.lower()
    if not any(lower.startswith(f"{sch}://") for sch in allowed):
        raise ConfigurationError(f"URL must start with {allowed}, got: {url!r}")
    return url


def find_project_root(start: Optional[Path] = None) -> Path:
    """
    Walk up from `start` (or CWD) to the first directory holding a
    foundry.toml; falls back to `start` itself.
    """
    here = Path(start) if start else Path.cwd()
    for p in [here, *here.parents]:
        if (p / "foundry.toml").is_file():
            return p
    return here


@dataclass(slots=True)
class UpgradesConfig:
    # Build output
    project_root: Path = field(default_factory=find_project_root)
    out_dir: str = "out"
    build_info_dir: Optional[str] = None
    # Chain
    rpc_url: str = _DEFAULT_RPC
    request_timeout: float = 30.0
    max_retries: int = 3
    sender: Optional[str] = None
    impersonation_namespace: str = "anvil"
    # External validator
    validator_command: Tuple[str, ...] = tuple(shlex.split(_DEFAULT_VALIDATOR))
    # Remote deploy-and-approve service
    defender_url: Optional[str] = None
    defender_api_key: Optional[str] = None
    defender_api_secret: Optional[str] = None
    poll_interval: float = 2.0

    @property
    def out_path(self) -> Path:
        return (self.project_root / self.out_dir).resolve()

    @property
    def build_info_path(self) -> Path:
        if self.build_info_dir:
            return (self.project_root / self.build_info_dir).resolve()
        return self.out_path / "build-info"

    @classmethod
    def from_env(cls, prefix: str = "OMNI_UPGRADES_") -> "UpgradesConfig":
        """
        Create config from environment variables:

        OMNI_UPGRADES_ROOT               project root (default: nearest foundry.toml)
        OMNI_UPGRADES_OUT                build output dir relative to root (out)
        OMNI_UPGRADES_BUILD_INFO         build-info dir relative to root (<out>/build-info)
        OMNI_UPGRADES_RPC_URL            http/https JSON-RPC endpoint
        OMNI_UPGRADES_TIMEOUT            float seconds, HTTP
        OMNI_UPGRADES_MAX_RETRIES        int
        OMNI_UPGRADES_SENDER             default transaction sender
        OMNI_UPGRADES_IMPERSONATION      anvil | hardhat
        OMNI_UPGRADES_VALIDATOR          validator command line
        OMNI_UPGRADES_DEFENDER_URL       remote deployment service base URL
        OMNI_UPGRADES_DEFENDER_KEY       API key
        OMNI_UPGRADES_DEFENDER_SECRET    API secret
        OMNI_UPGRADES_POLL_INTERVAL      float seconds between remote status polls
        """
        root = _env(f"{prefix}ROOT")
        rpc = _env(f"{prefix}RPC_URL", _DEFAULT_RPC)
        defender = _env(f"{prefix}DEFENDER_URL")
        _ensure_scheme(rpc, ("http", "https"))
        _ensure_scheme(defender, ("http", "https"))

        return cls(
            project_root=Path(root) if root else find_project_root(),
            out_dir=_env(f"{prefix}OUT", "out") or "out",
            build_info_dir=_env(f"{prefix}BUILD_INFO"),
            rpc_url=rpc or _DEFAULT_RPC,
            request_timeout=float(_env(f"{prefix}TIMEOUT", "30.0") or 30.0),
            max_retries=int(_env(f"{prefix}MAX_RETRIES", "3") or 3),
            sender=_env(f"{prefix}SENDER"),
            impersonation_namespace=_env(f"{prefix}IMPERSONATION", "anvil") or "anvil",
            validator_command=tuple(shlex.split(_env(f"{prefix}VALIDATOR", _DEFAULT_VALIDATOR) or _DEFAULT_VALIDATOR)),
            defender_url=defender,
            defender_api_key=_env(f"{prefix}DEFENDER_KEY"),
            defender_api_secret=_env(f"{prefix}DEFENDER_SECRET"),
            poll_interval=float(_env(f"{prefix}POLL_INTERVAL", "2.0") or 2.0),
        )

    @classmethod
    def with_overrides(cls, base: Optional["UpgradesConfig"] = None, **overrides: Any) -> "UpgradesConfig":
        """
        Build from an existing config plus keyword overrides.
        Unknown keys and None values are ignored.
        """
        base = base or cls.from_env()
        known = set(base.to_dict())
        changes = {k: v for k, v in overrides.items() if k in known and v is not None}
        if "project_root" in changes:
            changes["project_root"] = Path(changes["project_root"])
        if "validator_command" in changes and isinstance(changes["validator_command"], str):
            changes["validator_command"] = tuple(shlex.split(changes["validator_command"]))
        if "rpc_url" in changes:
            _ensure_scheme(changes["rpc_url"], ("http", "https"))
        if "defender_url" in changes:
            _ensure_scheme(changes["defender_url"], ("http", "https"))
        return replace(base, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_root": str(self.project_root),
            "out_dir": self.out_dir,
            "build_info_dir": self.build_info_dir,
            "rpc_url": self.rpc_url,
            "request_timeout": float(self.request_timeout),
            "max_retries": int(self.max_retries),
            "sender": self.sender,
            "impersonation_namespace": self.impersonation_namespace,
            "validator_command": list(self.validator_command),
            "defender_url": self.defender_url,
            "defender_api_key": "***" if self.defender_api_key else None,
            "defender_api_secret": "***" if self.defender_api_secret else None,
            "poll_interval": float(self.poll_interval),
        }


# --- per-call options ----------------------------------------------------------


@dataclass(frozen=True, slots=True)
class DefenderOptions:
    """Settings for the remote deploy-and-approve backend."""

    use_defender_deploy: bool = False
    skip_verify_source_code: bool = False
    relayer_id: Optional[str] = None
    salt: Optional[str] = None
    upgrade_approval_process_id: Optional[str] = None
    license_type: Optional[str] = None
    skip_license_type: bool = False
    auto_approve: bool = False
    tx_overrides: Optional[Mapping[str, Any]] = None


@dataclass(frozen=True, slots=True)
class UpgradeOptions:
    """
    Per-call behaviour switches. Build a fresh value (or use `evolve`) for each
    operation; the orchestrator never keeps one around between calls.
    """

    reference_contract: Optional[str] = None
    require_reference_agreement: bool = False
    constructor_data: bytes = b""
    exclude: Tuple[str, ...] = ()
    unsafe_allow: Tuple[str, ...] = ()
    unsafe_allow_renames: bool = False
    unsafe_skip_proxy_admin_check: bool = False
    unsafe_skip_storage_check: bool = False
    unsafe_skip_all_checks: bool = False
    defender: DefenderOptions = field(default_factory=DefenderOptions)

    def evolve(self, **changes: Any) -> "UpgradeOptions":
        return replace(self, **changes)

    def check_flags(self) -> Tuple[Any, ...]:
        """The subset of options that changes a validation verdict."""
        return (
            bool(self.unsafe_skip_storage_check),
            tuple(sorted(self.unsafe_allow)),
            bool(self.unsafe_allow_renames),
            tuple(self.exclude),
        )


__all__ = ["UpgradesConfig", "UpgradeOptions", "DefenderOptions", "find_project_root"]
