"""
omni_upgrades.cli.main
======================

`omni-upgrades`: validate, inspect and upgrade proxies from the shell.

Examples
--------
    $ omni-upgrades validate Greeter.sol
    $ omni-upgrades validate-upgrade GreeterV2.sol --reference Greeter.sol
    $ omni-upgrades --rpc http://127.0.0.1:8545 inspect 0x5FbDB2315678afecb367f032d93F642f64180aa3
    $ omni-upgrades prepare-upgrade GreeterV2.sol
    $ omni-upgrades upgrade-proxy 0x5FbD...0aa3 GreeterV2.sol --data 0x...

Configuration
-------------
- Project root : `--root` or env `OMNI_UPGRADES_ROOT` (default: nearest foundry.toml)
- Build output : `--out` or env `OMNI_UPGRADES_OUT` (default: out)
- RPC URL      : `--rpc` or env `OMNI_UPGRADES_RPC_URL` (default: http://127.0.0.1:8545)

Every failure prints `error: <message>` on stderr and exits with status 1.
"""

from __future__ import annotations

import contextlib
import json
import logging
import shlex
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, List, Optional

import typer

from ..abi import from_hex
from ..config import UpgradeOptions, UpgradesConfig
from ..errors import UnrecognizedProxyError, UpgradesError
from ..orchestrator import Upgrades
from ..validation import ValidationResult
from ..version import __version__

app = typer.Typer(
    name="omni-upgrades",
    help="Validate and upgrade ERC-1967 proxies (transparent, UUPS, beacon).",
    no_args_is_help=True,
    add_completion=False,
)

__all__ = ["app", "main"]


@dataclass
class Ctx:
    config: UpgradesConfig
    verbose: bool = False


def _print_json(obj: Any) -> None:
    typer.echo(json.dumps(obj, indent=2, ensure_ascii=False))


def _upgrades(ctx: typer.Context) -> Upgrades:
    c: Ctx = ctx.obj
    return Upgrades.from_config(c.config)


@contextlib.contextmanager
def _reported() -> Iterator[None]:
    try:
        yield
    except UpgradesError as e:
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(1) from e


def _options(
    reference: Optional[str] = None,
    unsafe_skip_storage_check: bool = False,
    unsafe_skip_all_checks: bool = False,
    unsafe_allow: Optional[List[str]] = None,
    unsafe_allow_renames: bool = False,
    exclude: Optional[List[str]] = None,
) -> UpgradeOptions:
    return UpgradeOptions(
        reference_contract=reference,
        unsafe_skip_storage_check=unsafe_skip_storage_check,
        unsafe_skip_all_checks=unsafe_skip_all_checks,
        unsafe_allow=tuple(unsafe_allow or ()),
        unsafe_allow_renames=unsafe_allow_renames,
        exclude=tuple(exclude or ()),
    )


def _result_json(contract: str, result: ValidationResult) -> dict:
    return {
        "contract": contract,
        "passed": result.passed,
        "skipped": result.skipped,
        "diagnostics": [
            {"severity": d.severity.value, "message": d.message, "location": d.location, "category": d.category}
            for d in result.diagnostics
        ],
    }


_REFERENCE = typer.Option(None, "--reference", "-r", help="Reference contract the candidate upgrades from.")
_SKIP_STORAGE = typer.Option(False, "--unsafe-skip-storage-check", help="Do not check storage layout compatibility.")
_SKIP_ALL = typer.Option(False, "--unsafe-skip-all-checks", help="Do not run the safety check at all.")
_ALLOW = typer.Option(None, "--unsafe-allow", help="Allow an unsafe pattern (repeatable), e.g. delegatecall.")
_ALLOW_RENAMES = typer.Option(False, "--unsafe-allow-renames", help="Allow renamed storage variables.")
_EXCLUDE = typer.Option(None, "--exclude", help="Source glob excluded from validation (repeatable).")


@app.callback()
def _root(
    ctx: typer.Context,
    root: Optional[Path] = typer.Option(None, "--root", help="Project root.", envvar="OMNI_UPGRADES_ROOT"),
    out: Optional[str] = typer.Option(None, "--out", help="Build output directory, relative to the root."),
    rpc: Optional[str] = typer.Option(None, "--rpc", help="Node HTTP JSON-RPC URL."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
) -> None:
    """Set the effective configuration for this process."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    with _reported():
        config = UpgradesConfig.with_overrides(project_root=root, out_dir=out, rpc_url=rpc)
    ctx.obj = Ctx(config=config, verbose=verbose)


@app.command("version")
def version(ctx: typer.Context) -> None:
    """Print the omni-upgrades version and the validator it will run."""
    typer.echo(f"omni-upgrades {__version__}")
    typer.echo(f"validator: {shlex.join(ctx.obj.config.validator_command)}")


@app.command("validate")
def validate(
    ctx: typer.Context,
    contract: str = typer.Argument(..., help="Contract identifier, e.g. Greeter.sol or src/Greeter.sol:Greeter"),
    unsafe_skip_storage_check: bool = _SKIP_STORAGE,
    unsafe_skip_all_checks: bool = _SKIP_ALL,
    unsafe_allow: Optional[List[str]] = _ALLOW,
    unsafe_allow_renames: bool = _ALLOW_RENAMES,
    exclude: Optional[List[str]] = _EXCLUDE,
) -> None:
    """Check that an implementation is upgrade safe on its own."""
    opts = _options(
        None, unsafe_skip_storage_check, unsafe_skip_all_checks, unsafe_allow, unsafe_allow_renames, exclude
    )
    with _reported():
        result = _upgrades(ctx).validate_implementation(contract, opts)
    _print_json(_result_json(contract, result))


@app.command("validate-upgrade")
def validate_upgrade(
    ctx: typer.Context,
    contract: str = typer.Argument(..., help="Candidate implementation."),
    reference: Optional[str] = _REFERENCE,
    unsafe_skip_storage_check: bool = _SKIP_STORAGE,
    unsafe_skip_all_checks: bool = _SKIP_ALL,
    unsafe_allow: Optional[List[str]] = _ALLOW,
    unsafe_allow_renames: bool = _ALLOW_RENAMES,
    exclude: Optional[List[str]] = _EXCLUDE,
) -> None:
    """Check that CONTRACT is a safe upgrade of its reference."""
    opts = _options(
        reference, unsafe_skip_storage_check, unsafe_skip_all_checks, unsafe_allow, unsafe_allow_renames, exclude
    )
    with _reported():
        result = _upgrades(ctx).validate_upgrade(contract, opts)
    _print_json(_result_json(contract, result))


@app.command("inspect")
def inspect_proxy(
    ctx: typer.Context,
    address: str = typer.Argument(..., help="Proxy address (0x...)."),
) -> None:
    """Print the ERC-1967 slots of ADDRESS and the proxy kind they imply."""
    with _reported():
        up = _upgrades(ctx)
        try:
            kind: Optional[str] = up.introspector.classify(address).value
        except UnrecognizedProxyError:
            kind = None
        _print_json(
            {
                "address": address,
                "kind": kind,
                "implementation": up.get_implementation_address(address),
                "admin": up.get_admin_address(address),
                "beacon": up.get_beacon_address(address),
            }
        )


@app.command("prepare-upgrade")
def prepare_upgrade(
    ctx: typer.Context,
    contract: str = typer.Argument(..., help="Candidate implementation."),
    reference: Optional[str] = _REFERENCE,
    unsafe_skip_storage_check: bool = _SKIP_STORAGE,
    unsafe_skip_all_checks: bool = _SKIP_ALL,
    unsafe_allow: Optional[List[str]] = _ALLOW,
    unsafe_allow_renames: bool = _ALLOW_RENAMES,
    exclude: Optional[List[str]] = _EXCLUDE,
) -> None:
    """Validate and deploy a new implementation; print its address."""
    opts = _options(
        reference, unsafe_skip_storage_check, unsafe_skip_all_checks, unsafe_allow, unsafe_allow_renames, exclude
    )
    with _reported():
        typer.echo(_upgrades(ctx).prepare_upgrade(contract, opts))


@app.command("upgrade-proxy")
def upgrade_proxy(
    ctx: typer.Context,
    proxy: str = typer.Argument(..., help="Proxy address (0x...)."),
    contract: str = typer.Argument(..., help="New implementation."),
    data: Optional[str] = typer.Option(None, "--data", help="Call data (hex) executed with the upgrade."),
    reference: Optional[str] = _REFERENCE,
    unsafe_skip_storage_check: bool = _SKIP_STORAGE,
    unsafe_skip_all_checks: bool = _SKIP_ALL,
    unsafe_allow: Optional[List[str]] = _ALLOW,
    unsafe_allow_renames: bool = _ALLOW_RENAMES,
    exclude: Optional[List[str]] = _EXCLUDE,
) -> None:
    """Upgrade PROXY to CONTRACT; print the new implementation address."""
    try:
        calldata = from_hex(data) if data else b""
    except ValueError as e:
        raise typer.BadParameter(f"--data is not valid hex: {e}") from e
    opts = _options(
        reference, unsafe_skip_storage_check, unsafe_skip_all_checks, unsafe_allow, unsafe_allow_renames, exclude
    )
    with _reported():
        typer.echo(_upgrades(ctx).upgrade_proxy(proxy, contract, calldata, opts))


# --- Entrypoints --------------------------------------------------------------


def main(argv: Optional[list[str]] = None) -> int:
    """
    Run the CLI. Returns an integer exit code.
    """
    try:
        rc = app(prog_name="omni-upgrades", standalone_mode=False, args=argv)
        return int(rc or 0)
    except typer.Exit as e:
        return int(e.exit_code)
    except Exception as e:
        typer.echo(f"error: {e}", err=True)
        return 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
