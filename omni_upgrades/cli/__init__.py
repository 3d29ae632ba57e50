"""
omni_upgrades.cli
=================

Typer command line for omni-upgrades, installed as the `omni-upgrades` console
script. Typer is only imported when the CLI is actually used.

    $ omni-upgrades --help
    $ omni-upgrades validate-upgrade GreeterV2.sol --reference Greeter.sol
"""

from __future__ import annotations

from importlib import import_module
from typing import Any, List, Optional

from ..version import __version__

__all__: List[str] = ["__version__", "main", "app"]

_SUBMODULE = "omni_upgrades.cli.main"


def __getattr__(name: str) -> Any:  # PEP 562 lazy attribute access
    if name == "app":
        return import_module(_SUBMODULE).app
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def main(argv: Optional[list[str]] = None) -> int:
    """Run the CLI and return its exit code."""
    return int(import_module(_SUBMODULE).main(argv))
