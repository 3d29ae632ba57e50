"""
Nox sessions for omni-upgrades.

Sessions:
  - lint   : ruff + black + mypy over the package and tests
  - unit   : unit tests

Pass extra args to pytest like:
  nox -s unit -- -k "orchestrator and not beacon" -vv
"""

from __future__ import annotations

import nox

nox.options.reuse_venv = True
nox.options.stop_on_first_error = False

PY_PATHS = ["omni_upgrades", "tests", "noxfile.py"]
TEST_PYTHONS = ["3.10", "3.11", "3.12"]


def _install_test_stack(session: nox.Session) -> None:
    session.run("python", "-m", "pip", "install", "--upgrade", "pip", silent=True)
    session.install("-e", ".[test]")


@nox.session(name="lint", python="3.11")
def lint(session: nox.Session) -> None:
    """Static analysis: ruff, black (check), mypy."""
    session.install("ruff>=0.6.0", "black>=24.3.0", "mypy>=1.10.0")
    session.install("-e", ".")
    session.run("ruff", "check", *PY_PATHS)
    session.run("black", "--check", *PY_PATHS)
    session.run("mypy", "--pretty", "--show-error-codes", "--ignore-missing-imports", "omni_upgrades")


@nox.session(name="unit", python=TEST_PYTHONS)
def unit(session: nox.Session) -> None:
    """Unit tests only."""
    _install_test_stack(session)
    session.run("pytest", "-q", *session.posargs)

