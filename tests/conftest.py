# -*- coding: utf-8 -*-
"""
Shared fixtures.

    def test_uups_flow(upgrades, chain):
        proxy = upgrades.deploy_uups_proxy("Greeter.sol", init("hello"), UpgradeOptions())
        assert chain.greeting(proxy) == "hello"

`project` is a throw-away Foundry project (see tests.fakes.write_project),
`chain` an in-memory proxy-aware chain, `validator` a stub safety checker and
`upgrades` the orchestrator wired to all three.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict

import pytest

from omni_upgrades.abi import encode_call
from omni_upgrades.artifacts import ArtifactResolver
from omni_upgrades.orchestrator import Upgrades
from omni_upgrades.validation import SafetyCheckGateway

from tests.fakes import FakeChain, StubValidator, det_address, write_project


def pytest_configure(config: pytest.Config) -> None:
    logging.getLogger("omni_upgrades").setLevel(logging.DEBUG)


@dataclass
class Project:
    root: Path
    out: Path

    @property
    def build_info(self) -> Path:
        return self.out / "build-info"


@pytest.fixture
def project(tmp_path: Path) -> Project:
    out = write_project(tmp_path)
    return Project(root=tmp_path, out=out)


@pytest.fixture
def accounts() -> Dict[str, str]:
    return {name: det_address(f"account:{name}") for name in ("deployer", "alice", "mallory")}


@pytest.fixture
def chain(accounts: Dict[str, str]) -> FakeChain:
    return FakeChain(deployer=accounts["deployer"])


@pytest.fixture
def validator() -> StubValidator:
    return StubValidator()


@pytest.fixture
def resolver(project: Project) -> ArtifactResolver:
    return ArtifactResolver(project.out, project.root)


@pytest.fixture
def gateway(validator: StubValidator, project: Project) -> SafetyCheckGateway:
    return SafetyCheckGateway(validator, project.build_info)


@pytest.fixture
def upgrades(resolver: ArtifactResolver, gateway: SafetyCheckGateway, chain: FakeChain) -> Upgrades:
    return Upgrades(resolver, gateway, chain)


@pytest.fixture
def init():
    """Call data for `initialize(string)`."""

    def _init(greeting: str) -> bytes:
        return encode_call("initialize(string)", greeting)

    return _init
