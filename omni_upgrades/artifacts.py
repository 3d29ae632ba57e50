"""
omni_upgrades.artifacts
=======================

Map a human-written contract identifier to exactly one compiled artifact.

Build output layout (Foundry):

    <out>/
      Greeter.sol/
        Greeter.json            # abi, bytecode, deployedBytecode, ast, storageLayout, metadata
        GreeterLib.json
      GreeterV2.sol/
        GreeterV2.json
      build-info/               # compiler inputs/outputs, consumed by the validator only

Accepted identifiers
--------------------
- ``Greeter.sol``                       every contract compiled from a file named Greeter.sol
- ``Greeter.sol:Greeter``               qualified by contract name
- ``src/v1/Greeter.sol[:Greeter]``      path relative to the project root
- ``out/Greeter.sol/Greeter.json``      a build artifact path
- ``Greeter``                           bare contract name

An identifier that matches nothing raises `ArtifactNotFoundError`; one that
matches more than one artifact raises `AmbiguousArtifactError` listing them.
There is no "closest match" fallback.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, List, Mapping, Optional, Sequence, Tuple

from .abi import from_hex
from .errors import AmbiguousArtifactError, ArtifactNotFoundError

log = logging.getLogger(__name__)

_SKIP_DIRS = {"build-info", "cache"}


@dataclass(frozen=True)
class BuildArtifact:
    source_path: str
    contract_name: str
    bytecode: bytes
    deployed_bytecode: bytes
    compiler_version: str = ""
    abi: Tuple[Mapping[str, Any], ...] = field(default=(), compare=False)
    ast: Optional[Mapping[str, Any]] = field(default=None, compare=False)
    storage_layout: Optional[Mapping[str, Any]] = field(default=None, compare=False)
    metadata: Optional[Mapping[str, Any]] = field(default=None, compare=False)
    artifact_path: Optional[Path] = field(default=None, compare=False)

    @property
    def file_name(self) -> str:
        return PurePosixPath(self.source_path).name

    @property
    def fully_qualified_name(self) -> str:
        return f"{self.source_path}:{self.contract_name}"

    @property
    def identity(self) -> str:
        """FQN plus a digest of the runtime code; changes whenever the contract is rebuilt differently."""
        digest = hashlib.sha3_256(self.deployed_bytecode or self.bytecode).hexdigest()[:16]
        return f"{self.fully_qualified_name}@{digest}"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.fully_qualified_name


def _bytecode(obj: Any) -> bytes:
    if isinstance(obj, Mapping):
        obj = obj.get("object", "")
    if not obj:
        return b""
    return from_hex(str(obj))


def _contract_name_for(path: Path, doc: Mapping[str, Any], meta: Mapping[str, Any]) -> Tuple[str, str]:
    """Return (source_path, contract_name) for one artifact document."""
    target = ((meta.get("settings") or {}).get("compilationTarget")) or {}
    if isinstance(target, Mapping) and len(target) == 1:
        src, name = next(iter(target.items()))
        return str(src), str(name)
    # Foundry names the artifact <Contract>[.<solc version>].json
    name = path.name.split(".", 1)[0]
    ast = doc.get("ast") or {}
    src = ast.get("absolutePath") or path.parent.name
    return str(src), name


def load_artifact(path: Path) -> BuildArtifact:
    doc = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(doc, Mapping) or "bytecode" not in doc:
        raise ValueError(f"{path} is not a contract artifact")
    meta = doc.get("metadata") or {}
    if isinstance(meta, str):
        meta = json.loads(meta)
    source_path, contract_name = _contract_name_for(path, doc, meta)
    compiler = (meta.get("compiler") or {}).get("version", "")
    return BuildArtifact(
        source_path=source_path,
        contract_name=contract_name,
        bytecode=_bytecode(doc.get("bytecode")),
        deployed_bytecode=_bytecode(doc.get("deployedBytecode")),
        compiler_version=str(compiler),
        abi=tuple(doc.get("abi") or ()),
        ast=doc.get("ast"),
        storage_layout=doc.get("storageLayout"),
        metadata=meta or None,
        artifact_path=path,
    )


def _parse_identifier(identifier: str) -> Tuple[Optional[str], Optional[str]]:
    """Split an identifier into (path part, contract name); either may be None."""
    s = identifier.strip()
    if ":" in s:
        path, name = s.rsplit(":", 1)
        return (path or None), (name or None)
    if s.endswith(".sol") or "/" in s:
        return s, None
    return None, s


def _path_matches(source_path: str, wanted: str) -> bool:
    src = PurePosixPath(source_path.replace("\\", "/"))
    want = PurePosixPath(wanted.replace("\\", "/"))
    if len(want.parts) == 1:
        return src.name == want.name
    return src == want or str(src).endswith("/" + str(want))


class ArtifactResolver:
    """Pure lookup over one build output directory."""

    def __init__(self, out_dir: Path, project_root: Optional[Path] = None) -> None:
        self.out_dir = Path(out_dir)
        self.project_root = Path(project_root) if project_root else self.out_dir.parent
        self._artifacts: Optional[List[BuildArtifact]] = None

    def all_artifacts(self) -> Sequence[BuildArtifact]:
        if self._artifacts is None:
            self._artifacts = self._scan()
        return self._artifacts

    def _scan(self) -> List[BuildArtifact]:
        found: List[BuildArtifact] = []
        if not self.out_dir.is_dir():
            log.warning("artifacts: build output %s does not exist; did the project compile?", self.out_dir)
            return found
        for p in sorted(self.out_dir.rglob("*.json")):
            if _SKIP_DIRS.intersection(p.relative_to(self.out_dir).parts):
                continue
            try:
                found.append(load_artifact(p))
            except (ValueError, OSError) as e:
                log.debug("artifacts: skipping %s (%s)", p, e)
        log.debug("artifacts: indexed %d contracts under %s", len(found), self.out_dir)
        return found

    def resolve(self, identifier: str) -> BuildArtifact:
        if not identifier or not identifier.strip():
            raise ArtifactNotFoundError(identifier or "", str(self.out_dir))
        matches = self._matches(identifier.strip())
        if not matches:
            raise ArtifactNotFoundError(identifier, str(self.out_dir))
        if len(matches) > 1:
            raise AmbiguousArtifactError(identifier, tuple(sorted(self._describe(m) for m in matches)))
        return matches[0]

    def _describe(self, artifact: BuildArtifact) -> str:
        if artifact.artifact_path is None:
            return artifact.fully_qualified_name
        try:
            rel = artifact.artifact_path.relative_to(self.project_root)
        except ValueError:
            rel = artifact.artifact_path
        return f"{artifact.fully_qualified_name} ({rel.as_posix()})"

    def _matches(self, identifier: str) -> List[BuildArtifact]:
        if identifier.endswith(".json"):
            target = (self.project_root / identifier).resolve()
            return [a for a in self.all_artifacts() if a.artifact_path and a.artifact_path.resolve() == target]

        path_part, name = _parse_identifier(identifier)
        out: List[BuildArtifact] = []
        for a in self.all_artifacts():
            if name is not None and a.contract_name != name:
                continue
            if path_part is not None and not _path_matches(a.source_path, path_part):
                continue
            out.append(a)
        return out


__all__ = ["BuildArtifact", "ArtifactResolver", "load_artifact"]
