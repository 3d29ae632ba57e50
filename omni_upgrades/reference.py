"""
Work out which prior version a candidate implementation is checked against.

Precedence:

1. ``options.reference_contract``: the caller said so, the annotation is not read.
2. ``@custom:oz-upgrades-from <identifier>`` in the candidate's NatSpec, taken
   from the compiler devdoc or, failing that, the contract's AST documentation.
3. Nothing → `MissingReferenceError`.

Only (1) is consulted when no reference is required (``required=False``).

With ``options.require_reference_agreement`` both sources are read and must
name the same artifact (`ReferenceConflictError` otherwise).
"""

from __future__ import annotations

import logging
import re
from typing import Any, Iterator, Mapping, Optional

from .artifacts import ArtifactResolver, BuildArtifact
from .config import UpgradeOptions
from .errors import MissingReferenceError, ReferenceConflictError

log = logging.getLogger(__name__)

ANNOTATION = "@custom:oz-upgrades-from"
_DEVDOC_KEY = "custom:oz-upgrades-from"
_ANNOTATION_RE = re.compile(re.escape(ANNOTATION) + r"\s+(\S+)")


def _contract_nodes(ast: Mapping[str, Any]) -> Iterator[Mapping[str, Any]]:
    for node in ast.get("nodes") or ():
        if isinstance(node, Mapping) and node.get("nodeType") == "ContractDefinition":
            yield node


def _doc_text(node: Mapping[str, Any]) -> str:
    doc = node.get("documentation")
    if isinstance(doc, Mapping):
        return str(doc.get("text") or "")
    return str(doc or "")


def annotated_reference(artifact: BuildArtifact) -> Optional[str]:
    """The identifier named by the candidate's upgrades-from annotation, if any."""
    devdoc = ((artifact.metadata or {}).get("output") or {}).get("devdoc") or {}
    value = devdoc.get(_DEVDOC_KEY)
    if isinstance(value, str) and value.strip():
        return value.strip().split()[0]

    if artifact.ast:
        for node in _contract_nodes(artifact.ast):
            if node.get("name") != artifact.contract_name:
                continue
            m = _ANNOTATION_RE.search(_doc_text(node))
            if m:
                return m.group(1)
    return None


class ReferenceResolver:
    def __init__(self, artifacts: ArtifactResolver) -> None:
        self._artifacts = artifacts

    def resolve(
        self,
        candidate: BuildArtifact,
        options: UpgradeOptions,
        *,
        required: bool = True,
    ) -> Optional[BuildArtifact]:
        explicit = options.reference_contract
        if explicit:
            reference = self._artifacts.resolve(explicit)
            if options.require_reference_agreement:
                self._check_agreement(candidate, reference)
            log.debug("reference: %s -> %s (explicit)", candidate.contract_name, reference.fully_qualified_name)
            return reference

        if not required:
            log.debug("reference: %s needs none, annotation not read", candidate.contract_name)
            return None

        annotated = annotated_reference(candidate)
        if annotated:
            reference = self._artifacts.resolve(annotated)
            log.debug("reference: %s -> %s (annotation)", candidate.contract_name, reference.fully_qualified_name)
            return reference

        if required:
            raise MissingReferenceError(candidate.fully_qualified_name)
        return None

    def _check_agreement(self, candidate: BuildArtifact, explicit: BuildArtifact) -> None:
        annotated = annotated_reference(candidate)
        if not annotated:
            return
        from_annotation = self._artifacts.resolve(annotated)
        if from_annotation != explicit:
            raise ReferenceConflictError(
                candidate.fully_qualified_name,
                explicit.fully_qualified_name,
                from_annotation.fully_qualified_name,
            )


__all__ = ["ANNOTATION", "annotated_reference", "ReferenceResolver"]
