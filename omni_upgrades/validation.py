"""
omni_upgrades.validation
========================

Safety-check gateway: the only place the external structural validator is
invoked, and the only place its verdict is interpreted.

The validator itself is a capability behind the `Validator` protocol.
`SubprocessValidator` runs the upgrades-core CLI (or any tool speaking the same
argv/exit-code contract); tests substitute a deterministic stub.

Exit-code contract of the external tool
---------------------------------------
- 0      validation passed (warnings may still be printed)
- 1      validation found problems; findings are on stdout
- other  the tool itself failed → `ExternalToolInvocationError`

Output is either JSON (a list of ``{severity, message, location?, category?}``
objects, or ``{"diagnostics": [...]}``) or the text report, in which every
``path/File.sol:LINE: message`` line is one finding.

Skip flags
----------
- ``unsafe_skip_all_checks``: the validator is not run at all; a warning is
  logged and a result marked ``skipped=True`` is returned.
- ``unsafe_skip_storage_check``: forwarded to the tool, and storage-layout
  findings no longer block.

Results are cached per gateway keyed by artifact identities plus the option
flags that can change a verdict.
"""

from __future__ import annotations

import json
import logging
import re
import subprocess
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

from .artifacts import BuildArtifact
from .config import UpgradeOptions
from .errors import ExternalToolInvocationError

log = logging.getLogger(__name__)

STORAGE_CATEGORY = "storage-layout"

_LOCATED_LINE = re.compile(r"^\s*(?P<loc>[^\s:][^:]*\.sol:\d+(?::\d+)?):\s+(?P<msg>.+?)\s*$")
_STORAGE_HINT = re.compile(r"storage|layout|\bslot\b|\b(deleted|inserted|renamed|upgraded)\b", re.IGNORECASE)
_WARNING_PREFIX = re.compile(r"^(warning|note)\s*:\s*", re.IGNORECASE)


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    NOTE = "note"


@dataclass(frozen=True)
class Diagnostic:
    severity: Severity
    message: str
    location: Optional[str] = None
    category: Optional[str] = None

    def __str__(self) -> str:
        where = f"{self.location}: " if self.location else ""
        return f"[{self.severity.value}] {where}{self.message}"

    @property
    def is_error(self) -> bool:
        return self.severity is Severity.ERROR


@dataclass(frozen=True)
class ValidationResult:
    passed: bool
    diagnostics: Tuple[Diagnostic, ...] = ()
    skipped: bool = False

    @classmethod
    def from_diagnostics(
        cls, diagnostics: Iterable[Diagnostic], ignored_categories: Iterable[str] = ()
    ) -> "ValidationResult":
        diags = tuple(diagnostics)
        return cls(passed=not _blocking(diags, ignored_categories), diagnostics=diags)

    @classmethod
    def skipped_result(cls) -> "ValidationResult":
        return cls(passed=True, diagnostics=(), skipped=True)

    @property
    def errors(self) -> Tuple[Diagnostic, ...]:
        return tuple(d for d in self.diagnostics if d.is_error)


def _blocking(diags: Sequence[Diagnostic], ignored_categories: Iterable[str]) -> List[Diagnostic]:
    ignored = set(ignored_categories)
    return [d for d in diags if d.is_error and d.category not in ignored]


def ignored_categories(options: UpgradeOptions) -> Tuple[str, ...]:
    return (STORAGE_CATEGORY,) if options.unsafe_skip_storage_check else ()


@dataclass(frozen=True)
class ValidationRequest:
    build_info_dir: Path
    contract: str
    reference: Optional[str] = None
    require_reference: bool = False
    unsafe_allow: Tuple[str, ...] = ()
    unsafe_allow_renames: bool = False
    unsafe_skip_storage_check: bool = False
    exclude: Tuple[str, ...] = ()


class Validator(Protocol):
    def run(self, request: ValidationRequest) -> ValidationResult: ...


# --- output parsing --------------------------------------------------------------


def _diagnostic_from_obj(obj: Any) -> Diagnostic:
    if not isinstance(obj, Mapping) or "message" not in obj:
        raise ValueError(f"diagnostic entry without a message: {obj!r}")
    severity = Severity(str(obj.get("severity", "error")).lower())
    location = obj.get("location") or obj.get("src")
    category = obj.get("category")
    for key, value in (("location", location), ("category", category)):
        if value is not None and not isinstance(value, str):
            raise ValueError(f"diagnostic {key} must be a string: {value!r}")
    return Diagnostic(
        severity=severity,
        message=str(obj["message"]),
        location=location or None,
        category=category,
    )


def _parse_json(text: str) -> Optional[List[Diagnostic]]:
    try:
        doc = json.loads(text)
    except ValueError:
        return None
    if isinstance(doc, Mapping):
        doc = doc.get("diagnostics", doc.get("errors", []))
    if not isinstance(doc, list):
        raise ValueError("JSON report is neither a list nor an object with 'diagnostics'")
    return [_diagnostic_from_obj(o) for o in doc]


def _parse_text(text: str) -> List[Diagnostic]:
    out: List[Diagnostic] = []
    for line in text.splitlines():
        m = _LOCATED_LINE.match(line)
        if not m:
            continue
        msg = m.group("msg")
        severity = Severity.ERROR
        w = _WARNING_PREFIX.match(msg)
        if w:
            severity = Severity(w.group(1).lower())
            msg = msg[w.end():]
        category = STORAGE_CATEGORY if _STORAGE_HINT.search(msg) else None
        out.append(Diagnostic(severity=severity, message=msg, location=m.group("loc"), category=category))
    return out


def parse_report(stdout: str) -> List[Diagnostic]:
    """Turn validator stdout into diagnostics. Raises ValueError on malformed JSON reports."""
    text = (stdout or "").strip()
    if not text:
        return []
    if text[0] in "[{":
        parsed = _parse_json(text)
        if parsed is not None:
            return parsed
    return _parse_text(text)


# --- external tool ---------------------------------------------------------------


class SubprocessValidator:
    """Runs the external validator as a child process and waits for it."""

    def __init__(self, command: Sequence[str], cwd: Optional[Path] = None) -> None:
        if not command:
            raise ValueError("validator command must not be empty")
        self.command = tuple(command)
        self.cwd = cwd

    def build_argv(self, request: ValidationRequest) -> List[str]:
        argv = [*self.command, str(request.build_info_dir), "--contract", request.contract]
        if request.reference:
            argv += ["--reference", request.reference]
        if request.require_reference:
            argv.append("--requireReference")
        if request.unsafe_allow:
            argv += ["--unsafeAllow", ",".join(request.unsafe_allow)]
        if request.unsafe_allow_renames:
            argv.append("--unsafeAllowRenames")
        if request.unsafe_skip_storage_check:
            argv.append("--unsafeSkipStorageCheck")
        for pattern in request.exclude:
            argv += ["--exclude", pattern]
        return argv

    def run(self, request: ValidationRequest) -> ValidationResult:
        argv = self.build_argv(request)
        log.debug("validator: exec %s", " ".join(argv))
        try:
            proc = subprocess.run(argv, cwd=self.cwd, capture_output=True, text=True, check=False)
        except OSError as e:
            raise ExternalToolInvocationError(f"cannot execute {argv[0]}: {e}", tuple(argv)) from e

        stdout, stderr = proc.stdout or "", proc.stderr or ""
        combined = (stdout + "\n" + stderr).strip()
        if proc.returncode not in (0, 1):
            raise ExternalToolInvocationError("unexpected exit status", tuple(argv), proc.returncode, combined)

        try:
            diagnostics = parse_report(stdout)
        except ValueError as e:
            raise ExternalToolInvocationError(f"malformed report: {e}", tuple(argv), proc.returncode, combined) from e

        ignored = (STORAGE_CATEGORY,) if request.unsafe_skip_storage_check else ()
        if proc.returncode == 0:
            return ValidationResult.from_diagnostics(diagnostics, ignored)

        if not combined:
            raise ExternalToolInvocationError("validator reported failure without any output", tuple(argv), 1)
        if not any(d.is_error for d in diagnostics):
            # The report did not use the located-line format; keep it whole.
            diagnostics.append(Diagnostic(Severity.ERROR, combined))
        result = ValidationResult.from_diagnostics(diagnostics, ignored)
        # exit 1 is a failed verdict even if every finding is in a skipped category
        return replace(result, passed=False)


# --- gateway ---------------------------------------------------------------------

CacheKey = Tuple[str, Optional[str], Tuple[Any, ...]]


class SafetyCheckGateway:
    def __init__(self, validator: Validator, build_info_dir: Path) -> None:
        self._validator = validator
        self._build_info_dir = Path(build_info_dir)
        self._cache: Dict[CacheKey, ValidationResult] = {}
        self.invocations = 0

    def validate_implementation(self, artifact: BuildArtifact, options: UpgradeOptions) -> ValidationResult:
        return self._check(artifact, None, options)

    def validate_upgrade(
        self, candidate: BuildArtifact, reference: BuildArtifact, options: UpgradeOptions
    ) -> ValidationResult:
        return self._check(candidate, reference, options)

    def clear_cache(self) -> None:
        self._cache.clear()

    def _check(
        self, candidate: BuildArtifact, reference: Optional[BuildArtifact], options: UpgradeOptions
    ) -> ValidationResult:
        fqn = candidate.fully_qualified_name
        if options.unsafe_skip_all_checks:
            log.warning("gateway: unsafe_skip_all_checks is set; %s is NOT being validated", fqn)
            return ValidationResult.skipped_result()
        if options.unsafe_skip_storage_check:
            log.warning("gateway: unsafe_skip_storage_check is set; storage layout of %s is not checked", fqn)
        if options.unsafe_allow:
            log.warning("gateway: allowing unsafe patterns %s for %s", ",".join(options.unsafe_allow), fqn)

        key: CacheKey = (candidate.identity, reference.identity if reference else None, options.check_flags())
        cached = self._cache.get(key)
        if cached is not None:
            log.debug("gateway: cache hit %s", fqn)
            return cached

        request = ValidationRequest(
            build_info_dir=self._build_info_dir,
            contract=fqn,
            reference=reference.fully_qualified_name if reference else None,
            require_reference=reference is not None,
            unsafe_allow=tuple(options.unsafe_allow),
            unsafe_allow_renames=options.unsafe_allow_renames,
            unsafe_skip_storage_check=options.unsafe_skip_storage_check,
            exclude=tuple(options.exclude),
        )
        self.invocations += 1
        raw = self._validator.run(request)
        blocking = _blocking(raw.diagnostics, ignored_categories(options))
        result = replace(raw, passed=raw.passed and not blocking)
        log.info(
            "gateway: %s%s -> %s (%d diagnostics)",
            fqn,
            f" from {request.reference}" if request.reference else "",
            "passed" if result.passed else "FAILED",
            len(result.diagnostics),
        )
        self._cache[key] = result
        return result


__all__ = [
    "STORAGE_CATEGORY",
    "Severity",
    "Diagnostic",
    "ValidationResult",
    "ValidationRequest",
    "Validator",
    "SubprocessValidator",
    "SafetyCheckGateway",
    "parse_report",
    "ignored_categories",
]
