#!/usr/bin/env python3
"""Check registry construction from the declarative check configuration."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Tuple

from command_sequence import CommandSequence, parse_sequence
from env_sandbox import SandboxPolicy, load_sandbox_policy, sandbox
from standard_checks import Toolchain, build_concern_sequence, load_toolchain
from suite_errors import SuiteConfigError

CHECK_CONFIG_KIND = "ci.suite.checks.v1"
DEFAULT_CHECK_CONFIG_REL_PATH = Path("policies/ci/checks-v1.json")
_CHECK_NAME_RE = re.compile(r"^[A-Za-z0-9._-]+$")
_CHECK_KEYS = ("name", "description", "commands", "concern", "sandbox", "mutatesTree")
_CONFIG_KEYS = ("schema", "configKind", "sandbox", "toolchain", "harness", "checks")


@dataclass(frozen=True)
class Check:
    name: str
    description: str
    sequence: CommandSequence
    sandboxed: bool = True
    mutates_tree: bool = False


class CheckRegistry:
    """Ordered, read-only name -> Check mapping.

    Names and descriptions are both unique: bats derives each test's function
    name from its description, so a repeated description would redefine an
    earlier test.
    """

    def __init__(self, checks: Iterable[Check]) -> None:
        self._checks: Dict[str, Check] = {}
        described: Dict[str, str] = {}
        for check in checks:
            if check.name in self._checks:
                raise SuiteConfigError(
                    "suite_config_duplicate_check",
                    f"duplicate check name: {check.name!r}",
                )
            if check.description in described:
                raise SuiteConfigError(
                    "suite_config_duplicate_description",
                    f"checks {described[check.description]!r} and {check.name!r} "
                    f"share the description {check.description!r}",
                )
            described[check.description] = check.name
            self._checks[check.name] = check

    def __getitem__(self, name: str) -> Check:
        return self._checks[name]

    def __contains__(self, name: object) -> bool:
        return name in self._checks

    def __iter__(self) -> Iterator[str]:
        return iter(self._checks)

    def __len__(self) -> int:
        return len(self._checks)

    def names(self) -> Tuple[str, ...]:
        return tuple(self._checks)

    def checks(self) -> Tuple[Check, ...]:
        return tuple(self._checks.values())


def _require_non_empty_string(value: Any, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise SuiteConfigError("suite_config_invalid_shape", f"{label} must be a non-empty string")
    return value


def _require_bool(value: Any, label: str) -> bool:
    if not isinstance(value, bool):
        raise SuiteConfigError("suite_config_invalid_shape", f"{label} must be a boolean")
    return value


def _parse_check(
    raw: Any,
    *,
    label: str,
    policy: SandboxPolicy,
    toolchain: Toolchain,
) -> Check:
    if not isinstance(raw, dict):
        raise SuiteConfigError("suite_config_invalid_shape", f"{label} must be an object")
    unknown = sorted(set(raw) - set(_CHECK_KEYS))
    if unknown:
        raise SuiteConfigError("suite_config_invalid_shape", f"{label} has unknown keys: {', '.join(unknown)}")

    name = _require_non_empty_string(raw.get("name"), f"{label}.name")
    if _CHECK_NAME_RE.fullmatch(name) is None:
        raise SuiteConfigError(
            "suite_config_invalid_shape",
            f"{label}.name must match [A-Za-z0-9._-]+ (got {name!r})",
        )
    description = _require_non_empty_string(raw.get("description"), f"{label}.description")
    sandboxed = _require_bool(raw.get("sandbox", True), f"{label}.sandbox")
    mutates_tree = _require_bool(raw.get("mutatesTree", False), f"{label}.mutatesTree")

    has_commands = "commands" in raw
    has_concern = "concern" in raw
    if has_commands == has_concern:
        raise SuiteConfigError(
            "suite_config_invalid_shape",
            f"{label} must define exactly one of `commands` or `concern`",
        )
    if has_commands:
        sequence = parse_sequence(raw["commands"], f"{label}.commands")
    else:
        sequence = build_concern_sequence(raw["concern"], toolchain, label=f"{label}.concern")

    if sandboxed:
        sequence = sandbox(sequence, policy)
    return Check(
        name=name,
        description=description,
        sequence=sequence,
        sandboxed=sandboxed,
        mutates_tree=mutates_tree,
    )


def build_registry(config: Mapping[str, Any]) -> CheckRegistry:
    """Build the registry from a loaded check configuration; no I/O."""
    unknown = sorted(set(config) - set(_CONFIG_KEYS))
    if unknown:
        raise SuiteConfigError("suite_config_invalid_shape", f"config has unknown keys: {', '.join(unknown)}")
    policy = load_sandbox_policy(config.get("sandbox"))
    toolchain = load_toolchain(config.get("toolchain"))

    checks_raw = config.get("checks")
    if not isinstance(checks_raw, list) or not checks_raw:
        raise SuiteConfigError("suite_config_invalid_shape", "checks must be a non-empty list")
    checks: List[Check] = []
    for idx, raw in enumerate(checks_raw):
        checks.append(_parse_check(raw, label=f"checks[{idx}]", policy=policy, toolchain=toolchain))
    return CheckRegistry(checks)


def _reject_duplicate_keys(pairs: List[Tuple[str, Any]]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in pairs:
        if key in out:
            raise SuiteConfigError("suite_config_duplicate_key", f"duplicate JSON object key: {key!r}")
        out[key] = value
    return out


def load_check_config(repo_root: Path, config_path: Path | None = None) -> Dict[str, Any]:
    path = config_path or DEFAULT_CHECK_CONFIG_REL_PATH
    if not path.is_absolute():
        path = (repo_root / path).resolve()

    try:
        payload = json.loads(
            path.read_text(encoding="utf-8"),
            object_pairs_hook=_reject_duplicate_keys,
        )
    except FileNotFoundError as exc:
        raise SuiteConfigError("suite_config_missing", f"check config not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise SuiteConfigError("suite_config_invalid_json", f"invalid JSON in check config {path}: {exc}") from exc
    except OSError as exc:
        raise SuiteConfigError("suite_config_io_error", f"failed reading check config {path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise SuiteConfigError("suite_config_invalid_shape", "check config root must be an object")
    if payload.get("schema") != 1:
        raise SuiteConfigError("suite_config_invalid_shape", "check config schema must be 1")
    config_kind = payload.get("configKind")
    if config_kind != CHECK_CONFIG_KIND:
        raise SuiteConfigError(
            "suite_config_invalid_shape",
            f"configKind must be {CHECK_CONFIG_KIND!r} (got {config_kind!r})",
        )

    # a relative toolchain.repoRoot is anchored at the repository root here,
    # so build_registry only ever sees absolute paths
    toolchain = payload.get("toolchain")
    if isinstance(toolchain, dict):
        raw_root = toolchain.get("repoRoot")
        if isinstance(raw_root, str) and raw_root and not Path(raw_root).is_absolute():
            toolchain["repoRoot"] = str((repo_root / raw_root).resolve())
    return payload
