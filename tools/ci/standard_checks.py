#!/usr/bin/env python3
"""Per-concern check sequences built from an explicit toolchain."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Sequence, Tuple

from command_sequence import (
    CommandSequence,
    Invoke,
    SequenceBuilder,
    all_succeed,
    require_env_name,
)
from suite_errors import SuiteConfigError

CONCERN_KINDS = ("format", "lint", "test", "freshness", "shellcheck")


@dataclass(frozen=True)
class Toolchain:
    """Resolved tool locations; checks never look tools up on the ambient PATH."""

    repo_root: str = ""
    tools: Mapping[str, str] = field(default_factory=dict)

    def tool(self, name: str, label: str) -> str:
        path = self.tools.get(name)
        if path is None:
            raise SuiteConfigError(
                "suite_config_unknown_tool",
                f"{label}: tool {name!r} is not declared in toolchain.tools",
            )
        return path

    def root(self, label: str) -> str:
        if not self.repo_root:
            raise SuiteConfigError(
                "suite_config_invalid_toolchain",
                f"{label}: toolchain.repoRoot is required for concern checks",
            )
        return self.repo_root


def _require_absolute(value: Any, label: str) -> str:
    if not isinstance(value, str) or not os.path.isabs(value):
        raise SuiteConfigError("suite_config_invalid_toolchain", f"{label} must be an absolute path (got {value!r})")
    return value


def load_toolchain(raw: Any) -> Toolchain:
    if raw is None:
        return Toolchain()
    if not isinstance(raw, dict):
        raise SuiteConfigError("suite_config_invalid_toolchain", "toolchain must be an object")
    unknown = sorted(set(raw) - {"repoRoot", "tools"})
    if unknown:
        raise SuiteConfigError(
            "suite_config_invalid_toolchain", f"toolchain has unknown keys: {', '.join(unknown)}"
        )
    repo_root = ""
    if "repoRoot" in raw:
        repo_root = _require_absolute(raw["repoRoot"], "toolchain.repoRoot")
    tools_raw = raw.get("tools", {})
    if not isinstance(tools_raw, dict):
        raise SuiteConfigError("suite_config_invalid_toolchain", "toolchain.tools must be an object")
    tools: Dict[str, str] = {}
    for name, path in tools_raw.items():
        tools[name] = _require_absolute(path, f"toolchain.tools.{name}")
    return Toolchain(repo_root=repo_root, tools=tools)


def _string_list(value: Any, label: str, *, allow_empty: bool = True) -> List[str]:
    if value is None and allow_empty:
        return []
    if not isinstance(value, list) or (not value and not allow_empty):
        raise SuiteConfigError("suite_config_invalid_concern", f"{label} must be a list of strings")
    for idx, item in enumerate(value):
        if not isinstance(item, str):
            raise SuiteConfigError("suite_config_invalid_concern", f"{label}[{idx}] must be a string")
    return list(value)


def _env_pairs(value: Any, label: str) -> List[Tuple[str, str]]:
    if value is None:
        return []
    if not isinstance(value, dict):
        raise SuiteConfigError("suite_config_invalid_concern", f"{label} must be an object")
    pairs = []
    for name, item in value.items():
        require_env_name(name, f"{label} key")
        if not isinstance(item, str):
            raise SuiteConfigError("suite_config_invalid_concern", f"{label}.{name} must be a string")
        pairs.append((name, item))
    return pairs


def _tool_argv(spec: Mapping[str, Any], toolchain: Toolchain, label: str) -> Tuple[str, ...]:
    tool_name = spec.get("tool")
    if not isinstance(tool_name, str) or not tool_name:
        raise SuiteConfigError("suite_config_invalid_concern", f"{label}.tool must be a non-empty string")
    args = _string_list(spec.get("args"), f"{label}.args")
    return (toolchain.tool(tool_name, label), *args)


def tool_check(
    toolchain: Toolchain,
    argv: Sequence[str],
    *,
    env: Sequence[Tuple[str, str]] = (),
    label: str = "concern",
) -> CommandSequence:
    """`cd` to the repo root, export ``env`` in order, then run ``argv``."""
    builder = SequenceBuilder().cd(toolchain.root(label))
    for name, value in env:
        builder.set_env(name, value)
    return builder.invoke(*argv).build()


def freshness_check(
    toolchain: Toolchain,
    generate_argv: Sequence[str],
    paths: Sequence[str],
    *,
    label: str = "concern",
) -> CommandSequence:
    """Regenerate, then fail when version control sees a diff.

    The regeneration step rewrites files in the checkout, so such checks must
    not share a run with another tree-mutating check.
    """
    git = toolchain.tool("git", label)
    diff_argv = [git, "diff", "--exit-code"]
    if paths:
        diff_argv.extend(["--", *paths])
    return (
        SequenceBuilder()
        .cd(toolchain.root(label))
        .guard(Invoke(tuple(generate_argv)))
        .invoke(*diff_argv)
        .build()
    )


def shellcheck_check(
    toolchain: Toolchain,
    files: Sequence[str],
    *,
    shell: str = "bash",
    label: str = "concern",
) -> CommandSequence:
    root = toolchain.root(label)
    shellcheck = toolchain.tool("shellcheck", label)
    members = []
    for path in files:
        members.append(
            SequenceBuilder()
            .cd(root)
            # printf is a shell builtin, so no PATH lookup happens
            .foreground(Invoke(("printf", "%s\n", f"shellchecking {path}")))
            .invoke(shellcheck, "--shell", shell, path)
            .build()
        )
    return SequenceBuilder().append(all_succeed(members)).build()


def build_concern_sequence(raw: Any, toolchain: Toolchain, *, label: str = "concern") -> CommandSequence:
    if not isinstance(raw, dict):
        raise SuiteConfigError("suite_config_invalid_concern", f"{label} must be an object")
    kind = raw.get("kind")
    if kind in ("format", "lint", "test"):
        unknown = sorted(set(raw) - {"kind", "tool", "args", "env"})
        if unknown:
            raise SuiteConfigError("suite_config_invalid_concern", f"{label} has unknown keys: {', '.join(unknown)}")
        return tool_check(
            toolchain,
            _tool_argv(raw, toolchain, label),
            env=_env_pairs(raw.get("env"), f"{label}.env"),
            label=label,
        )
    if kind == "freshness":
        unknown = sorted(set(raw) - {"kind", "generate", "paths"})
        if unknown:
            raise SuiteConfigError("suite_config_invalid_concern", f"{label} has unknown keys: {', '.join(unknown)}")
        generate = raw.get("generate")
        if not isinstance(generate, dict):
            raise SuiteConfigError("suite_config_invalid_concern", f"{label}.generate must be an object")
        return freshness_check(
            toolchain,
            _tool_argv(generate, toolchain, f"{label}.generate"),
            _string_list(raw.get("paths"), f"{label}.paths"),
            label=label,
        )
    if kind == "shellcheck":
        unknown = sorted(set(raw) - {"kind", "files", "shell"})
        if unknown:
            raise SuiteConfigError("suite_config_invalid_concern", f"{label} has unknown keys: {', '.join(unknown)}")
        shell = raw.get("shell", "bash")
        if not isinstance(shell, str) or not shell:
            raise SuiteConfigError("suite_config_invalid_concern", f"{label}.shell must be a non-empty string")
        return shellcheck_check(
            toolchain,
            _string_list(raw.get("files"), f"{label}.files", allow_empty=False),
            shell=shell,
            label=label,
        )
    raise SuiteConfigError(
        "suite_config_invalid_concern",
        f"{label}.kind must be one of {', '.join(CONCERN_KINDS)} (got {kind!r})",
    )
