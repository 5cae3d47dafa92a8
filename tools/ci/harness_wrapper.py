#!/usr/bin/env python3
"""Wrap a compiled suite into one sandboxed executable that runs bats in parallel."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Tuple

from command_sequence import Arg, CommandSequence, EnvRef, Invoke, SequenceBuilder
from env_sandbox import SandboxPolicy, Sandboxed
from suite_compiler import CompiledSuite, SUITE_HEADER, escape_shell_arg, render_operation
from suite_errors import SuiteConfigError, SuiteSerializationError

DEFAULT_JOBS = 4
EMBEDDED_SUITE_VAR = "CI_SUITE_FILE"
EMBEDDED_SUITE_DELIMITER = "CI_SUITE_EOF"


@dataclass(frozen=True)
class HarnessConfig:
    bats: str
    jobs: int = DEFAULT_JOBS
    path: Tuple[str, ...] = ()
    will_cite: bool = True


@dataclass(frozen=True)
class Executable:
    text: str
    embedded: bool


def _require_absolute(value: Any, label: str) -> str:
    if not isinstance(value, str) or not os.path.isabs(value):
        raise SuiteConfigError("suite_config_invalid_harness", f"{label} must be an absolute path (got {value!r})")
    return value


def load_harness_config(raw: Any) -> HarnessConfig:
    if not isinstance(raw, dict):
        raise SuiteConfigError("suite_config_invalid_harness", "harness must be an object")
    unknown = sorted(set(raw) - {"bats", "jobs", "path", "willCite"})
    if unknown:
        raise SuiteConfigError("suite_config_invalid_harness", f"harness has unknown keys: {', '.join(unknown)}")

    bats = _require_absolute(raw.get("bats"), "harness.bats")
    jobs = raw.get("jobs", DEFAULT_JOBS)
    if isinstance(jobs, bool) or not isinstance(jobs, int) or jobs < 1:
        raise SuiteConfigError("suite_config_invalid_harness", "harness.jobs must be an integer >= 1")
    path_raw = raw.get("path", [])
    if not isinstance(path_raw, list):
        raise SuiteConfigError("suite_config_invalid_harness", "harness.path must be a list")
    path = tuple(_require_absolute(entry, f"harness.path[{idx}]") for idx, entry in enumerate(path_raw))
    will_cite = raw.get("willCite", True)
    if not isinstance(will_cite, bool):
        raise SuiteConfigError("suite_config_invalid_harness", "harness.willCite must be a boolean")
    return HarnessConfig(bats=bats, jobs=jobs, path=path, will_cite=will_cite)


def harness_sequence(harness: HarnessConfig, suite_arg: Arg) -> CommandSequence:
    """Steps run inside the sandbox: make parallel reachable, then run bats."""
    builder = SequenceBuilder()
    if harness.path:
        # bats only parallelizes when GNU parallel is on PATH
        builder.prepend_path(harness.path)
    if harness.will_cite:
        builder.require_env("HOME")
        # silence GNU parallel's citation notice
        builder.foreground(Invoke(("mkdir", "-p", EnvRef("HOME", "/.parallel"))))
        builder.foreground(Invoke(("touch", EnvRef("HOME", "/.parallel/will-cite"))))
    return builder.invoke(harness.bats, "--jobs", str(harness.jobs), suite_arg).build()


def _embedding_policy(policy: SandboxPolicy) -> SandboxPolicy:
    return SandboxPolicy(
        allow_env=(*policy.allow_env, EMBEDDED_SUITE_VAR),
        set_env=policy.set_env,
        path=policy.path,
        env_bin=policy.env_bin,
        shell=policy.shell,
    )


def wrap(
    suite: CompiledSuite,
    harness: HarnessConfig,
    policy: SandboxPolicy,
    suite_path: Optional[Path] = None,
) -> Executable:
    """Build the CI entry point; its exit status is the harness's aggregate status.

    With ``suite_path`` the wrapper hands that file to bats. Without it the suite
    text is embedded and written to a temporary file at run time, so the wrapper
    is self-contained.
    """
    lines = ["#!/bin/sh", SUITE_HEADER]
    if suite_path is not None:
        if not suite_path.is_absolute():
            raise SuiteConfigError("suite_config_invalid_harness", f"suite path must be absolute (got {suite_path})")
        # exec so the harness status is the wrapper status
        rendered = render_operation(Sandboxed(policy, harness_sequence(harness, str(suite_path))))
        rendered[0] = "exec " + rendered[0]
        lines.extend(rendered)
        return Executable(text="\n".join(lines) + "\n", embedded=False)

    for line in suite.text.split("\n"):
        if line == EMBEDDED_SUITE_DELIMITER:
            raise SuiteSerializationError(
                "suite_embed_delimiter_collision",
                f"suite contains a line equal to the heredoc delimiter {EMBEDDED_SUITE_DELIMITER!r}",
            )
    entry = Sandboxed(_embedding_policy(policy), harness_sequence(harness, EnvRef(EMBEDDED_SUITE_VAR)))
    lines.extend(
        [
            "PATH=" + escape_shell_arg(":".join(policy.path)) + "; export PATH",
            f"{EMBEDDED_SUITE_VAR}=$(mktemp) || exit $?",
            f"trap 'rm -f \"${EMBEDDED_SUITE_VAR}\"' EXIT",
            f"cat > \"${EMBEDDED_SUITE_VAR}\" <<'{EMBEDDED_SUITE_DELIMITER}' || exit $?",
            suite.text.rstrip("\n"),
            EMBEDDED_SUITE_DELIMITER,
            *render_operation(entry),
        ]
    )
    return Executable(text="\n".join(lines) + "\n", embedded=True)


def write_executable(executable: Executable, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(executable.text, encoding="utf-8")
    path.chmod(0o755)
