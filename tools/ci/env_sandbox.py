#!/usr/bin/env python3
"""Environment-reset sandbox for check sequences.

A sandboxed sequence runs under ``env -i`` with only the allow-listed variables
carried over from the invoker, the explicitly set ones, and an explicit
baseline ``PATH``. A tool that needs anything else fails instead of silently
picking up developer-machine state.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Tuple

from command_sequence import CommandSequence, Guard, Operation, require_env_name
from suite_errors import SuiteConfigError

DEFAULT_ALLOW_ENV: Tuple[str, ...] = ("HOME",)
DEFAULT_PATH: Tuple[str, ...] = ("/usr/bin", "/bin")
DEFAULT_ENV_BIN = "/usr/bin/env"
DEFAULT_SHELL = "/bin/sh"


def _require_absolute(value: Any, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise SuiteConfigError("suite_config_invalid_sandbox", f"{label} must be a non-empty string")
    if not os.path.isabs(value):
        raise SuiteConfigError(
            "suite_config_invalid_sandbox",
            f"{label} must be an absolute path (got {value!r})",
        )
    if "\x00" in value or "\n" in value:
        raise SuiteConfigError("suite_config_invalid_sandbox", f"{label} contains control characters")
    return value


@dataclass(frozen=True)
class SandboxPolicy:
    allow_env: Tuple[str, ...] = DEFAULT_ALLOW_ENV
    set_env: Tuple[Tuple[str, str], ...] = ()
    path: Tuple[str, ...] = DEFAULT_PATH
    env_bin: str = DEFAULT_ENV_BIN
    shell: str = DEFAULT_SHELL

    def __post_init__(self) -> None:
        allow = tuple(self.allow_env)
        if "PATH" in allow:
            raise SuiteConfigError(
                "suite_config_invalid_sandbox",
                "PATH cannot be allow-listed; declare the baseline through `path`",
            )
        for idx, name in enumerate(allow):
            require_env_name(name, f"sandbox.allowEnv[{idx}]")
        if len(set(allow)) != len(allow):
            raise SuiteConfigError("suite_config_invalid_sandbox", "sandbox.allowEnv must not contain duplicates")

        pairs = tuple((str(name), value) for name, value in self.set_env)
        for name, value in pairs:
            require_env_name(name, "sandbox.setEnv key")
            if name == "PATH":
                raise SuiteConfigError(
                    "suite_config_invalid_sandbox",
                    "PATH cannot be set through setEnv; declare the baseline through `path`",
                )
            if name in allow:
                raise SuiteConfigError(
                    "suite_config_invalid_sandbox",
                    f"{name} is both allow-listed and explicitly set",
                )
            if not isinstance(value, str) or "\x00" in value:
                raise SuiteConfigError("suite_config_invalid_sandbox", f"sandbox.setEnv.{name} must be a string")

        path = tuple(self.path)
        if not path:
            raise SuiteConfigError("suite_config_invalid_sandbox", "sandbox.path must list at least one directory")
        for idx, entry in enumerate(path):
            _require_absolute(entry, f"sandbox.path[{idx}]")
            if ":" in entry:
                raise SuiteConfigError("suite_config_invalid_sandbox", f"sandbox.path[{idx}] must not contain ':'")

        _require_absolute(self.env_bin, "sandbox.envBin")
        _require_absolute(self.shell, "sandbox.shell")
        object.__setattr__(self, "allow_env", allow)
        object.__setattr__(self, "set_env", pairs)
        object.__setattr__(self, "path", path)

    def baseline_names(self) -> Tuple[str, ...]:
        """Names a sandboxed process can observe (when the invoker sets them)."""
        return (*self.allow_env, *(name for name, _ in self.set_env), "PATH")


@dataclass(frozen=True)
class Sandboxed(Operation):
    policy: SandboxPolicy
    sequence: CommandSequence


def sandbox(sequence: CommandSequence, policy: SandboxPolicy) -> CommandSequence:
    return CommandSequence((Guard(Sandboxed(policy, sequence)),))


def load_sandbox_policy(raw: Any) -> SandboxPolicy:
    if raw is None:
        return SandboxPolicy()
    if not isinstance(raw, dict):
        raise SuiteConfigError("suite_config_invalid_sandbox", "sandbox must be an object")
    unknown = sorted(set(raw) - {"allowEnv", "setEnv", "path", "envBin", "shell"})
    if unknown:
        raise SuiteConfigError("suite_config_invalid_sandbox", f"sandbox has unknown keys: {', '.join(unknown)}")

    allow_raw = raw.get("allowEnv", list(DEFAULT_ALLOW_ENV))
    if not isinstance(allow_raw, list):
        raise SuiteConfigError("suite_config_invalid_sandbox", "sandbox.allowEnv must be a list")
    set_raw = raw.get("setEnv", {})
    if not isinstance(set_raw, dict):
        raise SuiteConfigError("suite_config_invalid_sandbox", "sandbox.setEnv must be an object")
    path_raw = raw.get("path", list(DEFAULT_PATH))
    if not isinstance(path_raw, list):
        raise SuiteConfigError("suite_config_invalid_sandbox", "sandbox.path must be a list")

    return SandboxPolicy(
        allow_env=tuple(allow_raw),
        set_env=tuple(set_raw.items()),
        path=tuple(path_raw),
        env_bin=raw.get("envBin", DEFAULT_ENV_BIN),
        shell=raw.get("shell", DEFAULT_SHELL),
    )


def sandbox_policy_payload(policy: SandboxPolicy) -> Dict[str, Any]:
    return {
        "allowEnv": list(policy.allow_env),
        "setEnv": dict(policy.set_env),
        "path": list(policy.path),
        "envBin": policy.env_bin,
        "shell": policy.shell,
    }


def projected_environment(policy: SandboxPolicy, ambient: Mapping[str, str]) -> Dict[str, str]:
    """Environment a sandboxed sequence starts with, given the invoker's ``ambient``."""
    out: Dict[str, str] = {}
    for name in policy.allow_env:
        if name in ambient:
            out[name] = ambient[name]
    for name, value in policy.set_env:
        out[name] = value
    out["PATH"] = ":".join(policy.path)
    return out
