#!/usr/bin/env python3
"""Render a check registry into a bats test-suite document.

Every shell quoting decision lives here. Operations are rendered to POSIX sh;
each check body runs in its own subshell so exports and ``cd`` never leak into
sibling checks, and a guarded failure leaves the body with the failing
operation's exit status.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from typing import List, Tuple

from check_registry import Check, CheckRegistry
from command_sequence import (
    AllSucceed,
    Arg,
    ChangeDir,
    CommandSequence,
    EnvRef,
    Foreground,
    Guard,
    Invoke,
    Operation,
    PrependPath,
    RequireEnv,
    SetEnv,
    UnsetEnv,
)
from env_sandbox import Sandboxed, SandboxPolicy
from suite_errors import SuiteSerializationError

SUITE_HEADER = "# Generated by tools/ci/generate_suite.py; do not edit."
_UNESCAPABLE_DESCRIPTION_CHARS = ("\n", "\r", "\x00")
_DOUBLE_QUOTE_SPECIAL_RE = re.compile(r'[\\"$`]')


@dataclass(frozen=True)
class CompiledSuite:
    text: str
    check_names: Tuple[str, ...]

    @property
    def sha256(self) -> str:
        return hashlib.sha256(self.text.encode("utf-8")).hexdigest()


def escape_shell_arg(text: str) -> str:
    """Single-quote ``text`` for POSIX sh; always quotes, even safe words."""
    return "'" + text.replace("'", "'\\''") + "'"


def escape_description(description: str) -> str:
    """Quote a check description for a bats ``@test`` header line.

    bats re-reads the name as a double-quoted string, so backslash, double
    quote, dollar and backtick are backslash-escaped and the harness reports the
    original text.
    """
    for char in _UNESCAPABLE_DESCRIPTION_CHARS:
        if char in description:
            raise SuiteSerializationError(
                "suite_description_unescapable",
                f"description {description!r} contains {char!r}, which cannot appear in a @test line",
            )
    return '"' + _DOUBLE_QUOTE_SPECIAL_RE.sub(r"\\\g<0>", description) + '"'


def _render_arg(arg: Arg) -> str:
    if isinstance(arg, EnvRef):
        # `:?` makes an unset or empty variable abort instead of expanding to ""
        word = f'"${{{arg.name}:?{arg.name} is not set}}"'
        if arg.suffix:
            word += escape_shell_arg(arg.suffix)
        return word
    return escape_shell_arg(arg)


def _render_argv(argv: Tuple[Arg, ...]) -> str:
    return " ".join(_render_arg(arg) for arg in argv)


def _render_sandboxed(op: Sandboxed) -> List[str]:
    policy: SandboxPolicy = op.policy
    script = "\n".join(render_sequence(op.sequence))
    words = [escape_shell_arg(policy.env_bin), "-i"]
    for name in policy.allow_env:
        # expands to nothing when the invoker leaves NAME unset
        words.append(f'${{{name}+"{name}=${name}"}}')
    for name, value in policy.set_env:
        words.append(f"{name}={escape_shell_arg(value)}")
    words.append("PATH=" + escape_shell_arg(":".join(policy.path)))
    words.extend([escape_shell_arg(policy.shell), "-c", escape_shell_arg(script)])
    return [" ".join(words)]


def _render_all_succeed(op: AllSucceed) -> List[str]:
    lines = ["(", "_ci_rc=0"]
    for member in op.sequences:
        lines.append("(")
        lines.extend(render_sequence(member))
        lines.append(') || { _ci_st=$?; [ "$_ci_rc" -ne 0 ] || _ci_rc=$_ci_st; }')
    lines.append('exit "$_ci_rc"')
    lines.append(")")
    return lines


def render_operation(op: Operation) -> List[str]:
    if isinstance(op, SetEnv):
        return [f"export {op.name}={escape_shell_arg(op.value)}"]
    if isinstance(op, UnsetEnv):
        return [f"unset {op.name}"]
    if isinstance(op, RequireEnv):
        message = escape_shell_arg(f"{op.name} is required but not set")
        return [f'[ -n "${{{op.name}:-}}" ] || {{ printf \'%s\\n\' {message} >&2; false; }}']
    if isinstance(op, ChangeDir):
        return [f"cd -- {escape_shell_arg(op.path)}"]
    if isinstance(op, Invoke):
        return [_render_argv(op.argv)]
    if isinstance(op, PrependPath):
        return ["export PATH=" + escape_shell_arg(":".join(op.dirs)) + '"${PATH:+:$PATH}"']
    if isinstance(op, Guard):
        lines = render_operation(op.operation)
        if op.operation.fallible:
            lines[-1] = lines[-1] + " || exit $?"
        return lines
    if isinstance(op, Foreground):
        lines = render_operation(op.operation)
        lines[-1] = lines[-1] + " || :"
        return lines
    if isinstance(op, AllSucceed):
        return _render_all_succeed(op)
    if isinstance(op, Sandboxed):
        return _render_sandboxed(op)
    raise SuiteSerializationError(
        "suite_operation_unrenderable",
        f"no shell rendering for operation type {type(op).__name__}",
    )


def render_sequence(sequence: CommandSequence) -> List[str]:
    lines: List[str] = []
    for op in sequence:
        lines.extend(render_operation(op))
    return lines


def _check_body_lines(check: Check, lines: List[str]) -> None:
    for line in "\n".join(lines).split("\n"):
        if line.lstrip(" \t").startswith("@test"):
            raise SuiteSerializationError(
                "suite_body_unrenderable",
                f"check {check.name!r}: rendered body line would start a new @test block: {line!r}",
            )
        if line == "}":
            raise SuiteSerializationError(
                "suite_body_unrenderable",
                f"check {check.name!r}: rendered body contains a bare closing brace line",
            )


def compile_check(check: Check) -> str:
    header = f"@test {escape_description(check.description)} {{"
    body = render_sequence(check.sequence)
    _check_body_lines(check, body)
    # bats requires `@test` and the closing brace at column 0
    return "\n".join([header, "(", *body, ")", "}"])


def compile_suite(registry: CheckRegistry) -> CompiledSuite:
    blocks = [compile_check(check) for check in registry.checks()]
    text = "\n\n".join([SUITE_HEADER, *blocks]) + "\n"
    return CompiledSuite(text=text, check_names=registry.names())
