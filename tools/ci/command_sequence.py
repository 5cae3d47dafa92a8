#!/usr/bin/env python3
"""Typed operation IR and fail-fast command-sequence builder for CI checks.

A check is an ordered list of atomic operations. Order is part of the contract:
later operations observe the environment and working directory left by earlier
ones, so nothing here reorders or deduplicates.

Every fallible operation at the top level of a sequence must be wrapped in
``Guard`` (the sequence stops and exits with that operation's status) or in
``Foreground`` (explicitly best-effort). ``SequenceBuilder.append`` applies
``Guard`` automatically, which is what gives a sequence fail-fast semantics.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Iterable, Iterator, List, Mapping, Sequence, Tuple, Union

from suite_errors import SuiteConfigError

_ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def require_env_name(value: Any, label: str) -> str:
    if not isinstance(value, str) or _ENV_NAME_RE.fullmatch(value) is None:
        raise SuiteConfigError(
            "suite_config_invalid_env_name",
            f"{label} must be a shell variable name (got {value!r})",
        )
    return value


def _require_text(value: Any, label: str, *, allow_empty: bool = True) -> str:
    if not isinstance(value, str):
        raise SuiteConfigError("suite_config_invalid_operation", f"{label} must be a string")
    if "\x00" in value:
        raise SuiteConfigError("suite_config_invalid_operation", f"{label} must not contain NUL")
    if not allow_empty and not value:
        raise SuiteConfigError("suite_config_invalid_operation", f"{label} must be non-empty")
    return value


class Operation:
    """Base class for one atomic step of a check."""

    fallible: ClassVar[bool] = True


@dataclass(frozen=True)
class SetEnv(Operation):
    name: str
    value: str

    fallible: ClassVar[bool] = False

    def __post_init__(self) -> None:
        require_env_name(self.name, "SetEnv.name")
        _require_text(self.value, f"SetEnv({self.name}).value")


@dataclass(frozen=True)
class UnsetEnv(Operation):
    name: str

    fallible: ClassVar[bool] = False

    def __post_init__(self) -> None:
        require_env_name(self.name, "UnsetEnv.name")


@dataclass(frozen=True)
class RequireEnv(Operation):
    """Fail unless ``name`` is set to a non-empty value."""

    name: str

    def __post_init__(self) -> None:
        require_env_name(self.name, "RequireEnv.name")


@dataclass(frozen=True)
class ChangeDir(Operation):
    path: str

    def __post_init__(self) -> None:
        _require_text(self.path, "ChangeDir.path", allow_empty=False)


@dataclass(frozen=True)
class EnvRef:
    """Invoke argument expanded from a variable at run time, plus a literal suffix.

    Expansion of an unset or empty variable aborts the check.
    """

    name: str
    suffix: str = ""

    def __post_init__(self) -> None:
        require_env_name(self.name, "EnvRef.name")
        _require_text(self.suffix, f"EnvRef({self.name}).suffix")


Arg = Union[str, EnvRef]


@dataclass(frozen=True)
class Invoke(Operation):
    argv: Tuple[Arg, ...]

    def __post_init__(self) -> None:
        if isinstance(self.argv, str) or not isinstance(self.argv, (tuple, list)):
            raise SuiteConfigError("suite_config_invalid_operation", "Invoke.argv must be a list of strings")
        if not self.argv:
            raise SuiteConfigError("suite_config_invalid_operation", "Invoke.argv must be non-empty")
        for idx, arg in enumerate(self.argv):
            if isinstance(arg, EnvRef) and idx != 0:
                continue
            _require_text(arg, f"Invoke.argv[{idx}]", allow_empty=idx != 0)
        object.__setattr__(self, "argv", tuple(self.argv))


@dataclass(frozen=True)
class PrependPath(Operation):
    dirs: Tuple[str, ...]

    fallible: ClassVar[bool] = False

    def __post_init__(self) -> None:
        if isinstance(self.dirs, str) or not isinstance(self.dirs, (tuple, list)) or not self.dirs:
            raise SuiteConfigError("suite_config_invalid_operation", "PrependPath.dirs must be a non-empty list")
        for idx, entry in enumerate(self.dirs):
            _require_text(entry, f"PrependPath.dirs[{idx}]", allow_empty=False)
            if ":" in entry:
                raise SuiteConfigError(
                    "suite_config_invalid_operation",
                    f"PrependPath.dirs[{idx}] must not contain ':' (got {entry!r})",
                )
        object.__setattr__(self, "dirs", tuple(self.dirs))


def _require_unwrapped(operation: Any, label: str) -> None:
    if not isinstance(operation, Operation):
        raise SuiteConfigError("suite_config_invalid_operation", f"{label} must wrap an Operation")
    if isinstance(operation, (Guard, Foreground)):
        # a step has exactly one failure policy
        raise SuiteConfigError(
            "suite_config_invalid_operation",
            f"{label} cannot wrap {type(operation).__name__}",
        )


@dataclass(frozen=True)
class Guard(Operation):
    """Continue only if ``operation`` succeeds; otherwise exit with its status."""

    operation: Operation

    fallible: ClassVar[bool] = False

    def __post_init__(self) -> None:
        _require_unwrapped(self.operation, "Guard.operation")


@dataclass(frozen=True)
class Foreground(Operation):
    """Run ``operation`` and continue regardless of its status."""

    operation: Operation

    fallible: ClassVar[bool] = False

    def __post_init__(self) -> None:
        _require_unwrapped(self.operation, "Foreground.operation")


@dataclass(frozen=True)
class CommandSequence:
    operations: Tuple[Operation, ...] = ()

    def __post_init__(self) -> None:
        ops = tuple(self.operations)
        for idx, op in enumerate(ops):
            if not isinstance(op, Operation):
                raise SuiteConfigError(
                    "suite_config_invalid_operation",
                    f"operations[{idx}] is not an Operation (got {type(op).__name__})",
                )
            if op.fallible:
                raise SuiteConfigError(
                    "suite_config_unguarded_operation",
                    f"operations[{idx}] ({type(op).__name__}) must be wrapped in Guard or Foreground",
                )
        object.__setattr__(self, "operations", ops)

    def __iter__(self) -> Iterator[Operation]:
        return iter(self.operations)

    def __len__(self) -> int:
        return len(self.operations)


@dataclass(frozen=True)
class AllSucceed(Operation):
    """Run every member; succeed iff all do. Does not stop at the first failure."""

    sequences: Tuple[CommandSequence, ...]

    def __post_init__(self) -> None:
        if not self.sequences:
            raise SuiteConfigError("suite_config_invalid_operation", "AllSucceed needs at least one sequence")
        for idx, member in enumerate(self.sequences):
            if not isinstance(member, CommandSequence):
                raise SuiteConfigError(
                    "suite_config_invalid_operation",
                    f"AllSucceed.sequences[{idx}] must be a CommandSequence",
                )
        object.__setattr__(self, "sequences", tuple(self.sequences))


def guard(operation: Operation) -> Operation:
    if isinstance(operation, (Guard, Foreground)):
        return operation
    if not operation.fallible:
        return operation
    return Guard(operation)


def prepend_path(dirs: Sequence[str]) -> PrependPath:
    return PrependPath(tuple(dirs))


def all_succeed(commands: Iterable[Union[CommandSequence, Operation]]) -> AllSucceed:
    members: List[CommandSequence] = []
    for command in commands:
        if isinstance(command, CommandSequence):
            members.append(command)
        else:
            members.append(CommandSequence((guard(command),)))
    return AllSucceed(tuple(members))


def with_env(
    variables: Mapping[str, str],
    sequence: CommandSequence,
    *,
    unset_after: bool = False,
) -> CommandSequence:
    """Export ``variables`` (in mapping order) before ``sequence``.

    Exports are not scoped: they stay visible to every later operation of the
    enclosing check unless ``unset_after`` is set, in which case ``UnsetEnv``
    steps follow the sequence. Callers composing sequences must account for it.
    """
    builder = SequenceBuilder()
    for name, value in variables.items():
        builder.set_env(name, value)
    builder.extend(sequence)
    if unset_after:
        for name in variables:
            builder.unset_env(name)
    return builder.build()


class SequenceBuilder:
    """Ordered-step builder; ``append`` guards fallible steps for fail-fast."""

    def __init__(self) -> None:
        self._ops: List[Operation] = []

    def append(self, operation: Operation) -> "SequenceBuilder":
        self._ops.append(guard(operation))
        return self

    def guard(self, operation: Operation) -> "SequenceBuilder":
        if isinstance(operation, Guard):
            self._ops.append(operation)
        else:
            self._ops.append(Guard(operation))
        return self

    def foreground(self, operation: Operation) -> "SequenceBuilder":
        self._ops.append(Foreground(operation))
        return self

    def set_env(self, name: str, value: str) -> "SequenceBuilder":
        return self.append(SetEnv(name, value))

    def unset_env(self, name: str) -> "SequenceBuilder":
        return self.append(UnsetEnv(name))

    def require_env(self, name: str) -> "SequenceBuilder":
        return self.append(RequireEnv(name))

    def cd(self, path: str) -> "SequenceBuilder":
        return self.append(ChangeDir(path))

    def invoke(self, *argv: Arg) -> "SequenceBuilder":
        return self.append(Invoke(tuple(argv)))

    def prepend_path(self, dirs: Sequence[str]) -> "SequenceBuilder":
        return self.append(prepend_path(dirs))

    def extend(self, sequence: Union[CommandSequence, Iterable[Operation]]) -> "SequenceBuilder":
        for op in sequence:
            self.append(op)
        return self

    def build(self) -> CommandSequence:
        return CommandSequence(tuple(self._ops))


# JSON operation specs, e.g. {"op": "invoke", "argv": ["cargo", "test"]}.

def _require_object(value: Any, label: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise SuiteConfigError("suite_config_invalid_operation", f"{label} must be an object")
    return value


def _require_string_list(value: Any, label: str) -> List[str]:
    if not isinstance(value, list) or not value:
        raise SuiteConfigError("suite_config_invalid_operation", f"{label} must be a non-empty list")
    out = []
    for idx, item in enumerate(value):
        out.append(_require_text(item, f"{label}[{idx}]"))
    return out


def _parse_argv(value: Any, label: str) -> Tuple[Arg, ...]:
    if not isinstance(value, list) or not value:
        raise SuiteConfigError("suite_config_invalid_operation", f"{label} must be a non-empty list")
    out: List[Arg] = []
    for idx, item in enumerate(value):
        if isinstance(item, dict) and idx > 0:
            unknown = sorted(set(item) - {"env", "suffix"})
            if unknown:
                raise SuiteConfigError(
                    "suite_config_invalid_operation",
                    f"{label}[{idx}] has unknown keys: {', '.join(unknown)}",
                )
            out.append(EnvRef(require_env_name(item.get("env"), f"{label}[{idx}].env"), item.get("suffix", "")))
        else:
            out.append(_require_text(item, f"{label}[{idx}]"))
    return tuple(out)


def _require_keys(spec: Dict[str, Any], allowed: Tuple[str, ...], label: str) -> None:
    unknown = sorted(set(spec) - set(allowed) - {"op"})
    if unknown:
        raise SuiteConfigError(
            "suite_config_invalid_operation",
            f"{label} has unknown keys: {', '.join(unknown)}",
        )


def parse_operation(spec: Any, label: str = "operation") -> Operation:
    """Parse one single-step operation spec (``withEnv`` is sequence-only)."""
    raw = _require_object(spec, label)
    kind = raw.get("op")
    if kind == "setEnv":
        _require_keys(raw, ("name", "value"), label)
        return SetEnv(require_env_name(raw.get("name"), f"{label}.name"), _require_text(raw.get("value"), f"{label}.value"))
    if kind == "unsetEnv":
        _require_keys(raw, ("name",), label)
        return UnsetEnv(require_env_name(raw.get("name"), f"{label}.name"))
    if kind == "requireEnv":
        _require_keys(raw, ("name",), label)
        return RequireEnv(require_env_name(raw.get("name"), f"{label}.name"))
    if kind == "cd":
        _require_keys(raw, ("path",), label)
        return ChangeDir(_require_text(raw.get("path"), f"{label}.path", allow_empty=False))
    if kind == "invoke":
        _require_keys(raw, ("argv",), label)
        return Invoke(_parse_argv(raw.get("argv"), f"{label}.argv"))
    if kind == "prependPath":
        _require_keys(raw, ("dirs",), label)
        return prepend_path(_require_string_list(raw.get("dirs"), f"{label}.dirs"))
    if kind == "guard":
        _require_keys(raw, ("operation",), label)
        return Guard(parse_operation(raw.get("operation"), f"{label}.operation"))
    if kind == "foreground":
        _require_keys(raw, ("operation",), label)
        return Foreground(parse_operation(raw.get("operation"), f"{label}.operation"))
    if kind == "allSucceed":
        _require_keys(raw, ("sequences",), label)
        members_raw = raw.get("sequences")
        if not isinstance(members_raw, list) or not members_raw:
            raise SuiteConfigError(
                "suite_config_invalid_operation", f"{label}.sequences must be a non-empty list"
            )
        return all_succeed(
            parse_sequence(member, f"{label}.sequences[{idx}]")
            for idx, member in enumerate(members_raw)
        )
    if kind == "withEnv":
        raise SuiteConfigError(
            "suite_config_invalid_operation",
            f"{label}: withEnv expands to several steps and is only valid directly in a command list",
        )
    raise SuiteConfigError("suite_config_invalid_operation", f"{label}.op unknown: {kind!r}")


def parse_sequence(specs: Any, label: str = "commands") -> CommandSequence:
    if not isinstance(specs, list) or not specs:
        raise SuiteConfigError("suite_config_invalid_operation", f"{label} must be a non-empty list")
    builder = SequenceBuilder()
    for idx, spec in enumerate(specs):
        item_label = f"{label}[{idx}]"
        if isinstance(spec, dict) and spec.get("op") == "withEnv":
            _require_keys(spec, ("vars", "commands", "unsetAfter"), item_label)
            variables = _require_object(spec.get("vars"), f"{item_label}.vars")
            for name, value in variables.items():
                require_env_name(name, f"{item_label}.vars key")
                _require_text(value, f"{item_label}.vars.{name}")
            unset_after = spec.get("unsetAfter", False)
            if not isinstance(unset_after, bool):
                raise SuiteConfigError(
                    "suite_config_invalid_operation", f"{item_label}.unsetAfter must be a boolean"
                )
            inner = parse_sequence(spec.get("commands"), f"{item_label}.commands")
            builder.extend(with_env(variables, inner, unset_after=unset_after))
            continue
        builder.append(parse_operation(spec, item_label))
    return builder.build()
