#!/usr/bin/env python3
"""Unit tests for per-concern check sequences."""

from __future__ import annotations

import unittest

import standard_checks
from command_sequence import AllSucceed, ChangeDir, Foreground, Guard, Invoke, SetEnv
from standard_checks import Toolchain
from suite_errors import SuiteConfigError

TOOLCHAIN = Toolchain(
    repo_root="/src/project",
    tools={
        "cargo": "/opt/rust/bin/cargo",
        "git": "/usr/bin/git",
        "shellcheck": "/usr/bin/shellcheck",
    },
)


class ToolchainTests(unittest.TestCase):
    def test_load_toolchain_requires_absolute_paths(self) -> None:
        with self.assertRaises(SuiteConfigError) as ctx:
            standard_checks.load_toolchain({"repoRoot": "/src", "tools": {"cargo": "cargo"}})
        self.assertEqual(ctx.exception.failure_class, "suite_config_invalid_toolchain")

    def test_unknown_tool_is_reported_with_label(self) -> None:
        with self.assertRaises(SuiteConfigError) as ctx:
            TOOLCHAIN.tool("rustfmt", "checks[0].concern")
        self.assertEqual(ctx.exception.failure_class, "suite_config_unknown_tool")
        self.assertIn("checks[0].concern", ctx.exception.reason)

    def test_concern_without_repo_root_fails(self) -> None:
        with self.assertRaises(SuiteConfigError) as ctx:
            standard_checks.tool_check(Toolchain(tools={"cargo": "/opt/rust/bin/cargo"}), ["/opt/rust/bin/cargo"])
        self.assertEqual(ctx.exception.failure_class, "suite_config_invalid_toolchain")


class ConcernSequenceTests(unittest.TestCase):
    def test_lint_concern_exports_env_before_tool(self) -> None:
        seq = standard_checks.build_concern_sequence(
            {
                "kind": "lint",
                "tool": "cargo",
                "args": ["clippy", "--all-targets"],
                "env": {"RUSTFLAGS": "-D warnings"},
            },
            TOOLCHAIN,
        )
        self.assertEqual(
            seq.operations,
            (
                Guard(ChangeDir("/src/project")),
                SetEnv("RUSTFLAGS", "-D warnings"),
                Guard(Invoke(("/opt/rust/bin/cargo", "clippy", "--all-targets"))),
            ),
        )

    def test_freshness_regenerates_then_diffs(self) -> None:
        seq = standard_checks.build_concern_sequence(
            {
                "kind": "freshness",
                "generate": {"tool": "cargo", "args": ["run", "--bin", "regen"]},
                "paths": ["Cargo.nix"],
            },
            TOOLCHAIN,
        )
        argvs = [op.operation.argv for op in seq.operations if isinstance(op.operation, Invoke)]
        self.assertEqual(
            argvs,
            [
                ("/opt/rust/bin/cargo", "run", "--bin", "regen"),
                ("/usr/bin/git", "diff", "--exit-code", "--", "Cargo.nix"),
            ],
        )
        self.assertTrue(all(isinstance(op, Guard) for op in seq.operations))

    def test_shellcheck_checks_every_file(self) -> None:
        seq = standard_checks.build_concern_sequence(
            {"kind": "shellcheck", "files": ["a.sh", "b.sh"]},
            TOOLCHAIN,
        )
        self.assertEqual(len(seq), 1)
        combined = seq.operations[0].operation
        self.assertIsInstance(combined, AllSucceed)
        self.assertEqual(len(combined.sequences), 2)
        first = combined.sequences[0].operations
        self.assertIsInstance(first[1], Foreground)
        self.assertEqual(
            first[2],
            Guard(Invoke(("/usr/bin/shellcheck", "--shell", "bash", "a.sh"))),
        )

    def test_shellcheck_needs_files(self) -> None:
        with self.assertRaises(SuiteConfigError):
            standard_checks.build_concern_sequence({"kind": "shellcheck", "files": []}, TOOLCHAIN)

    def test_unknown_kind_and_keys(self) -> None:
        with self.assertRaises(SuiteConfigError) as ctx:
            standard_checks.build_concern_sequence({"kind": "bench", "tool": "cargo"}, TOOLCHAIN)
        self.assertIn("must be one of", ctx.exception.reason)
        with self.assertRaises(SuiteConfigError) as ctx:
            standard_checks.build_concern_sequence(
                {"kind": "test", "tool": "cargo", "retries": 3}, TOOLCHAIN
            )
        self.assertIn("unknown keys: retries", ctx.exception.reason)


if __name__ == "__main__":
    unittest.main()
