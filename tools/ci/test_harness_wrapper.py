#!/usr/bin/env python3
"""Unit tests for the sandboxed bats entry point."""

from __future__ import annotations

import os
import subprocess
import tempfile
import unittest
from pathlib import Path

import harness_wrapper
from command_sequence import EnvRef, Foreground, Guard, Invoke, PrependPath, RequireEnv
from env_sandbox import SandboxPolicy
from harness_wrapper import HarnessConfig
from suite_compiler import CompiledSuite
from suite_errors import SuiteConfigError, SuiteSerializationError

_HAS_POSIX_TOOLS = all(os.path.exists(path) for path in ("/bin/sh", "/usr/bin/env"))

SUITE = CompiledSuite(text='@test "noop" {\n(\n\':\' || exit $?\n)\n}\n', check_names=("noop",))

# records its argv, environment and suite copy under $HOME, then fails with 3
FAKE_BATS = """#!/bin/sh
printf '%s\\n' "$@" > "$HOME/args"
env > "$HOME/env"
cat "$3" > "$HOME/suite"
exit 3
"""


class HarnessConfigTests(unittest.TestCase):
    def test_defaults(self) -> None:
        harness = harness_wrapper.load_harness_config({"bats": "/usr/bin/bats"})
        self.assertEqual(harness, HarnessConfig(bats="/usr/bin/bats", jobs=4, path=(), will_cite=True))

    def test_invalid_values_are_rejected(self) -> None:
        for raw in (
            None,
            {"bats": "bats"},
            {"bats": "/usr/bin/bats", "jobs": 0},
            {"bats": "/usr/bin/bats", "jobs": True},
            {"bats": "/usr/bin/bats", "path": ["relative/bin"]},
            {"bats": "/usr/bin/bats", "willCite": "yes"},
            {"bats": "/usr/bin/bats", "timeout": 60},
        ):
            with self.subTest(raw=raw):
                with self.assertRaises(SuiteConfigError) as ctx:
                    harness_wrapper.load_harness_config(raw)
                self.assertEqual(ctx.exception.failure_class, "suite_config_invalid_harness")


class HarnessSequenceTests(unittest.TestCase):
    def test_full_sequence_order(self) -> None:
        harness = HarnessConfig(bats="/opt/bats/bin/bats", path=("/opt/parallel/bin",))
        seq = harness_wrapper.harness_sequence(harness, "/ci/testsuite.bats")
        self.assertEqual(
            seq.operations,
            (
                PrependPath(("/opt/parallel/bin",)),
                Guard(RequireEnv("HOME")),
                Foreground(Invoke(("mkdir", "-p", EnvRef("HOME", "/.parallel")))),
                Foreground(Invoke(("touch", EnvRef("HOME", "/.parallel/will-cite")))),
                Guard(Invoke(("/opt/bats/bin/bats", "--jobs", "4", "/ci/testsuite.bats"))),
            ),
        )

    def test_without_will_cite_only_runs_bats(self) -> None:
        harness = HarnessConfig(bats="/usr/bin/bats", jobs=8, will_cite=False)
        seq = harness_wrapper.harness_sequence(harness, "/ci/testsuite.bats")
        self.assertEqual(
            seq.operations,
            (Guard(Invoke(("/usr/bin/bats", "--jobs", "8", "/ci/testsuite.bats"))),),
        )


class WrapTextTests(unittest.TestCase):
    def test_referenced_suite_is_execed_under_env_reset(self) -> None:
        harness = HarnessConfig(bats="/usr/bin/bats")
        executable = harness_wrapper.wrap(SUITE, harness, SandboxPolicy(), Path("/ci/out/testsuite.bats"))
        shebang, header, entry = executable.text.split("\n", 2)
        self.assertFalse(executable.embedded)
        self.assertEqual(shebang, "#!/bin/sh")
        self.assertEqual(header, harness_wrapper.SUITE_HEADER)
        self.assertTrue(entry.startswith("exec '/usr/bin/env' -i "))
        # the bats argv sits inside the single-quoted sandbox script
        self.assertIn(
            "'\\''--jobs'\\'' '\\''4'\\'' '\\''/ci/out/testsuite.bats'\\''",
            entry,
        )
        self.assertNotIn("SUITE_EOF", executable.text)

    def test_wrapper_ends_with_the_harness_command(self) -> None:
        harness = HarnessConfig(bats="/usr/bin/bats")
        for suite_path in (Path("/ci/out/testsuite.bats"), None):
            with self.subTest(suite_path=suite_path):
                executable = harness_wrapper.wrap(SUITE, harness, SandboxPolicy(), suite_path)
                last = executable.text.rstrip("\n")
                # the sandbox script closes the file; nothing runs after the harness
                self.assertTrue(last.endswith("|| exit $?'"), last[-40:])
                self.assertFalse(last.endswith("|| exit $?"))

    def test_relative_suite_path_is_rejected(self) -> None:
        with self.assertRaises(SuiteConfigError):
            harness_wrapper.wrap(SUITE, HarnessConfig(bats="/usr/bin/bats"), SandboxPolicy(), Path("out/testsuite.bats"))

    def test_embedded_suite_is_inlined(self) -> None:
        executable = harness_wrapper.wrap(SUITE, HarnessConfig(bats="/usr/bin/bats"), SandboxPolicy())
        self.assertTrue(executable.embedded)
        self.assertIn(SUITE.text, executable.text)
        self.assertIn("<<'CI_SUITE_EOF'", executable.text)
        self.assertIn('${CI_SUITE_FILE+"CI_SUITE_FILE=$CI_SUITE_FILE"}', executable.text)

    def test_embedded_delimiter_collision(self) -> None:
        suite = CompiledSuite(text="# header\nCI_SUITE_EOF\n", check_names=())
        with self.assertRaises(SuiteSerializationError) as ctx:
            harness_wrapper.wrap(suite, HarnessConfig(bats="/usr/bin/bats"), SandboxPolicy())
        self.assertEqual(ctx.exception.failure_class, "suite_embed_delimiter_collision")


@unittest.skipUnless(_HAS_POSIX_TOOLS, "requires /bin/sh and /usr/bin/env")
class WrapperExecutionTests(unittest.TestCase):
    def _run(self, embed: bool):
        tmp = tempfile.TemporaryDirectory(prefix="ci-suite-wrapper-")
        self.addCleanup(tmp.cleanup)
        root = Path(tmp.name)
        bin_dir = root / "bin"
        bin_dir.mkdir()
        bats = bin_dir / "bats"
        bats.write_text(FAKE_BATS, encoding="utf-8")
        bats.chmod(0o755)
        home = root / "home"
        home.mkdir()
        suite_path = root / "testsuite.bats"
        suite_path.write_text(SUITE.text, encoding="utf-8")

        harness = HarnessConfig(bats=str(bats), path=(str(bin_dir),))
        executable = harness_wrapper.wrap(
            SUITE, harness, SandboxPolicy(), suite_path=None if embed else suite_path
        )
        wrapper = root / "run-testsuite"
        harness_wrapper.write_executable(executable, wrapper)
        self.assertEqual(wrapper.stat().st_mode & 0o777, 0o755)

        result = subprocess.run(
            [str(wrapper)],
            env={"HOME": str(home), "PATH": "/usr/bin:/bin", "LEAKED_SECRET": "hunter2"},
            capture_output=True,
            text=True,
            check=False,
        )
        return result, home, suite_path

    def test_exit_status_and_arguments_come_from_bats(self) -> None:
        result, home, suite_path = self._run(embed=False)
        self.assertEqual(result.returncode, 3, result.stderr)
        self.assertEqual(
            (home / "args").read_text(encoding="utf-8").splitlines(),
            ["--jobs", "4", str(suite_path)],
        )

    def test_harness_environment_is_sandboxed(self) -> None:
        _, home, _ = self._run(embed=False)
        env_lines = (home / "env").read_text(encoding="utf-8").splitlines()
        self.assertIn(f"HOME={home}", env_lines)
        self.assertFalse(any(line.startswith("LEAKED_SECRET=") for line in env_lines))
        path_line = next(line for line in env_lines if line.startswith("PATH="))
        self.assertTrue(path_line.startswith(f"PATH={home.parent / 'bin'}:"))

    def test_will_cite_marker_is_created(self) -> None:
        _, home, _ = self._run(embed=False)
        self.assertTrue((home / ".parallel" / "will-cite").is_file())

    def test_embedded_suite_reaches_bats(self) -> None:
        result, home, _ = self._run(embed=True)
        self.assertEqual(result.returncode, 3, result.stderr)
        self.assertEqual((home / "suite").read_text(encoding="utf-8"), SUITE.text)
        args = (home / "args").read_text(encoding="utf-8").splitlines()
        self.assertEqual(args[:2], ["--jobs", "4"])


if __name__ == "__main__":
    unittest.main()
