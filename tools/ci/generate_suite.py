#!/usr/bin/env python3
"""Compile the declarative check configuration into a parallel bats CI entry point."""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping

from check_registry import CheckRegistry, build_registry, load_check_config
from env_sandbox import SandboxPolicy, load_sandbox_policy, sandbox_policy_payload
from harness_wrapper import Executable, HarnessConfig, load_harness_config, wrap, write_executable
from suite_compiler import CompiledSuite, compile_suite
from suite_errors import SuiteError

MANIFEST_KIND = "ci.suite.manifest.v1"
SUITE_FILE = "testsuite.bats"
SUITE_DIGEST_FILE = "testsuite.sha256"
WRAPPER_FILE = "run-testsuite"
MANIFEST_FILE = "manifest.json"


@dataclass(frozen=True)
class GeneratedArtifacts:
    registry: CheckRegistry
    suite: CompiledSuite
    executable: Executable
    files: Dict[str, str]


def parse_args(default_root: Path) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate the parallel bats CI suite from check definitions.")
    parser.add_argument(
        "--repo-root",
        type=Path,
        default=default_root,
        help=f"Repository root (default: {default_root})",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Check configuration path (default: policies/ci/checks-v1.json).",
    )
    parser.add_argument(
        "--out-dir",
        type=Path,
        default=Path("artifacts/ci-suite"),
        help="Output directory for the suite, wrapper and manifest (default: artifacts/ci-suite).",
    )
    parser.add_argument(
        "--embed-suite",
        action="store_true",
        help="Embed the suite in the wrapper instead of referencing testsuite.bats.",
    )
    parser.add_argument(
        "--list-checks",
        action="store_true",
        help="Print one `name<TAB>description` line per check and exit.",
    )
    parser.add_argument(
        "--print-suite",
        action="store_true",
        help="Print the compiled suite to stdout instead of writing artifacts.",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Fail when generated artifacts on disk differ from a fresh generation.",
    )
    return parser.parse_args()


def manifest_payload(
    registry: CheckRegistry,
    suite: CompiledSuite,
    harness: HarnessConfig,
    policy: SandboxPolicy,
    *,
    embedded: bool,
) -> Dict[str, Any]:
    checks = registry.checks()
    return {
        "schema": 1,
        "manifestKind": MANIFEST_KIND,
        "checks": [{"name": check.name, "description": check.description} for check in checks],
        "sandboxedChecks": [check.name for check in checks if check.sandboxed],
        "treeMutatingChecks": [check.name for check in checks if check.mutates_tree],
        "sandbox": sandbox_policy_payload(policy),
        "jobs": harness.jobs,
        "suiteEmbedded": embedded,
        "suiteSha256": suite.sha256,
    }


def generate_artifacts(config: Mapping[str, Any], out_dir: Path, *, embed: bool) -> GeneratedArtifacts:
    """Produce every artifact text in memory; nothing is written on failure."""
    registry = build_registry(config)
    suite = compile_suite(registry)
    harness = load_harness_config(config.get("harness"))
    policy = load_sandbox_policy(config.get("sandbox"))
    suite_path = None if embed else (out_dir / SUITE_FILE)
    executable = wrap(suite, harness, policy, suite_path=suite_path)
    manifest = manifest_payload(registry, suite, harness, policy, embedded=embed)
    files = {
        SUITE_FILE: suite.text,
        SUITE_DIGEST_FILE: suite.sha256 + "\n",
        WRAPPER_FILE: executable.text,
        MANIFEST_FILE: json.dumps(manifest, indent=2, ensure_ascii=False) + "\n",
    }
    return GeneratedArtifacts(registry=registry, suite=suite, executable=executable, files=files)


def write_artifacts(artifacts: GeneratedArtifacts, out_dir: Path) -> None:
    out_dir.mkdir(parents=True, exist_ok=True)
    for name, text in artifacts.files.items():
        if name == WRAPPER_FILE:
            continue
        (out_dir / name).write_text(text, encoding="utf-8")
    # wrapper last so it never points at a stale suite
    write_executable(artifacts.executable, out_dir / WRAPPER_FILE)


def find_drift(artifacts: GeneratedArtifacts, out_dir: Path) -> List[str]:
    drift: List[str] = []
    for name, text in artifacts.files.items():
        path = out_dir / name
        try:
            current = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            drift.append(f"{name}: missing")
            continue
        if current != text:
            drift.append(f"{name}: out of date")
    return drift


def _warn_tree_mutating(registry: CheckRegistry) -> None:
    mutating = [check for check in registry.checks() if check.mutates_tree]
    for check in mutating:
        scope = "sandboxed env" if check.sandboxed else "unsandboxed env"
        print(f"[ci-suite] warning: check {check.name!r} mutates the checkout ({scope})")
    if len(mutating) > 1:
        names = ", ".join(check.name for check in mutating)
        print(
            "[ci-suite] warning: tree-mutating checks may run concurrently "
            f"under --jobs and are not serialized: {names}"
        )


def main() -> int:
    repo_root = Path(__file__).resolve().parents[2]
    args = parse_args(repo_root)
    root = args.repo_root.resolve()
    out_dir = args.out_dir
    if not out_dir.is_absolute():
        out_dir = (root / out_dir).resolve()

    try:
        config = load_check_config(root, args.config)
        artifacts = generate_artifacts(config, out_dir, embed=args.embed_suite)
    except SuiteError as exc:
        print(f"[error] suite generation failed: {exc.failure_class}: {exc.reason}", file=sys.stderr)
        return 2

    if args.list_checks:
        for check in artifacts.registry.checks():
            print(f"{check.name}\t{check.description}")
        return 0

    if args.print_suite:
        sys.stdout.write(artifacts.suite.text)
        return 0

    _warn_tree_mutating(artifacts.registry)

    if args.check:
        drift = find_drift(artifacts, out_dir)
        if drift:
            print(f"[ci-suite] FAIL drift ({out_dir})")
            for line in drift:
                print(f"  - {line}")
            return 1
        print(f"[ci-suite] OK (checks={len(artifacts.registry)}, suite={artifacts.suite.sha256})")
        return 0

    write_artifacts(artifacts, out_dir)
    print(
        "[ci-suite] summary: "
        f"checks={len(artifacts.registry)} "
        f"sandboxed={sum(1 for check in artifacts.registry.checks() if check.sandboxed)} "
        f"suite={artifacts.suite.sha256}"
    )
    print(f"[ci-suite] suite written: {out_dir / SUITE_FILE}")
    print(f"[ci-suite] entry point: {out_dir / WRAPPER_FILE}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
