"""Quality gates for veldeploy: lint, types, tests with coverage, dependency audit."""

from __future__ import annotations

import os
import subprocess  # nosec B404
import sys
from dataclasses import dataclass

PACKAGE = "velociraptor_deployer"
COVERAGE_FLOOR = 80
STRICT_AUDIT_ENV = "VELDEPLOY_CI_PIP_AUDIT_REQUIRED"


@dataclass(frozen=True)
class Gate:
    """One CI step; advisory gates report failures without failing the build."""

    name: str
    argv: tuple[str, ...]
    advisory: bool = False


def gates(strict_audit: bool) -> list[Gate]:
    python = sys.executable
    return [
        Gate("lint", (python, "-m", "ruff", "check", PACKAGE, "tests", "ci")),
        Gate("types", (python, "-m", "mypy", PACKAGE)),
        Gate(
            "tests",
            (
                python,
                "-m",
                "pytest",
                f"--cov={PACKAGE}",
                "--cov-report=term-missing",
                f"--cov-fail-under={COVERAGE_FLOOR}",
            ),
        ),
        Gate(
            "audit",
            (python, "-m", "pip_audit", "--progress-spinner", "off"),
            advisory=not strict_audit,
        ),
    ]


def _strict_audit() -> bool:
    return os.environ.get(STRICT_AUDIT_ENV, "").strip().lower() in {"1", "true", "yes"}


def run_gate(gate: Gate) -> int:
    """Run ``gate`` and return its exit code."""
    print(f"[{gate.name}] $ {' '.join(gate.argv)}", flush=True)
    result = subprocess.run(gate.argv, check=False)  # nosec B603
    return int(result.returncode)


def main() -> int:
    """Run every gate in order, stopping at the first blocking failure."""
    outcomes: list[tuple[str, str]] = []
    for gate in gates(_strict_audit()):
        code = run_gate(gate)
        if code == 0:
            outcomes.append((gate.name, "ok"))
            continue
        if gate.advisory:
            outcomes.append((gate.name, f"advisory failure (exit {code})"))
            continue
        outcomes.append((gate.name, f"failed (exit {code})"))
        _summary(outcomes)
        return code
    _summary(outcomes)
    return 0


def _summary(outcomes: list[tuple[str, str]]) -> None:
    print("\nCI summary:")
    for name, outcome in outcomes:
        print(f"  {name:<6} {outcome}")


if __name__ == "__main__":
    raise SystemExit(main())
