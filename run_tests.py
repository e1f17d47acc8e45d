"""Test runner script for the proxy fulfillment service.

Usage: ``python run_tests.py [unit|integration|tests|type|lint|all]``
"""

import subprocess
import sys
from pathlib import Path
from typing import Callable, Dict, List

ROOT = Path(__file__).parent


def _run(args: List[str]) -> bool:
    return subprocess.run([sys.executable, "-m", *args], cwd=ROOT).returncode == 0


def run_unit_tests() -> bool:
    print("Running unit tests...")
    return _run(["pytest", "tests/unit/", "-v", "--tb=short", "--cov=.", "--cov-report=term-missing"])


def run_integration_tests() -> bool:
    print("Running integration tests...")
    return _run(["pytest", "tests/integration/", "-v", "--tb=short"])


def run_all_tests() -> bool:
    print("Running all tests...")
    return _run(["pytest", "tests/", "-v", "--tb=short", "--cov=.", "--cov-report=term-missing"])


def run_type_check() -> bool:
    print("Running type checking...")
    return _run(["mypy", "config", "models", "services", "routers", "middleware", "utils", "main.py"])


def run_linting() -> bool:
    print("Running linting...")
    flake8_ok = _run(["flake8", "--max-line-length=120", ".", "tests/"])
    black_ok = _run(["black", "--check", "--diff", ".", "tests/"])
    return flake8_ok and black_ok


COMMANDS: Dict[str, Callable[[], bool]] = {
    "unit": run_unit_tests,
    "integration": run_integration_tests,
    "tests": run_all_tests,
    "type": run_type_check,
    "lint": run_linting,
}


def run_all_checks() -> int:
    """Run every check and print a summary."""
    print("=" * 60)
    print("Running complete test and quality check suite")
    print("=" * 60)

    results = {}
    for name in ("type", "lint", "unit", "integration"):
        print(f"\n--- {name} ---")
        results[name] = COMMANDS[name]()

    print("\n" + "=" * 60)
    print("SUMMARY")
    print("=" * 60)
    for name, passed in results.items():
        print(f"{name}: {'PASSED' if passed else 'FAILED'}")

    if all(results.values()):
        print("\nAll checks passed!")
        return 0
    print("\nSome checks failed. Please fix the issues above.")
    return 1


if __name__ == "__main__":
    if len(sys.argv) > 1:
        command = sys.argv[1]
        if command == "all":
            sys.exit(run_all_checks())
        if command not in COMMANDS:
            print(f"Unknown command: {command}")
            sys.exit(1)
        sys.exit(0 if COMMANDS[command]() else 1)
    sys.exit(run_all_checks())
