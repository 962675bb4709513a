#!/usr/bin/env python3
"""
Overwatch Terminal Test Runner

Usage:
    python run_tests.py                 # Run all tests
    python run_tests.py --unit          # Run unit tests only
    python run_tests.py --integration   # Run integration tests only
    python run_tests.py --coverage      # Run with coverage report
    python run_tests.py --quick         # Skip slow tests
    python run_tests.py --file tests/test_merchant.py
"""

import subprocess
import sys
import argparse


def run_tests(args):
    """Run pytest with specified options"""

    cmd = [sys.executable, "-m", "pytest", "tests"]

    markers = []
    if args.unit:
        markers.append("unit")
    elif args.integration:
        markers.append("integration")
    if args.quick:
        markers.append("not slow")
    if markers:
        cmd.extend(["-m", " and ".join(markers)])

    if args.coverage:
        cmd.extend([
            "--cov=overwatch",
            "--cov-report=term-missing",
            "--cov-report=html:coverage_html"
        ])

    cmd.append("-vv" if args.verbose else "-v")

    if args.file:
        cmd[cmd.index("tests")] = args.file

    cmd.append("--tb=no" if args.quiet else "--tb=short")

    print(f"Running: {' '.join(cmd)}")
    print("=" * 60)

    result = subprocess.run(cmd)
    return result.returncode


def main():
    parser = argparse.ArgumentParser(description="Overwatch Terminal Test Runner")

    parser.add_argument("--unit", action="store_true",
                        help="Run unit tests only")
    parser.add_argument("--integration", action="store_true",
                        help="Run integration tests only")
    parser.add_argument("--quick", action="store_true",
                        help="Skip slow tests")
    parser.add_argument("--coverage", action="store_true",
                        help="Generate coverage report")
    parser.add_argument("--verbose", action="store_true",
                        help="Extra verbose output")
    parser.add_argument("--quiet", action="store_true",
                        help="Minimal output")
    parser.add_argument("--file", type=str,
                        help="Run specific test file")

    args = parser.parse_args()

    sys.exit(run_tests(args))


if __name__ == "__main__":
    main()
