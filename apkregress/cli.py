"""Command line entry point for running reverse-dependency regression tests."""

from __future__ import annotations

import argparse
import os
import re
import sys
from fractions import Fraction
from pathlib import Path
from typing import Sequence

from .apkrane import ApkraneError
from .melange import MelangeError
from .runner import RegressionError, RegressionTestRunner

VALID_REPO_TYPES = ("wolfi", "enterprise", "extras")
DEFAULT_CONCURRENCY = 4
DEFAULT_HANG_TIMEOUT = "30m"

_DESCRIPTION = """\
A tool that uses apkrane to find reverse dependencies of a package
and melange to test each reverse dependency against a provided APK repository.
Tests are run with and without the APK repository to detect regressions.
Supports wolfi-dev/os, chainguard-dev/enterprise-packages, and chainguard-dev/extra-packages repositories."""

_UNIT_NANOSECONDS = {
    "ns": 1,
    "us": 1_000,
    "\u00b5s": 1_000,
    "\u03bcs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_NUMBER = re.compile(r"(\d*)(?:\.(\d*))?")
_UNIT = re.compile(r"[^\d.]*")
_MAX_NANOSECONDS = 2**63 - 1


class UsageError(Exception):
    """Raised when the command line options are missing or inconsistent."""


def parse_duration(text: str) -> float:
    """Parse a duration such as ``30m``, ``1h30m`` or ``1.5s`` into seconds."""
    invalid = ValueError(f'time: invalid duration "{text}"')
    rest = text
    negative = False
    if rest and rest[0] in "+-":
        negative = rest[0] == "-"
        rest = rest[1:]

    if rest == "0":
        return 0.0
    if not rest:
        raise invalid

    total = Fraction(0)
    pos = 0
    while pos < len(rest):
        number = _NUMBER.match(rest, pos)
        whole, fraction = number.group(1), number.group(2)
        if not whole and not fraction:
            raise invalid
        pos = number.end()

        unit_match = _UNIT.match(rest, pos)
        unit = unit_match.group()
        pos = unit_match.end()
        if not unit:
            raise ValueError(f'time: missing unit in duration "{text}"')
        if unit not in _UNIT_NANOSECONDS:
            raise ValueError(f'time: unknown unit "{unit}" in duration "{text}"')

        value = Fraction(int(whole or "0"))
        if fraction:
            value += Fraction(int(fraction), 10 ** len(fraction))
        total += value * _UNIT_NANOSECONDS[unit]

    nanoseconds = int(total)
    if nanoseconds > _MAX_NANOSECONDS:
        raise invalid
    if negative:
        nanoseconds = -nanoseconds
    return nanoseconds / 1_000_000_000


def _duration(text: str) -> float:
    return parse_duration(text)


_duration.__name__ = "duration"


def read_package_file(filename: str | Path) -> list[str]:
    """Read package names, one per line, ignoring blank lines and ``#`` comments."""
    with open(filename, encoding="utf-8") as handle:
        packages = [
            stripped
            for stripped in (line.strip() for line in handle)
            if stripped and not stripped.startswith("#")
        ]

    if not packages:
        raise ValueError(f"no packages found in file {filename}")
    return packages


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the ``apkregress`` command."""
    parser = argparse.ArgumentParser(
        prog="apkregress",
        description=_DESCRIPTION,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "-p", "--package", default="",
        help="Package name to find reverse dependencies for",
    )
    parser.add_argument(
        "-f", "--package-file", default="",
        help="File containing list of package names (one per line)",
    )
    parser.add_argument(
        "-r", "--repo", required=True,
        help="APK repository URL to test against (required)",
    )
    parser.add_argument(
        "-w", "--repo-path", required=True,
        help=(
            "Path to package repository (wolfi-dev/os, chainguard-dev/enterprise-packages, "
            "or chainguard-dev/extra-packages) (required)"
        ),
    )
    parser.add_argument(
        "-t", "--repo-type", default="wolfi",
        help="Repository type: wolfi, enterprise, or extras",
    )
    parser.add_argument(
        "-c", "--concurrency", type=int, default=DEFAULT_CONCURRENCY,
        help="Number of concurrent test jobs",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable verbose output",
    )
    parser.add_argument(
        "--hang-timeout", type=_duration, default=parse_duration(DEFAULT_HANG_TIMEOUT),
        help="Timeout for hung tests (default: 30m)",
    )
    parser.add_argument(
        "-m", "--markdown", action="store_true",
        help="Output test summary in markdown format for GitHub issues",
    )
    return parser


def run_regression_test(
    package_name: str,
    package_file: str,
    apk_repo: str,
    repo_path: str | Path,
    repo_type: str,
    concurrency: int,
    verbose: bool,
    hang_timeout: float,
    markdown_output: bool,
) -> None:
    """Validate the options and run the regression tests they describe."""
    if not package_name and not package_file:
        raise UsageError("either --package or --package-file must be specified")
    if package_name and package_file:
        raise UsageError("cannot specify both --package and --package-file")

    resolved = os.path.abspath(repo_path)
    if not os.path.exists(resolved):
        raise UsageError(f"repository path does not exist: {resolved}")

    if repo_type not in VALID_REPO_TYPES:
        raise UsageError(
            f"invalid repository type: {repo_type} (must be wolfi, enterprise, or extras)"
        )

    if package_file:
        try:
            packages = read_package_file(package_file)
        except (OSError, ValueError) as exc:
            raise UsageError(f"failed to read package file: {exc}") from exc
        runner = RegressionTestRunner.from_package_list(
            packages, apk_repo, resolved, repo_type, concurrency, verbose,
            hang_timeout, markdown_output,
        )
        runner.run_from_package_list(packages)
    else:
        runner = RegressionTestRunner(
            package_name, apk_repo, resolved, repo_type, concurrency, verbose,
            hang_timeout, markdown_output,
        )
        runner.run()


def main(argv: Sequence[str] | None = None) -> int:
    """Run the command line tool and return its exit status."""
    args = build_parser().parse_args(argv)
    try:
        run_regression_test(
            args.package,
            args.package_file,
            args.repo,
            args.repo_path,
            args.repo_type,
            args.concurrency,
            args.verbose,
            args.hang_timeout,
            args.markdown,
        )
    except (UsageError, RegressionError, ApkraneError, MelangeError, OSError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())