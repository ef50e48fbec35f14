"""Running a package's tests through ``make test/<package>``."""

from __future__ import annotations

import os
import signal
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path


class MelangeError(Exception):
    """Raised when a package test cannot be run or fails."""


class PackageYAMLNotFoundError(MelangeError):
    """The package YAML file does not exist in the repository."""

    def __init__(self, message: str = "package YAML file not found") -> None:
        super().__init__(message)


class HungTestError(MelangeError):
    """The test exceeded the hang timeout and was killed."""

    def __init__(self, message: str = "test hung and was killed after timeout") -> None:
        super().__init__(message)


def _format_seconds(seconds: float) -> str:
    total_ns = round(seconds * 1_000_000_000)
    if total_ns == 0:
        return "0s"
    sign = "-" if total_ns < 0 else ""
    ns = abs(total_ns)

    if ns < 1_000:
        return f"{sign}{ns}ns"
    if ns < 1_000_000:
        return f"{sign}{_trim(f'{ns / 1_000:.3f}')}µs"
    if ns < 1_000_000_000:
        return f"{sign}{_trim(f'{ns / 1_000_000:.6f}')}ms"

    hours, rest = divmod(ns, 3_600_000_000_000)
    minutes, rest = divmod(rest, 60_000_000_000)
    whole, fraction = divmod(rest, 1_000_000_000)
    secs = str(whole)
    if fraction:
        secs += "." + f"{fraction:09d}".rstrip("0")

    if hours:
        return f"{sign}{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{sign}{minutes}m{secs}s"
    return f"{sign}{secs}s"


def _trim(number: str) -> str:
    return number.rstrip("0").rstrip(".")


def _kill_process_group(process: subprocess.Popen) -> None:
    try:
        os.killpg(os.getpgid(process.pid), signal.SIGKILL)
    except (OSError, AttributeError):
        process.kill()


@dataclass
class MelangeClient:
    """Runs package tests in a package repository, logging each run to a file."""

    repo_path: str | Path
    verbose: bool
    log_dir: str | Path
    hang_timeout: float

    def test_package(self, package_name: str, with_repo: bool, apk_repo: str) -> None:
        """Run ``make test/<package_name>``, raising on any failure.

        Raises PackageYAMLNotFoundError when the package has no YAML file,
        HungTestError when the hang timeout is exceeded and MelangeError
        for any other failure.
        """
        yaml_path = Path(self.repo_path) / f"{package_name}.yaml"
        if not yaml_path.exists():
            if self.verbose:
                print(f"Skipping {package_name}: YAML file not found at {yaml_path}")
            raise PackageYAMLNotFoundError()

        try:
            temp_dir = tempfile.TemporaryDirectory(
                dir="/tmp", prefix=f"melange-build-{package_name}-"
            )
        except OSError as exc:
            raise MelangeError(f"failed to create temp directory: {exc}") from exc

        with temp_dir as temp_path:
            self._run_make(package_name, with_repo, apk_repo, temp_path)

    def _run_make(
        self, package_name: str, with_repo: bool, apk_repo: str, temp_path: str
    ) -> None:
        target = f"test/{package_name}"
        suffix = "with_repo" if with_repo else "without_repo"
        log_path = Path(self.log_dir) / f"{package_name}_{suffix}.log"

        try:
            log_file = open(log_path, "w", encoding="utf-8")
        except OSError as exc:
            raise MelangeError(f"failed to create log file {log_path}: {exc}") from exc

        env = dict(os.environ)
        if with_repo:
            if self.verbose:
                print(
                    f"Testing {package_name} with APK repository: {apk_repo} "
                    f"(temp: {temp_path}, log: {log_path})"
                )
            env["MELANGE_EXTRA_OPTS"] = f"--repository-append {apk_repo}"
        elif self.verbose:
            print(
                f"Testing {package_name} without APK repository "
                f"(temp: {temp_path}, log: {log_path})"
            )
        env["TMPDIR"] = temp_path

        with log_file:
            try:
                process = subprocess.Popen(
                    ["make", target],
                    cwd=self.repo_path,
                    stdout=log_file,
                    stderr=log_file,
                    env=env,
                    start_new_session=True,
                )
            except OSError as exc:
                raise MelangeError(f"failed to start make {target}: {exc}") from exc

            try:
                returncode = process.wait(timeout=self.hang_timeout)
            except subprocess.TimeoutExpired:
                _kill_process_group(process)
                process.wait()
                timeout_text = _format_seconds(self.hang_timeout)
                log_file.write(f"\n\n=== TEST HUNG - KILLED AFTER {timeout_text} ===\n")
                if self.verbose:
                    print(f"Test {package_name} hung and was killed after {timeout_text}")
                raise HungTestError() from None

        if returncode != 0:
            if returncode < 0:
                reason = f"signal: {signal.Signals(-returncode).name}"
            else:
                reason = f"exit status {returncode}"
            raise MelangeError(f"make {target} failed: {reason}")