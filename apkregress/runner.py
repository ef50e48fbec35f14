"""Running reverse-dependency tests concurrently and reporting regressions."""

from __future__ import annotations

import threading
import time
from collections.abc import Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from .apkrane import ApkraneClient, ApkraneError
from .melange import (
    HungTestError,
    MelangeClient,
    MelangeError,
    PackageYAMLNotFoundError,
    _format_seconds,
)

DEFAULT_HANG_TIMEOUT = 30 * 60.0
LOG_ROOT = "logs"


class RegressionError(Exception):
    """Raised when a regression run cannot proceed or finds problems."""


def format_duration(seconds: float) -> str:
    """Format a duration in seconds in the compact ``1h2m3s`` style."""
    return _format_seconds(seconds)


@dataclass
class PackageTestResult:
    """The outcome of one package test, with or without the extra repository."""

    package: str
    with_repo: bool
    success: bool
    error: Exception | None = None
    hung: bool = False
    skipped: bool = False


def _timestamp() -> str:
    return datetime.now().strftime("%Y%m%d-%H%M%S")


def _round_seconds(seconds: float) -> int:
    return int(seconds + 0.5)


class RegressionTestRunner:
    """Tests packages with and without an APK repository to detect regressions."""

    def __init__(
        self,
        package_name: str,
        apk_repo: str,
        repo_path: str | Path,
        repo_type: str,
        concurrency: int,
        verbose: bool,
        hang_timeout: float,
        markdown_output: bool,
    ) -> None:
        if not hang_timeout:
            hang_timeout = DEFAULT_HANG_TIMEOUT

        self.package_name = package_name
        self.apk_repo = apk_repo
        self.repo_path = repo_path
        self.repo_type = repo_type
        self.concurrency = concurrency
        self.verbose = verbose
        self.hang_timeout = hang_timeout
        self.markdown_output = markdown_output
        self.log_dir = Path(LOG_ROOT) / f"regression-test-{package_name}-{_timestamp()}"
        self.apkrane = ApkraneClient(verbose, repo_type)
        self.melange = MelangeClient(repo_path, verbose, self.log_dir, hang_timeout)
        self.completed_tests = 0
        self.total_tests = 0
        self.start_time = time.monotonic()
        self._progress_lock = threading.Lock()

    @classmethod
    def from_package_list(
        cls,
        packages: Sequence[str],
        apk_repo: str,
        repo_path: str | Path,
        repo_type: str,
        concurrency: int,
        verbose: bool,
        hang_timeout: float,
        markdown_output: bool,
    ) -> RegressionTestRunner:
        """Build a runner that tests a given list of packages directly."""
        runner = cls(
            f"{len(packages)} packages from file",
            apk_repo,
            repo_path,
            repo_type,
            concurrency,
            verbose,
            hang_timeout,
            markdown_output,
        )
        runner.log_dir = Path(LOG_ROOT) / f"package-list-test-{_timestamp()}"
        runner.melange = MelangeClient(
            repo_path, verbose, runner.log_dir, runner.hang_timeout
        )
        return runner

    def update_progress(self) -> None:
        """Count one finished package and print the progress line."""
        with self._progress_lock:
            total = self.total_tests
            if self.completed_tests >= total:
                return
            self.completed_tests += 1
            completed = self.completed_tests

            if self.verbose:
                return

            progress = completed / total * 100
            elapsed = time.monotonic() - self.start_time
            eta = elapsed / completed * (total - completed)

            if eta > 0:
                print(
                    f"\rProgress: {completed}/{total} ({progress:.1f}%) - "
                    f"ETA: {format_duration(_round_seconds(eta))}",
                    end="",
                    flush=True,
                )
            else:
                print(f"\rProgress: {completed}/{total} ({progress:.1f}%)", end="", flush=True)

            if completed == total:
                print()

    def _make_log_dir(self) -> None:
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise RegressionError(
                f"failed to create log directory {self.log_dir}: {exc}"
            ) from exc

    def run(self) -> None:
        """Find the reverse dependencies of the package and test each of them."""
        self._make_log_dir()

        try:
            reverse_deps = self.apkrane.reverse_dependencies(self.package_name)
        except ApkraneError as exc:
            raise RegressionError(f"failed to get reverse dependencies: {exc}") from exc

        if not reverse_deps:
            print(f"No reverse dependencies found for package: {self.package_name}")
            return

        print(
            f"Testing {len(reverse_deps)} reverse dependencies "
            f"with concurrency {self.concurrency}"
        )
        print(f"Logs will be saved to: {self.log_dir}")
        self._test_all(reverse_deps)

    def run_from_package_list(self, packages: Sequence[str]) -> None:
        """Test each package of the given list."""
        self._make_log_dir()

        if not packages:
            print("No packages provided")
            return

        print(f"Testing {len(packages)} packages with concurrency {self.concurrency}")
        print(f"Logs will be saved to: {self.log_dir}")
        self._test_all(packages)

    def _test_all(self, packages: Sequence[str]) -> None:
        self.total_tests = len(packages)
        self.completed_tests = 0
        self.start_time = time.monotonic()

        with ThreadPoolExecutor(max_workers=max(1, self.concurrency)) as pool:
            per_package = list(pool.map(self._test_one, packages))

        results = [result for group in per_package for result in group]
        self.analyze_results(results, len(packages))

    def _attempt(self, package: str, with_repo: bool) -> PackageTestResult:
        try:
            self.melange.test_package(package, with_repo, self.apk_repo)
        except MelangeError as exc:
            return PackageTestResult(
                package=package,
                with_repo=with_repo,
                success=False,
                error=exc,
                hung=isinstance(exc, HungTestError),
                skipped=isinstance(exc, PackageYAMLNotFoundError),
            )
        return PackageTestResult(package=package, with_repo=with_repo, success=True)

    def _test_one(self, package: str) -> list[PackageTestResult]:
        results = [self._attempt(package, True)]
        first = results[0]

        if not first.success and not first.skipped:
            second = self._attempt(package, False)
            if not second.skipped:
                results.append(second)

        self.update_progress()
        return results

    def analyze_results(
        self, results: Iterable[PackageTestResult], expected_packages: int
    ) -> None:
        """Classify results, write result files, print a summary and raise on problems."""
        package_results: dict[str, dict[bool, PackageTestResult]] = {}
        for result in results:
            package_results.setdefault(result.package, {})[result.with_repo] = result

        regressions: list[str] = []
        hung_tests: list[str] = []
        successful: list[str] = []
        failed: list[str] = []
        skipped: list[str] = []
        timeout_text = format_duration(self.hang_timeout)

        print("\n=== Test Results ===")
        for pkg, by_mode in package_results.items():
            with_repo = by_mode.get(True)
            without_repo = by_mode.get(False)

            if with_repo is None:
                print(f"⚠️  {pkg}: Incomplete test results")
                continue

            if with_repo.skipped:
                skipped.append(pkg)
                if self.verbose:
                    print(f"⏭️  {pkg}: SKIPPED (YAML file not found)")
                continue

            without_hung = without_repo is not None and without_repo.hung
            if with_repo.hung:
                hung_tests.append(f"{pkg} (with repo)")
                print(f"⏰ {pkg}: HUNG (with repo - killed after {timeout_text})")
                if without_hung:
                    hung_tests.append(f"{pkg} (without repo)")
                    print(f"⏰ {pkg}: HUNG (without repo - killed after {timeout_text})")
                continue
            if without_hung:
                hung_tests.append(f"{pkg} (without repo)")
                print(f"⏰ {pkg}: HUNG (without repo - killed after {timeout_text})")
                continue

            if with_repo.success and without_repo is None:
                successful.append(pkg)
                if self.verbose:
                    print(f"✅ {pkg}: PASS (with repo, without-repo test skipped)")
            elif not with_repo.success and without_repo is not None:
                if without_repo.success:
                    regressions.append(pkg)
                    print(f"🔴 {pkg}: REGRESSION DETECTED (fails with repo, passes without)")
                else:
                    failed.append(pkg)
                    if self.verbose:
                        print(f"❌ {pkg}: FAIL (both scenarios)")
            elif not with_repo.success:
                print(
                    f"⚠️  {pkg}: Incomplete test results "
                    "(with-repo failed but no without-repo test)"
                )

        self.write_result_files(successful, failed, regressions, hung_tests, skipped)

        tested_count = len(package_results) - len(skipped)
        if self.markdown_output:
            self.print_markdown_summary(
                expected_packages,
                len(skipped),
                tested_count,
                len(regressions),
                len(hung_tests),
                len(successful),
                len(failed),
                regressions,
                hung_tests,
            )
        else:
            print("\n=== Summary ===")
            print(f"Total packages found: {expected_packages}")
            print(f"Packages skipped (no YAML): {len(skipped)}")
            print(f"Packages tested: {tested_count}")
            print(f"Regressions detected: {len(regressions)}")
            print(f"Hung tests: {len(hung_tests)}")
            print(f"Successful packages: {len(successful)}")
            print(f"Failed packages: {len(failed)}")

            if hung_tests:
                print("\nTests that hung (killed after 30 minutes):")
                for test in hung_tests:
                    print(f"  - {test}")

            if regressions:
                print("\nPackages with regressions:")
                for pkg in regressions:
                    print(f"  - {pkg}")

        if regressions:
            raise RegressionError(f"found {len(regressions)} regressions")
        if hung_tests:
            raise RegressionError(f"found {len(hung_tests)} hung tests")

    def print_markdown_summary(
        self,
        total_packages: int,
        skipped_count: int,
        tested_count: int,
        regressions_count: int,
        hung_count: int,
        success_count: int,
        failure_count: int,
        regressions: Sequence[str],
        hung_tests: Sequence[str],
    ) -> None:
        """Print the summary as markdown suitable for an issue report."""
        duration = format_duration(_round_seconds(time.monotonic() - self.start_time))

        print("\n## APK Regression Test Summary\n")
        print(f"**Package:** {self.package_name}  ")
        print(f"**APK Repository:** {self.apk_repo}  ")
        print(f"**Test Duration:** {duration}  \n")

        print("### Test Results\n")
        print("| Metric | Count |")
        print("|--------|-------|")
        print(f"| Total packages found | {total_packages} |")
        print(f"| Packages skipped (no YAML) | {skipped_count} |")
        print(f"| Packages tested | {tested_count} |")
        print(f"| **Regressions detected** | **{regressions_count}** |")
        print(f"| Hung tests | {hung_count} |")
        print(f"| Successful packages | {success_count} |")
        print(f"| Failed packages | {failure_count} |")

        if regressions_count > 0:
            print("\n### 🔴 Packages with Regressions\n")
            print(
                "The following packages **fail with the new APK repository** but "
                "**pass without it**, indicating potential regressions:\n"
            )
            for pkg in regressions:
                print(f"- `{pkg}`")

        if hung_count > 0:
            print("\n### ⏰ Tests That Hung\n")
            print(
                f"The following tests were killed after "
                f"{format_duration(self.hang_timeout)} timeout:\n"
            )
            for test in hung_tests:
                print(f"- `{test}`")

        if regressions_count == 0 and hung_count == 0:
            print("\n### ✅ All Tests Passed\n")
            print(
                "No regressions were detected. All packages either passed with the "
                "new repository or failed consistently in both scenarios."
            )

        print("\n---")
        print("*Generated by apk-regression-test-runner*")

    def write_result_files(
        self,
        successful: Sequence[str],
        failed: Sequence[str],
        regressions: Sequence[str],
        hung: Sequence[str],
        skipped: Sequence[str],
    ) -> None:
        """Write one file per outcome, each listing its packages one per line."""
        files = {
            "successful.txt": successful,
            "failed.txt": failed,
            "regressions.txt": regressions,
            "hung.txt": hung,
            "skipped.txt": skipped,
        }
        for filename, packages in files.items():
            content = "\n".join(packages)
            if content:
                content += "\n"
            try:
                (self.log_dir / filename).write_text(content, encoding="utf-8")
            except OSError as exc:
                print(f"Warning: failed to write {filename}: {exc}")