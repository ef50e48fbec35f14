"""Finding reverse dependencies of a package through ``apkrane``."""

from __future__ import annotations

import json
import os
import platform
import subprocess
from dataclasses import dataclass
from typing import Any, Iterable

AUTH_AUDIENCE = "apk.cgr.dev"
AUTHENTICATED_REPO_TYPES = frozenset({"enterprise", "extras"})

_ARCH_ALIASES = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "i386": "386",
    "i686": "386",
    "x86": "386",
    "armv7l": "arm",
    "armv6l": "arm",
    "ppc64le": "ppc64le",
    "s390x": "s390x",
    "riscv64": "riscv64",
}


class ApkraneError(Exception):
    """Raised when apkrane or the authentication helper cannot be run."""


@dataclass
class Package:
    """One entry of an APK index as listed by ``apkrane ls --json``."""

    origin: str = ""
    dependencies: list[str] | None = None


def host_arch() -> str:
    """Return the architecture name used in APK index URLs for this machine."""
    machine = platform.machine().lower()
    return _ARCH_ALIASES.get(machine, machine)


def _lookup(obj: dict[str, Any], name: str) -> Any:
    if name in obj:
        return obj[name]
    lowered = name.lower()
    for key, value in obj.items():
        if key.lower() == lowered:
            return value
    return None


def _package_from_json(data: Any) -> Package:
    if data is None:
        return Package()
    if not isinstance(data, dict):
        raise ValueError(f"cannot decode {type(data).__name__} into a package")

    origin = _lookup(data, "Origin")
    if origin is None:
        origin = ""
    elif not isinstance(origin, str):
        raise ValueError("Origin is not a string")

    dependencies = _lookup(data, "Dependencies")
    if dependencies is not None:
        if not isinstance(dependencies, list) or not all(
            isinstance(dep, str) for dep in dependencies
        ):
            raise ValueError("Dependencies is not a list of strings")
        dependencies = list(dependencies)

    return Package(origin=origin, dependencies=dependencies)


def parse_packages(output: str | bytes, verbose: bool = False) -> list[Package]:
    """Parse JSON-lines output into packages, skipping blank and malformed lines."""
    if isinstance(output, bytes):
        output = output.decode("utf-8", errors="replace")

    packages = []
    for line in output.splitlines():
        if not line.strip():
            continue
        try:
            packages.append(_package_from_json(json.loads(line)))
        except ValueError as exc:
            if verbose:
                print(f"Warning: failed to parse JSON line: {exc}")
    return packages


def find_reverse_dependencies(
    packages: Iterable[Package], package_name: str
) -> list[str]:
    """Return the sorted origins of packages with a dependency naming ``package_name``."""
    origins = {
        pkg.origin
        for pkg in packages
        if pkg.origin
        and pkg.dependencies
        and any(package_name in dep for dep in pkg.dependencies)
    }
    return sorted(origins)


def _credential(token: str) -> str:
    return ":".join(("basic", AUTH_AUDIENCE, "user", token))


@dataclass
class ApkraneClient:
    """Queries an APK index for the packages that depend on a given package."""

    verbose: bool
    repo_type: str

    def index_url(self, arch: str) -> str:
        """Return the APKINDEX URL for this repository type and architecture."""
        if self.repo_type == "enterprise":
            return f"https://apk.cgr.dev/chainguard-private/{arch}/APKINDEX.tar.gz"
        if self.repo_type == "extras":
            return f"https://apk.cgr.dev/extra-packages/{arch}/APKINDEX.tar.gz"
        return f"https://packages.wolfi.dev/os/{arch}/APKINDEX.tar.gz"

    def auth_environment(self) -> dict[str, str]:
        """Return an environment carrying ``HTTP_AUTH`` from ``chainctl``."""
        try:
            completed = subprocess.run(
                ["chainctl", "auth", "token", "--audience", AUTH_AUDIENCE],
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                encoding="utf-8",
                errors="replace",
                check=True,
            )
        except (OSError, subprocess.CalledProcessError) as exc:
            raise ApkraneError(f"failed to get authentication token: {exc}") from exc

        token = completed.stdout.strip()
        env = dict(os.environ)
        env["HTTP_AUTH"] = _credential(token)

        if self.verbose:
            print(f"Setting up authentication for {self.repo_type} repository")
        return env

    def reverse_dependencies(self, package_name: str) -> list[str]:
        """Return the sorted origins of packages that depend on ``package_name``."""
        if self.verbose:
            print(f"Finding reverse dependencies for package: {package_name}")

        url = self.index_url(host_arch())

        env = None
        if self.repo_type in AUTHENTICATED_REPO_TYPES:
            try:
                env = self.auth_environment()
            except ApkraneError as exc:
                raise ApkraneError(f"failed to setup authentication: {exc}") from exc

        try:
            completed = subprocess.run(
                ["apkrane", "ls", "--json", "--latest", url],
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=env,
                check=True,
            )
        except (OSError, subprocess.CalledProcessError) as exc:
            raise ApkraneError(f"failed to run apkrane ls for {url}: {exc}") from exc

        packages = parse_packages(completed.stdout, self.verbose)
        origins = find_reverse_dependencies(packages, package_name)

        if self.verbose:
            print(f"Found {len(origins)} reverse dependencies")
        return origins