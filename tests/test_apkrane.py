import os
import stat
from unittest import mock

import pytest

from apkregress.apkrane import (
    ApkraneClient,
    ApkraneError,
    Package,
    find_reverse_dependencies,
    host_arch,
    parse_packages,
)


def _write_script(directory, name, body):
    path = directory / name
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def fake_bin(tmp_path, monkeypatch):
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    monkeypatch.setenv("PATH", str(bin_dir) + os.pathsep + os.environ.get("PATH", ""))
    return bin_dir


@pytest.mark.parametrize(
    "verbose,repo_type",
    [(False, "wolfi"), (True, "enterprise"), (False, "extras")],
)
def test_new_client(verbose, repo_type):
    client = ApkraneClient(verbose, repo_type)
    assert client.verbose == verbose
    assert client.repo_type == repo_type


@pytest.mark.parametrize(
    "repo_type,arch,expected",
    [
        ("wolfi", "x86_64", "https://packages.wolfi.dev/os/x86_64/APKINDEX.tar.gz"),
        ("wolfi", "arm64", "https://packages.wolfi.dev/os/arm64/APKINDEX.tar.gz"),
        ("enterprise", "x86_64", "https://apk.cgr.dev/chainguard-private/x86_64/APKINDEX.tar.gz"),
        ("enterprise", "arm64", "https://apk.cgr.dev/chainguard-private/arm64/APKINDEX.tar.gz"),
        ("extras", "x86_64", "https://apk.cgr.dev/extra-packages/x86_64/APKINDEX.tar.gz"),
        ("extras", "arm64", "https://apk.cgr.dev/extra-packages/arm64/APKINDEX.tar.gz"),
        ("unknown", "x86_64", "https://packages.wolfi.dev/os/x86_64/APKINDEX.tar.gz"),
    ],
)
def test_index_url(repo_type, arch, expected):
    assert ApkraneClient(False, repo_type).index_url(arch) == expected


@pytest.mark.parametrize(
    "repo_type,base",
    [
        ("wolfi", "https://packages.wolfi.dev"),
        ("enterprise", "https://apk.cgr.dev/chainguard-private"),
        ("extras", "https://apk.cgr.dev/extra-packages"),
    ],
)
def test_repo_type_url_base(repo_type, base):
    assert base in ApkraneClient(False, repo_type).index_url("x86_64")


@pytest.mark.parametrize(
    "machine,expected",
    [("x86_64", "x86_64"), ("AMD64", "x86_64"), ("aarch64", "arm64"), ("arm64", "arm64")],
)
def test_host_arch_mapping(machine, expected):
    with mock.patch("platform.machine", return_value=machine):
        assert host_arch() == expected


def test_architecture_mapping_in_url():
    with mock.patch("platform.machine", return_value="x86_64"):
        url = ApkraneClient(False, "wolfi").index_url(host_arch())
    assert url == "https://packages.wolfi.dev/os/x86_64/APKINDEX.tar.gz"


def test_package_fields():
    pkg = Package(origin="test-package", dependencies=["dep1", "dep2", "dep3"])
    assert pkg.origin == "test-package"
    assert pkg.dependencies == ["dep1", "dep2", "dep3"]


def test_package_default_dependencies_are_none():
    assert Package(origin="base-package").dependencies is None


def test_parse_packages_reads_json_lines():
    output = (
        '{"Origin": "curl", "Dependencies": ["libcurl", "ca-certificates", "openssl"]}\n'
        "\n"
        '{"Origin": "base-package"}\n'
        '{"Origin": "simple-tool", "Dependencies": ["libc"]}\n'
    )
    assert parse_packages(output) == [
        Package("curl", ["libcurl", "ca-certificates", "openssl"]),
        Package("base-package", None),
        Package("simple-tool", ["libc"]),
    ]


def test_parse_packages_skips_malformed_lines(capsys):
    output = b'not json\n{"Origin": 5}\n{"Origin": "ok", "Dependencies": ["x"]}\n'
    assert parse_packages(output, verbose=True) == [Package("ok", ["x"])]
    assert capsys.readouterr().out.count("Warning: failed to parse JSON line") == 2


def test_parse_packages_keys_are_case_insensitive():
    assert parse_packages('{"origin": "a", "dependencies": ["b"]}') == [Package("a", ["b"])]


def test_find_reverse_dependencies_sorted_unique():
    packages = [
        Package("zlib-user", ["so:libz.so.1", "zlib"]),
        Package("alpha", ["zlib-dev"]),
        Package("alpha", ["zlib"]),
        Package("unrelated", ["openssl"]),
        Package("", ["zlib"]),
        Package("nodeps", None),
    ]
    assert find_reverse_dependencies(packages, "zlib") == ["alpha", "zlib-user"]


def test_find_reverse_dependencies_none_found():
    assert find_reverse_dependencies([Package("a", ["b"])], "zzz") == []


def test_reverse_dependencies_runs_apkrane(fake_bin, tmp_path, monkeypatch):
    args_file = tmp_path / "args"
    monkeypatch.setenv("ARGS_FILE", str(args_file))
    _write_script(
        fake_bin,
        "apkrane",
        'echo "$@" > "$ARGS_FILE"\n'
        "printf '%s\\n' '{\"Origin\":\"zeta\",\"Dependencies\":[\"libfoo\"]}'\n"
        "printf '%s\\n' 'garbage'\n"
        "printf '%s\\n' '{\"Origin\":\"alpha\",\"Dependencies\":[\"libfoo-dev\"]}'\n"
        "printf '%s\\n' '{\"Origin\":\"other\",\"Dependencies\":[\"bar\"]}'\n",
    )
    client = ApkraneClient(False, "wolfi")
    assert client.reverse_dependencies("libfoo") == ["alpha", "zeta"]
    expected_url = client.index_url(host_arch())
    assert args_file.read_text().strip() == f"ls --json --latest {expected_url}"


def test_reverse_dependencies_failure_raises(fake_bin):
    _write_script(fake_bin, "apkrane", "exit 2\n")
    with pytest.raises(ApkraneError, match="failed to run apkrane ls"):
        ApkraneClient(False, "wolfi").reverse_dependencies("libfoo")


def test_auth_environment(fake_bin):
    _write_script(fake_bin, "chainctl", "printf 'token\\n'\n")
    env = ApkraneClient(False, "enterprise").auth_environment()
    assert env["HTTP_AUTH"] == "basic:apk.cgr.dev:user:token"
    assert env["PATH"] == os.environ["PATH"]


def test_enterprise_passes_auth_to_apkrane(fake_bin, tmp_path, monkeypatch):
    auth_file = tmp_path / "auth"
    monkeypatch.setenv("AUTH_FILE", str(auth_file))
    _write_script(fake_bin, "chainctl", "printf 'token\\n'\n")
    _write_script(
        fake_bin,
        "apkrane",
        'echo "$HTTP_AUTH" > "$AUTH_FILE"\n'
        "printf '%s\\n' '{\"Origin\":\"app\",\"Dependencies\":[\"libfoo\"]}'\n",
    )
    assert ApkraneClient(False, "extras").reverse_dependencies("libfoo") == ["app"]
    assert auth_file.read_text().strip() == "basic:apk.cgr.dev:user:token"


def test_enterprise_auth_failure(fake_bin):
    _write_script(fake_bin, "chainctl", "exit 1\n")
    with pytest.raises(ApkraneError, match="failed to setup authentication"):
        ApkraneClient(False, "enterprise").reverse_dependencies("libfoo")