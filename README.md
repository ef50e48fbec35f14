# apkregress

`apkregress` checks whether a candidate APK repository breaks the packages that
depend on a given package.

It works in two steps:

1. It runs `apkrane ls --json --latest` on the APK index for the chosen
   repository type and this machine's architecture, and collects every origin
   that has a dependency whose name contains the package you name (its reverse
   dependencies).
2. For each of those packages it runs `make test/<package>` in your package
   repository with `MELANGE_EXTRA_OPTS=--repository-append <repo>` set. If that
   fails, it runs the same test again without the candidate repository.

A package that fails with the candidate repository but passes without it is
reported as a **regression**. A package that fails both ways is reported as
failed, not as a regression.

## Requirements

- Python 3.10 or later, on a POSIX system
- `apkrane` and `make` on your `PATH`
- A checkout of a package repository with one `<package>.yaml` per package and
  a Makefile that offers `test/<package>` targets
- For the `enterprise` and `extras` repository types, `chainctl` on your `PATH`,
  already logged in; `chainctl auth token` supplies the token passed to
  `apkrane` in `HTTP_AUTH`

## Installation

```
pip install .
```

## Usage

Test the reverse dependencies of one package:

```
apkregress --package openssl --repo /path/to/candidate/packages --repo-path ~/src/os
```

Test a fixed list of packages read from a file (one name per line; blank lines
and lines starting with `#` are ignored):

```
apkregress --package-file packages.txt --repo /path/to/candidate/packages --repo-path ~/src/os
```

### Options

| Option | Short | Default | Meaning |
|--------|-------|---------|---------|
| `--package` | `-p` | | Package whose reverse dependencies are tested |
| `--package-file` | `-f` | | File listing packages to test |
| `--repo` | `-r` | required | APK repository to test against |
| `--repo-path` | `-w` | required | Path to the package repository checkout |
| `--repo-type` | `-t` | `wolfi` | `wolfi`, `enterprise` or `extras` |
| `--concurrency` | `-c` | `4` | Number of packages tested at once |
| `--verbose` | `-v` | off | Print details of every step instead of a progress line |
| `--hang-timeout` | | `30m` | Kill a test that runs longer than this |
| `--markdown` | `-m` | off | Print the summary as Markdown, ready for an issue |

Exactly one of `--package` and `--package-file` must be given. The repository
path must exist; a relative path is resolved against the current directory.

`--hang-timeout` takes durations such as `90s`, `45m`, `1h30m` or `1.5h`, with
the units `ns`, `us`, `ms`, `s`, `m` and `h`. A test that runs past it has its
whole process group killed and is reported as hung.

## Output

Logs go to `logs/regression-test-<package>-<timestamp>/` (or
`logs/package-list-test-<timestamp>/` in file mode), under the current
directory. Each test writes `<package>_with_repo.log` and, where it ran,
`<package>_without_repo.log`. The directory also holds `successful.txt`,
`failed.txt`, `regressions.txt`, `hung.txt` and `skipped.txt`, one entry per
line.

Packages without a YAML file in the repository are skipped. The command exits
with status 1 when any regression or hung test is found, or when the options
are invalid or a tool cannot be run.

## Using it from Python

The command is a thin layer over these modules:

- `apkregress.apkrane`: `ApkraneClient` (with `index_url`, `auth_environment`
  and `reverse_dependencies`), plus `parse_packages`,
  `find_reverse_dependencies` and `host_arch`.
- `apkregress.melange`: `MelangeClient.test_package`, which raises
  `PackageYAMLNotFoundError`, `HungTestError` or `MelangeError`.
- `apkregress.runner`: `RegressionTestRunner`, its `from_package_list`
  constructor, and `format_duration`.
- `apkregress.cli`: `main`, `run_regression_test`, `read_package_file`,
  `parse_duration` and `build_parser`.

```python
from apkregress.runner import RegressionTestRunner, RegressionError

runner = RegressionTestRunner(
    "openssl", "/path/to/candidate/packages", "/home/me/src/os",
    "wolfi", 4, False, 30 * 60, False,
)
try:
    runner.run()
except RegressionError as exc:
    print(exc)
```

The hang timeout is given in seconds; `0` means the default of 30 minutes.

## What it does not do

`apkregress` builds and tests nothing by itself: it relies entirely on
`apkrane`, `make` and the Makefile of your package repository. It does not
retry failed tests, and it does not clean up old log directories.