"""Find reverse dependencies of an APK package and test them for regressions."""

__version__ = "0.1.0"