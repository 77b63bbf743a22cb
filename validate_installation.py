#!/usr/bin/env python3
"""
Installation check for AD/IAM Group Sync.

Reports the installed version of every runtime and test dependency, imports
each package module, and exercises the command-line entry point. Pass a
configuration file path to include a health check against real systems.
"""

import sys
import json
import importlib
import subprocess
from importlib import metadata

# (distribution name, import name, required at runtime)
DEPENDENCIES = [
    ("ldap3", "ldap3", True),
    ("PyYAML", "yaml", True),
    ("boto3", "boto3", True),
    ("botocore", "botocore", True),
    ("pytest", "pytest", False),
    ("pytest-mock", "pytest_mock", False),
]

PACKAGE_MODULES = [
    "ad_iam_sync.errors",
    "ad_iam_sync.config",
    "ad_iam_sync.logging_setup",
    "ad_iam_sync.retry",
    "ad_iam_sync.clients.base",
    "ad_iam_sync.clients.directory",
    "ad_iam_sync.clients.iam",
    "ad_iam_sync.validator",
    "ad_iam_sync.diff_engine",
    "ad_iam_sync.mutator",
    "ad_iam_sync.notifications",
    "ad_iam_sync.main",
]


def _importable(module_name):
    try:
        importlib.import_module(module_name)
    except ImportError as e:
        return str(e)
    return None


def check_dependencies():
    """Report each dependency; return False if a runtime one is missing."""
    print("=== Dependencies ===")
    ok = True
    for distribution, module_name, required in DEPENDENCIES:
        error = _importable(module_name)
        label = distribution if required else f"{distribution} (tests only)"
        if error is None:
            try:
                version = metadata.version(distribution)
            except metadata.PackageNotFoundError:
                version = "unknown version"
            print(f"  ✓ {label} {version}")
        else:
            print(f"  ✗ {label} missing: {error}")
            ok = ok and not required
    return ok


def check_package():
    """Import every package module."""
    print("\n=== Package Modules ===")
    failures = []
    for module_name in PACKAGE_MODULES:
        error = _importable(module_name)
        if error:
            failures.append(module_name)
            print(f"  ✗ {module_name}: {error}")
        else:
            print(f"  ✓ {module_name}")
    return not failures


def check_cli(config_path=None):
    """Run the entry point with --help and, given a config, --health-check."""
    print("\n=== Command Line ===")
    command = [sys.executable, "-m", "ad_iam_sync.main"]

    if subprocess.run(command + ["--help"], capture_output=True, text=True).returncode != 0:
        print("  ✗ --help failed")
        return False
    print("  ✓ --help")

    if not config_path:
        print("  - --health-check skipped (no configuration file given)")
        return True

    result = subprocess.run(command + ["--health-check", "--config", config_path],
                            capture_output=True, text=True)
    try:
        report = json.loads(result.stdout)
    except json.JSONDecodeError:
        print(f"  ✗ --health-check did not print JSON: {result.stderr.strip()}")
        return False

    for name, check in report.get('checks', {}).items():
        print(f"    {check['status']:>4}  {name}: {check['message']}")
    print(f"  {'✓' if report.get('status') == 'healthy' else '✗'} --health-check ({report.get('status')})")
    return report.get('status') == 'healthy'


def main():
    print("AD/IAM Group Sync - Installation Check")
    print("=" * 50)

    config_path = sys.argv[1] if len(sys.argv) > 1 else None
    results = [check_dependencies(), check_package(), check_cli(config_path)]

    print("\n=== Result ===")
    if all(results):
        print("✓ Installation looks good.")
        print("  Preview a run with:  ad-iam-sync --config config.yaml --dry-run")
        return 0

    print("✗ Fix the problems above before running a sync.")
    return 1


if __name__ == "__main__":
    sys.exit(main())
