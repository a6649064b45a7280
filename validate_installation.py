#!/usr/bin/env python3
"""
Installation check for AD User Info.

Runs offline: imports the required libraries and the package modules,
normalizes and exports a sample entry, then calls the command line entry
point. Exits non-zero if any required check fails.
"""

import os
import sys
import json
import tempfile
import importlib
import subprocess

REQUIRED_LIBRARIES = [
    ("ldap3", "ldap3"),
    ("PyYAML", "yaml"),
    ("openpyxl", "openpyxl"),
]

OPTIONAL_LIBRARIES = [
    ("gssapi", "gssapi", "Kerberos binds without stored credentials"),
    ("pytest", "pytest", "running the test suite"),
]

PACKAGE_MODULES = [
    "ad_userinfo.config",
    "ad_userinfo.logging_setup",
    "ad_userinfo.models",
    "ad_userinfo.normalize",
    "ad_userinfo.ldap_client",
    "ad_userinfo.export",
    "ad_userinfo.service",
    "ad_userinfo.main",
]


def importable(module_name):
    try:
        importlib.import_module(module_name)
    except ImportError as e:
        return False, str(e)
    return True, ""


def report(ok, label, detail=""):
    mark = "✓" if ok else "✗"
    print(f"  {mark} {label}" + (f": {detail}" if detail else ""))
    return ok


def check_libraries():
    print("Libraries")
    results = []
    for distribution, module_name in REQUIRED_LIBRARIES:
        ok, error = importable(module_name)
        results.append(report(ok, distribution, error))
    for distribution, module_name, purpose in OPTIONAL_LIBRARIES:
        ok, _ = importable(module_name)
        report(ok, f"{distribution} (optional, {purpose})", "" if ok else "not installed")
    return all(results)


def check_modules():
    print("Package modules")
    results = []
    for module_name in PACKAGE_MODULES:
        ok, error = importable(module_name)
        results.append(report(ok, module_name, error))
    return all(results)


def check_offline_behaviour():
    """Exercise configuration, normalization, export and service construction."""
    print("Offline behaviour")
    try:
        from ad_userinfo.config import ConnectionConfig, default_config
        from ad_userinfo.export import write_users_workbook
        from ad_userinfo.models import DirectoryEntry
        from ad_userinfo.normalize import to_record
        from ad_userinfo.service import ADUserService

        connection = ConnectionConfig.from_dict(default_config()['directory'])
        report(True, "default configuration", f"search scope {connection.search_path}")

        record = to_record(DirectoryEntry('CN=Check,DC=example,DC=com', {
            'sAMAccountName': 'check',
            'userAccountControl': 512,
            'lastLogonTimestamp': 133497882000000000,
        }))
        if not record.is_enabled or record.last_logon_date is None:
            return report(False, "entry normalization", "flags or timestamps decoded incorrectly")
        report(True, "entry normalization")

        with tempfile.TemporaryDirectory() as temp_dir:
            path = write_users_workbook([record], temp_dir)
        report(True, "workbook export", os.path.basename(path))

        with ADUserService(config=connection):
            pass
        return report(True, "service construction")
    except Exception as e:
        return report(False, "offline behaviour", str(e))


def run_cli(*args):
    return subprocess.run([sys.executable, "-m", "ad_userinfo.main", *args],
                          capture_output=True, text=True, timeout=60)


def check_cli():
    print("Command line")
    try:
        if not report(run_cli("--help").returncode == 0, "--help"):
            return False

        # no reachable domain controller still yields a JSON report with exit code 1
        result = run_cli("--health-check")
        try:
            health = json.loads(result.stdout)
        except json.JSONDecodeError:
            return report(False, "--health-check", "output is not JSON")
        ok = result.returncode in (0, 1) and {'status', 'checks'} <= set(health)
        return report(ok, "--health-check", f"status {health.get('status')}, exit code {result.returncode}")
    except (OSError, subprocess.SubprocessError) as e:
        return report(False, "command line", str(e))


def main():
    print("AD User Info installation check")
    print("-" * 40)

    results = []
    for check in (check_libraries, check_modules, check_offline_behaviour, check_cli):
        results.append(check())
        print()

    if all(results):
        print("Installation OK. Copy config.example.yaml to config.yaml, then run:")
        print("  ad-userinfo --health-check")
        print("  ad-userinfo --lookup <username>")
        print("  ad-userinfo --export exports")
        return 0

    print("Installation incomplete; fix the failures marked ✗ above.")
    return 1


if __name__ == "__main__":
    sys.exit(main())
