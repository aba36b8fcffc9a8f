#!/usr/bin/env python3
"""
Validation script for AD Reconcile.

Checks that dependencies are installed, that every module imports, and that the
reconciliation engine plans and dry-runs a small in-memory reconciliation.
"""

import sys
import importlib
import subprocess


def check_dependency(package_name, import_name=None):
    """Check if a package/module can be imported."""
    import_name = import_name or package_name
    try:
        importlib.import_module(import_name)
        return True, f"✓ {package_name} available"
    except ImportError as e:
        return False, f"✗ {package_name} missing: {e}"


def validate_dependencies():
    print("=== Dependency Validation ===")

    dependencies = [
        ("ldap3", "ldap3"),
        ("PyYAML", "yaml"),
        ("cryptography", "cryptography"),
        ("pytest (tests only)", "pytest"),
    ]

    all_ok = True
    for pkg_name, import_name in dependencies:
        ok, message = check_dependency(pkg_name, import_name)
        print(f"  {message}")
        all_ok = all_ok and ok
    return all_ok


def validate_core_modules():
    print("\n=== Core Module Validation ===")

    modules = [
        "ad_reconcile.config",
        "ad_reconcile.main",
        "ad_reconcile.ldap_client",
        "ad_reconcile.logging_setup",
        "ad_reconcile.notifications",
        "ad_reconcile.engine.pipeline",
        "ad_reconcile.targets.github_scim",
        "ad_reconcile.targets.glpi",
    ]

    all_ok = True
    for module in modules:
        ok, message = check_dependency(module)
        print(f"  {message}")
        all_ok = all_ok and ok
    return all_ok


class _InMemoryTarget:
    """Minimal target used to exercise the engine without any network."""

    def __init__(self, records):
        self.records = records

    def fetch_entities(self):
        return list(self.records)

    def create_entity(self, key, attributes):
        raise AssertionError("dry run must not create")

    def remove_entity(self, entity_id):
        raise AssertionError("dry run must not remove")

    def update_entity(self, entity_id, attribute, value):
        raise AssertionError("dry run must not update")


def validate_functionality():
    print("\n=== Functionality Validation ===")

    try:
        from ad_reconcile.engine.models import AttributeMapping, Status
        from ad_reconcile.engine.normalizer import EntityNormalizer
        from ad_reconcile.engine.pipeline import Reconciler

        reconciler = Reconciler(
            name='validation',
            fetch_source=lambda: [{'mail': 'new@example.com', 'givenName': 'New'}],
            target=_InMemoryTarget([{'id': '7', 'email': 'old@example.com'}]),
            source_normalizer=EntityNormalizer('mail', key_format='email'),
            target_normalizer=EntityNormalizer('email', id_field='id'),
            mappings=[AttributeMapping('givenName', 'givenName')]
        )
        ledger = reconciler.run(dry_run=True)
        if all(result.status is Status.SKIPPED for result in ledger) and len(ledger) == 2:
            print("  ✓ Reconciliation engine dry run")
            return True
        print(f"  ✗ Unexpected dry-run ledger:\n{ledger.render()}")
        return False

    except Exception as e:
        print(f"  ✗ Functionality test failed: {e}")
        return False


def validate_cli():
    print("\n=== CLI Validation ===")

    result = subprocess.run([sys.executable, "-m", "ad_reconcile.main", "--help"],
                            capture_output=True, text=True)
    if result.returncode == 0:
        print("  ✓ Help command working")
        return True
    print(f"  ✗ Help command failed: {result.stderr.strip()}")
    return False


def main():
    print("AD Reconcile - Installation Validation")
    print("=" * 50)

    all_validations = [
        validate_dependencies(),
        validate_core_modules(),
        validate_functionality(),
        validate_cli(),
    ]

    print("\n=== Summary ===")
    if all(all_validations):
        print("✓ All validations passed!")
        print("\nNext steps:")
        print("  1. Configure your AD and target settings in config.yaml")
        print("  2. Test with: python -m ad_reconcile.main --health-check")
        print("  3. Preview changes: python -m ad_reconcile.main --dry-run")
        return 0

    print("✗ Some validations failed!")
    return 1


if __name__ == "__main__":
    sys.exit(main())
