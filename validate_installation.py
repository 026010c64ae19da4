#!/usr/bin/env python3
"""
Validation script for IdP User Sync application.

Checks that the dependencies are installed, that every module imports, and
that an import against an in-memory store runs end to end with a stubbed IdP.
"""

import sys
import importlib
import subprocess


def check_dependency(package_name, import_name=None):
    """Check if a package/module can be imported."""
    if import_name is None:
        import_name = package_name

    try:
        importlib.import_module(import_name)
        return True, f"✓ {package_name} available"
    except ImportError as e:
        return False, f"✗ {package_name} missing: {e}"


def validate_dependencies():
    """Validate all required dependencies."""
    print("=== Dependency Validation ===")

    dependencies = [
        ("PyYAML", "yaml"),
        ("SQLAlchemy", "sqlalchemy"),
        ("cryptography", "cryptography"),
    ]

    test_dependencies = [
        ("pytest", "pytest"),
    ]

    all_ok = True
    for pkg_name, import_name in dependencies:
        ok, message = check_dependency(pkg_name, import_name)
        print(f"  {message}")
        if not ok:
            all_ok = False

    print("\n  Test dependencies:")
    for pkg_name, import_name in test_dependencies:
        ok, message = check_dependency(pkg_name, import_name)
        print(f"  {message}")

    return all_ok


def validate_core_modules():
    """Validate core application modules."""
    print("\n=== Core Module Validation ===")

    modules = [
        "idp_user_sync.config",
        "idp_user_sync.api_client",
        "idp_user_sync.groups",
        "idp_user_sync.directory",
        "idp_user_sync.provisioning",
        "idp_user_sync.reconciler",
        "idp_user_sync.run_lock",
        "idp_user_sync.logging_setup",
        "idp_user_sync.notifications",
        "idp_user_sync.retry",
        "idp_user_sync.main",
    ]

    all_ok = True
    for module in modules:
        ok, message = check_dependency(module, module)
        print(f"  {message}")
        if not ok:
            all_ok = False

    return all_ok


class _StubGroups:
    """Group directory answering from memory."""

    def members_of(self, group_id):
        return [{'id': '00u1', 'profile': {'login': 'ada', 'email': 'ada@example.com', 'firstName': 'Ada'}}]

    def fetch_user(self, user_id):
        return None


def validate_functionality():
    """Validate key functionality."""
    print("\n=== Functionality Validation ===")

    try:
        from idp_user_sync.config import ImportConfiguration
        from idp_user_sync.directory import create_store_engine, init_schema, SqlUserDirectory
        from idp_user_sync.provisioning import StoreProvisioner
        from idp_user_sync.reconciler import Reconciler

        import_config = ImportConfiguration.from_dict({'deactivate_unlisted': True})
        print("  ✓ Import configuration")

        engine = create_store_engine('sqlite://')
        init_schema(engine)
        directory = SqlUserDirectory(engine)
        print("  ✓ Local store schema")

        reconciler = Reconciler(_StubGroups(), directory, StoreProvisioner(engine), import_config)
        first = reconciler.import_users({'g1': 'Staff'})
        second = reconciler.import_users({'g1': 'Staff'})
        if first.volume != 1 or second.volume != 0:
            print("  ✗ Import is not idempotent")
            return False
        print("  ✓ Reconciliation run")

        return True

    except Exception as e:
        print(f"  ✗ Functionality test failed: {e}")
        return False


def validate_cli():
    """Validate command-line interface."""
    print("\n=== CLI Validation ===")

    result = subprocess.run([sys.executable, "-m", "idp_user_sync.main", "--help"],
                            capture_output=True, text=True)
    if result.returncode == 0:
        print("  ✓ Help command working")
        return True
    print("  ✗ Help command failed")
    return False


def main():
    """Run all validations."""
    print("IdP User Sync - Installation Validation")
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
        print("✓ IdP User Sync is ready for use")
        print("\nNext steps:")
        print("  1. Configure the IdP and database settings in config.yaml")
        print("  2. Create the tables with: python -m idp_user_sync.main --init-db")
        print("  3. Test with: python -m idp_user_sync.main --health-check")
        print("  4. Run the import: python -m idp_user_sync.main")
        return 0
    else:
        print("✗ Some validations failed!")
        print("Please resolve the issues above before using the application.")
        return 1


if __name__ == "__main__":
    sys.exit(main())
