#!/usr/bin/env python3
"""
vendorstats - Test Runner

Runs the unit tests (core components) and integration tests (collectors,
handlers, daemon wiring).
"""

import argparse
import sys
import unittest
from pathlib import Path

# Add tests directory to path
TESTS_DIR = Path(__file__).parent
sys.path.insert(0, str(TESTS_DIR))

UNIT_MODULES = [
    'test_frame_parser',
    'test_dispatcher',
    'test_scheduler',
    'test_delta_tracker',
    'test_atoms',
    'test_config',
]

INTEGRATION_MODULES = [
    'test_sinks',
    'test_listener',
    'test_handlers',
    'test_sysfs_collector',
    'test_daemon',
    'test_cli',
]


def print_header(text):
    """Print formatted header"""
    print("\n" + "="*60)
    print(f"  {text}")
    print("="*60 + "\n")


def run_modules(modules):
    loader = unittest.TestLoader()
    suite = unittest.TestSuite()
    for name in modules:
        suite.addTests(loader.loadTestsFromName(name))
    runner = unittest.TextTestRunner(verbosity=2)
    result = runner.run(suite)
    return 0 if result.wasSuccessful() else 1


def main():
    parser = argparse.ArgumentParser(description="Run vendorstats tests")
    parser.add_argument('--unit', action='store_true', help='Run unit tests only')
    parser.add_argument('--integration', action='store_true', help='Run integration tests only')
    parser.add_argument('--all', action='store_true', help='Run all tests (default)')
    
    args = parser.parse_args()
    
    # Default to all tests
    if not any([args.unit, args.integration]):
        args.all = True
    
    results = []
    
    if args.unit or args.all:
        print_header("UNIT TESTS")
        results.append(('Unit Tests', run_modules(UNIT_MODULES)))
    
    if args.integration or args.all:
        print_header("INTEGRATION TESTS")
        results.append(('Integration Tests', run_modules(INTEGRATION_MODULES)))
    
    # Summary
    print_header("TEST SUMMARY")
    
    all_passed = True
    for name, result in results:
        status = "✅ PASSED" if result == 0 else "❌ FAILED"
        print(f"{name}: {status}")
        if result != 0:
            all_passed = False
    
    print()
    
    if all_passed:
        print("🎉 All tests passed!")
        return 0
    else:
        print("⚠️  Some tests failed. Check output above for details.")
        return 1


if __name__ == '__main__':
    sys.exit(main())
