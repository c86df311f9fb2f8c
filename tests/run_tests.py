"""
Test Runner for Rotating Backup
===============================

Runs the unit and integration suites with unittest discovery and prints a
combined summary. ``pytest`` collects the same tests.
"""

import unittest
import sys
import os
import argparse
import time
from typing import Dict, List

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

SUITES = ('unit', 'integration')


class BackupTestRunner:
    """Discovers and runs test suites by directory."""

    def __init__(self, verbosity: int = 2, failfast: bool = False):
        self.verbosity = verbosity
        self.failfast = failfast
        self.test_results: List[Dict] = []

    def discover_tests(self, test_dir: str) -> unittest.TestSuite:
        start_dir = os.path.join(os.path.dirname(os.path.abspath(__file__)), test_dir)
        if not os.path.isdir(start_dir):
            print(f"Warning: Test directory {start_dir} does not exist")
            return unittest.TestSuite()
        return unittest.TestLoader().discover(start_dir, pattern='test_*.py')

    def run_suite(self, name: str) -> unittest.TestResult:
        print(f"\n{'='*60}")
        print(f"Running {name} tests")
        print(f"{'='*60}")

        runner = unittest.TextTestRunner(verbosity=self.verbosity, stream=sys.stdout,
                                         failfast=self.failfast)
        start_time = time.time()
        result = runner.run(self.discover_tests(name))

        self.test_results.append({
            'suite_name': name,
            'tests_run': result.testsRun,
            'failures': len(result.failures),
            'errors': len(result.errors),
            'skipped': len(result.skipped),
            'success': result.wasSuccessful(),
            'duration': time.time() - start_time,
        })
        return result

    def print_summary(self) -> bool:
        """Print per-suite and overall counts; return overall success."""
        print(f"\n{'='*60}")
        print("TEST EXECUTION SUMMARY")
        print(f"{'='*60}")

        for result in self.test_results:
            print(f"{result['suite_name']:<12} run={result['tests_run']} failures={result['failures']} "
                  f"errors={result['errors']} skipped={result['skipped']} "
                  f"({result['duration']:.2f}s) {'PASS' if result['success'] else 'FAIL'}")

        all_success = all(result['success'] for result in self.test_results)
        print(f"\nOverall status: {'PASS' if all_success else 'FAIL'}")
        return all_success


def main():
    parser = argparse.ArgumentParser(description='Run rotating backup tests')
    parser.add_argument('--verbosity', '-v', type=int, default=2, help='Test verbosity level (0-2)')
    parser.add_argument('--suite', choices=SUITES, help='Run only one suite')
    parser.add_argument('--failfast', action='store_true', help='Stop on first failure')
    args = parser.parse_args()

    runner = BackupTestRunner(verbosity=args.verbosity, failfast=args.failfast)
    for suite in ([args.suite] if args.suite else SUITES):
        runner.run_suite(suite)

    sys.exit(0 if runner.print_summary() else 1)


if __name__ == '__main__':
    main()
