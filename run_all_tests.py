#!/usr/bin/env python3
"""
Test Runner for the Birthday Dispatch Scheduler

Runs each suite in its own interpreter so a hung background scheduler or a
leaked database handle in one suite cannot affect the others.

Usage:
    python run_all_tests.py [--functional-only] [--performance-only]
"""

import argparse
import importlib.util
import subprocess
import sys
import time
from pathlib import Path

ROOT = Path(__file__).parent

REQUIRED_MODULES = {
    'yaml': 'PyYAML',
    'requests': 'requests',
    'apscheduler': 'APScheduler',
    'tqdm': 'tqdm',
    'psutil': 'psutil',
}

FUNCTIONAL_SUITES = ['test_scheduler.py', 'test_dispatch_client.py', 'test_health_monitor.py']
PERFORMANCE_SUITES = ['test_performance.py']


def missing_packages():
    return [package for module, package in REQUIRED_MODULES.items()
            if importlib.util.find_spec(module) is None]


def run_suite(script_name, timeout=600):
    """Run one suite; returns (passed, seconds)"""
    print(f"\n{'='*80}\n🧪 {script_name}\n{'='*80}")
    start_time = time.time()
    try:
        result = subprocess.run([sys.executable, str(ROOT / script_name)], cwd=ROOT, timeout=timeout)
        passed = result.returncode == 0
    except subprocess.TimeoutExpired:
        print(f"⏰ {script_name} took longer than {timeout // 60} minutes")
        passed = False
    return passed, time.time() - start_time


def main():
    parser = argparse.ArgumentParser(description='Run the birthday scheduler test suites')
    group = parser.add_mutually_exclusive_group()
    group.add_argument('--functional-only', action='store_true', help='Skip the performance suite')
    group.add_argument('--performance-only', action='store_true', help='Run only the performance suite')
    args = parser.parse_args()

    missing = missing_packages()
    if missing:
        print("❌ Missing dependencies, install with: pip install " + " ".join(missing))
        sys.exit(1)

    if args.functional_only:
        suites = FUNCTIONAL_SUITES
    elif args.performance_only:
        suites = PERFORMANCE_SUITES
    else:
        suites = FUNCTIONAL_SUITES + PERFORMANCE_SUITES

    results = [(suite, *run_suite(suite)) for suite in suites]

    print(f"\n{'='*80}\n📋 TEST REPORT\n{'='*80}")
    for suite, passed, duration in results:
        print(f"   {'✅' if passed else '❌'} {suite} ({duration:.1f}s)")

    failed = [suite for suite, passed, _ in results if not passed]
    print(f"\n{len(results) - len(failed)}/{len(results)} suites passed")
    sys.exit(1 if failed else 0)


if __name__ == "__main__":
    main()
