#!/usr/bin/env python3
"""Purge expired one-time codes and deactivate expired sessions.

Meant for cron on deployments that do not run the in-app maintenance loop.
Safe to run repeatedly.

Usage:
    DATABASE_URL=postgresql://... python scripts/cleanup_expired.py
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def run_cleanup(runtime=None) -> dict:
    from authcore.service.runtime import get_runtime

    runtime = runtime or get_runtime()
    try:
        return runtime.run_maintenance()
    finally:
        runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Remove expired OTP codes and sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.parse_args()

    try:
        result = run_cleanup()
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"Removed {result['otps_removed']} expired codes")
    print(f"Deactivated {result['sessions_expired']} expired sessions")


if __name__ == "__main__":
    main()
