#!/usr/bin/env python3
"""Development scripts for the Venue Booking service."""

import subprocess
import sys


def start():
    """Start the development server."""
    subprocess.run([
        "uvicorn",
        "venue_booking.main:app",
        "--host", "0.0.0.0",
        "--port", "3000",
        "--reload"
    ])


def worker():
    """Start a Celery worker with the beat scheduler embedded."""
    subprocess.run([
        "celery", "-A", "venue_booking.tasks.celery_app:celery_app",
        "worker", "--beat", "--loglevel", "info",
    ])


def test():
    """Run the test suite."""
    sys.exit(subprocess.run(["pytest", "tests/"]).returncode)


def lint():
    """Run linting and type checking."""
    subprocess.run(["black", "venue_booking/", "tests/"])
    subprocess.run(["mypy", "venue_booking/"])


def format_code():
    """Format code with black."""
    subprocess.run(["black", "venue_booking/", "tests/"])


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("Usage: python scripts.py <command>")
        print("Commands: start, worker, test, lint, format-code")
        sys.exit(1)

    command = sys.argv[1].replace("-", "_")
    if hasattr(sys.modules[__name__], command):
        getattr(sys.modules[__name__], command)()
    else:
        print(f"Unknown command: {sys.argv[1]}")
        sys.exit(1)
