#!/usr/bin/env python3
"""
Start the incident API under uvicorn, run the live API tests against it, then stop the server.

Usage:
  python scripts/run_tests_live.py                 # in-memory backend
  python scripts/run_tests_live.py --redis         # STORE_BACKEND=redis (needs Redis)
  python scripts/run_tests_live.py -- -k sweep     # extra pytest arguments after --
(Run from project root with venv activated.)
"""

import argparse
import os
import subprocess
import sys
import time

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, ROOT)
from tests.http_client import get

HOST = "127.0.0.1"
PORT = int(os.environ.get("LIVE_TEST_PORT", "8765"))
BASE_URL = f"http://{HOST}:{PORT}"


def server_ready(timeout=10):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            if get(f"{BASE_URL}/health").status_code == 200:
                return True
        except OSError:
            pass
        time.sleep(0.5)
    return False


def start_server(backend):
    env = dict(os.environ, STORE_BACKEND=backend)
    return subprocess.Popen(
        [sys.executable, "-m", "uvicorn", "helpdesk.main:app", "--host", HOST, "--port", str(PORT)],
        cwd=ROOT,
        env=env,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )


def main():
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--redis", action="store_true", help="run the server with the Redis datastore")
    parser.add_argument("pytest_args", nargs="*")
    args = parser.parse_args()

    proc = start_server("redis" if args.redis else "memory")
    try:
        if not server_ready():
            print(f"Server did not come up on {BASE_URL}.")
            sys.exit(1)
        result = subprocess.run(
            [sys.executable, "-m", "pytest", "tests/test_live_api.py", "-v", *args.pytest_args],
            cwd=ROOT,
            env=dict(os.environ, BASE_URL=BASE_URL),
        )
        sys.exit(result.returncode)
    finally:
        proc.terminate()
        proc.wait(timeout=5)


if __name__ == "__main__":
    main()
