#!/usr/bin/env python3
"""
Container entrypoint: release (migrations + seed), then exec gunicorn.

Usage:
    python scripts/start.py [--no-release] [--workers N]

PORT (default 8080) and WEB_CONCURRENCY are read from the environment.
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _port() -> int:
    raw = (os.environ.get("PORT") or "8080").strip()
    if not raw.isdigit() or not 1 <= int(raw) <= 65535:
        raise SystemExit(f"Invalid PORT {raw!r}; expected an integer 1-65535.")
    return int(raw)


def gunicorn_argv(*, port: int, workers: int) -> list[str]:
    return [
        "gunicorn",
        "app.wsgi:app",
        f"--bind=0.0.0.0:{port}",
        f"--workers={workers}",
        "--timeout=60",
        "--preload",
        "--access-logfile=-",
        "--error-logfile=-",
    ]


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the release step and start gunicorn")
    parser.add_argument("--no-release", action="store_true", help="Skip migrations and seeding")
    parser.add_argument("--workers", type=int, default=int(os.environ.get("WEB_CONCURRENCY") or 2))
    args = parser.parse_args()

    port = _port()

    if not args.no_release:
        from scripts.release import run_release

        try:
            run_release()
        except Exception as e:
            print(f"[start] release failed: {e}", flush=True)
            sys.exit(1)

    argv = gunicorn_argv(port=port, workers=args.workers)
    print(f"[start] {' '.join(argv)}", flush=True)
    # exec so gunicorn is PID 1 and receives signals directly
    os.execvp(argv[0], argv)


if __name__ == "__main__":
    main()
