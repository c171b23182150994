#!/usr/bin/env python
"""Universal entrypoint.
Usage examples inside container:
  # Default (no args) -> show help
  docker run image

  # Ingest dataset (incremental, writes state/)
  docker run image ingest events_export

  # Preview / schema guess
  docker run image ingest events_export --preview
  docker run image guess people_jql

  # Preview every enabled dataset
  docker run image smoke

Any other first token will be treated as a python script path.
"""
from __future__ import annotations
import os
import sys
import subprocess

BASE_CMD = [sys.executable]

COMMANDS = {
    "ingest": ["-m", "pipelines.mixpanel.main"],
    "guess": ["-m", "pipelines.mixpanel.main"],
    "smoke": ["scripts/smoke_all.py"],
}

def main():
    args = sys.argv[1:]
    if not args:
        print("Usage: ingest|guess|smoke [args...]  OR provide a python script path")
        print("Examples:")
        print("  ingest events_export --from-date 2024-01-01 --fetch-days 7")
        print("  guess people_jql")
        sys.exit(0)

    first = args[0]
    if first in COMMANDS:
        cmd = BASE_CMD + COMMANDS[first] + args[1:]
        if first == "guess":
            cmd.append("--guess")
    else:
        # treat as direct script path
        cmd = BASE_CMD + [first] + args[1:]

    for var in ("MIXPANEL_API_KEY", "MIXPANEL_API_SECRET"):
        if var not in os.environ:
            print(f"[entrypoint] WARNING: {var} not set in environment.", file=sys.stderr)

    try:
        completed = subprocess.run(cmd, check=False)
        sys.exit(completed.returncode)
    except FileNotFoundError:
        print(f"[entrypoint] Command not found: {cmd[1]}", file=sys.stderr)
        sys.exit(127)

if __name__ == "__main__":
    main()
