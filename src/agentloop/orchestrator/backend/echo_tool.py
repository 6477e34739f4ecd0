"""Local stand-in for an LLM CLI, used by integration tests.

Reads the prompt from stdin (or the trailing argument), ignores the real
tools' flags and prints ``AGENTLOOP_ECHO_REPLY`` followed by the first prompt
line. ``AGENTLOOP_ECHO_STDERR`` is written to stderr when set.
"""

from __future__ import annotations

import argparse
import os
import sys


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("prompt", nargs="?", default=None)
    args, _unknown = parser.parse_known_args(argv)

    prompt = args.prompt if args.prompt is not None else sys.stdin.read()
    first_line = prompt.strip().splitlines()[0] if prompt.strip() else ""
    reply = os.getenv("AGENTLOOP_ECHO_REPLY", "done")
    sys.stdout.write(f"{reply}\n{first_line}\n")
    stderr = os.getenv("AGENTLOOP_ECHO_STDERR")
    if stderr:
        sys.stderr.write(f"{stderr}\n")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
