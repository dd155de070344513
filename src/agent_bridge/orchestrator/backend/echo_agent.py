"""Scripted stand-in for the CLI agent, used by engine and CLI tests.

Reads the prompt from stdin and writes stream-json events the way the real
agent does.  Unknown flags (``--print``, ``--output-format``...) are accepted
and ignored so the same command line as for the real agent can be used.
"""

from __future__ import annotations

import argparse
import json
import os
import signal
import sys
import time

MODES = (
    "result",
    "linger",
    "hang",
    "exit-no-result",
    "concatenated",
    "error-result",
)


def _event_lines(*, session_id: str, model: str, result: str, is_error: bool) -> list[str]:
    events = [
        {"type": "system", "subtype": "init", "session_id": session_id, "model": model},
        {
            "type": "assistant",
            "session_id": session_id,
            "message": {"role": "assistant", "content": [{"type": "text", "text": result}]},
        },
        {
            "type": "result",
            "subtype": "error" if is_error else "success",
            "is_error": is_error,
            "duration_ms": 1200,
            "duration_api_ms": 1000,
            "result": result,
            "session_id": session_id,
            "request_id": "req-echo",
        },
    ]
    return [json.dumps(event) for event in events]


def _emit(lines: list[str], *, joined: bool = False) -> None:
    if joined:
        sys.stdout.write("".join(lines) + "\n")
    else:
        for line in lines:
            sys.stdout.write(line + "\n")
    sys.stdout.flush()


def main(argv: list[str] | None = None) -> int:
    """Run one scripted agent invocation."""

    parser = argparse.ArgumentParser(prog="echo-agent")
    parser.add_argument("--mode", choices=MODES, default="result")
    parser.add_argument("--version", action="store_true")
    parser.add_argument("--resume", default=None)
    parser.add_argument("--model", default="default")
    parser.add_argument("--session-id", default="echo-session")
    parser.add_argument("--result", default=None)
    parser.add_argument("--report-operation", action="store_true")
    parser.add_argument(
        "--expired-sessions",
        default="",
        help="Comma separated session ids this agent refuses to resume.",
    )
    parser.add_argument("--exit-code", type=int, default=2)
    parser.add_argument("--ignore-term", action="store_true")
    parser.add_argument("--sleep-seconds", type=float, default=60.0)
    args, _unknown = parser.parse_known_args(argv)

    if args.version:
        sys.stdout.write("echo-agent 0.1.0\n")
        return 0
    if args.ignore_term:
        signal.signal(signal.SIGTERM, signal.SIG_IGN)

    prompt = sys.stdin.read()
    expired = {value.strip() for value in args.expired_sessions.split(",") if value.strip()}
    session_id = args.resume or args.session_id

    if args.resume and args.resume in expired:
        _emit(
            _event_lines(
                session_id=args.resume,
                model=args.model,
                result="Error: session expired",
                is_error=True,
            ),
        )
        return 1

    if args.report_operation:
        result = os.getenv("AGENT_BRIDGE_OPERATION", "")
    elif args.result is not None:
        result = args.result
    else:
        result = f"echo: {prompt.strip()}"

    if args.mode == "hang":
        _emit([json.dumps({"type": "system", "subtype": "init", "session_id": session_id})])
        time.sleep(args.sleep_seconds)
        return 0

    if args.mode == "exit-no-result":
        lines = _event_lines(session_id=session_id, model=args.model, result=result, is_error=False)
        _emit(lines[:2])
        sys.stderr.write("Error: agent crashed before finishing\n")
        sys.stderr.flush()
        return args.exit_code

    lines = _event_lines(
        session_id=session_id,
        model=args.model,
        result=result,
        is_error=args.mode == "error-result",
    )
    _emit(lines, joined=args.mode == "concatenated")
    if args.mode == "linger":
        time.sleep(args.sleep_seconds)
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
