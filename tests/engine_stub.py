"""
Stand-in conversion engine for local worker tests.

Listens on the address from --accept and answers bridge requests:
    PING     -> PONG
    CONVERT  -> copies source to target (prefixed), replies RESULT
    SHUTDOWN -> exits

Behaviour switches:
    --exit-code=N        exit immediately with N
    --accept-delay=S     wait S seconds before listening
    --convert-delay=S    wait S seconds before answering CONVERT
    --ignore-shutdown    keep running after SHUTDOWN
"""
from __future__ import annotations

import argparse
import re
import shutil
import socket
import sys
import time
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from docpool.bridge import (  # noqa: E402
    MSG_CONVERT,
    MSG_ERROR,
    MSG_PING,
    MSG_PONG,
    MSG_RESULT,
    MSG_SHUTDOWN,
    read_message,
    write_message,
)

ACCEPT_RE = re.compile(r"host=([^,;]+),port=(\d+)")


def parse_args(argv):
    parser = argparse.ArgumentParser()
    parser.add_argument("--accept", required=True)
    parser.add_argument("--exit-code", type=int, default=None)
    parser.add_argument("--accept-delay", type=float, default=0.0)
    parser.add_argument("--convert-delay", type=float, default=0.0)
    parser.add_argument("--ignore-shutdown", action="store_true")
    # Engines get launched with extra flags (e.g. --headless); ignore them.
    args, _unknown = parser.parse_known_args(argv)
    return args


def convert(payload):
    source = Path(payload["source"])
    target = Path(payload["target"])
    if not source.is_file():
        return MSG_ERROR, {"error": f"source not found: {source}"}
    if payload.get("format") == "fail":
        return MSG_ERROR, {"error": "unsupported format: fail"}
    with source.open("rb") as src, target.open("wb") as dst:
        dst.write(f"[{payload['format']}]".encode())
        shutil.copyfileobj(src, dst)
    return MSG_RESULT, {"target": str(target)}


def serve(conn, args) -> bool:
    """Handle one connection. Returns False when the engine must exit."""
    while True:
        try:
            message = read_message(conn)
        except (OSError, ValueError):
            return True
        if message is None:
            return True

        msg_type = message.get("type")
        msg_id = message.get("id")
        if msg_type == MSG_PING:
            write_message(conn, MSG_PONG, {}, msg_id)
        elif msg_type == MSG_CONVERT:
            if args.convert_delay:
                time.sleep(args.convert_delay)
            reply_type, reply = convert(message.get("payload") or {})
            write_message(conn, reply_type, reply, msg_id)
        elif msg_type == MSG_SHUTDOWN:
            if not args.ignore_shutdown:
                return False
        else:
            write_message(conn, MSG_ERROR, {"error": f"unknown type {msg_type}"}, msg_id)


def main(argv=None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    print(f"engine stub starting: {args.accept}", flush=True)
    if args.exit_code is not None:
        print("engine stub failing on purpose", file=sys.stderr, flush=True)
        return args.exit_code

    match = ACCEPT_RE.search(args.accept)
    if match is None:
        print(f"bad accept string: {args.accept}", file=sys.stderr, flush=True)
        return 2
    host, port = match.group(1), int(match.group(2))

    if args.accept_delay:
        time.sleep(args.accept_delay)

    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    server.bind((host, port))
    server.listen(4)
    print("engine stub ready", flush=True)

    try:
        while True:
            conn, _addr = server.accept()
            with conn:
                if not serve(conn, args):
                    break
    finally:
        server.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
