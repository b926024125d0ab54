"""
Console companion client for a tabletop session.

Usage:
    python main.py <session-id> [--token TOKEN] [--heartbeat INTERVAL_MS TIMEOUT_MS]

Connects to the configured session server, prints state changes and
incoming messages, and sends every line typed on stdin as a chat message.
An empty line or EOF disconnects.
"""

import argparse
import asyncio
import json
import sys

from tablelink.config.config import Config
from tablelink.utils.logger import get_logger
from tablelink.websocket.manager import ConnectionManager

log = get_logger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="tablelink console client")
    parser.add_argument("session_id", help="Session to join")
    parser.add_argument("--token", default=Config.SESSION_TOKEN, help="Auth token")
    parser.add_argument(
        "--heartbeat",
        nargs=2,
        type=int,
        metavar=("INTERVAL_MS", "TIMEOUT_MS"),
        help="Enable ping/pong liveness checks",
    )
    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> int:
    manager = ConnectionManager.for_session(args.session_id, args.token)
    if args.heartbeat:
        manager.enable_heartbeat(*args.heartbeat)

    done = asyncio.Event()
    joined = []
    manager.on("connected", joined.append)
    manager.on("state_change", lambda state: print(f"* {state.name.lower()}"))
    manager.on("message", lambda payload: print(json.dumps(payload)))
    manager.on("reconnecting", lambda delay: print(f"* retrying in {delay}ms"))
    manager.on("error", lambda info: print(f"! {info}", file=sys.stderr))
    manager.on("auth_error", lambda reason: (print(f"! auth rejected: {reason}"), done.set()))
    manager.on("max_reconnect_reached", lambda: (print("! giving up"), done.set()))

    manager.connect()
    loop = asyncio.get_running_loop()

    async def read_input() -> None:
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            text = line.strip()
            if not text:
                return
            manager.send({"type": "chat", "text": text})

    input_task = asyncio.create_task(read_input())
    stop_task = asyncio.create_task(done.wait())
    await asyncio.wait({input_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)

    if done.is_set():
        print("* press Enter to exit")
    for task in (input_task, stop_task):
        task.cancel()
    manager.disconnect()
    # Let the transport finish its close handshake.
    await asyncio.sleep(0.1)
    log.info(f"Session client stopped: {manager.get_health_metrics()}")
    return 0 if joined else 1


def main(argv=None) -> int:
    return asyncio.run(run(parse_args(argv)))


if __name__ == "__main__":
    sys.exit(main())
