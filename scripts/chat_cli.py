#!/usr/bin/env python3
"""
Terminal chat against a running ChoreChamp server.

Usage:
    python scripts/chat_cli.py --child <childId>
    python scripts/chat_cli.py --parent <userId> --url ws://localhost:8000/ws
    python scripts/chat_cli.py --child <childId> --token <token>   # when auth is enabled

Prints the last messages, then reads lines from stdin and sends each one as
a chat message. The connection is re-established automatically if the
server restarts.
"""

import asyncio
import logging
import sys
from pathlib import Path
from urllib.parse import urlsplit

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from chorechamp.client import ChatClient, load_history  # noqa: E402
from chorechamp.party import Party  # noqa: E402


def _print_frame(frame: dict) -> None:
    if frame.get("type") == "error":
        print(f"[error] {frame.get('content')}")
        return
    print(f"agent> {frame.get('content')}")
    if frame.get("actionSuggestion"):
        print(f"       ({frame['actionSuggestion']})")


def _http_base(ws_url: str) -> str:
    parts = urlsplit(ws_url)
    scheme = "https" if parts.scheme == "wss" else "http"
    return f"{scheme}://{parts.netloc}"


async def _chat(url: str, party: Party, token: str | None, history: int) -> None:
    if history:
        for msg in await load_history(_http_base(url), party, limit=history, token=token):
            who = "you" if msg["role"] == "user" else "agent"
            print(f"{who}> {msg['content']}")

    client = ChatClient(url, party, token=token, on_message=_print_frame)
    client.open()
    loop = asyncio.get_running_loop()
    try:
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            text = line.strip()
            if text and not await client.send_chat(text):
                print("[offline] message not sent, reconnecting...")
    finally:
        await client.close()


def main():
    import argparse
    parser = argparse.ArgumentParser(description="Chat with the ChoreChamp agent")
    who = parser.add_mutually_exclusive_group(required=True)
    who.add_argument("--child", help="child profile id")
    who.add_argument("--parent", help="parent user id")
    parser.add_argument("--url", default="ws://localhost:8000/ws")
    parser.add_argument("--token", default=None)
    parser.add_argument("--history", type=int, default=10,
                        help="number of past messages to show (0 to skip)")
    args = parser.parse_args()

    logging.basicConfig(level=logging.WARNING)
    try:
        party = Party("child", args.child) if args.child else Party("parent", args.parent)
    except ValueError as e:
        parser.error(str(e))
    try:
        asyncio.run(_chat(args.url, party, args.token, args.history))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
