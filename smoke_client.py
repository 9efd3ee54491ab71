# smoke_client.py
"""
Smoke-test client for a running companion relay server.

Usage (from project root):
    python smoke_client.py --message "hi there"
    python smoke_client.py --conversation-id 3 --message "how was your day?" --analyze

This script:
  - Checks that the relay is up via /health.
  - Creates a conversation (unless --conversation-id is given).
  - Sends one message through /api/messages and waits for the turn.
  - Optionally scores the message with /api/analyze.
  - Prints a clean, human-readable summary of each response.
"""

import argparse
import json
from typing import Any, Optional

import requests

# Must match the server address & port
DEFAULT_API_BASE = "http://127.0.0.1:8000"

# Generous: a turn includes the upstream generator round trip
TURN_TIMEOUT_SECONDS = 90


def _url(api_base: str, path: str) -> str:
    return f"{api_base.rstrip('/')}{path}"


def _unwrap(resp: requests.Response) -> Any:
    """
    Return the `data` field of a {"success", "data", "error"} envelope,
    raising with context on any failure.
    """
    try:
        body = resp.json()
    except ValueError as e:
        raise RuntimeError(
            f"Response from {resp.url} is not valid JSON: {e}, raw text={resp.text!r}"
        ) from e

    if resp.status_code != 200 or not body.get("success"):
        print("[error] Request failed. Response JSON:")
        print(json.dumps(body, indent=2, ensure_ascii=False))
        raise RuntimeError(f"Server returned status {resp.status_code}.")

    return body.get("data")


def health_check(api_base: str) -> None:
    resp = requests.get(_url(api_base, "/health"), timeout=5)
    if resp.status_code != 200:
        raise RuntimeError(f"/health returned status {resp.status_code}: {resp.text!r}")
    print(f"[health] OK. Response: {resp.json()}")


def create_conversation(api_base: str, name: str) -> int:
    resp = requests.post(
        _url(api_base, "/api/conversations"),
        json={"name": name, "isAiCompanion": True},
        timeout=10,
    )
    data = _unwrap(resp)
    print(f"[info] Created conversation {data['id']} ({data['name']!r})")
    return int(data["id"])


def send_message(api_base: str, conversation_id: int, message: str) -> list:
    resp = requests.post(
        _url(api_base, "/api/messages"),
        json={"conversationId": conversation_id, "content": message},
        timeout=TURN_TIMEOUT_SECONDS,
    )
    return _unwrap(resp)


def analyze_message(api_base: str, conversation_id: Optional[int], message: str) -> dict:
    payload: dict = {"message": message}
    if conversation_id is not None:
        payload["conversationId"] = conversation_id
    resp = requests.post(_url(api_base, "/api/analyze"), json=payload, timeout=TURN_TIMEOUT_SECONDS)
    return _unwrap(resp)


def print_clean_summary(messages: list) -> None:
    print("\n[summary]")
    for m in messages:
        print(f"  #{m['id']:<5} {m['role']:<10} {m['timestamp']}  {m['content']!r}")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Smoke-test client for the companion relay.")
    parser.add_argument("--api-base", default=DEFAULT_API_BASE,
                        help=f"Base URL of the relay (default: {DEFAULT_API_BASE})")
    parser.add_argument("--conversation-id", type=int, default=None,
                        help="Existing conversation to post into (default: create a new one).")
    parser.add_argument("--name", default="Smoke test", help="Name for a newly created conversation.")
    parser.add_argument("--message", "-m", default="Hi! How are you today?", help="Message to send.")
    parser.add_argument("--analyze", action="store_true", help="Also score the message with /api/analyze.")

    args = parser.parse_args(argv)

    try:
        health_check(args.api_base)

        conversation_id = args.conversation_id
        if conversation_id is None:
            conversation_id = create_conversation(args.api_base, args.name)

        messages = send_message(args.api_base, conversation_id, args.message)
        print_clean_summary(messages)

        if args.analyze:
            analysis = analyze_message(args.api_base, conversation_id, args.message)
            print(f"\n[analysis] score={analysis['score']} feedback={analysis['feedback']!r}")

    except Exception as e:
        print(f"[fatal] {e}")
        return 1

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
