# companion_relay/main.py
"""
Companion relay CLI entrypoint.

    companion-relay serve [--host HOST] [--port PORT] [--reload] [--log-level LEVEL]
        Run the HTTP + WebSocket server under uvicorn.

    companion-relay chat [--name NAME]
        Chat with the companion in the terminal. Uses the same store,
        generator and relay engine as the server, so the conversation shows
        up for any client bound to it.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from typing import Optional

import uvicorn

from companion_relay.clients.openai_client import ResponseGenerator
from companion_relay.config.settings import load_settings
from companion_relay.core.errors import RelayError
from companion_relay.core.registry import ConnectionRegistry
from companion_relay.core.relay import RelayEngine
from companion_relay.memory.repository import ConversationStore
from companion_relay.utils.logging import configure_logging, resolve_level


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Companion relay: real-time chat between users and an AI companion.")
    sub = p.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the relay server.")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1).")
    serve.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000).")
    serve.add_argument("--reload", action="store_true", help="Auto-reload on code changes (development).")
    serve.add_argument("--log-level", default=None, type=str.upper,
                       choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
                       help="Override RELAY_LOG_LEVEL (DEBUG, INFO, WARNING, ...).")

    chat = sub.add_parser("chat", help="Chat with the companion in this terminal.")
    chat.add_argument("--name", default="Terminal chat", help="Name for the new conversation.")
    return p


async def _chat_loop(name: str) -> None:
    settings = load_settings()
    store = ConversationStore(settings.db_path)
    store.initialize()
    relay = RelayEngine(
        store=store,
        generator=ResponseGenerator(settings),
        registry=ConnectionRegistry(send_timeout_seconds=settings.send_timeout_seconds),
        history_window=settings.history_window,
        generator_timeout_seconds=settings.generator_timeout_seconds,
    )

    conversation = store.create_conversation(name, is_ai_companion=True)
    print(f"Companion chat (conversation {conversation.id}). Type 'exit' to quit.\n")

    while True:
        try:
            user = (await asyncio.to_thread(input, "You: ")).strip()
        except (EOFError, KeyboardInterrupt):
            print("\n[Session ended]")
            break

        if user.lower() in {"exit", "quit"}:
            print("[Session ended]")
            break
        if not user:
            continue

        try:
            _, reply = await relay.submit_message(conversation.id, user)
        except RelayError as e:
            print(f"Companion (error): {e.public_message}")
            continue

        print(f"Companion: {reply.content}\n")


def main(argv: Optional[list[str]] = None) -> None:
    args = build_parser().parse_args(argv)

    if args.command == "serve":
        if args.log_level:
            # exported so a --reload worker process picks it up as well
            os.environ["RELAY_LOG_LEVEL"] = args.log_level
            configure_logging()
        uvicorn.run(
            "companion_relay.api.server:app",
            host=args.host,
            port=args.port,
            reload=args.reload,
            log_level=logging.getLevelName(resolve_level(os.getenv("RELAY_LOG_LEVEL", "INFO"))).lower(),
        )
    elif args.command == "chat":
        asyncio.run(_chat_loop(args.name))


if __name__ == "__main__":
    main()
