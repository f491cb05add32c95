# chatpipe/main.py
"""
chatpipe CLI entrypoint.

- `chatpipe serve` : run the streaming relay (FastAPI app under uvicorn)
- `chatpipe chat`  : interactive loop against a running relay

Notes:
- `chat` persists to the local sqlite store (CHATPIPE_DB_PATH).
- Ctrl+C while a reply is streaming cancels that reply only; Ctrl+C at the
  prompt ends the session.
"""

from __future__ import annotations

import argparse
import sys
import threading
from typing import Optional

from chatpipe.clients.relay_client import CancelToken, RelayClient
from chatpipe.config.settings import load_settings
from chatpipe.core.chat import ChatPipeline, TurnResult
from chatpipe.core.errors import ChatPipeError
from chatpipe.store.repository import SQLiteStore


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="chatpipe", description="Streaming chat relay and turn pipeline.")
    sub = p.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the streaming relay.")
    serve.add_argument("--host", default=None, help="Bind address (default: CHATPIPE_RELAY_HOST).")
    serve.add_argument("--port", type=int, default=None, help="Bind port (default: CHATPIPE_RELAY_PORT).")

    chat = sub.add_parser("chat", help="Interactive chat through the relay.")
    chat.add_argument("--user", default="local", help="User id owning the conversation.")
    chat.add_argument("--project", default=None, help="Project id the conversation belongs to.")
    chat.add_argument("--conversation", default=None, help="Continue an existing conversation id.")
    chat.add_argument("--model", default=None, help="Model id (default: CHATPIPE_DEFAULT_MODEL).")
    chat.add_argument("--reasoning", action="store_true", help="Ask for high reasoning effort.")
    return p


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    settings = load_settings()
    uvicorn.run(
        "chatpipe.api.relay:app",
        host=args.host or settings.relay_host,
        port=args.port or settings.relay_port,
    )
    return 0


def _run_turn(pipeline: ChatPipeline, text: str, args: argparse.Namespace,
              conversation_id: Optional[str]) -> Optional[TurnResult]:
    """Stream one reply in a worker thread so Ctrl+C can cancel it."""
    token = CancelToken()
    outcome: dict = {}

    def on_chunk(delta: str, _accumulated: str) -> None:
        sys.stdout.write(delta)
        sys.stdout.flush()

    def worker() -> None:
        try:
            outcome["result"] = pipeline.send_message(
                text,
                user_id=args.user,
                conversation_id=conversation_id,
                model=args.model,
                reasoning=args.reasoning,
                project_id=args.project,
                on_chunk=on_chunk,
                cancel_token=token,
            )
        except ChatPipeError as e:
            outcome["error"] = e

    t = threading.Thread(target=worker, name="chatpipe-turn", daemon=True)
    t.start()
    while t.is_alive():
        try:
            t.join(timeout=0.1)
        except KeyboardInterrupt:
            token.cancel()
    print()

    if "error" in outcome:
        print(f"chatpipe (error): {outcome['error']}")
        return None
    return outcome.get("result")


def _chat(args: argparse.Namespace) -> int:
    settings = load_settings()
    store = SQLiteStore(settings.db_path)
    pipeline = ChatPipeline(store, client=RelayClient(settings), settings=settings)
    conversation_id = args.conversation

    print("chatpipe chat. Type 'exit' to quit, Ctrl+C stops a reply.\n")
    try:
        while True:
            try:
                user = input("You: ").strip()
            except (EOFError, KeyboardInterrupt):
                print("\n[Session ended]")
                break

            if not user:
                continue
            if user.lower() in {"exit", "quit"}:
                print("[Session ended]")
                break

            print("Assistant: ", end="", flush=True)
            result = _run_turn(pipeline, user, args, conversation_id)
            if result is None:
                continue
            conversation_id = result.conversation_id
            if result.cancelled:
                print("[reply cancelled]\n")
            elif result.title:
                print(f"[conversation {conversation_id}: {result.title}]\n")
    finally:
        pipeline.close(wait=True)
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.command == "serve":
        return _serve(args)
    return _chat(args)


if __name__ == "__main__":
    sys.exit(main())
