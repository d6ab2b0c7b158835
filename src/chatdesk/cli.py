"""
Command-line interface for chatdesk

Usage:
    chatdesk serve [--host HOST] [--port PORT] [--no-ui]
    chatdesk chat --server URL --email EMAIL --password PASSWORD [--model MODEL]
"""
import argparse
import asyncio
import getpass
import signal
import sys
from typing import Optional

import uvicorn

from chatdesk.config import get_config, load_config
from chatdesk.errors import ChatdeskError
from chatdesk.logging_config import configure_logging


def serve_command(args) -> int:
    cfg = get_config()
    if args.no_ui:
        cfg.ui.enabled = False

    uvicorn.run(
        "chatdesk.app:create_app",
        factory=True,
        host=args.host or cfg.app.host,
        port=args.port or cfg.app.port,
        log_level=cfg.app.log_level.lower(),
        timeout_keep_alive=30,
    )
    return 0


class StreamPrinter:
    """Echoes the growing model message of a session to stdout."""

    def __init__(self, session, out=sys.stdout):
        self.session = session
        self.out = out
        self.message_id: Optional[str] = None
        self.printed = ""

    def __call__(self):
        conversation = self.session.current_conversation
        if conversation is None or not conversation.messages:
            return
        message = conversation.messages[-1]
        if message.role != "model":
            return
        if message.id != self.message_id:
            if self.message_id is not None:
                self.out.write("\n")
            self.message_id = message.id
            self.printed = ""

        if message.content.startswith(self.printed):
            self.out.write(message.content[len(self.printed):])
        else:
            # replaced outright (error or interruption text)
            self.out.write("\n" + message.content)
        self.out.flush()
        self.printed = message.content


async def chat_loop(args) -> int:
    from chatdesk.client import ChatdeskClient, RemoteGenerator
    from chatdesk.services.chat_session import ChatSession
    from chatdesk.services.repositories import RemoteConversationRepository

    password = args.password or getpass.getpass("Senha: ")
    async with ChatdeskClient(args.server) as client:
        try:
            auth = await client.login(args.email, password)
        except ChatdeskError as e:
            print(f"Falha no login: {e.message}", file=sys.stderr)
            return 1
        print(f"Conectado como {auth['user']['name']}. /new inicia uma conversa, /quit sai.")

        session = ChatSession(RemoteGenerator(client), RemoteConversationRepository(client))
        await session.load()
        session.start_new_conversation()
        session.subscribe(StreamPrinter(session))

        loop = asyncio.get_running_loop()
        while True:
            try:
                text = await asyncio.to_thread(input, "\n> ")
            except EOFError:
                break
            command = text.strip()
            if command == "/quit":
                break
            if command == "/new":
                session.start_new_conversation()
                continue

            try:
                loop.add_signal_handler(signal.SIGINT, session.stop_generating)
            except NotImplementedError:
                pass
            try:
                await session.send_message(text, model=args.model)
            finally:
                try:
                    loop.remove_signal_handler(signal.SIGINT)
                except NotImplementedError:
                    pass
            print()

        await session.wait_background()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chatdesk", description="chatdesk server and terminal client")
    parser.add_argument("--config", help="Path to app.yaml")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the API server and web UI")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)
    serve.add_argument("--no-ui", action="store_true", help="Serve the API only")

    chat = subparsers.add_parser("chat", help="Chat in the terminal through a running server")
    chat.add_argument("--server", default="http://localhost:8080")
    chat.add_argument("--email", required=True)
    chat.add_argument("--password", help="Prompted for when omitted")
    chat.add_argument("--model")

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    cfg = load_config(args.config)
    configure_logging(cfg.app.log_level, cfg.app.json_logs)

    if args.command == "serve":
        return serve_command(args)
    try:
        return asyncio.run(chat_loop(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
