"""Command-line chat client talking to a ``chatstore`` server."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, List, TextIO

from chatstore.errors import StoreError

from . import identity_store
from .addressing import derive_conversation_key
from .client import ChatClient
from .config import ClientConfig
from .directory import USERS_COLLECTION, search_participants
from .errors import AuthRequired, ChatError, InvalidIdentifier
from .identity import LocalIdentityProvider
from .models import Message, Participant, ThreadSummary, participant_from_record
from .remote import RemoteStore

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


def _write(output: TextIO, line: str) -> None:
    output.write(line + "\n")


def format_participant(participant: Participant) -> str:
    contact = participant.email or participant.phone_number
    return f"{participant.uid}\t{participant.display_name}\t{contact}"


def format_message(message: Message) -> str:
    marker = "*" if message.pending else " "
    return f"[{message.timestamp.sort_ms}]{marker}{message.sender_name}: {message.text}"


def format_summary(summary: ThreadSummary, principal_id: str) -> str:
    last = summary.last_message.text if summary.last_message else ""
    return f"{summary.key}\t{summary.peer_name(principal_id)}\t{last}"


async def _first_snapshot(open_view: Callable[[Callable[[Any], None], Callable[[Exception], None]], Any]) -> Any:
    """Open a live view, wait for its first snapshot and cancel it."""

    loop = asyncio.get_running_loop()
    first: asyncio.Future = loop.create_future()

    def on_update(items: Any) -> None:
        if not first.done():
            first.set_result(items)

    def on_error(error: Exception) -> None:
        if not first.done():
            first.set_exception(error)

    subscription = open_view(on_update, on_error)
    try:
        return await first
    finally:
        subscription.cancel()


async def _with_client(
    config: ClientConfig,
    action: Callable[[ChatClient], Awaitable[int]],
) -> int:
    principal = identity_store.load_identity(config.identity_path)
    identity = LocalIdentityProvider(principal)
    async with RemoteStore(config.base_url, request_timeout_s=config.request_timeout_s) as store:
        client = ChatClient(store.documents, store.log, identity)
        try:
            return await action(client)
        finally:
            client.close()


async def _lookup_peer(client: ChatClient, peer_id: str) -> Participant:
    record = await client.documents.get(USERS_COLLECTION, peer_id)
    participant = participant_from_record(record) if record else None
    if participant is None:
        raise InvalidIdentifier(f"unknown recipient: {peer_id}")
    return participant


def _cmd_key(args: argparse.Namespace, config: ClientConfig, output: TextIO) -> int:
    _write(output, derive_conversation_key(args.first, args.second))
    return EXIT_OK


def _cmd_login(args: argparse.Namespace, config: ClientConfig, output: TextIO) -> int:
    providers: List[str] = ["password"]
    if args.phone:
        providers.append("phone")
    principal = Participant(
        uid=args.uid,
        display_name=args.name,
        email=args.email or "",
        phone_number=args.phone or "",
        photo_url=args.photo or "",
        phone_verified=bool(args.phone),
        providers=tuple(providers),
    )
    identity_store.save_identity(principal, config.identity_path)

    async def action(client: ChatClient) -> int:
        await client.sign_in_profile(push_token=args.push_token)
        _write(output, f"signed in as {principal.uid}")
        return EXIT_OK

    return asyncio.run(_with_client(config, action))


def _cmd_logout(args: argparse.Namespace, config: ClientConfig, output: TextIO) -> int:
    removed = identity_store.clear_identity(config.identity_path)
    _write(output, "signed out" if removed else "not signed in")
    return EXIT_OK


def _cmd_whoami(args: argparse.Namespace, config: ClientConfig, output: TextIO) -> int:
    principal = identity_store.load_identity(config.identity_path)
    if principal is None:
        raise AuthRequired("not signed in; run `chatlink login`")
    _write(output, format_participant(principal))
    return EXIT_OK


def _cmd_users(args: argparse.Namespace, config: ClientConfig, output: TextIO) -> int:
    async def action(client: ChatClient) -> int:
        participants = await _first_snapshot(client.open_directory)
        for participant in search_participants(participants, args.search or ""):
            _write(output, format_participant(participant))
        return EXIT_OK

    return asyncio.run(_with_client(config, action))


def _cmd_send(args: argparse.Namespace, config: ClientConfig, output: TextIO) -> int:
    async def action(client: ChatClient) -> int:
        peer = await _lookup_peer(client, args.peer)
        composer = client.composer(peer)
        composer.set_draft(args.text)
        message = await composer.submit()
        if composer.error:
            _write(output, composer.error)
            return EXIT_FAILURE
        if message is None:
            _write(output, "nothing to send")
            return EXIT_OK
        _write(output, f"sent {message.message_id} to {client.conversation_key(peer.uid)}")
        return EXIT_OK

    return asyncio.run(_with_client(config, action))


def _cmd_tail(args: argparse.Namespace, config: ClientConfig, output: TextIO) -> int:
    async def action(client: ChatClient) -> int:
        if not args.follow:
            messages = await _first_snapshot(lambda update, error: client.open_thread(args.peer, update, error))
            for message in messages:
                _write(output, format_message(message))
            return EXIT_OK

        printed: set[str] = set()
        failed: asyncio.Future = asyncio.get_running_loop().create_future()

        def on_update(messages: List[Message]) -> None:
            for message in messages:
                if message.message_id in printed or message.pending:
                    continue
                printed.add(message.message_id)
                _write(output, format_message(message))
            output.flush()

        def on_error(error: Exception) -> None:
            if not failed.done():
                failed.set_exception(error)

        client.open_thread(args.peer, on_update, on_error)
        await failed
        return EXIT_OK

    return asyncio.run(_with_client(config, action))


def _cmd_threads(args: argparse.Namespace, config: ClientConfig, output: TextIO) -> int:
    async def action(client: ChatClient) -> int:
        principal_id = client.principal.uid
        summaries = await _first_snapshot(client.open_threads)
        for summary in summaries:
            _write(output, format_summary(summary, principal_id))
        return EXIT_OK

    return asyncio.run(_with_client(config, action))


COMMANDS = {
    "key": _cmd_key,
    "login": _cmd_login,
    "logout": _cmd_logout,
    "whoami": _cmd_whoami,
    "users": _cmd_users,
    "send": _cmd_send,
    "tail": _cmd_tail,
    "threads": _cmd_threads,
}


def build_parser(config: ClientConfig) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chatlink", description="Chat client")
    parser.add_argument("--url", default=config.base_url, help="Store server URL (default: %(default)s)")
    parser.add_argument("--identity", default=str(config.identity_path), help="Path to the local identity file")
    parser.add_argument("--log-level", default=config.log_level, help="Logging level (default: %(default)s)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    key_parser = subparsers.add_parser("key", help="Print the conversation key of two participants")
    key_parser.add_argument("first")
    key_parser.add_argument("second")

    login_parser = subparsers.add_parser("login", help="Sign in and publish a directory profile")
    login_parser.add_argument("--uid", required=True)
    login_parser.add_argument("--name", required=True)
    login_parser.add_argument("--email", default=None)
    login_parser.add_argument("--phone", default=None)
    login_parser.add_argument("--photo", default=None)
    login_parser.add_argument("--push-token", default=None, help="Push token to attach to the profile")

    subparsers.add_parser("logout", help="Forget the local identity")
    subparsers.add_parser("whoami", help="Show the local identity")

    users_parser = subparsers.add_parser("users", help="List conversation partners")
    users_parser.add_argument("--search", default=None, help="Filter by name or email")

    send_parser = subparsers.add_parser("send", help="Send a message")
    send_parser.add_argument("peer", help="Recipient uid")
    send_parser.add_argument("text")

    tail_parser = subparsers.add_parser("tail", help="Print a conversation")
    tail_parser.add_argument("peer", help="Peer uid")
    tail_parser.add_argument("--follow", action="store_true", help="Keep printing new messages")

    subparsers.add_parser("threads", help="List conversations")
    return parser


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    output = output or sys.stdout

    config = ClientConfig.from_env()
    args = build_parser(config).parse_args(argv)
    config.base_url = args.url
    config.identity_path = Path(args.identity).expanduser()
    config.log_level = args.log_level
    logging.basicConfig(
        level=getattr(logging, str(config.log_level).upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        return COMMANDS[args.command](args, config, output)
    except (AuthRequired, InvalidIdentifier) as exc:
        _write(output, f"error: {exc}")
        return EXIT_USAGE
    except (ChatError, StoreError) as exc:
        _write(output, f"error: {exc}")
        return EXIT_FAILURE
    except KeyboardInterrupt:
        return EXIT_OK


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
