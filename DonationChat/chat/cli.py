"""
CLI entry point for the donation chat.

Usage:
    # Two terminals, same donation conversation
    python -m DonationChat.chat.cli --email donor@example.org --conversation 42
    python -m DonationChat.chat.cli --email ngo@example.org --conversation 42

Needs the history API (uvicorn DonationChat.chat_server.api:app)
and Redis.
"""

import argparse
import asyncio
import logging
import sys
import threading
from queue import Queue, Empty

from DonationChat.backend import HttpChatBackend
from DonationChat.chat_server import config as srv_config
from DonationChat.chat_shared.errors import CacheUnavailableError
from DonationChat.chat_shared.types import Message
from DonationChat.chat_db.connection import close_cache_client, create_cache_client
from DonationChat.chat.session import SessionManager
from DonationChat.chat.transport import ChannelClient


# ─── ANSI helpers ───

CLEAR_LINE = "\033[2K\033[G"


class D:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"
    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    CYAN = "\033[96m"


def _print_msg(msg: Message, own: bool) -> None:
    ts = msg.timestamp.astimezone().strftime("%H:%M:%S")
    who = f"{D.GREEN}{D.BOLD}you{D.RESET}" if own else f"{D.CYAN}{D.BOLD}{msg.sender_id}{D.RESET}"
    text = f"{D.RED}{msg.plaintext}{D.RESET}" if msg.undecryptable else msg.plaintext
    tag = ""
    if msg.failed:
        tag = f"  {D.RED}✗ not sent, retrying{D.RESET}"
    elif msg.pending:
        tag = f"  {D.DIM}…{D.RESET}"
    elif own and msg.read:
        tag = f"  {D.GREEN}✓✓{D.RESET}"
    elif own and msg.delivered:
        tag = f"  {D.DIM}✓✓{D.RESET}"
    print(f"  {D.DIM}{ts}{D.RESET}  {who} {text}{tag}")


def _input_thread(q: Queue, prompt: str):
    """Read lines from stdin in a thread, push to queue."""
    while True:
        try:
            line = input(prompt)
            q.put(line)
        except (EOFError, KeyboardInterrupt):
            q.put(None)
            break


# ─── Interactive chat ───

async def interactive_chat(email: str, conversation_id: str, api_url: str) -> int:
    print(f"\n{D.CYAN}{D.BOLD}  Donation Chat{D.RESET}  "
          f"{D.BOLD}as{D.RESET} {email}  "
          f"{D.BOLD}conversation{D.RESET} {conversation_id}\n")

    try:
        cache = create_cache_client()
    except CacheUnavailableError as e:
        print(f"  {D.RED}✗ {e}{D.RESET}")
        return 1

    backend = HttpChatBackend(api_url)
    channel = ChannelClient()
    prompt = f"  {D.BOLD}{email}>{D.RESET} "

    def on_message(msg: Message):
        if msg.conversation_id != conversation_id or msg.sender_id == session.user_id:
            return
        print(f"\r{CLEAR_LINE}", end="")
        _print_msg(msg, own=False)
        print(prompt, end="", flush=True)

    session = SessionManager(
        email, backend=backend, channel=channel, cache_client=cache, on_message=on_message,
    )

    try:
        if not await session.start():
            print(f"  {D.RED}✗ could not sign in as {email}{D.RESET}")
            return 1
        if not session.channel_live:
            print(f"  {D.YELLOW}! live channel down, polling only{D.RESET}")

        print(f"  {D.DIM}Commands: /read  /who  /history  /quit{D.RESET}\n")
        await session.mark_delivered(conversation_id)

        input_q: Queue = Queue()
        input_th = threading.Thread(
            target=_input_thread, args=(input_q, prompt), daemon=True,
        )
        input_th.start()

        while True:
            try:
                line = input_q.get_nowait()
            except Empty:
                await asyncio.sleep(0.2)
                continue

            if line is None:
                break
            line = line.strip()
            if not line:
                continue

            cmd = line.lower()
            if cmd == "/quit":
                break
            if cmd == "/read":
                await session.mark_read(conversation_id)
                print(f"  {D.DIM}unread: {session.unread_count(conversation_id)}{D.RESET}")
                continue
            if cmd == "/who":
                online = ", ".join(sorted(session.online_users)) or "nobody"
                print(f"  {D.BOLD}Online:{D.RESET} {online}")
                continue
            if cmd == "/history":
                for msg in session.thread(conversation_id):
                    _print_msg(msg, own=msg.sender_id == session.user_id)
                continue

            sent = await session.send_message(session.user_id, line, conversation_id)
            if sent is not None:
                _print_msg(sent, own=True)

    except KeyboardInterrupt:
        pass

    finally:
        print(f"\n  {D.DIM}Signing out…{D.RESET}")
        await session.end()
        await channel.close()
        await backend.close()
        close_cache_client(cache)

    print(f"  {D.GREEN}{D.BOLD}Session ended.{D.RESET}\n")
    return 0


# ─── Arg parsing ───

def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="End-to-end encrypted donation chat in the terminal",
    )
    parser.add_argument("--email", required=True, help="Login email of this user")
    parser.add_argument("--conversation", required=True, help="Donation/conversation id")
    parser.add_argument(
        "--api-url",
        default=srv_config.API_BASE_URL,
        help=f"Chat history API base URL (default: {srv_config.API_BASE_URL})",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    return parser.parse_args(argv)


def main() -> None:
    args = parse_args()
    logging.basicConfig(
        level=args.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    sys.exit(asyncio.run(interactive_chat(args.email, args.conversation, args.api_url)))


if __name__ == "__main__":
    main()
