"""Join a chat room from the terminal.

Usage:
    uv run python bin/chat-client.py ABC123 Alice
    uv run python bin/chat-client.py ABC123 Alice --url ws://localhost:8000/ws

Each line typed on stdin is posted to the room. An empty line or EOF leaves.
Falls back to a simulated room when the relay cannot be reached.
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add backend to path for imports
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "backend"))

from participant.manager import ClientConnectionManager
from participant.settings import ParticipantSettings
from participant.state import ConnectionState
from shared.exceptions import InvalidInputError
from shared.logging import setup_logging
from shared.messaging.types import RoomChatMessage, UserJoinedMessage, UserLeftMessage


def _print_event(event: RoomChatMessage | UserJoinedMessage | UserLeftMessage) -> None:
    if isinstance(event, RoomChatMessage):
        print(f"<{event.username}> {event.content}")
    elif isinstance(event, UserJoinedMessage):
        print(f"* {event.username} joined")
    else:
        print(f"* {event.username} left")


async def run(room_code: str, username: str, settings: ParticipantSettings) -> int:
    async with ClientConnectionManager(settings) as manager:
        manager.on_message(_print_event)
        manager.on_user_list_change(lambda users: print(f"* online: {', '.join(users)}"))
        manager.on_connection_change(lambda state: print(f"* {state.value}"))
        manager.on_error(lambda code, message: print(f"! {code}: {message}"))

        try:
            await manager.join(room_code, username)
        except InvalidInputError as e:
            print(f"Error: {e}")
            return 1

        loop = asyncio.get_running_loop()
        while manager.state is not ConnectionState.DISCONNECTED:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            text = line.strip()
            if not text:
                break
            try:
                if not await manager.send_chat(text):
                    print(f"! not sent ({manager.state.value})")
            except InvalidInputError as e:
                print(f"! {e}")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Join a chat room from the terminal")
    parser.add_argument("room_code", help="6-character room code")
    parser.add_argument("username", help="display name")
    parser.add_argument("--url", help="relay WebSocket URL (default: PARTICIPANT_SERVER_URL)")
    parser.add_argument("--log-dir", type=Path, default=None, help="write logs to this directory")
    args = parser.parse_args()

    setup_logging(log_dir=args.log_dir, name="participant")
    settings = ParticipantSettings(server_url=args.url) if args.url else ParticipantSettings()
    sys.exit(asyncio.run(run(args.room_code, args.username, settings)))


if __name__ == "__main__":
    main()
