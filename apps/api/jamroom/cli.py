"""Command line entry points: run the relay or a headless client."""
from __future__ import annotations

import argparse
import asyncio
import logging

import uvicorn

from .core.config import settings
from .core.errors import JamroomError
from .core.logs import configure_logging
from .services.rooms import RoomController, RoomSnapshot, room_id_from_url

logger = logging.getLogger(__name__)


def _describe(snapshot: RoomSnapshot) -> str:
    remote = ", ".join(
        f"{pid}(video={'on' if p.video_active else 'off'}, audio={'on' if p.audio_active else 'off'})"
        for pid, p in snapshot.session.participants.items()
    )
    return f"room={snapshot.room_id or '-'} participants={snapshot.session.participant_count} [{remote}]"


async def run_client(room: str | None) -> int:
    controller = RoomController()
    last = ""

    def report(snapshot: RoomSnapshot) -> None:
        nonlocal last
        line = _describe(snapshot)
        if line != last:
            logger.info(line)
            last = line

    controller.subscribe(report)
    try:
        if room:
            await controller.join_room(room_id_from_url(room) or room)
        else:
            url = await controller.create_room()
            print(f"Share this link to invite others: {url}")
        await asyncio.Event().wait()
    except JamroomError as exc:
        logger.error("%s", exc)
        return 1
    finally:
        await controller.leave_room()
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="jamroom", description="Peer-to-peer conferencing with a MIDI jam overlay.")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Run the signaling relay")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=5000)

    commands.add_parser("create", help="Create a room and stay in it")
    join = commands.add_parser("join", help="Join a room by id or shared link")
    join.add_argument("room")

    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    if args.command == "serve":
        uvicorn.run("jamroom.main:app", host=args.host, port=args.port, log_level=(args.log_level or settings.log_level).lower())
        return 0
    try:
        return asyncio.run(run_client(getattr(args, "room", None)))
    except KeyboardInterrupt:
        return 0
