"""Command line interface for meshcall using Click."""

import asyncio
import logging
import sys

import click
from loguru import logger

from meshcall.call.state import CallState

COMMANDS_HELP = "Commands: [m] mute  [v] video  [s] screen share  [q] leave"


@click.group()
def cli():
    pass


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # aiortc and aioice are chatty at DEBUG
    for name in ("aiortc", "aioice"):
        logging.getLogger(name).setLevel(logging.INFO if verbose else logging.WARNING)


def _describe(state: CallState) -> str:
    parts = [f"status={state.status.value}"]
    if state.message:
        parts.append(f"message={state.message!r}")
    local = state.local
    parts.append(
        f"muted={local.is_muted} video={local.is_video_enabled} "
        f"screen={local.is_screen_sharing}"
    )
    peers = ", ".join(
        f"{p.id}{' (video)' if p.has_video else ''}" for p in state.participants
    )
    parts.append(f"peers=[{peers}]")
    return " ".join(parts)


async def _run_call(session, room: str, video: bool) -> None:
    from meshcall.errors import MediaAccessError, TransportError

    session.subscribe(lambda state: click.echo(_describe(state)))

    try:
        await session.join(room, video=video)
    except (MediaAccessError, TransportError) as e:
        logger.error(f"Could not join {room}: {e}")
        sys.exit(1)

    click.echo(COMMANDS_HELP)
    loop = asyncio.get_running_loop()
    try:
        while session.in_call:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            command = line.strip().lower()
            try:
                if command == "m":
                    session.toggle_mute()
                elif command == "v":
                    await session.toggle_video()
                elif command == "s":
                    await session.toggle_screen_share()
                elif command == "q":
                    break
                elif command:
                    click.echo(COMMANDS_HELP)
            except MediaAccessError as e:
                logger.warning(f"{e}")
    finally:
        await session.leave()


@cli.command()
@click.argument("room")
@click.option(
    "--server",
    "-s",
    type=str,
    required=False,
    help="Relay WebSocket URL. Overrides config file value.",
)
@click.option(
    "--id",
    "participant_id",
    type=str,
    required=False,
    help="Participant id (random if not provided).",
)
@click.option("--name", "-n", type=str, required=False, help="Display name.")
@click.option("--video", is_flag=True, help="Send the camera from the start.")
@click.option(
    "--synthetic",
    is_flag=True,
    help="Send generated silence and test-pattern video instead of real devices.",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def join(room, server, participant_id, name, video, synthetic, verbose):
    """Join the call in ROOM.

    Reads single-letter commands from stdin while in the call.

    Example:
        meshcall join standup --server ws://relay.example.com:8765
    """
    from meshcall.call.coordinator import CallSession
    from meshcall.call.devices import SyntheticDevices
    from meshcall.config import get_config
    from meshcall.identity import StaticIdentity
    from meshcall.transport.websocket import WebSocketTransport

    _configure_logging(verbose)
    config = get_config()
    url = server or config.signaling_websocket
    logger.info(f"Using relay {url}")

    session = CallSession(
        WebSocketTransport(url, subscribe_timeout=config.subscribe_timeout),
        StaticIdentity(participant_id, name),
        devices=SyntheticDevices() if synthetic else None,
        config=config,
    )
    click.echo(f"Joining {room} as {session.participant_id}")

    try:
        asyncio.run(_run_call(session, room, video))
    except KeyboardInterrupt:
        click.echo("Left the call")


@cli.command()
@click.option("--host", default="0.0.0.0", help="Interface to listen on.")
@click.option("--port", "-p", default=8765, type=int, help="Port to listen on.")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def relay(host, port, verbose):
    """Run the room relay used for call signaling."""
    from meshcall.relay import serve

    _configure_logging(verbose)
    try:
        asyncio.run(serve(host, port))
    except KeyboardInterrupt:
        logger.info("Relay stopped")


if __name__ == "__main__":
    cli()
