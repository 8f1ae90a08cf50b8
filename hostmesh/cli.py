"""Unified CLI for hostmesh using Click."""

import logging
import sys

import click
from loguru import logger

from hostmesh.config import get_config
from hostmesh.exceptions import InvalidSessionError, MediaAcquisitionError
from hostmesh.protocol import (
    CAMERA_FACINGS,
    DEVICE_CLASSES,
    DEVICE_DESKTOP,
    DEVICE_MOBILE,
    build_join_url,
    generate_session_id,
    parse_join_url,
)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# =============================================================================
# Session Commands
# =============================================================================


@cli.command(name="new-session")
@click.option("--origin", type=str, default=None, help="Base URL participants open. Overrides config.")
@click.option("--force-mobile", is_flag=True, help="Ask participants to use mobile capture settings.")
@click.option(
    "--camera",
    type=click.Choice(sorted(CAMERA_FACINGS)),
    default=None,
    help="Preferred camera facing for participants.",
)
def new_session(origin, force_mobile, camera):
    """Create a session id and print the participant join link.

    Example:
        hostmesh new-session --camera environment
    """
    from hostmesh.signaling.kv_store import STORE_ERRORS, announce_session, build_store

    config = get_config()
    session_id = generate_session_id()
    url = build_join_url(origin or config.origin, session_id, force_mobile=force_mobile, camera=camera)

    store = build_store(config.kv_url, config.kv_dir)
    if store is not None:
        try:
            announce_session(store, session_id)
            logger.info(f"Announced session {session_id} in the durable store")
        except STORE_ERRORS as e:
            logger.warning(f"Could not announce session: {e}")

    click.echo(f"Session:   {session_id}")
    click.echo(f"Join link: {url}")
    click.echo("")
    click.echo("To host it:")
    click.echo(f"  hostmesh host --session-id {session_id} --participants 4")


@cli.command()
@click.option("--session-id", "-s", type=str, required=True, help="Session to host.")
@click.option(
    "--participants",
    "-p",
    type=click.IntRange(min=1),
    default=4,
    show_default=True,
    help="Number of participant slots in the composited view.",
)
def host(session_id, participants):
    """Host a session and receive participant streams."""
    from hostmesh.rtc_host import run_host

    try:
        run_host(session_id, participants)
    except InvalidSessionError as e:
        logger.error(str(e))
        sys.exit(1)


@cli.command()
@click.argument("session_or_url")
@click.option("--name", "-n", type=str, default=None, help="Name shown on the host's tile.")
@click.option(
    "--device-class",
    type=click.Choice(sorted(DEVICE_CLASSES)),
    default=None,
    help="Heartbeat profile; defaults to mobile when the link forces it.",
)
@click.option(
    "--camera",
    type=click.Choice(sorted(CAMERA_FACINGS)),
    default=None,
    help="Camera facing hint; overrides the link.",
)
@click.option(
    "--source",
    type=str,
    required=True,
    help="Capture device, file or stream URL (e.g. /dev/video0).",
)
def join(session_or_url, name, device_class, camera, source):
    """Join a session as a participant.

    SESSION_OR_URL is a session id or the join link printed by new-session.
    """
    from hostmesh.media.capture import acquire_media, probe_capabilities
    from hostmesh.rtc_participant import check_session, run_participant

    try:
        target = parse_join_url(session_or_url)
        check_session(target.session_id)
    except InvalidSessionError as e:
        logger.error(str(e))
        sys.exit(1)

    device_class = device_class or (DEVICE_MOBILE if target.force_mobile else DEVICE_DESKTOP)
    camera = camera or target.camera

    capabilities = probe_capabilities(source)
    if not capabilities.can_negotiate:
        logger.error(f"Cannot connect: {capabilities.reason}")
        sys.exit(1)

    while True:
        try:
            media = acquire_media(source, camera=camera)
            break
        except MediaAcquisitionError as e:
            logger.error(str(e))
            if not click.confirm("Retry opening the media source?"):
                sys.exit(1)

    run_participant(target.session_id, media, display_name=name, device_class=device_class)


@cli.command(name="signaling-server")
@click.option("--host", type=str, default="localhost", show_default=True, help="Interface to bind.")
@click.option("--port", type=int, default=8080, show_default=True, help="Port to listen on.")
def signaling_server(host, port):
    """Run the session-scoped pub/sub signaling bus."""
    from hostmesh.signaling.server import run_signaling_server

    logger.info(f"Starting signaling server on ws://{host}:{port}")
    run_signaling_server(host, port)


if __name__ == "__main__":
    cli()
