"""
Main CLI interface for spotterm

This module provides the command-line interface: authentication management,
device listing, playback control, target transfer, a plain-text now-playing
view and configuration management.

The CLI is built using Click. Commands that touch playback start an App
(dispatcher thread, remote client, optional local engine), submit intents,
wait for them to be processed and print the resulting state snapshot.
"""

import sys
import time
import asyncio
import click
import functools

from . import __version__
from .app import App
from .config.settings import PLAYBACK_MODES, get_settings, reload_settings
from .config.auth import get_session, reset_session
from .core.exceptions import SpotTermError
from .dispatch import intents
from .dispatch.state import AppState
from .player import LOCAL_DEVICE_ID, LocalTarget, describe_target, device_choices, target_for_device_id
from .spotify.client import SpotifyClient
from .spotify.models import PlayableId
from .utils.helpers import format_position, truncate_string
from .utils.logger import ConsoleSuspended, configure_from_settings, get_logger, get_current_log_file


# Initialize logging system from configuration settings
configure_from_settings()
logger = get_logger(__name__)


def handle_error(func):
    """
    Decorator to handle common CLI errors gracefully

    SpotTermError messages are shown as-is; anything else is logged with its
    traceback before the short message is printed.

    Args:
        func: The CLI command function to wrap

    Returns:
        Wrapped function with error handling
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except KeyboardInterrupt:
            click.echo(click.style("\n\nOperation cancelled by user", fg='yellow'))
            sys.exit(130)  # Standard exit code for SIGINT
        except click.ClickException:
            raise
        except SpotTermError as e:
            logger.error(f"Command failed: {e}")
            click.echo(click.style(f"Error: {e.message}", fg='red'), err=True)
            sys.exit(1)
        except Exception as e:
            logger.exception(f"Command failed: {e}")
            click.echo(click.style(f"Error: {e}", fg='red'), err=True)
            sys.exit(1)
    return wrapper


def run_intents(*submitted: intents.Intent, timeout: float = 60.0) -> AppState:
    """
    Start the runtime, process the given intents in order and stop again

    Exits with status 1 when the last intent left an error behind.
    """
    app = App(get_settings(), session=get_session(), poll=False)
    with app:
        for intent in submitted:
            app.submit(intent)
        state = app.wait_until_idle(timeout)

    if state.last_error is not None:
        click.echo(click.style(f"Error: {state.last_error}", fg='red'), err=True)
        sys.exit(1)
    return state


def render_status(state: AppState) -> str:
    """Single-line now-playing summary."""
    playback = state.playback
    if playback.item is None:
        return "Nothing playing"

    icon = ">" if playback.is_playing else "||"
    flags = []
    if playback.shuffle:
        flags.append("shuffle")
    if playback.repeat.value != "off":
        flags.append(f"repeat:{playback.repeat.value}")
    where = "local" if isinstance(state.target, LocalTarget) else (playback.device_name or playback.device_id or "?")

    line = f"{icon} {truncate_string(playback.title, 60)}  {format_position(playback.progress_ms, playback.duration_ms)}"
    line += f"  [{where}]"
    if flags:
        line += f" ({', '.join(flags)})"
    return line


# Main CLI group
@click.group(invoke_without_command=True)
@click.option('--version', is_flag=True, help='Show version information')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.option('--config', type=click.Path(), help='Path to config file')
@click.pass_context
def cli(ctx, version, verbose, config):
    """
    spotterm - Spotify in your terminal

    Controls Spotify Connect devices through the Web API and, when an audio
    backend is installed, plays audio locally.
    """
    ctx.ensure_object(dict)

    if version:
        click.echo(f"spotterm v{__version__}")
        return

    if config:
        reload_settings(config)
        reset_session()
        configure_from_settings()
        click.echo(f"Loaded config: {config}")

    if verbose:
        ctx.obj['verbose'] = True
        get_settings().logging.level = "DEBUG"
        configure_from_settings()
        logger.info("Verbose mode enabled")

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


# Authentication commands group
@cli.group()
def auth():
    """
    Authentication management

    Authorize spotterm with your Spotify account, inspect or remove the
    stored credential.
    """
    pass


@auth.command()
@handle_error
def login():
    """
    Authenticate with Spotify

    Uses the stored credential when it is still valid (refreshing it if
    needed); otherwise opens the browser for authorization.
    """
    get_settings().require_valid()
    session = get_session()

    async def _login():
        await session.acquire()
        return await SpotifyClient(session, request_timeout=get_settings().network.request_timeout).current_user()

    user = asyncio.run(_login())
    click.echo(f"Authenticated as: {user.display_name}" + (f" ({user.product})" if user.product else ""))


@auth.command()
@handle_error
def logout():
    """Remove the stored credential."""
    click.echo("Removing stored authentication...")
    get_session().invalidate()
    reset_session()
    click.echo("Successfully logged out")


@auth.command(name='status')
@handle_error
def auth_status():
    """Show the stored credential without contacting Spotify."""
    info = get_session().status()
    if not info['cached']:
        click.echo("Authentication Status: Not authenticated")
        click.echo("   Run 'spotterm auth login' to authenticate")
        return

    state = "expired (will refresh on next use)" if info['expired'] else "valid"
    click.echo(f"Authentication Status: Authenticated, access token {state}")
    click.echo(f"   Expires at: {info['expires_at']}")
    click.echo(f"   Scope: {info['scope']}")
    click.echo(f"   Token file: {info['token_file']}")


# Playback commands

@cli.command()
@handle_error
def devices():
    """List Spotify Connect devices (and the local engine when enabled)."""
    state = run_intents(intents.FetchDevices())
    local_available = get_settings().engine.enabled
    choices = device_choices(state.devices, local_available)
    if not choices:
        click.echo("No devices found. Open Spotify on a device or enable the local engine.")
        return
    for device_id, label in choices:
        click.echo(f"   {label}")
        click.echo(click.style(f"      {device_id}", dim=True))


@cli.command()
@handle_error
def status():
    """Show what is playing right now."""
    state = run_intents(intents.RefreshPlayback(time.monotonic()))
    click.echo(render_status(state))


@cli.command()
@click.argument('uris', nargs=-1, required=True)
@click.option('--device', '-d', help=f"Device id to play on ('local' or {LOCAL_DEVICE_ID} for the local engine)")
@click.option('--position', '-p', type=int, default=0, help='Start position in seconds')
@handle_error
def play(uris, device, position):
    """
    Play tracks, episodes or a context

    URIS are spotify: URIs or open.spotify.com links. Several tracks form the
    play queue; a single album, playlist, artist or show plays as a context.
    """
    try:
        parsed = [PlayableId.from_uri(uri) for uri in uris]
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint='URIS')

    if len(parsed) == 1 and not parsed[0].kind.playable:
        intent = intents.Play(context=parsed[0], position_ms=position * 1000)
    elif all(item.kind.playable for item in parsed):
        intent = intents.Play(items=tuple(parsed), position_ms=position * 1000)
    else:
        raise click.BadParameter("mix of contexts and tracks, or more than one context", param_hint='URIS')

    submitted = [intent]
    if device:
        submitted.insert(0, intents.TransferPlayback(target_for_device_id(device), carry_over=False))

    target = target_for_device_id(device) if device else None
    if isinstance(target, LocalTarget) or (target is None and get_settings().playback.mode == "local"):
        # local audio stops with the process
        _watch(get_settings().playback.poll_interval, submitted)
        return

    state = run_intents(*submitted)
    click.echo(render_status(state))


@cli.command()
@handle_error
def pause():
    """Pause playback."""
    click.echo(render_status(run_intents(intents.Pause())))


@cli.command()
@handle_error
def resume():
    """Resume playback."""
    click.echo(render_status(run_intents(intents.Resume())))


@cli.command()
@click.argument('device_id')
@click.option('--no-carry-over', is_flag=True, help='Do not continue the current item on the new target')
@handle_error
def transfer(device_id, no_carry_over):
    """Move playback to DEVICE_ID ('local' for the local engine)."""
    target = target_for_device_id(device_id)
    submitted = (
        intents.RefreshPlayback(time.monotonic()),
        intents.TransferPlayback(target, carry_over=not no_carry_over),
    )
    if isinstance(target, LocalTarget):
        _watch(get_settings().playback.poll_interval, submitted)
        return
    state = run_intents(*submitted)
    click.echo(f"Playback target: {describe_target(state.target)}")


@cli.command()
@click.option('--interval', type=float, help='Seconds between redraws')
@handle_error
def watch(interval):
    """Show a live now-playing line until Ctrl+C."""
    _watch(interval or get_settings().playback.poll_interval)


def _watch(interval: float, submitted=()) -> None:
    app = App(get_settings(), session=get_session())
    # errors are drawn from state below; warnings would break the status line
    with app, ConsoleSuspended("ERROR"):
        for intent in submitted:
            app.submit(intent)
        shown_error = None
        while True:
            state = app.snapshot()
            if state.last_error is not None and state.last_error != shown_error:
                shown_error = state.last_error
                click.echo(click.style(f"\n{state.last_error}", fg='red'), err=True)
            click.echo(f"\r{render_status(state):<100}", nl=False)
            time.sleep(interval)


# Configuration commands group
@cli.group()
def config():
    """View and change configuration."""
    pass


@config.command()
@handle_error
def show():
    """Show current configuration."""
    settings = get_settings()

    click.echo("Current Configuration:\n")

    click.echo("Spotify:")
    click.echo(f"   Client id: {'set' if settings.spotify.client_id else 'missing'}")
    click.echo(f"   Client secret: {'set' if settings.spotify.client_secret else 'not set (PKCE)'}")
    click.echo(f"   Redirect URL: {settings.spotify.redirect_url}")

    click.echo("\nPlayback:")
    click.echo(f"   Mode: {settings.playback.mode}")
    click.echo(f"   Default device: {settings.playback.default_device or 'active device'}")
    click.echo(f"   Poll interval: {settings.playback.poll_interval}s")

    click.echo("\nDispatcher:")
    click.echo(f"   Retries: {settings.dispatcher.retry_attempts}")
    click.echo(f"   Backoff: {settings.dispatcher.retry_base_delay}s to {settings.dispatcher.retry_max_delay}s")

    click.echo("\nLocal engine:")
    click.echo(f"   Enabled: {settings.engine.enabled}")
    click.echo(f"   Backend: {settings.engine.backend or 'first installed'}")
    click.echo(f"   Bitrate: {settings.engine.bitrate}")

    click.echo("\nFiles:")
    click.echo(f"   Token cache: {settings.get_token_storage_path()}")
    current_log = get_current_log_file()
    click.echo(f"   Log file: {current_log or 'console only'}")

    errors = settings.errors()
    if errors:
        click.echo(click.style("\nProblems:", fg='yellow'))
        for error in errors:
            click.echo(f"   • {error}")


@config.command(name='set')
@click.option('--mode', type=click.Choice(PLAYBACK_MODES), help='Initial playback target')
@click.option('--default-device', help='Connect device id used when nothing is active')
@click.option('--poll-interval', type=float, help='Seconds between now-playing refreshes')
@click.option('--engine/--no-engine', default=None, help='Enable the local playback engine')
@click.option('--backend', help='Audio backend name for the local engine')
@handle_error
def set_config(mode, default_device, poll_interval, engine, backend):
    """Update configuration settings and save them."""
    settings = get_settings()
    changes = []

    if mode:
        settings.playback.mode = mode
        changes.append(f"Playback mode: {mode}")

    if default_device is not None:
        settings.playback.default_device = default_device
        changes.append(f"Default device: {default_device or 'active device'}")

    if poll_interval is not None:
        settings.playback.poll_interval = poll_interval
        changes.append(f"Poll interval: {poll_interval}s")

    if engine is not None:
        settings.engine.enabled = engine
        changes.append(f"Local engine: {'enabled' if engine else 'disabled'}")

    if backend is not None:
        settings.engine.backend = backend
        changes.append(f"Audio backend: {backend or 'first installed'}")

    if changes:
        settings.save_config()
        click.echo("Configuration updated:")
        for change in changes:
            click.echo(f"   • {change}")
    else:
        click.echo("No changes specified")


# Entry point for module execution
if __name__ == '__main__':
    cli()
