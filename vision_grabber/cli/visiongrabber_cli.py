"""
Command line front end for VisionGrabber.

Provides:
- relay: serve the relay server (and the local engine behind it) until Ctrl+C
- process: run one image file through a backend
- history: list past results
- config: show or change settings
"""

import asyncio
import sys
from pathlib import Path
from typing import Optional

import click
from loguru import logger
from pydantic import ValidationError

from vision_grabber.app.core.Backends.backend_exceptions import BackendFailure
from vision_grabber.app.core.Backends.base import BackendKind
from vision_grabber.app.core.Backends.image_utils import encode_image_bytes
from vision_grabber.app.core.config import AppSettings, SettingsManager, get_app_dir
from vision_grabber.app.core.History.history_manager import HistoryManager
from vision_grabber.app.core.Logging.log_setup import configure_logging
from vision_grabber.app.core.Relay.relay_server import RelayBindError
from vision_grabber.app.main import VisionGrabberApp, run_relay_forever
from vision_grabber.cli.output import console, print_error, print_history, print_info, print_json, print_success


BACKEND_CHOICES = [kind.setting_value for kind in BackendKind]
SECRET_FIELDS = ("CloudApiKey",)


def _status_printer(status: str) -> None:
    console.print(f"[dim]{status}[/dim]")


def _build_app(settings_path: Optional[Path]) -> VisionGrabberApp:
    return VisionGrabberApp(SettingsManager(settings_path), on_status=_status_printer)


@click.group(context_settings={'help_option_names': ['-h', '--help']})
@click.option(
    '--settings',
    'settings_path',
    type=click.Path(dir_okay=False, path_type=Path),
    help='Path to settings.json (defaults to the per-user VisionGrabber directory)'
)
@click.option(
    '--log-level',
    type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'], case_sensitive=False),
    default=None,
    help='Logging level'
)
@click.version_option(version="0.1.0", prog_name="visiongrabber")
@click.pass_context
def main(ctx, settings_path, log_level):
    """
    VisionGrabber - turn screen captures into text with local or remote vision models.

    Examples:
        visiongrabber relay --port 8082        # Share the local engine on the network
        visiongrabber process shot.png         # OCR one image with the default backend
        visiongrabber config set DefaultBackend Local
    """
    log_dir = (settings_path.parent if settings_path else get_app_dir()) / "logs"
    configure_logging(level=log_level, log_file=log_dir / "visiongrabber.log")
    ctx.ensure_object(dict)
    ctx.obj['settings_path'] = settings_path


@main.command()
@click.option('--port', help='Relay port (defaults to RelayServerPort)')
@click.pass_context
def relay(ctx, port):
    """Run the relay server and the local engine until interrupted."""
    app = _build_app(ctx.obj['settings_path'])
    try:
        asyncio.run(run_relay_forever(app, port))
    except KeyboardInterrupt:
        print_info("Relay server stopped.")
    except RelayBindError as e:
        print_error(str(e))
        sys.exit(1)


async def _process_once(app: VisionGrabberApp, image: str, prompt: Optional[str], backend: Optional[str]) -> str:
    app.settings_manager.load()
    app.history.load()
    selection = app.backend_manager.active_backend(backend)
    try:
        if selection.kind is BackendKind.LOCAL:
            await app.backend_manager.server_manager.start()
        return await app.process_capture(image, prompt, selection=selection.kind)
    finally:
        await app.backend_manager.stop_all()


@main.command()
@click.argument('image_path', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option('--backend', type=click.Choice(BACKEND_CHOICES, case_sensitive=False),
              help='Backend to use (defaults to DefaultBackend)')
@click.option('--prompt', help='Instruction for the model (defaults to CustomPrompt)')
@click.pass_context
def process(ctx, image_path, backend, prompt):
    """Process one image file and print the result."""
    app = _build_app(ctx.obj['settings_path'])
    image = encode_image_bytes(image_path.read_bytes())
    try:
        result = asyncio.run(_process_once(app, image, prompt, backend))
    except BackendFailure as e:
        print_error(str(e))
        sys.exit(1)
    console.print(result, markup=False, highlight=False)


@main.command()
@click.option('--limit', default=20, show_default=True, help='Number of entries to show')
@click.pass_context
def history(ctx, limit):
    """List past results, newest first."""
    settings_path = ctx.obj['settings_path']
    history_path = (settings_path.parent if settings_path else get_app_dir()) / "history.json"
    manager = HistoryManager(history_path)
    items = manager.load()
    if not items:
        print_info("History is empty.")
        return
    print_history(items, limit=limit)


@main.group('config')
def config_group():
    """Settings management commands."""
    pass


@config_group.command('show')
@click.pass_context
def show_config(ctx):
    """Display current settings."""
    manager = SettingsManager(ctx.obj['settings_path'])
    data = manager.load().model_dump()
    for key in SECRET_FIELDS:
        if data.get(key):
            data[key] = "********"
    print_json(data, f"Settings ({manager.path})")


@config_group.command('set')
@click.argument('key')
@click.argument('value')
@click.pass_context
def set_config_value(ctx, key, value):
    """Set one setting and save it."""
    if key not in AppSettings.model_fields:
        print_error(f"Unknown setting: {key}")
        sys.exit(1)
    manager = SettingsManager(ctx.obj['settings_path'])
    manager.load()
    try:
        manager.update(**{key: value})
    except ValidationError as e:
        logger.debug(f"Rejected value for {key}: {e}")
        print_error(f"Invalid value for {key}: {value}")
        sys.exit(1)
    print_success(f"{key} updated")


if __name__ == '__main__':
    main()
