"""Capture Trust CLI."""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import sys
import traceback
from pathlib import Path

import click
import numpy as np
import yaml

from capturetrust import __version__
from capturetrust.config import DepthConfig, PipelineConfig
from capturetrust.depth import DepthAnalyzer
from capturetrust.errors import CaptureTrustError
from capturetrust.provenance.embed import detect_format
from capturetrust.provenance.signing import (
    PRIVATE_KEY_ENV,
    PUBLIC_KEY_ENV,
    generate_keys,
    keys_to_env_format,
)
from capturetrust.provenance.verifier import ManifestVerifier


def handle_error(error: Exception, debug: bool) -> None:
    """Handle errors with structured output.

    Args:
        error: The exception that occurred
        debug: Whether to show full traceback
    """
    if debug:
        traceback.print_exc()
    else:
        click.echo(f"Error: {error}", err=True)
    sys.exit(1)


def _load_config(path: Path | None) -> PipelineConfig:
    return PipelineConfig.from_yaml(path) if path else PipelineConfig.from_env()


@click.group()
@click.version_option(version=__version__, prog_name="capturetrust")
@click.option('--config', '-c', 'config_path', type=click.Path(exists=True, path_type=Path), help='YAML config file')
@click.option(
    '--log-level',
    type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
    default='WARNING',
    show_default=True,
)
@click.option('--debug', is_flag=True, help='Enable debug mode (show full tracebacks)')
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, log_level: str, debug: bool):
    """Capture Trust CLI - evidence and trust scoring for attested captures."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config_path
    ctx.obj['debug'] = debug


@cli.command()
@click.option('--out', '-o', type=click.Path(path_type=Path), help='Write an env file instead of printing')
@click.pass_context
def keygen(ctx: click.Context, out: Path | None):
    """Generate an Ed25519 manifest signing key pair.

    Prints the keys in environment-variable form.
    """
    private_key, public_key = generate_keys()
    private_b64, public_b64 = keys_to_env_format(private_key, public_key)
    lines = f"{PRIVATE_KEY_ENV}={private_b64}\n{PUBLIC_KEY_ENV}={public_b64}\n"

    if out:
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(lines, encoding="utf-8")
        out.chmod(0o600)
        click.echo(f"Keys written to {out}")
        click.echo(f"Public key: {public_b64}")
    else:
        click.echo(lines, nl=False)


@cli.command('verify-manifest')
@click.argument('media', type=click.Path(exists=True, path_type=Path))
@click.option('--public-key', '-k', required=True, envvar=PUBLIC_KEY_ENV, help='Base64 Ed25519 public key')
@click.option(
    '--manifest',
    '-m',
    type=click.Path(exists=True, path_type=Path),
    help='Sidecar COSE manifest (for media without an embedded one)',
)
@click.option('--format', 'output_format', type=click.Choice(['json', 'markdown']), default='markdown')
@click.pass_context
def verify_manifest(
    ctx: click.Context,
    media: Path,
    public_key: str,
    manifest: Path | None,
    output_format: str,
):
    """Verify the signed manifest of a media file.

    Exits non-zero when the manifest is invalid.
    """
    try:
        try:
            key = base64.b64decode(public_key, validate=True)
        except (binascii.Error, ValueError) as err:
            raise click.BadParameter("public key is not valid base64", param_hint="--public-key") from err

        verifier = ManifestVerifier(key)
        data = media.read_bytes()
        if manifest:
            result = verifier.verify_cose(manifest.read_bytes(), hashlib.sha256(data).hexdigest())
        else:
            result = verifier.verify_media(data)

        if output_format == 'json':
            click.echo(json.dumps(result.to_dict(), indent=2, sort_keys=True))
        else:
            click.echo(result.to_markdown())

        if not result.valid:
            sys.exit(1)
    except (CaptureTrustError, OSError) as e:
        handle_error(e, ctx.obj.get('debug', False))


@cli.command('analyze-depth')
@click.argument('depth_file', type=click.Path(exists=True, path_type=Path))
@click.option('--width', type=int, help='Depth map width (inferred if omitted)')
@click.option('--height', type=int, help='Depth map height (inferred if omitted)')
@click.option('--color', type=click.Path(exists=True, path_type=Path), help='Aligned colour image (.npy)')
@click.pass_context
def analyze_depth(
    ctx: click.Context,
    depth_file: Path,
    width: int | None,
    height: int | None,
    color: Path | None,
):
    """Compute scene metrics for a raw (or gzipped) float32 depth map."""
    try:
        config_path = ctx.obj.get('config_path')
        depth_config = _load_config(config_path).depth if config_path else DepthConfig()
        analyzer = DepthAnalyzer(depth_config)
        color_image = np.load(color, allow_pickle=False) if color else None
        analysis = analyzer.analyze(depth_file.read_bytes(), color_image, width, height)
        result = analyzer.evaluate(analysis)
        click.echo(json.dumps(result.to_dict(), indent=2, sort_keys=True))
    except (CaptureTrustError, ValueError, OSError) as e:
        handle_error(e, ctx.obj.get('debug', False))


@cli.command('show-config')
@click.pass_context
def show_config(ctx: click.Context):
    """Print the effective configuration as YAML."""
    try:
        config = _load_config(ctx.obj.get('config_path'))
        click.echo(yaml.safe_dump(config.to_dict(), sort_keys=True), nl=False)
    except CaptureTrustError as e:
        handle_error(e, ctx.obj.get('debug', False))


@cli.command('inspect-media')
@click.argument('media', type=click.Path(exists=True, path_type=Path))
def inspect_media(media: Path):
    """Show the detected container format and SHA-256 of a media file."""
    data = media.read_bytes()
    click.echo(json.dumps({
        "path": str(media),
        "format": detect_format(data),
        "sha256": hashlib.sha256(data).hexdigest(),
        "size": len(data),
    }, indent=2))


@cli.command()
@click.option('--host', default='127.0.0.1', help='Host to bind to')
@click.option('--port', '-p', default=8000, type=int, help='Port to bind to')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.pass_context
def serve(ctx: click.Context, host: str, port: int, debug: bool):
    """Start the Capture Trust HTTP server.

    Examples:
      capturetrust serve                    # Start server on default port
      capturetrust serve --port 8080        # Start on port 8080
      capturetrust -c prod.yaml serve       # Use a config file
    """
    import uvicorn

    from capturetrust.server import create_app

    debug = debug or ctx.obj.get('debug', False)
    try:
        config = _load_config(ctx.obj.get('config_path'))
        click.echo(f"Starting Capture Trust server on http://{host}:{port}")
        click.echo(f"API documentation: http://{host}:{port}/docs")
        app = create_app(config=config, debug=debug)
        uvicorn.run(app, host=host, port=port, log_level="debug" if debug else "info")
    except CaptureTrustError as e:
        handle_error(e, debug)


def main() -> None:
    """Entry point for the CLI."""
    cli(obj={})


if __name__ == '__main__':
    main()
