from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from time import perf_counter
from typing import Callable, TypeVar
from urllib.parse import urlparse

import typer

from fylvur.config import DEFAULT_CONFIG_PATH, Settings, load_settings
from fylvur.errors import PreviewError
from fylvur.ingest.fetch import FetchAdapter, HttpRangeFetcher, LocalFileFetcher, read_prefix
from fylvur.ingest.probe import identify_media
from fylvur.logging_config import configure_logging
from fylvur.models import FileIdentity, PreviewArtifact, QualitySpec
from fylvur.pipeline import PreviewPipeline

app = typer.Typer(help="On-demand previews for remote media files.")
config_app = typer.Typer(help="Configuration commands.")
preview_app = typer.Typer(help="Produce a preview and write it to a file.")

app.add_typer(config_app, name="config")
app.add_typer(preview_app, name="preview")

logger = logging.getLogger(__name__)

T = TypeVar("T")

CONFIG_OPTION = typer.Option(
    DEFAULT_CONFIG_PATH,
    "--config",
    "-c",
    envvar="FYLVUR_CONFIG",
    help="Path to YAML configuration file.",
)


def _run_with_progress(step_index: int, total_steps: int, label: str, work: Callable[[], T]) -> T:
    typer.echo(f"[{step_index}/{total_steps}] {label}...", err=True)
    started_at = perf_counter()
    try:
        result = work()
    except Exception:
        elapsed = perf_counter() - started_at
        typer.echo(f"[{step_index}/{total_steps}] {label} failed after {elapsed:.1f}s", err=True)
        raise
    elapsed = perf_counter() - started_at
    typer.echo(f"[{step_index}/{total_steps}] {label} done in {elapsed:.1f}s", err=True)
    return result


def _bootstrap(config_path: Path) -> Settings:
    settings = load_settings(config_path)
    configure_logging(settings.logging)
    logger.debug("Loaded runtime settings from %s", config_path)
    return settings


def _is_url(source: str) -> bool:
    return urlparse(source).scheme in {"http", "https"}


def _open_source(source: str, settings: Settings) -> tuple[FetchAdapter, FileIdentity]:
    """Build the fetch adapter and the identity the browsing layer would report."""

    if _is_url(source):
        adapter = HttpRangeFetcher(source, timeout_seconds=settings.fetch.timeout_seconds)
        parsed = urlparse(source)
        identity = FileIdentity(host=parsed.netloc, path=parsed.path or "/", size=adapter.total_size(), mtime=0.0)
        return adapter, identity

    path = Path(source).expanduser().resolve()
    if not path.is_file():
        raise typer.BadParameter(f"{source} is not a file", param_hint="source")
    stat = path.stat()
    identity = FileIdentity(host="local", path=str(path), size=stat.st_size, mtime=stat.st_mtime)
    return LocalFileFetcher(path), identity


def _close_adapter(adapter: FetchAdapter) -> None:
    close = getattr(adapter, "close", None)
    if close is not None:
        close()


def _fail(exc: PreviewError) -> typer.Exit:
    logger.debug("Preview failed: %s", exc)
    typer.echo(f"Error: {exc.user_message}", err=True)
    return typer.Exit(code=1)


def _write_artifact(artifact: PreviewArtifact, output: Path) -> None:
    output.parent.mkdir(parents=True, exist_ok=True)
    with output.open("wb") as handle:
        for chunk in artifact.iter_chunks():
            handle.write(chunk)


def _produce(source: str, quality: QualitySpec, output: Path, settings: Settings) -> None:
    total_steps = 2
    try:
        adapter, identity = _run_with_progress(1, total_steps, "Open source", lambda: _open_source(source, settings))
    except PreviewError as exc:
        raise _fail(exc) from exc

    async def run() -> PreviewArtifact:
        async with PreviewPipeline(settings) as pipeline:
            request = pipeline.request_preview(identity, quality, adapter)
            try:
                artifact = await request.result()
                # Spooled proxies may be deleted on release; copy them out first.
                _write_artifact(artifact, output)
            finally:
                request.release()
            return artifact

    try:
        artifact = _run_with_progress(
            2, total_steps, f"Produce {quality.kind.value}", lambda: asyncio.run(run())
        )
    except PreviewError as exc:
        raise _fail(exc) from exc
    finally:
        _close_adapter(adapter)

    logger.info("Wrote %s preview of %s to %s", quality.kind.value, source, output)
    typer.echo(
        json.dumps(
            {
                "output": str(output),
                "format": artifact.format,
                "media_type": artifact.media_type,
                "size": artifact.size,
                "width": artifact.width,
                "height": artifact.height,
                "duration": artifact.duration,
            },
            indent=2,
        )
    )


@config_app.command("show")
def show_config(config_path: Path = CONFIG_OPTION) -> None:
    """Print resolved runtime configuration."""

    settings = _bootstrap(config_path)
    typer.echo(json.dumps(settings.model_dump(mode="json"), indent=2))


@app.command()
def identify(source: str, config_path: Path = CONFIG_OPTION) -> None:
    """Identify the format of a local file or URL from its leading bytes."""

    settings = _bootstrap(config_path)
    try:
        adapter, _ = _open_source(source, settings)
        try:
            prefix = read_prefix(adapter, settings.identify.prefix_bytes, block_size=settings.fetch.block_size)
            descriptor = identify_media(prefix, seekable=bool(adapter.seekable))
        finally:
            _close_adapter(adapter)
    except PreviewError as exc:
        raise _fail(exc) from exc

    payload = {
        "container": descriptor.container,
        "media_type": descriptor.media_type.value,
        "codec": descriptor.codec,
        "duration": descriptor.duration,
        "width": descriptor.width,
        "height": descriptor.height,
        "frame_rate": descriptor.frame_rate,
        "rotation": descriptor.rotation,
        "sample_rate": descriptor.sample_rate,
        "channels": descriptor.channels,
        "seekable": descriptor.seekable,
    }
    typer.echo(json.dumps(payload, indent=2))


@preview_app.command("thumbnail")
def thumbnail(
    source: str,
    output: Path = typer.Option(..., "--output", "-o", help="Where to write the image."),
    width: int | None = typer.Option(None, help="Maximum width in pixels."),
    height: int | None = typer.Option(None, help="Maximum height in pixels."),
    seek: float | None = typer.Option(None, help="Seek position: < 1 is a fraction of the duration, >= 1 seconds."),
    image_format: str | None = typer.Option(None, "--format", help="webp, png or jpeg."),
    config_path: Path = CONFIG_OPTION,
) -> None:
    """Produce a still image (a waveform for audio files)."""

    settings = _bootstrap(config_path)
    quality = QualitySpec.thumbnail(
        width or settings.thumbnail.max_width,
        height or settings.thumbnail.max_height,
        format=image_format or settings.thumbnail.format,
        seek=seek,
    )
    _produce(source, quality, output, settings)


@preview_app.command("clip")
def clip(
    source: str,
    output: Path = typer.Option(..., "--output", "-o", help="Where to write the clip."),
    width: int | None = typer.Option(None, help="Maximum width in pixels."),
    height: int | None = typer.Option(None, help="Maximum height in pixels."),
    max_duration: float | None = typer.Option(None, help="Clip length in seconds."),
    config_path: Path = CONFIG_OPTION,
) -> None:
    """Produce a short clip from the start of the file."""

    settings = _bootstrap(config_path)
    quality = QualitySpec.clip(
        max_duration or settings.clip.max_duration_seconds,
        width or settings.clip.max_width,
        height or settings.clip.max_height,
        bitrate=settings.clip.bitrate,
    )
    _produce(source, quality, output, settings)


@preview_app.command("proxy")
def proxy(
    source: str,
    output: Path = typer.Option(..., "--output", "-o", help="Where to write the stream."),
    width: int | None = typer.Option(None, help="Maximum width in pixels."),
    height: int | None = typer.Option(None, help="Maximum height in pixels."),
    bitrate: int | None = typer.Option(None, help="Target bitrate in bits per second."),
    config_path: Path = CONFIG_OPTION,
) -> None:
    """Produce a full-length low-bitrate MPEG-TS proxy."""

    settings = _bootstrap(config_path)
    quality = QualitySpec.proxy(
        bitrate or settings.proxy.bitrate,
        width or settings.proxy.max_width,
        height or settings.proxy.max_height,
    )
    _produce(source, quality, output, settings)


if __name__ == "__main__":
    app()
