"""Typer CLI entrypoint for meeting-transcriber."""

import asyncio
import json
import logging
from pathlib import Path

import typer

from meeting_transcriber._types import EngineKind, RecognitionError, TranscriptSegment
from meeting_transcriber.audio_source import SoundDeviceAudioSource
from meeting_transcriber.config import Config, ConfigError, discover_audio_devices, load_config
from meeting_transcriber.connected import ConnectedEngineAdapter
from meeting_transcriber.local import LocalEngineAdapter
from meeting_transcriber.preferences import EnginePreference
from meeting_transcriber.recognizer import LocalRecognizer
from meeting_transcriber.router import TranscriptionRouter

app = typer.Typer(help="Live meeting transcription with speaker attribution")

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    """Setup logging configuration."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _parse_engine(value: str) -> EngineKind:
    try:
        return EngineKind(value.strip().lower())
    except ValueError:
        valid = ", ".join(kind.value for kind in EngineKind)
        raise ConfigError(f"Invalid engine '{value}'. Must be one of: {valid}")


def _build_preference(cfg: Config) -> EnginePreference:
    return EnginePreference(cfg.router.preference_path, default=EngineKind(cfg.router.engine))


def _build_recognizer(cfg: Config) -> LocalRecognizer:
    return LocalRecognizer(
        model_name=cfg.model.name,
        device=cfg.model.device,
        compute_type=cfg.model.compute_type,
        model_directory=cfg.model.model_directory,
        beam_size=cfg.model.beam_size,
        language=cfg.model.language,
    )


def build_router(cfg: Config) -> TranscriptionRouter:
    """Wire adapters, preference and recognizer from configuration."""
    connected = ConnectedEngineAdapter(
        api_key=cfg.deepgram.api_key,
        model=cfg.deepgram.model,
        multilingual_model=cfg.deepgram.multilingual_model,
        language=cfg.deepgram.language,
        auto_detect=cfg.deepgram.auto_detect,
        sample_rate=cfg.audio.sample_rate,
        channels=cfg.audio.channels,
        diarize=cfg.deepgram.diarize,
        interim_results=cfg.deepgram.interim_results,
        punctuate=cfg.deepgram.punctuate,
        smart_format=cfg.deepgram.smart_format,
        utterance_end_ms=cfg.deepgram.utterance_end_ms,
        endpointing=cfg.deepgram.endpointing,
        poll_interval=cfg.audio.poll_interval,
        keepalive_interval=cfg.deepgram.keepalive_interval,
    )
    local = LocalEngineAdapter(
        recognizer=_build_recognizer(cfg),
        sample_rate=cfg.audio.sample_rate,
        channels=cfg.audio.channels,
        poll_interval=cfg.audio.poll_interval,
        transcribe_interval=cfg.router.transcribe_interval,
        min_window_seconds=cfg.router.min_window_seconds,
    )
    return TranscriptionRouter(connected=connected, local=local, preference=_build_preference(cfg))


def format_segment(segment: TranscriptSegment) -> str:
    """Render a final segment as ``[M:SS] YOU|THEM: text``."""
    who = "YOU" if segment.is_you else "THEM"
    stamp = segment.formatted_time or "-:--"
    return f"[{stamp}] {who}: {segment.text}"


def _print_segment(segment: TranscriptSegment) -> None:
    if segment.is_final:
        typer.echo(format_segment(segment))


async def _run_session(router: TranscriptionRouter, duration: float | None) -> bool:
    """Run one session until the engine stops, the duration elapses or we are cancelled."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + duration if duration else None
    try:
        if not await router.start():
            return False
        while router.is_streaming():
            if deadline is not None and loop.time() >= deadline:
                logger.info("Session duration reached")
                break
            await asyncio.sleep(0.5)
    finally:
        await router.shutdown()
    return True


@app.command()
def run(
    config: Path | None = typer.Option(
        None, "--config", help="Path to configuration file"
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose logging"
    ),
    engine: str | None = typer.Option(
        None, "--engine", "-e", help="Use and persist engine (connected, local)"
    ),
    duration: float | None = typer.Option(
        None, "--duration", "-d", help="Stop after this many seconds"
    ),
) -> None:
    """Transcribe the configured audio device live."""
    _setup_logging(verbose)
    try:
        cfg = load_config(config)
        if cfg.general.verbose or cfg.general.debug:
            logging.getLogger().setLevel(logging.DEBUG)
        cfg.validate()
        logger.info("Configuration validated successfully")

        router = build_router(cfg)
        if engine is not None:
            router.set_engine(_parse_engine(engine))

        source = SoundDeviceAudioSource(
            sample_rate=cfg.audio.sample_rate,
            channels=cfg.audio.channels,
            chunk_size=cfg.audio.chunk_size,
            device=cfg.audio.device,
        )
        router.bind_audio_source(source)
        router.set_on_segment(_print_segment)

        with source:
            started = asyncio.run(_run_session(router, duration))

        if not started:
            logger.error(
                "Could not start the %s engine (check API key or run download-model)",
                router.get_engine().value,
            )
            raise typer.Exit(1)

    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        raise typer.Exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        raise typer.Exit(0)
    except typer.Exit:
        raise
    except Exception as e:
        logger.error("Unexpected error: %s", e, exc_info=True)
        raise typer.Exit(1)


@app.command()
def set_engine(
    engine: str = typer.Argument(..., help="Engine to use (connected, local)"),
    config: Path | None = typer.Option(
        None, "--config", help="Path to configuration file"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Persist the engine used by subsequent sessions."""
    _setup_logging(verbose)
    try:
        cfg = load_config(config)
        kind = _parse_engine(engine)
        _build_preference(cfg).set(kind)
        typer.echo(f"Engine set to {kind.value}")
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        raise typer.Exit(1)
    except RuntimeError as e:
        logger.error("%s", e)
        raise typer.Exit(1)


@app.command()
def show_engine(
    config: Path | None = typer.Option(
        None, "--config", help="Path to configuration file"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Show the engine the next session will use."""
    _setup_logging(verbose)
    try:
        cfg = load_config(config)
        typer.echo(_build_preference(cfg).get().value)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        raise typer.Exit(1)


@app.command()
def list_audio(
    verbose: bool = typer.Option(False, "--verbose", "-v"),
    json_output: bool = typer.Option(
        False, "--json", help="Output as JSON instead of table"
    ),
) -> None:
    """List available audio devices."""
    _setup_logging(verbose)
    try:
        devices = discover_audio_devices()
        if not devices:
            logger.warning("No audio devices found")
            return

        if json_output:
            typer.echo(json.dumps(devices, indent=2))
        else:
            typer.echo("Available audio devices:")
            for dev in devices:
                typer.echo(
                    f"  [{dev['index']}] {dev['name']} "
                    f"({dev['channels']}ch, {dev['sample_rate']}Hz)"
                )
    except Exception as e:
        logger.error("Error listing audio devices: %s", e)
        raise typer.Exit(1)


@app.command()
def download_model(
    config: Path | None = typer.Option(
        None, "--config", help="Path to configuration file"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Download the local engine's model weights."""
    _setup_logging(verbose)
    try:
        cfg = load_config(config)
        recognizer = _build_recognizer(cfg)
        if recognizer.is_downloaded():
            typer.echo(f"Model '{recognizer.model_name}' already downloaded")
            return
        path = recognizer.download()
        typer.echo(f"Model downloaded to {path}")
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        raise typer.Exit(1)
    except RecognitionError as e:
        logger.error("%s", e)
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
