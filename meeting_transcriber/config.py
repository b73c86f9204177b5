"""Configuration loader and validation."""

import logging
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from meeting_transcriber._types import EngineKind

logger = logging.getLogger(__name__)

__all__ = [
    "AudioConfig",
    "DeepgramConfig",
    "ModelConfig",
    "RouterConfig",
    "GeneralConfig",
    "Config",
    "ConfigError",
    "load_config",
    "discover_audio_devices",
]

_SECTIONS = ("audio", "deepgram", "model", "router", "general")


class ConfigError(Exception):
    """Configuration loading or validation error."""

    pass


@dataclass
class AudioConfig:
    """Audio capture configuration."""

    sample_rate: int = 16000
    channels: int = 2
    chunk_size: int = 1600
    device: int | str | None = None
    poll_interval: float = 0.1


@dataclass
class DeepgramConfig:
    """Deepgram live streaming configuration (connected engine)."""

    api_key: str | None = None
    model: str = "nova-2"
    multilingual_model: str = "nova-3"
    language: str = "en"
    auto_detect: bool = False
    diarize: bool = True
    interim_results: bool = True
    punctuate: bool = True
    smart_format: bool = True
    utterance_end_ms: int = 1000
    endpointing: int = 300
    keepalive_interval: float = 5.0


@dataclass
class ModelConfig:
    """Faster Whisper model configuration (local engine)."""

    name: str = "base"
    device: str = "cpu"
    compute_type: str = "int8"
    model_directory: str | None = None
    beam_size: int = 5
    language: str = "auto"


@dataclass
class RouterConfig:
    """Engine routing and local-engine windowing settings."""

    engine: str = EngineKind.CONNECTED.value
    transcribe_interval: float = 5.0
    min_window_seconds: float = 1.5
    preference_path: str = str(Path.home() / ".config" / "meeting-transcriber" / "engine.json")


@dataclass
class GeneralConfig:
    """General application settings."""

    verbose: bool = False
    debug: bool = False


@dataclass
class Config:
    """Main configuration container."""

    audio: AudioConfig = field(default_factory=AudioConfig)
    deepgram: DeepgramConfig = field(default_factory=DeepgramConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    router: RouterConfig = field(default_factory=RouterConfig)
    general: GeneralConfig = field(default_factory=GeneralConfig)

    @classmethod
    def from_toml(
        cls,
        path: Path | None = None,
        *,
        env: Mapping[str, str] | None = None,
    ) -> "Config":
        """Load configuration from TOML file with environment overrides.

        Args:
            path: Explicit config file path. If None, searches in order:
                  1. MEETING_TRANSCRIBER_CONFIG env var
                  2. ./meeting-transcriber.toml
                  3. ~/.config/meeting-transcriber.toml
            env: Environment variables for overrides (defaults to os.environ)

        Returns:
            Loaded Config instance

        Raises:
            ConfigError: If config file not found or values are malformed
        """
        if env is None:
            import os

            env = os.environ

        resolved_path = _resolve_config_path(path, env)
        raw_data = _load_toml_file(resolved_path)

        try:
            coerced = _coerce_config_values(raw_data, env)
            return cls(
                audio=AudioConfig(**coerced["audio"]),
                deepgram=DeepgramConfig(**coerced["deepgram"]),
                model=ModelConfig(**coerced["model"]),
                router=RouterConfig(**coerced["router"]),
                general=GeneralConfig(**coerced["general"]),
            )
        except TypeError as e:
            raise ConfigError(f"Invalid configuration values: {e}") from e

    def validate(self) -> None:
        """Validate configuration values.

        Raises:
            ConfigError: If any value is out of range or unknown
        """
        validate_audio_config(self.audio)
        validate_deepgram_config(self.deepgram)
        validate_model_config(self.model)
        validate_router_config(self.router)


def _resolve_config_path(
    cli_path: Path | None,
    env: Mapping[str, str],
) -> Path:
    """Resolve configuration file path following search order.

    Raises:
        ConfigError: If no config file found in any location
    """
    candidates = []

    if cli_path:
        cli_path = Path(cli_path)
        if cli_path.exists():
            logger.info("Using config file: %s", cli_path.resolve())
            return cli_path.resolve()
        raise ConfigError(f"Config file not found: {cli_path}")

    if env_path := env.get("MEETING_TRANSCRIBER_CONFIG"):
        candidates.append(Path(env_path))

    candidates.append(Path("meeting-transcriber.toml"))
    candidates.append(Path.home() / ".config" / "meeting-transcriber.toml")

    for candidate in candidates:
        if candidate.exists():
            logger.info("Using config file: %s", candidate.resolve())
            return candidate.resolve()

    raise ConfigError(
        f"Config file not found. Searched: {', '.join(str(c) for c in candidates)}"
    )


def _load_toml_file(path: Path) -> dict:
    """Load and parse TOML configuration file.

    Raises:
        ConfigError: If file cannot be read or parsed
    """
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except Exception as e:
        raise ConfigError(f"Failed to parse config file {path}: {e}") from e


def _coerce_config_values(raw_data: dict, env: Mapping[str, str]) -> dict:
    """Normalize raw TOML data for dataclass instantiation.

    Missing sections fall back to defaults; the Deepgram API key falls back
    to DEEPGRAM_API_KEY.
    """
    coerced = {}

    for section in _SECTIONS:
        value = raw_data.get(section, {})
        if not isinstance(value, dict):
            raise ConfigError(f"Section [{section}] must be a table")
        coerced[section] = dict(value)

    deepgram_section = coerced["deepgram"]
    if not deepgram_section.get("api_key"):
        deepgram_section["api_key"] = env.get("DEEPGRAM_API_KEY")

    router_section = coerced["router"]
    if "preference_path" in router_section:
        router_section["preference_path"] = str(Path(router_section["preference_path"]).expanduser())

    return coerced


def discover_audio_devices() -> list[dict]:
    """Enumerate available audio capture devices.

    Returns:
        List of device dicts with keys: index, name, channels, sample_rate
        Returns empty list if sounddevice unavailable or no devices found
    """
    try:
        import sounddevice
    except ImportError:
        logger.warning("sounddevice not available, cannot enumerate audio devices")
        return []

    devices = []
    try:
        device_list = sounddevice.query_devices()
        if isinstance(device_list, dict):
            device_list = [device_list]

        for idx, dev_info in enumerate(device_list):
            if dev_info.get("max_input_channels", 0) > 0:
                devices.append(
                    {
                        "index": idx,
                        "name": dev_info.get("name", f"Device {idx}"),
                        "channels": dev_info.get("max_input_channels", 0),
                        "sample_rate": dev_info.get("default_samplerate", 0),
                    }
                )
    except Exception as e:
        logger.warning("Error discovering audio devices: %s", e)

    return devices


def validate_audio_config(audio_cfg: AudioConfig) -> None:
    """Validate audio capture settings.

    The channel convention (system audio on 0, microphone on 1) needs a
    stereo stream, and both engines assume 16-bit PCM at a fixed rate.

    Raises:
        ConfigError: If audio configuration is invalid
    """
    if audio_cfg.sample_rate <= 0:
        raise ConfigError(f"sample_rate must be positive, got {audio_cfg.sample_rate}")
    if audio_cfg.channels != 2:
        raise ConfigError(f"channels must be 2 (stereo), got {audio_cfg.channels}")
    if audio_cfg.chunk_size <= 0:
        raise ConfigError(f"chunk_size must be positive, got {audio_cfg.chunk_size}")
    if audio_cfg.poll_interval <= 0:
        raise ConfigError(f"poll_interval must be positive, got {audio_cfg.poll_interval}")


def validate_deepgram_config(deepgram_cfg: DeepgramConfig) -> None:
    """Validate Deepgram streaming settings.

    The API key itself is checked when a connected session is opened, so a
    local-only setup does not need one.

    Raises:
        ConfigError: If Deepgram configuration is invalid
    """
    if not deepgram_cfg.model or not deepgram_cfg.multilingual_model:
        raise ConfigError("deepgram.model and deepgram.multilingual_model must be non-empty")
    if deepgram_cfg.utterance_end_ms < 0:
        raise ConfigError(
            f"utterance_end_ms must be non-negative, got {deepgram_cfg.utterance_end_ms}"
        )
    if deepgram_cfg.endpointing < 0:
        raise ConfigError(f"endpointing must be non-negative, got {deepgram_cfg.endpointing}")
    if deepgram_cfg.keepalive_interval <= 0:
        raise ConfigError(
            f"keepalive_interval must be positive, got {deepgram_cfg.keepalive_interval}"
        )


def validate_model_config(model_cfg: ModelConfig) -> None:
    """Validate model configuration.

    Raises:
        ConfigError: If model configuration is invalid
    """
    valid_compute_types = ("int8", "float16", "float32", "default")
    if model_cfg.compute_type not in valid_compute_types:
        raise ConfigError(
            f"Invalid compute_type '{model_cfg.compute_type}'. "
            f"Must be one of: {', '.join(valid_compute_types)}"
        )

    valid_devices = ("cpu", "cuda", "auto")
    if model_cfg.device not in valid_devices:
        raise ConfigError(
            f"Invalid device '{model_cfg.device}'. "
            f"Must be one of: {', '.join(valid_devices)}"
        )

    if model_cfg.beam_size <= 0:
        raise ConfigError(f"beam_size must be positive, got {model_cfg.beam_size}")


def validate_router_config(router_cfg: RouterConfig) -> None:
    """Validate engine routing settings.

    Raises:
        ConfigError: If router configuration is invalid
    """
    valid_engines = tuple(kind.value for kind in EngineKind)
    if router_cfg.engine not in valid_engines:
        raise ConfigError(
            f"Invalid engine '{router_cfg.engine}'. "
            f"Must be one of: {', '.join(valid_engines)}"
        )

    if router_cfg.transcribe_interval <= 0:
        raise ConfigError(
            f"transcribe_interval must be positive, got {router_cfg.transcribe_interval}"
        )

    if router_cfg.min_window_seconds < 0:
        raise ConfigError(
            f"min_window_seconds must be non-negative, got {router_cfg.min_window_seconds}"
        )


def load_config(
    path: Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> Config:
    """Load configuration from TOML file.

    Convenience wrapper around Config.from_toml().
    """
    return Config.from_toml(path, env=env)
