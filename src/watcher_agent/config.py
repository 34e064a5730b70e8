"""
Watcher Agent Configuration
===========================

This module handles configuration loading for the watcher agent.

Configuration Sources (in order of precedence):
    1. Environment variables (highest priority)
    2. config.yaml file
    3. Default values (lowest priority)

Environment Variable Mapping:
    WATCHER_BRAIN_ENDPOINT   -> brain.endpoint
    WATCHER_BRAIN_API_KEY    -> brain.api_key
    WATCHER_AGENT_ID         -> brain.agent_id
    WATCHER_MAX_STREAMS      -> streams.max_concurrent
    WATCHER_ROTATION_MINUTES -> streams.rotation.interval_minutes
    WATCHER_ROTATION_MODE    -> streams.rotation.mode
    WATCHER_CAPTURE_FPS      -> capture.fps
    WATCHER_BROWSER_BACKEND  -> browser.backend
    WATCHER_HEADLESS         -> browser.headless
    WATCHER_DATA_DIR         -> insights.data_dir
    WATCHER_HEALTH_PORT      -> server.port
    WATCHER_LOG_LEVEL        -> logging.level
    PORT                     -> server.port (container platforms)

The settings object is built once at process start and passed explicitly
to the components that need it. There is no module-level instance.

Example:
    from watcher_agent.config import load_config, setup_logging

    settings = load_config("config.yaml")
    setup_logging(settings)

    print(settings.brain.endpoint)
    print(settings.streams.max_concurrent)
"""

import os
import logging
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field

from watcher_agent.models.source import RotationMode, Source, SourceType


logger = logging.getLogger(__name__)


# =============================================================================
# Configuration Models
# =============================================================================

class AgentConfig(BaseModel):
    """Agent identification configuration."""

    name: str = Field(default="watcher-agent", description="Agent name")
    version: str = Field(default="2.0.0", description="Version reported to the Brain")


class BrainConfig(BaseModel):
    """Uplink connection to the Brain."""

    endpoint: str = Field(
        default="ws://localhost:3000/ws/watcher",
        description="WebSocket URL of the Brain",
    )
    api_key: str = Field(default="dev-watcher-key", description="Watcher API key")
    agent_id: Optional[str] = Field(
        default=None,
        description="Agent ID requested during auth (Brain may assign another)",
    )
    auth_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Wait for auth acknowledgement before assuming success",
    )
    reconnect_interval_ms: int = Field(
        default=5000,
        ge=1,
        description="Base reconnect delay; attempt n waits n times this",
    )
    max_reconnect_attempts: int = Field(
        default=10,
        ge=1,
        description="Reconnect attempts before giving up",
    )
    batch_interval_ms: int = Field(
        default=1000,
        ge=1,
        description="Maximum time an observation waits before a flush",
    )
    batch_max_size: int = Field(
        default=50,
        ge=1,
        description="Observations per batch; reaching it flushes immediately",
    )
    max_queue_size: int = Field(
        default=10000,
        ge=0,
        description="High-water cap on queued observations (0 = unbounded)",
    )
    max_unacked_batches: int = Field(
        default=100,
        ge=0,
        description="Unacknowledged batches kept for resend after reconnect",
    )


class ViewportConfig(BaseModel):
    """Browser viewport size."""

    width: int = Field(default=1280, ge=320)
    height: int = Field(default=720, ge=240)


class BrowserConfig(BaseModel):
    """Embedded browser configuration."""

    backend: str = Field(
        default="playwright",
        description="Browser backend: 'playwright' or 'mock'",
    )
    headless: bool = Field(default=True, description="Run without a window")
    muted: bool = Field(default=True, description="Mute page audio")
    viewport: ViewportConfig = Field(default_factory=ViewportConfig)
    user_agent: str = Field(
        default=(
            "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
        ),
        description="User agent string",
    )
    proxy: Optional[str] = Field(default=None, description="Proxy server URL")
    navigation_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Page load and video lookup timeout",
    )
    call_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Deadline for a single frame/state call",
    )
    popup_dismiss_interval_seconds: float = Field(
        default=3.0,
        gt=0,
        description="Period of the ad/popup dismissal sweep",
    )


class RotationConfig(BaseModel):
    """Source rotation configuration."""

    enabled: bool = Field(default=True, description="Rotate sessions on a timer")
    interval_minutes: float = Field(
        default=20.0,
        gt=0,
        description="Minutes between rotations",
    )
    mode: RotationMode = Field(
        default=RotationMode.PRIORITY,
        description="Queue order: sequential, random or priority",
    )
    seed: Optional[int] = Field(
        default=None,
        description="Seed for random mode (None = nondeterministic)",
    )


def _default_sources() -> List[Source]:
    return [
        Source(name="F1 Official", url="https://www.youtube.com/@Formula1/videos",
               type=SourceType.CHANNEL, priority=1, category="F1"),
        Source(name="F1 Highlights",
               url="https://www.youtube.com/playlist?list=PLfoNZDHitwjUv0pjTwlV1vzaE0r7UDVDR",
               type=SourceType.PLAYLIST, priority=1, category="F1"),
        Source(name="IMSA Official", url="https://www.youtube.com/@IMSA/videos",
               type=SourceType.CHANNEL, priority=2, category="IMSA"),
        Source(name="FIA WEC", url="https://www.youtube.com/@FIAWEC/videos",
               type=SourceType.CHANNEL, priority=2, category="WEC"),
        Source(name="NASCAR", url="https://www.youtube.com/@NASCAR/videos",
               type=SourceType.CHANNEL, priority=3, category="NASCAR"),
        Source(name="IndyCar", url="https://www.youtube.com/@INDYCAR/videos",
               type=SourceType.CHANNEL, priority=3, category="IndyCar"),
        Source(name="WRC", url="https://www.youtube.com/@WRC/videos",
               type=SourceType.CHANNEL, priority=3, category="Rally"),
        Source(name="iRacing", url="https://www.youtube.com/@iRacing/videos",
               type=SourceType.CHANNEL, priority=4, category="Simracing"),
    ]


class StreamsConfig(BaseModel):
    """Concurrent stream pool configuration."""

    sources: List[Source] = Field(
        default_factory=_default_sources,
        min_length=1,
        description="Sources to rotate through",
    )
    max_concurrent: int = Field(
        default=2,
        ge=1,
        description="Number of sessions kept running",
    )
    rotation: RotationConfig = Field(default_factory=RotationConfig)


class ResolutionConfig(BaseModel):
    """Expected frame size, used when a frame cannot be probed."""

    width: int = Field(default=1280, ge=1)
    height: int = Field(default=720, ge=1)


class CaptureConfig(BaseModel):
    """Capture loop configuration."""

    fps: float = Field(
        default=1.0,
        gt=0,
        le=30,
        description="Capture ticks per second",
    )
    format: str = Field(default="jpeg", description="Screenshot format: jpeg or png")
    quality: int = Field(default=80, ge=1, le=100, description="JPEG quality")
    resolution: ResolutionConfig = Field(default_factory=ResolutionConfig)
    stall_threshold_ticks: int = Field(
        default=3,
        ge=2,
        description="Identical playback readings in a row that mark a stall",
    )
    max_stalled_ticks: int = Field(
        default=120,
        ge=1,
        description="Ticks spent stalled before the session is marked error",
    )
    max_consecutive_failures: int = Field(
        default=10,
        ge=1,
        description="Failed ticks in a row before the session is marked error",
    )
    analyze_every_nth_frame: int = Field(
        default=60,
        ge=1,
        description="Hand every Nth frame to the frame analyzer",
    )


class InsightsConfig(BaseModel):
    """Knowledge file configuration."""

    enabled: bool = Field(default=True, description="Persist derived insights")
    data_dir: str = Field(default="./data", description="Directory of knowledge.json")
    save_interval_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Autosave period",
    )
    dedupe_window_seconds: float = Field(
        default=10.0,
        ge=0,
        description="Insights closer than this in video time are duplicates",
    )


class ServerConfig(BaseModel):
    """Health server configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(default=8080, ge=1, le=65535, description="Bind port")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="text", description="Log format: json or text")


class Settings(BaseModel):
    """
    Main settings class for the watcher agent.

    Loads configuration from YAML file and environment variables.
    Environment variables take precedence over file values.
    """

    agent: AgentConfig = Field(default_factory=AgentConfig)
    brain: BrainConfig = Field(default_factory=BrainConfig)
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    streams: StreamsConfig = Field(default_factory=StreamsConfig)
    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    insights: InsightsConfig = Field(default_factory=InsightsConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# =============================================================================
# Configuration Loading
# =============================================================================

def load_config(config_path: Optional[str] = None) -> Settings:
    """
    Load configuration from YAML file and environment variables.

    Priority (highest to lowest):
        1. Environment variables
        2. YAML config file
        3. Default values

    Args:
        config_path: Path to config.yaml. If None, searches common locations.

    Returns:
        Settings: Loaded configuration
    """
    # Find config file
    if config_path is None:
        search_paths = [
            Path(os.environ.get("WATCHER_CONFIG", "config.yaml")),
            Path("config.yml"),
            Path("/app/config.yaml"),
        ]
        for path in search_paths:
            if path.exists():
                config_path = str(path)
                break

    # Load from YAML if exists
    config_data = {}
    if config_path and Path(config_path).exists():
        logger.info(f"Loading config from: {config_path}")
        with open(config_path, "r") as f:
            config_data = yaml.safe_load(f) or {}
    else:
        logger.warning("No config file found, using defaults and environment variables")

    # Apply environment variable overrides
    _apply_env_overrides(config_data)

    return Settings.model_validate(config_data)


def _apply_env_overrides(config_data: dict) -> None:
    """Apply environment variable overrides to config data."""

    # Brain settings
    if env_endpoint := os.environ.get("WATCHER_BRAIN_ENDPOINT"):
        config_data.setdefault("brain", {})["endpoint"] = env_endpoint
    if env_key := os.environ.get("WATCHER_BRAIN_API_KEY"):
        config_data.setdefault("brain", {})["api_key"] = env_key
    if env_agent := os.environ.get("WATCHER_AGENT_ID"):
        config_data.setdefault("brain", {})["agent_id"] = env_agent

    # Stream pool settings
    if env_streams := os.environ.get("WATCHER_MAX_STREAMS"):
        config_data.setdefault("streams", {})["max_concurrent"] = int(env_streams)
    if env_rotation := os.environ.get("WATCHER_ROTATION_MINUTES"):
        config_data.setdefault("streams", {}).setdefault("rotation", {})["interval_minutes"] = float(env_rotation)
    if env_mode := os.environ.get("WATCHER_ROTATION_MODE"):
        config_data.setdefault("streams", {}).setdefault("rotation", {})["mode"] = env_mode.lower()

    # Capture settings
    if env_fps := os.environ.get("WATCHER_CAPTURE_FPS"):
        config_data.setdefault("capture", {})["fps"] = float(env_fps)

    # Browser settings
    if env_backend := os.environ.get("WATCHER_BROWSER_BACKEND"):
        config_data.setdefault("browser", {})["backend"] = env_backend
    if env_headless := os.environ.get("WATCHER_HEADLESS"):
        config_data.setdefault("browser", {})["headless"] = env_headless.lower() != "false"

    # Insight store settings
    if env_data := os.environ.get("WATCHER_DATA_DIR"):
        config_data.setdefault("insights", {})["data_dir"] = env_data

    # Server settings (container platforms use PORT env var)
    if env_port := os.environ.get("PORT"):
        config_data.setdefault("server", {})["port"] = int(env_port)
    elif env_port := os.environ.get("WATCHER_HEALTH_PORT"):
        config_data.setdefault("server", {})["port"] = int(env_port)

    # Logging settings
    if env_log := os.environ.get("WATCHER_LOG_LEVEL"):
        config_data.setdefault("logging", {})["level"] = env_log


def setup_logging(settings: Settings) -> None:
    """Configure logging based on settings."""
    log_level = getattr(logging, settings.logging.level.upper(), logging.INFO)

    if settings.logging.format == "json":
        log_format = '{"time": "%(asctime)s", "level": "%(levelname)s", "module": "%(name)s", "message": "%(message)s"}'
    else:
        log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=log_level,
        format=log_format,
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
