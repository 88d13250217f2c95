"""
Pipeline Configuration

Defaults live on PipelineConfig. load_config() layers an optional YAML file
and then IDEA_PIPELINE_* environment variables on top of them.
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional, Dict, Any, List

import yaml

logger = logging.getLogger("config")

ENV_PREFIX = "IDEA_PIPELINE_"
DEFAULT_CONFIG_PATH = Path(os.getenv("IDEA_PIPELINE_CONFIG", "idea_pipeline.yaml"))

# Well-known variables read without the prefix
ENV_ALIASES = {
    "DISCORD_WEBHOOK_URL": "discord_webhook_url",
    "GEMINI_API_KEY": "gemini_api_key",
    "WEBHOOK_SECRET": "webhook_secret",
}


class ConfigError(Exception):
    """Raised when the configuration file cannot be used."""


@dataclass
class PipelineConfig:
    """Runtime settings for the orchestrator and its collaborators."""
    data_dir: Path = Path("data")
    projects_dir: Path = Path("projects")
    # Transition engine
    max_workers: int = 4
    queue_size: int = 0
    retry_cooldown: float = 300.0
    retry_sweep_interval: float = 600.0
    poll_interval: float = 2.0
    deadline_offset_days: int = 1
    # Agent
    agent_backend: str = "cli"
    agent_command: List[str] = field(
        default_factory=lambda: ["gemini", "{prompt}", "--output-format", "text"]
    )
    agent_timeout: float = 300.0
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-1.5-flash"
    # Provisioning and build
    provision_command: List[str] = field(
        default_factory=lambda: ["flutter", "create", "--project-name", "{name}", "{path}"]
    )
    build_steps: List[List[str]] = field(
        default_factory=lambda: [
            ["aider", "--yes", "--message-file", "docs/DESIGN.md"],
            ["flutter", "build", "web"],
        ]
    )
    preview_command: List[str] = field(
        default_factory=lambda: ["python", "-m", "http.server", "{port}", "--directory", "build/web"]
    )
    preview_port: int = 8080
    tunnel_command: List[str] = field(
        default_factory=lambda: ["cloudflared", "tunnel", "--url", "http://localhost:{port}"]
    )
    build_timeout: float = 1800.0
    tunnel_url_timeout: float = 60.0
    # Notifications
    discord_webhook_url: Optional[str] = None
    # None: data_dir / "notifications"
    notification_log_dir: Optional[Path] = None
    # Intake API
    webhook_secret: Optional[str] = None
    api_host: str = "0.0.0.0"
    api_port: int = 3001
    # Maintenance
    daily_ideas_time: str = "08:30"
    cleanup_time: str = "09:00"
    daily_idea_count: int = 5
    rejected_retention_hours: float = 24.0
    log_level: str = "INFO"

    @property
    def store_path(self) -> Path:
        return self.data_dir / "tasks.json"

    @property
    def notifications_path(self) -> Path:
        if self.notification_log_dir is not None:
            return Path(self.notification_log_dir)
        return self.data_dir / "notifications"

    def to_dict(self) -> Dict[str, Any]:
        result = {}
        for f in fields(self):
            value = getattr(self, f.name)
            result[f.name] = str(value) if isinstance(value, Path) else value
        return result


def _coerce(name: str, raw: Any, current: Any) -> Any:
    """Convert a raw file/env value to the type of the default."""
    if isinstance(current, bool):
        if isinstance(raw, str):
            return raw.strip().lower() in ("1", "true", "yes", "on")
        return bool(raw)
    if isinstance(current, Path) or (current is None and name.endswith("_dir")):
        return Path(raw)
    if isinstance(current, int) and not isinstance(current, bool):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    if isinstance(current, list) and isinstance(raw, str):
        # Env overrides for list settings are YAML-encoded
        parsed = yaml.safe_load(raw)
        if not isinstance(parsed, list):
            raise ConfigError(f"{name} must be a list")
        return parsed
    return raw


def load_config(path: Optional[Path] = None, environ: Optional[Dict[str, str]] = None) -> PipelineConfig:
    """
    Build the effective configuration.

    Args:
        path: YAML file to read; a missing file is not an error.
        environ: Environment mapping (defaults to os.environ).

    Raises:
        ConfigError: The file is not a mapping or a value has the wrong type.
    """
    config = PipelineConfig()
    environ = os.environ if environ is None else environ
    known = {f.name for f in fields(config)}

    config_path = Path(path) if path else DEFAULT_CONFIG_PATH
    if config_path.exists():
        try:
            data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{config_path} must contain a mapping at the top level")
        for key, value in data.items():
            if key not in known:
                logger.warning(f"Ignoring unknown config key: {key}")
                continue
            try:
                setattr(config, key, _coerce(key, value, getattr(config, key)))
            except (TypeError, ValueError) as e:
                raise ConfigError(f"Invalid value for {key}: {e}") from e
    elif path:
        logger.warning(f"Config file not found: {config_path}; using defaults")

    overrides: Dict[str, str] = {}
    for env_name, key in ENV_ALIASES.items():
        if environ.get(env_name):
            overrides[key] = environ[env_name]
    for env_name, value in environ.items():
        if env_name.startswith(ENV_PREFIX):
            key = env_name[len(ENV_PREFIX):].lower()
            if key in known:
                overrides[key] = value

    for key, value in overrides.items():
        try:
            setattr(config, key, _coerce(key, value, getattr(config, key)))
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid value for {key}: {e}") from e

    return config
