"""YAML configuration loader.

Loads a single YAML file layered over the environment defaults.
Backward compatible: when no YAML is provided, TURNSTILE_* env vars
work exactly as before.

Example YAML:
    controller:
      model: opus
      max_turns: 100
      step_id: 4
      phase_label: step4-reasoning
      agent_persona: domain-reasoning
      artifact_path: context/decisions.md
      workspace_path: /path/to/workspace
      skills_path: /path/to/skills
      stall_timeout_seconds: 900

    logging:
      level: DEBUG
      file: ~/.turnstile/logs/turnstile.log
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import yaml

from .config import ControllerConfig
from .errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_CANDIDATES = (
    Path(".turnstile") / "turnstile.yaml",
    Path("turnstile.yaml"),
)


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: str | None = None


@dataclass
class TurnstileConfig:
    """Complete parsed YAML configuration."""
    controller: ControllerConfig
    logging: LoggingConfig
    source: str | None = None


def load_yaml_config(
    path: str | Path,
    base: ControllerConfig | None = None,
) -> TurnstileConfig:
    """Parse *path* and layer its ``controller`` section over *base*.

    Raises FileNotFoundError if the file does not exist and ConfigError
    if it is not a mapping of the expected shape.
    """
    path = Path(path).expanduser()
    if not path.is_file():
        raise FileNotFoundError(str(path))

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(str(path), f"invalid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(str(path), "top level must be a mapping")

    controller_raw = data.get("controller") or {}
    if not isinstance(controller_raw, dict):
        raise ConfigError(str(path), "'controller' must be a mapping")
    controller = (base or ControllerConfig()).with_overrides(
        controller_raw, source=str(path),
    )

    logging_raw = data.get("logging") or {}
    if not isinstance(logging_raw, dict):
        raise ConfigError(str(path), "'logging' must be a mapping")
    log_config = LoggingConfig(
        level=str(logging_raw.get("level", controller.log_level)).upper(),
        file=logging_raw.get("file"),
    )

    for key in data:
        if key not in {"controller", "logging"}:
            logger.warning("Ignoring unknown top-level section %r in %s", key, path)

    logger.info(
        "Loaded YAML config %s (model=%s, artifact=%s)",
        path, controller.model, controller.artifact_path,
    )
    return TurnstileConfig(controller=controller, logging=log_config, source=str(path))


def discover_config(cwd: str | Path) -> Path | None:
    """Return the first existing config file under *cwd*, if any."""
    root = Path(cwd)
    for candidate in CONFIG_CANDIDATES:
        path = root / candidate
        if path.is_file():
            return path
    return None
