"""Configuration loading and validation."""

from pathlib import Path

import yaml
from pydantic import ValidationError

from tableguard.config.schema import TableguardConfig

DEFAULT_CONFIG_PATH = Path.home() / ".tableguard" / "tableguard.yaml"


class ConfigError(Exception):
    """Configuration loading or validation error."""


def load_config(path: Path | str | None = None) -> TableguardConfig:
    """Load and validate tableguard configuration from a YAML file.

    Args:
        path: Path to config file. If None, tries the default location.
              If the file doesn't exist, returns the default config.

    Returns:
        Validated configuration object

    Raises:
        ConfigError: If the config file exists but is invalid
    """
    if path is None:
        path = DEFAULT_CONFIG_PATH
    path = Path(path).expanduser()

    # Zero-config mode: if file doesn't exist, use all defaults
    if not path.exists():
        return TableguardConfig()

    try:
        with open(path) as f:
            config_data = yaml.safe_load(f)

        if config_data is None:
            return TableguardConfig()

        return TableguardConfig(**config_data)

    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    except ValidationError as e:
        raise ConfigError(f"Configuration validation failed: {e}") from e
    except Exception as e:
        raise ConfigError(f"Failed to load config from {path}: {e}") from e


def save_config(config: TableguardConfig, path: Path | str | None = None) -> None:
    """Save configuration to a YAML file.

    Args:
        config: Configuration object to save
        path: Destination path. If None, uses the default location.
    """
    path = DEFAULT_CONFIG_PATH if path is None else Path(path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)

    config_dict = config.model_dump(mode="json")

    with open(path, "w") as f:
        yaml.safe_dump(config_dict, f, default_flow_style=False, sort_keys=False)
