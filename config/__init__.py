"""Configuration module for loading and managing application settings"""
from typing import Dict, Any, Optional
import os

from .lib.load_settings_conf import (
    DEFAULTS,
    SettingsError,
    load_settings_conf,
    validate_settings,
)

__all__ = ['settings_conf', 'load_config', 'SettingsError', 'DEFAULTS']

# Directory holding settings.conf, current directory unless overridden
SETTINGS_DIR_ENV = 'MARKETPLACE_SETTINGS_DIR'


def load_config(settings_path: Optional[str] = None) -> Dict[str, Any]:
    """Load and validate settings.

    Args:
        settings_path: Optional directory containing settings.conf. If not provided,
                       uses $MARKETPLACE_SETTINGS_DIR or the current directory.

    Returns:
        Dictionary of typed settings
    """
    path = settings_path or os.environ.get(SETTINGS_DIR_ENV, '.')
    return validate_settings(load_settings_conf(path))


try:
    settings_conf: Dict[str, Any] = load_config()
except SettingsError as e:
    # Re-raise the error but provide more context
    raise SettingsError(
        f"Configuration Error\n"
        "=================\n\n"
        f"{str(e)}\n\n"
        "Please ensure settings.conf is properly configured.\n"
        "Run `python -m config` to write an example file."
    )
