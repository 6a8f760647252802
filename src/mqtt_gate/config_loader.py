"""
Configuration Loader.

Responsible for reading the config.yaml file and applying environment overrides.
"""
import os
import yaml
import logging
from pathlib import Path
from typing import Dict, Any, Mapping, Optional

logger = logging.getLogger(__name__)

# Environment variable -> (section, key, converter)
ENV_OVERRIDES = {
    "GATE_MQTT_HOST": ("mqtt", "host", str),
    "GATE_MQTT_PORT": ("mqtt", "port", int),
    "GATE_MQTT_USERNAME": ("mqtt", "username", str),
    "GATE_MQTT_PASSWORD": ("mqtt", "password", str),
}

def load_config(config_path: str = "config.yaml") -> Dict[str, Any]:
    """
    Loads the YAML configuration file.
    """
    path = Path(config_path)
    if not path.exists():
        logger.warning(f"Config file not found at {path}. Using defaults.")
        return {}

    try:
        with open(path, 'r') as f:
            config = yaml.safe_load(f) or {}
            logger.info(f"Loaded configuration from {path}")
            return config
    except Exception as e:
        logger.error(f"Failed to parse config file: {e}")
        raise

def apply_env_overrides(config: Dict[str, Any], environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """
    Overlays GATE_MQTT_* environment variables onto the loaded config.
    Secrets are expected to come from the environment rather than the YAML file.
    """
    environ = os.environ if environ is None else environ
    for variable, (section, key, convert) in ENV_OVERRIDES.items():
        value = environ.get(variable)
        if not value:
            continue
        try:
            config.setdefault(section, {})[key] = convert(value)
        except ValueError:
            logger.error(f"Ignoring {variable}: cannot convert {value!r}")
            continue
        logger.debug(f"Config {section}.{key} overridden from {variable}")
    return config
