"""
Pizza Telemetry - metrics export and log shipping for the pizza service
"""

__version__ = "0.4.0"

from .config import ConfigError, load_config, validate_config
from .telemetry import Telemetry

__all__ = [
    "Telemetry",
    "load_config",
    "validate_config",
    "ConfigError",
]
