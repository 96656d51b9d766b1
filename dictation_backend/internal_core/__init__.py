
from .config import ServiceConfig, load_config
from .logging_setup import configure_logging

__all__ = ["ServiceConfig", "load_config", "configure_logging"]
