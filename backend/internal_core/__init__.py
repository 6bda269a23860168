from .config import ServiceConfig, load_config

__all__ = ["ServiceConfig", "load_config"]
