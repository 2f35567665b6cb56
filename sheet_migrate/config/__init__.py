from .loader import ConfigError, build_config, load_config

__all__ = ["ConfigError", "build_config", "load_config"]
