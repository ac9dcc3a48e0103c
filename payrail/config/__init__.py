"""Configuration package for payrail."""
from .settings import ChainConfig, FiatServiceConfig, Settings, TokenConfig, get_settings

__all__ = ["ChainConfig", "FiatServiceConfig", "Settings", "TokenConfig", "get_settings"]
