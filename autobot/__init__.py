from .bot import AutoBot
from .config import RuntimeConfig, load_config

__all__ = ["AutoBot", "RuntimeConfig", "load_config"]
