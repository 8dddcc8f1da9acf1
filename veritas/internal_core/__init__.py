from .config import LiveConfig, load_config
from .session_store import InMemorySessionStore

__all__ = ["LiveConfig", "load_config", "InMemorySessionStore"]
