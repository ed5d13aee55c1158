"""Core: configuration and engine bootstrap.

Import the engine from mailsync.core.engine; this package only re-exports
settings so that low-level modules can depend on it without cycles.
"""

from mailsync.core.config import Settings, get_settings

__all__ = ["Settings", "get_settings"]
