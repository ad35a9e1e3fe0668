"""homebot - messaging bridge connection manager."""

__version__ = "0.1.0"
__logo__ = "📟"
