"""Version information for CamHome."""

APP_VERSION = "1.2.0"

__all__ = ["APP_VERSION"]
