"""Application version string shared by the API and the CLI."""

APP_VERSION = "0.1.0"

__all__ = ["APP_VERSION"]
