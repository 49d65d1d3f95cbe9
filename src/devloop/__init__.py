"""devloop: keep a development server in sync with an incremental build."""

__version__ = "0.1.0"
