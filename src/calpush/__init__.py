"""Google Calendar push-channel watcher."""

__version__ = "1.0.0"
