"""Share local files and directories over HTTP through short random links."""

__version__ = "0.3.0"
