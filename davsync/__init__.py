"""Keep named local files in step with resources on a WebDAV server."""

__version__ = "0.1.0"
