"""voxrelay — credential-injecting HTTP/WebSocket relay for the voice detection demo."""

__version__ = "0.1.0"
