"""Multi-provider chat client with a tool-calling agent loop."""

__version__ = "0.1.0"
