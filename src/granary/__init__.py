"""Local-first coordination hub for agentic work."""

__version__ = "0.1.0"
