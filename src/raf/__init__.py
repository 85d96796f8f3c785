"""RAF: run planned project tasks through an AI agent, one task at a time."""

__version__ = "0.4.0"
