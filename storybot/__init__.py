"""Round-robin story bot: collaborative turn-based story writing for Discord."""

__version__ = "1.0.0"
