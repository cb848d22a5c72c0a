"""Token budget allocation and streaming report assembly for thinking-enabled analysis tools."""

__version__ = "0.1.0"
