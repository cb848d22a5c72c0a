"""Command line helpers runnable with ``python -m``."""
