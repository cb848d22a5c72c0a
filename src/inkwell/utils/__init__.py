"""Shared helpers (file IO, logging, text cleanup)."""
