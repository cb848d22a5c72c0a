"""Service layer helpers (settings, run registry, telemetry)."""
