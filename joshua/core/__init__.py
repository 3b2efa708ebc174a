"""Core infrastructure: exceptions, logging, telemetry."""
