"""Ambient runtime support: logging, telemetry, metrics, audit."""
