"""Shared helpers: checksums and frame dumps."""
