"""Logging and metrics setup shared by every entry point."""
