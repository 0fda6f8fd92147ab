"""Core configuration, logging and security utilities."""
