"""Observability module for Chatflow."""

from chatflow.observability.logging import setup_logging

__all__ = ["setup_logging"]
