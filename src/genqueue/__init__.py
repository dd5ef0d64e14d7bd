"""Persistent image generation queue with live websocket updates."""

__version__ = "0.1.0"
