"""Mneme: offline-first chat-style notes with server sync."""

__version__ = "0.1.0"
