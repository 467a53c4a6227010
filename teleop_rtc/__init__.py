"""Operator-side WebRTC signaling for remote robot video sessions."""

__version__ = "0.1.0"
