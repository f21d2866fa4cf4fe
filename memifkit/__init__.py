"""Slave-side memif client, a small packet codec, and echo responder and sender tools."""

__version__ = "0.1.0"
__all__ = ["connection", "echo_client", "echo_sender", "layout", "messages", "packets"]