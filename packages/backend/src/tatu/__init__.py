"""TATU — tattoo client/artist marketplace backend.

This package hosts the conversational messaging core: conversations and
messages over a relational store, and a realtime gateway that fans events
out to clients connected over Socket.IO or a raw WebSocket.
"""

__version__ = "0.1.0"
