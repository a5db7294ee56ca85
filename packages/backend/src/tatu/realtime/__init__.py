"""Realtime messaging — one gateway, two transports.

Clients connect over Socket.IO (rooms are native) or a raw WebSocket
(rooms are emulated). Both adapters decode their framing into the same
event names and hand them to the RealtimeGateway, which owns sessions,
presence and room membership, calls the conversation service, and fans
results out to every affected user whichever transport they are on.
"""
