"""Transport adapters for the realtime gateway.

Learn: every adapter implements the same Transport contract, so the
gateway never branches on which wire protocol a session uses.
"""

from tatu.realtime.transports.base import Transport, normalize_payload

__all__ = ["Transport", "normalize_payload"]
