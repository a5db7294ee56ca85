"""Identity verification.

Token issuance lives with the accounts service; this package only turns a
bearer credential into a verified user id, for REST requests and for the
realtime `authenticate` handshake alike.
"""
