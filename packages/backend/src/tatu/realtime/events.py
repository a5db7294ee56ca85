"""Realtime event names.

Centralized so adapters, the gateway and tests agree on the wire names.
"""

# ─── Client → server ─────────────────────────────────────

AUTHENTICATE = "authenticate"
JOIN_CONVERSATION = "join_conversation"
LEAVE_CONVERSATION = "leave_conversation"
TYPING_START = "typing_start"
TYPING_STOP = "typing_stop"
SEND_MESSAGE = "send_message"
MARK_MESSAGES_READ = "mark_messages_read"
GET_MESSAGES = "get_messages"
GET_CONVERSATIONS = "get_conversations"

CLIENT_EVENTS = (
    AUTHENTICATE,
    JOIN_CONVERSATION,
    LEAVE_CONVERSATION,
    TYPING_START,
    TYPING_STOP,
    SEND_MESSAGE,
    MARK_MESSAGES_READ,
    GET_MESSAGES,
    GET_CONVERSATIONS,
)

# Events whose payload is just a conversation id
CONVERSATION_EVENTS = (
    JOIN_CONVERSATION,
    LEAVE_CONVERSATION,
    TYPING_START,
    TYPING_STOP,
    MARK_MESSAGES_READ,
)

# ─── Server → client ─────────────────────────────────────

AUTHENTICATED = "authenticated"
AUTHENTICATION_ERROR = "authentication_error"
USER_TYPING = "user_typing"
USER_STOPPED_TYPING = "user_stopped_typing"
NEW_MESSAGE = "new_message"
MESSAGE_SENT = "message_sent"
MESSAGES_READ = "messages_read"
MESSAGES_MARKED_READ = "messages_marked_read"
CONVERSATION_UPDATED = "conversation_updated"
MESSAGES_LOADED = "messages_loaded"
CONVERSATIONS_LOADED = "conversations_loaded"
ERROR = "error"

# ─── Raw WebSocket keepalive frames ──────────────────────

PING = "ping"
PONG = "pong"


def conversation_room(conversation_id) -> str:
    """Room name for one conversation."""
    return f"conversation:{conversation_id}"
