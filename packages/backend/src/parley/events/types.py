"""Event type constants.

Centralizing event types as constants prevents typos and makes it easy
to discover every state change the service records.
"""

# ─── Negotiation lifecycle ───────────────────────────────

CONVERSATION_CREATED = "negotiation.conversation_created"
MESSAGE_RECORDED = "negotiation.message_recorded"
MESSAGES_READ = "negotiation.messages_read"
CONVERSATION_COMPLETED = "negotiation.completed"
CONVERSATION_STATUS_CHANGED = "negotiation.status_changed"
