"""Real-time infrastructure — presence, connection handles, job-status flags.

Events flow in two directions over one WebSocket per device:
1. Client → gateway: registration, negotiation messages, read receipts
2. Delivery engine → connection handle: pushed messages and notifications

Presence is volatile. A restart forgets every connection; clients
rebuild it by reconnecting and registering again.
"""
