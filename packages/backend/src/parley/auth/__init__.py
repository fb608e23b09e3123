"""Authentication for the REST API and the WebSocket gateway.

Tokens are issued by the platform's account service; this service only
verifies them. The same bearer token is forwarded to the identity service
when display names are looked up.
"""
