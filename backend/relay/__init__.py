"""Chat relay backend.

Modules:
    - chat: presence, scoped history, routing and the WebSocket gateway
    - config: YAML-backed settings
    - client: reconnecting asyncio client
"""
