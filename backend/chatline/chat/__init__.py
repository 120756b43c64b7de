"""Realtime message delivery and presence.

Components:
    - ConnectionRegistry: user id -> live connections (registry.py)
    - PresenceTracker: online/offline transitions and broadcasts (presence.py)
    - DeliveryRouter: recipient resolution and fan-out (delivery.py)
    - ReadStateEngine: send, mark-read and unread accounting (read_state.py)
    - GroupService: group lifecycle events (groups.py)
    - ConversationStore: DuckDB persistence for messages and groups (store.py)
"""
