"""User Directory module.

Read/write access to the user attributes the realtime core depends on
(``status`` and ``hidePresence``) plus the lookups used by the chat
endpoints (by id, by username, search).
"""
