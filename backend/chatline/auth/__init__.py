"""Authentication module (bearer credentials).

Validates the JWT presented on every HTTP request and once per realtime
connection. Account management (signup, login, password reset, 2FA)
lives outside this service.
"""
