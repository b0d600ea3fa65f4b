"""
Identity provider module for OAuth2/OpenID Connect functionality.

This module provides the authorization code, refresh token and device grants,
client registration, token revocation/introspection and consent tracking.
"""
