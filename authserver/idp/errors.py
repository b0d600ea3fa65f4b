"""
OAuth2 protocol errors (RFC 6749 section 5.2, RFC 7591 section 3.2.2, RFC 8628 section 3.5).
"""

from typing import Optional


class OAuthError(Exception):
    """A protocol error returned verbatim to the client as {error, error_description}."""

    def __init__(
        self,
        error: str,
        description: Optional[str] = None,
        status_code: int = 400,
    ):
        self.error = error
        self.description = description
        self.status_code = status_code
        super().__init__(f"{error}: {description}" if description else error)

    def to_dict(self) -> dict:
        body = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body


class InvalidRequestError(OAuthError):
    def __init__(self, description: str = "Malformed request"):
        super().__init__("invalid_request", description)


class InvalidClientError(OAuthError):
    def __init__(self, description: str = "Invalid client credentials"):
        super().__init__("invalid_client", description, status_code=401)


class InvalidGrantError(OAuthError):
    def __init__(self, description: str = "Invalid or expired grant"):
        super().__init__("invalid_grant", description)


class InvalidScopeError(OAuthError):
    def __init__(self, description: str = "None of the requested scopes are allowed"):
        super().__init__("invalid_scope", description)


class UnauthorizedClientError(OAuthError):
    def __init__(self, description: str = "Grant type not enabled for this client"):
        super().__init__("unauthorized_client", description)


class UnsupportedGrantTypeError(OAuthError):
    def __init__(self, description: str = "Unsupported grant type"):
        super().__init__("unsupported_grant_type", description)


class ServerError(OAuthError):
    def __init__(self, description: str = "The server encountered an unexpected condition"):
        super().__init__("server_error", description, status_code=500)


class InvalidClientMetadataError(OAuthError):
    def __init__(self, description: str = "Invalid client metadata"):
        super().__init__("invalid_client_metadata", description)


class InvalidRedirectUriError(OAuthError):
    def __init__(self, description: str = "Invalid redirect_uri"):
        super().__init__("invalid_redirect_uri", description)


class DeviceFlowError(OAuthError):
    """authorization_pending, slow_down, access_denied, expired_token."""

    def __init__(self, error: str, description: str):
        super().__init__(error, description)
