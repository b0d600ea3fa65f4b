"""
Protocol constants: lifetimes, grant types, scope catalogue.
"""

AUTH_CODE_EXPIRY_SECONDS = 10 * 60
ACCESS_TOKEN_EXPIRY_SECONDS = 60 * 60
REFRESH_TOKEN_EXPIRY_SECONDS = 30 * 24 * 60 * 60
ID_TOKEN_EXPIRY_SECONDS = 60 * 60
DEVICE_CODE_EXPIRY_SECONDS = 15 * 60
DEVICE_MIN_POLL_INTERVAL = 5
DEVICE_SLOW_DOWN_INCREMENT = 5

GRANT_AUTHORIZATION_CODE = "authorization_code"
GRANT_REFRESH_TOKEN = "refresh_token"
GRANT_DEVICE_CODE = "urn:ietf:params:oauth:grant-type:device_code"
SUPPORTED_GRANT_TYPES = (GRANT_AUTHORIZATION_CODE, GRANT_REFRESH_TOKEN, GRANT_DEVICE_CODE)

TOKEN_TYPE_BEARER = "Bearer"

# Standard scopes with consent-screen descriptions.
STANDARD_SCOPES = {
    "openid": "Required for OpenID Connect",
    "profile": "Access to basic profile information (name, username, avatar)",
    "email": "Access to email address",
    "offline_access": "Request a refresh token for long-term access",
    "repo:read": "Clone and fetch repositories",
    "repo:write": "Push to repositories",
    "repo:admin": "Manage repository settings",
    "mcp:tools": "Access MCP tool execution",
    "mcp:tasks": "Manage agent tasks (create, read, update)",
    "mcp:threads": "Thread continuity operations (create, read, bridge)",
    "mcp:execute": "Execute tasks on agent executors",
}

DEFAULT_CLIENT_SCOPES = ["openid", "profile", "email"]
DEFAULT_CLIENT_GRANT_TYPES = [GRANT_AUTHORIZATION_CODE, GRANT_REFRESH_TOKEN]

# Dynamically registered clients.
DCR_DEFAULT_SCOPES = [
    "openid",
    "profile",
    "email",
    "offline_access",
    "mcp:tools",
    "mcp:tasks",
    "mcp:threads",
]
DCR_ALLOWED_SCOPES = DCR_DEFAULT_SCOPES + [
    "mcp:execute",
    "repo:read",
    "repo:write",
    "repo:admin",
]
DCR_AUTH_METHODS = ("client_secret_basic", "client_secret_post", "none")
DCR_MAX_REDIRECT_URIS = 10

# Device flow.
DEFAULT_DEVICE_SCOPES = ["repo:read", "repo:write", "profile", "offline_access"]
USER_CODE_CHARS = "BCDFGHJKMNPQRSTVWXYZ23456789"

CLAIMS_SUPPORTED = [
    "sub",
    "iss",
    "aud",
    "exp",
    "iat",
    "auth_time",
    "nonce",
    "name",
    "preferred_username",
    "picture",
    "email",
    "email_verified",
    "updated_at",
]
