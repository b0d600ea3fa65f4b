"""
PKCE (RFC 7636) code verifier checks.
"""

import base64
import hashlib
import hmac
import re
from typing import Optional

S256 = "S256"
PLAIN = "plain"
SUPPORTED_METHODS = (S256, PLAIN)

_VERIFIER_RE = re.compile(r"^[A-Za-z0-9\-._~]{43,128}$")


def is_valid_verifier(verifier: str) -> bool:
    """43-128 characters from the unreserved set."""
    return bool(verifier) and _VERIFIER_RE.match(verifier) is not None


def compute_challenge(verifier: str, method: str = S256) -> Optional[str]:
    """BASE64URL(SHA256(verifier)) without padding for S256, the verifier itself for plain."""
    if method == S256:
        digest = hashlib.sha256(verifier.encode("ascii")).digest()
        return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    if method == PLAIN:
        return verifier
    return None


def verify_code_verifier(verifier: Optional[str], challenge: str, method: Optional[str]) -> bool:
    if not verifier or not challenge:
        return False
    try:
        expected = compute_challenge(verifier, method or PLAIN)
    except UnicodeEncodeError:
        return False
    if expected is None:
        return False
    return hmac.compare_digest(expected.encode(), challenge.encode())
