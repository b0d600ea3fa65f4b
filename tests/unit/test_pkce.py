"""Unit tests for PKCE verifier checks."""

import pytest

from authserver.idp.pkce import (
    compute_challenge,
    is_valid_verifier,
    verify_code_verifier,
)


class TestComputeChallenge:
    def test_rfc7636_appendix_b_vector(self):
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        assert compute_challenge(verifier, "S256") == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_plain_returns_verifier(self):
        assert compute_challenge("abc", "plain") == "abc"

    def test_unknown_method(self):
        assert compute_challenge("abc", "S512") is None

    def test_no_padding(self):
        assert "=" not in compute_challenge("x" * 43, "S256")


class TestVerifyCodeVerifier:
    verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
    challenge = "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_s256_match(self):
        assert verify_code_verifier(self.verifier, self.challenge, "S256")

    def test_s256_mismatch(self):
        assert not verify_code_verifier(self.verifier + "x", self.challenge, "S256")

    def test_plain_match(self):
        assert verify_code_verifier("plain-verifier", "plain-verifier", "plain")

    def test_plain_is_default_method(self):
        assert verify_code_verifier("plain-verifier", "plain-verifier", None)

    def test_s256_challenge_does_not_verify_as_plain(self):
        assert not verify_code_verifier(self.challenge, self.challenge, "S256")

    def test_unknown_method_fails(self):
        assert not verify_code_verifier(self.verifier, self.challenge, "S512")

    @pytest.mark.parametrize("verifier", [None, ""])
    def test_missing_verifier(self, verifier):
        assert not verify_code_verifier(verifier, self.challenge, "S256")

    def test_non_ascii_verifier(self):
        assert not verify_code_verifier("vérifier" * 10, self.challenge, "S256")


class TestVerifierSyntax:
    @pytest.mark.parametrize(
        "verifier,expected",
        [
            ("a" * 43, True),
            ("a" * 128, True),
            ("a" * 42, False),
            ("a" * 129, False),
            ("A-Z.a_z~0" * 5, True),
            ("a" * 42 + "!", False),
            ("", False),
        ],
    )
    def test_is_valid_verifier(self, verifier, expected):
        assert is_valid_verifier(verifier) is expected
