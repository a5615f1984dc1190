"""Unit tests for identity claim validation."""

import pytest

from sessionward.service.claims import ClaimFailure, ClaimsValidator
from sessionward.service.errors import AuthErrorKind
from tests.support import CLIENT_ID

NOW = 1_772_442_000.0
NONCE = "5f1c2b9e0a7d4e3f8b6c1d2e3f4a5b6c"


def make_claims(**overrides):
    claims = {
        "iss": "https://appleid.apple.com",
        "aud": CLIENT_ID,
        "sub": "001234.abcdef0123456789.0915",
        "exp": NOW + 600,
        "iat": NOW - 10,
        "nonce": NONCE,
        "email": "relay@privaterelay.appleid.com",
        "email_verified": "true",
        "is_private_email": "true",
    }
    claims.update(overrides)
    return {key: value for key, value in claims.items() if value is not None}


@pytest.fixture
def validator(settings):
    return ClaimsValidator(settings, clock=lambda: NOW)


class TestValidClaims:
    def test_valid_claims_produce_identity(self, validator):
        result = validator.validate(make_claims(), NONCE)

        assert result.ok
        identity = result.unwrap()
        assert identity.external_subject == "001234.abcdef0123456789.0915"
        assert identity.email == "relay@privaterelay.appleid.com"
        assert identity.email_verified is True
        assert identity.is_private_email is True

    def test_audience_list_containing_client_id(self, validator):
        result = validator.validate(make_claims(aud=["other-client", CLIENT_ID]), NONCE)

        assert result.ok

    def test_boolean_claims_as_real_booleans(self, validator):
        result = validator.validate(make_claims(email_verified=False, is_private_email=True), NONCE)

        assert result.unwrap().email_verified is False
        assert result.unwrap().is_private_email is True

    def test_missing_email_is_allowed(self, validator):
        result = validator.validate(make_claims(email=None, email_verified=None), NONCE)

        assert result.ok
        assert result.unwrap().email is None
        assert result.unwrap().email_verified is False

    def test_expiry_within_clock_skew_is_accepted(self, validator, settings):
        """exp slightly in the past still passes inside the skew tolerance."""
        result = validator.validate(make_claims(exp=NOW - settings.clock_skew_seconds + 1), NONCE)

        assert result.ok

    def test_nonce_check_skipped_without_expected_nonce(self, validator):
        assert validator.validate(make_claims(nonce=None), None).ok


class TestRejectedClaims:
    @pytest.mark.parametrize(
        "overrides, reason",
        [
            ({"iss": "https://accounts.example.com"}, ClaimFailure.ISSUER),
            ({"aud": "another.client"}, ClaimFailure.AUDIENCE),
            ({"aud": ["another.client"]}, ClaimFailure.AUDIENCE),
            ({"sub": None}, ClaimFailure.SUBJECT),
            ({"sub": ""}, ClaimFailure.SUBJECT),
            ({"exp": NOW - 31}, ClaimFailure.EXPIRED),
            ({"exp": None}, ClaimFailure.EXPIRED),
            ({"iat": NOW + 31}, ClaimFailure.ISSUED_AT),
            ({"iat": None}, ClaimFailure.ISSUED_AT),
            ({"iat": NOW - 601}, ClaimFailure.TOO_OLD),
            ({"exp": "nan"}, ClaimFailure.EXPIRED),
            ({"exp": float("inf")}, ClaimFailure.EXPIRED),
            ({"iat": "NaN"}, ClaimFailure.ISSUED_AT),
            ({"iat": "-inf"}, ClaimFailure.ISSUED_AT),
            ({"iat": float("nan")}, ClaimFailure.ISSUED_AT),
            ({"nonce": "a-different-nonce"}, ClaimFailure.NONCE),
            ({"nonce": None}, ClaimFailure.NONCE),
        ],
    )
    def test_violations_report_reason(self, validator, overrides, reason):
        result = validator.validate(make_claims(**overrides), NONCE)

        assert result.kind == AuthErrorKind.CLAIM_VALIDATION_FAILED
        assert result.error.reason == reason
        assert result.error.status_code == 401
        assert not result.error.requires_reauth

    def test_issuer_checked_before_audience(self, validator):
        result = validator.validate(
            make_claims(iss="https://evil.example.com", aud="another.client"), NONCE
        )

        assert result.error.reason == ClaimFailure.ISSUER

    def test_string_timestamps_are_parsed(self, validator):
        result = validator.validate(make_claims(exp=str(NOW + 60), iat=str(NOW)), NONCE)

        assert result.ok

    def test_boolean_timestamps_are_rejected(self, validator):
        result = validator.validate(make_claims(exp=True), NONCE)

        assert result.error.reason == ClaimFailure.EXPIRED

    def test_non_finite_expiry_and_issue_time_are_rejected(self, validator):
        result = validator.validate(make_claims(exp="nan", iat="nan"), NONCE)

        assert not result.ok
        assert result.error.reason == ClaimFailure.EXPIRED
