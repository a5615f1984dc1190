import pytest

from sessionward.service.errors import AuthError, AuthErrorKind, AuthResult


class TestAuthError:
    @pytest.mark.parametrize(
        "error, status",
        [
            (AuthError.invalid_state(), 401),
            (AuthError.invalid_pkce(), 400),
            (AuthError.provider_auth_failed(), 401),
            (AuthError.claim_validation_failed("aud"), 401),
            (AuthError.account_locked(900), 423),
            (AuthError.invalid_token(), 401),
            (AuthError.token_theft_detected(), 401),
            (AuthError.device_mismatch(), 401),
            (AuthError.max_sessions_reached(5), 409),
            (AuthError.unavailable(), 503),
        ],
    )
    def test_status_codes(self, error, status):
        assert error.status_code == status

    def test_only_lock_and_theft_force_reauthentication(self):
        forcing = {kind for kind in AuthErrorKind if AuthError(kind, "x").requires_reauth}

        assert forcing == {AuthErrorKind.ACCOUNT_LOCKED, AuthErrorKind.TOKEN_THEFT_DETECTED}
        assert AuthError.unavailable().retryable

    def test_unsettled_refresh_is_unavailable_but_forces_reauthentication(self):
        error = AuthError.refresh_unsettled(detail={"account_id": "acct-1"})

        assert error.status_code == 503
        assert error.requires_reauth
        assert not error.retryable
        assert error.to_dict() == {
            "code": "unavailable",
            "message": "Session refresh did not complete; sign in again",
            "requires_reauth": True,
        }

    def test_to_dict_keeps_internal_detail_private(self):
        error = AuthError.token_theft_detected(detail={"account_id": "acct-1", "revoked_sessions": 3})

        assert error.to_dict() == {
            "code": "token_theft_detected",
            "message": "Refresh token reuse detected",
        }

    def test_to_dict_includes_reason_and_retry(self):
        assert AuthError.claim_validation_failed("nonce").to_dict()["reason"] == "nonce"
        assert AuthError.account_locked(120).to_dict()["retry_after_seconds"] == 120


class TestAuthResult:
    def test_success(self):
        result = AuthResult.success(42)

        assert result.ok
        assert result.kind is None
        assert result.unwrap() == 42

    def test_failure_unwrap_raises(self):
        result = AuthResult.failure(AuthError.invalid_token())

        assert not result.ok
        assert result.kind == AuthErrorKind.INVALID_TOKEN
        with pytest.raises(ValueError):
            result.unwrap()
