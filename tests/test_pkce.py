"""Unit tests for the PKCE challenge store.

Tests for:
- S256 challenge derivation
- Single-use state redemption
- Expiry of pending sign-in requests
- Storage failures surfacing as Unavailable
"""

import time

from sessionward.service.errors import AuthErrorKind
from sessionward.service.pkce import (
    PkceChallengeStore,
    constant_time_equals,
    derive_code_challenge,
    generate_code_verifier,
    is_valid_code_verifier,
)
from sessionward.storage.errors import StorageUnavailable
from sessionward.storage.memory import MemoryStore
from tests.support import make_settings


class UnreachableStore(MemoryStore):
    def take_once(self, state):
        raise StorageUnavailable("pending store offline")


class SlowStore(MemoryStore):
    def put(self, request, ttl_seconds):
        time.sleep(0.3)
        super().put(request, ttl_seconds)


class TestChallengeDerivation:
    def test_rfc7636_appendix_b_vector(self):
        """The S256 challenge matches the worked example from RFC 7636."""
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        assert derive_code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_generated_verifier_is_valid(self):
        verifier = generate_code_verifier()
        assert len(verifier) == 43
        assert "=" not in verifier
        assert is_valid_code_verifier(verifier)

    def test_verifiers_are_unique(self):
        assert len({generate_code_verifier() for _ in range(50)}) == 50

    def test_verifier_format_rejects_short_and_illegal_values(self):
        assert not is_valid_code_verifier("short")
        assert not is_valid_code_verifier("a" * 129)
        assert not is_valid_code_verifier("a" * 42 + "!")
        assert is_valid_code_verifier("a" * 128)

    def test_constant_time_equals_handles_missing_values(self):
        assert constant_time_equals("abc", "abc")
        assert not constant_time_equals("abc", "abd")
        assert not constant_time_equals(None, "abc")
        assert not constant_time_equals("ünïcode", "unicode")


class TestPkceChallengeStore:
    async def test_begin_stores_verifier_and_exposes_only_challenge(self, memory_store, settings, clock):
        """Only the challenge leaves the store; the verifier stays pending."""
        pkce = PkceChallengeStore(memory_store, settings, clock=clock)

        result = await pkce.begin()

        assert result.ok
        challenge = result.unwrap()
        assert challenge.code_challenge_method == "S256"
        stored = memory_store.pending[challenge.state]
        assert derive_code_challenge(stored.code_verifier) == challenge.code_challenge
        assert stored.nonce == challenge.nonce
        assert challenge.expires_at == stored.expires_at
        assert (stored.expires_at - clock.now).total_seconds() == settings.pending_auth_ttl_seconds

    async def test_complete_returns_pending_request_once(self, memory_store, settings, clock):
        """A state can be redeemed exactly once."""
        pkce = PkceChallengeStore(memory_store, settings, clock=clock)
        challenge = (await pkce.begin()).unwrap()

        first = await pkce.complete(challenge.state)
        second = await pkce.complete(challenge.state)

        assert first.ok
        assert first.unwrap().nonce == challenge.nonce
        assert second.kind == AuthErrorKind.INVALID_STATE

    async def test_unknown_and_empty_state_are_rejected(self, memory_store, settings, clock):
        pkce = PkceChallengeStore(memory_store, settings, clock=clock)
        await pkce.begin()

        assert (await pkce.complete("not-a-real-state")).kind == AuthErrorKind.INVALID_STATE
        assert (await pkce.complete("")).kind == AuthErrorKind.INVALID_STATE

    async def test_expired_state_is_rejected_and_consumed(self, memory_store, settings, clock):
        """An expired request fails and is gone afterwards."""
        pkce = PkceChallengeStore(memory_store, settings, clock=clock)
        challenge = (await pkce.begin()).unwrap()

        clock.advance(seconds=settings.pending_auth_ttl_seconds + 1)
        result = await pkce.complete(challenge.state)

        assert result.kind == AuthErrorKind.INVALID_STATE
        assert challenge.state not in memory_store.pending

    async def test_state_is_redeemable_until_ttl(self, memory_store, settings, clock):
        pkce = PkceChallengeStore(memory_store, settings, clock=clock)
        challenge = (await pkce.begin()).unwrap()

        clock.advance(seconds=settings.pending_auth_ttl_seconds - 1)

        assert (await pkce.complete(challenge.state)).ok

    async def test_client_supplied_verifier_must_match(self, memory_store, settings, clock):
        """A mismatched verifier fails InvalidPkce; the state is still consumed."""
        pkce = PkceChallengeStore(memory_store, settings, clock=clock)
        challenge = (await pkce.begin()).unwrap()

        result = await pkce.complete(challenge.state, generate_code_verifier())

        assert result.kind == AuthErrorKind.INVALID_PKCE
        assert result.error.status_code == 400
        assert (await pkce.complete(challenge.state)).kind == AuthErrorKind.INVALID_STATE

    async def test_client_supplied_verifier_accepted_when_correct(self, memory_store, settings, clock):
        pkce = PkceChallengeStore(memory_store, settings, clock=clock)
        challenge = (await pkce.begin()).unwrap()
        verifier = memory_store.pending[challenge.state].code_verifier

        result = await pkce.complete(challenge.state, verifier)

        assert result.ok
        assert result.unwrap().code_verifier == verifier

    async def test_malformed_verifier_is_rejected(self, memory_store, settings, clock):
        pkce = PkceChallengeStore(memory_store, settings, clock=clock)
        challenge = (await pkce.begin()).unwrap()

        result = await pkce.complete(challenge.state, "too-short")

        assert result.kind == AuthErrorKind.INVALID_PKCE

    async def test_sweep_removes_only_expired_requests(self, memory_store, settings, clock):
        pkce = PkceChallengeStore(memory_store, settings, clock=clock)
        await pkce.begin()
        await pkce.begin()
        clock.advance(seconds=settings.pending_auth_ttl_seconds + 1)
        fresh = (await pkce.begin()).unwrap()

        removed = await pkce.sweep_expired()

        assert removed == 2
        assert list(memory_store.pending) == [fresh.state]


class TestPkceStorageFailures:
    async def test_storage_error_is_unavailable(self, settings, clock):
        pkce = PkceChallengeStore(UnreachableStore(), settings, clock=clock)

        result = await pkce.complete("some-state")

        assert result.kind == AuthErrorKind.UNAVAILABLE
        assert result.error.retryable

    async def test_storage_timeout_is_unavailable(self, clock):
        """A repository call past its deadline never counts as success."""
        settings = make_settings(repository_timeout_seconds=0.05)
        pkce = PkceChallengeStore(SlowStore(), settings, clock=clock)

        result = await pkce.begin()

        assert result.kind == AuthErrorKind.UNAVAILABLE
