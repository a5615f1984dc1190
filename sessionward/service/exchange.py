from __future__ import annotations

from typing import Any, Callable, Mapping, Optional, Protocol, Union

import httpx

from sessionward.config import Settings
from sessionward.logging import get_logger

logger = get_logger(__name__)

VerifiedClaims = Mapping[str, Any]


class TokenExchangeError(Exception):
    """The provider refused the code, or its ID token failed verification."""


class ProviderUnavailable(Exception):
    """The provider could not be reached or did not answer in time."""


class TokenExchangeClient(Protocol):
    async def exchange(self, code: str, code_verifier: str) -> VerifiedClaims: ...


class IdTokenVerifier(Protocol):
    """Checks an ID token signature (e.g. against the provider JWKS) and returns its claims."""

    async def verify(self, id_token: str) -> VerifiedClaims: ...


class HttpTokenExchangeClient:
    """Authorization-code exchange against the provider's token endpoint.

    The code verifier travels with the code so the provider can check it against
    the challenge it saw at authorization time. Signature checks on the returned
    ID token are delegated to ``verifier``.
    """

    def __init__(
        self,
        settings: Settings,
        verifier: IdTokenVerifier,
        *,
        client_secret: Union[str, Callable[[], str], None] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.verifier = verifier
        self._client_secret = client_secret if client_secret is not None else settings.client_secret
        self._transport = transport

    def _resolve_client_secret(self) -> Optional[str]:
        secret = self._client_secret
        if callable(secret):
            return secret()
        return secret

    async def exchange(self, code: str, code_verifier: str) -> VerifiedClaims:
        if not self.settings.redirect_uri:
            logger.error("oauth_redirect_uri_missing")
            raise TokenExchangeError("No OAuth redirect URI configured")
        token_data = {
            "client_id": self.settings.client_id,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": self.settings.redirect_uri,
            "code_verifier": code_verifier,
        }
        secret = self._resolve_client_secret()
        if secret:
            token_data["client_secret"] = secret

        try:
            async with httpx.AsyncClient(
                timeout=self.settings.provider_timeout_seconds,
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                response = await client.post(
                    self.settings.token_endpoint,
                    data=token_data,
                    headers={"Accept": "application/json"},
                )
                response.raise_for_status()
        except httpx.TimeoutException as exc:
            logger.error("oauth_exchange_timeout", error=str(exc))
            raise ProviderUnavailable("token endpoint timed out") from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            logger.error("oauth_exchange_http_error", status_code=status)
            if status >= 500:
                raise ProviderUnavailable(f"token endpoint returned {status}") from exc
            raise TokenExchangeError(f"token endpoint returned {status}") from exc
        except httpx.TransportError as exc:
            logger.error("oauth_exchange_transport_error", error=str(exc))
            raise ProviderUnavailable("token endpoint unreachable") from exc

        try:
            token_result = response.json()
        except ValueError as exc:
            logger.error("oauth_token_parse_error", error=str(exc))
            raise TokenExchangeError("token endpoint returned invalid JSON") from exc

        id_token = token_result.get("id_token") if isinstance(token_result, dict) else None
        if not isinstance(id_token, str) or not id_token:
            logger.error("oauth_no_id_token")
            raise TokenExchangeError("token response carried no id_token")

        claims = await self.verifier.verify(id_token)
        logger.info("oauth_exchange_success", provider_uid=claims.get("sub"))
        return claims
