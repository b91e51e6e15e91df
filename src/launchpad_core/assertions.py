"""Federated identity assertion verification.

Assertions are RS256-signed JWTs issued by the CI identity provider.
Verification is fail-closed:

- the signature is always checked against the provider's JWKS
- only RS256 is accepted, so ``none``/HMAC confusion is impossible
- a ``kid`` header is required, so the signing key is never ambiguous
- ``exp``, ``iss``, ``aud`` and ``sub`` must be present

Audience, issuer and subject are returned as claims, not checked here; the
authorization chain compares them with the environment's trust condition.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any

import httpx
import jwt
import structlog
from jwt.algorithms import RSAAlgorithm

from launchpad_core.errors import AssertionVerificationError
from launchpad_core.schemas.authorization import AssertionClaims

logger = structlog.get_logger(__name__)

_ALLOWED_ALGORITHMS: frozenset[str] = frozenset({"RS256"})
_REQUIRED_CLAIMS = ["exp", "iss", "aud", "sub"]


class AssertionVerifier:
    """Verifies identity assertions against a JWKS.

    Either ``jwks_url`` (fetched lazily, cached) or a static ``jwks`` document
    must be supplied.

    Examples:
        >>> verifier = AssertionVerifier(
        ...     jwks_url="https://token.actions.githubusercontent.com/.well-known/jwks",
        ... )
        >>> claims = verifier.verify(token)
        >>> claims.subject
        'repo:acme/site:ref:refs/heads/main'
    """

    def __init__(
        self,
        jwks_url: str | None = None,
        *,
        jwks: dict[str, Any] | None = None,
        verify_ssl: bool = True,
        timeout: float = 10.0,
        leeway_seconds: float = 0.0,
    ) -> None:
        """Initialize AssertionVerifier.

        Args:
            jwks_url: Where to fetch the provider's JWKS.
            jwks: Static JWKS document, used instead of fetching.
            verify_ssl: Verify TLS when fetching the JWKS.
            timeout: HTTP timeout in seconds.
            leeway_seconds: Clock skew tolerated on ``exp``.
        """
        self._jwks_url = jwks_url
        self._verify_ssl = verify_ssl
        self._timeout = timeout
        self._leeway = leeway_seconds
        self._lock = threading.Lock()
        self._keys_by_kid: dict[str, dict[str, Any]] | None = None
        if jwks is not None:
            self._keys_by_kid = self._index_keys(jwks)

    def verify(self, token: str) -> AssertionClaims:
        """Verify ``token`` and return its claims.

        Raises:
            AssertionVerificationError: If the token is missing, malformed,
                signed with an unknown key or a disallowed algorithm, missing
                a required claim, or expired (``expired=True``).
        """
        if not token:
            raise AssertionVerificationError("assertion is required")

        try:
            header = jwt.get_unverified_header(token)
        except jwt.exceptions.DecodeError as e:
            raise AssertionVerificationError(f"malformed assertion: {e}") from e

        kid = header.get("kid")
        if not kid:
            raise AssertionVerificationError("assertion missing required 'kid' header")
        alg = header.get("alg")
        if alg not in _ALLOWED_ALGORITHMS:
            raise AssertionVerificationError(
                f"algorithm '{alg}' not allowed; allowed: {sorted(_ALLOWED_ALGORITHMS)}"
            )

        jwk = self._key_for(kid)
        if jwk is None:
            raise AssertionVerificationError(f"key with ID '{kid}' not found in JWKS")

        try:
            claims: dict[str, Any] = jwt.decode(
                token,
                key=RSAAlgorithm.from_jwk(jwk),
                algorithms=list(_ALLOWED_ALGORITHMS),
                leeway=self._leeway,
                options={
                    "verify_signature": True,
                    "verify_exp": True,
                    "verify_aud": False,
                    "verify_iss": False,
                    "require": _REQUIRED_CLAIMS,
                },
            )
        except jwt.exceptions.ExpiredSignatureError as e:
            logger.warning("assertion_expired", kid=kid)
            raise AssertionVerificationError("assertion has expired", expired=True) from e
        except jwt.exceptions.InvalidSignatureError as e:
            logger.warning("assertion_bad_signature", kid=kid)
            raise AssertionVerificationError("invalid assertion signature") from e
        except jwt.exceptions.MissingRequiredClaimError as e:
            raise AssertionVerificationError(f"missing required claim: {e.claim}") from e
        except jwt.exceptions.PyJWTError as e:
            raise AssertionVerificationError(f"assertion rejected: {e}") from e

        return AssertionClaims(
            issuer=str(claims["iss"]),
            audience=self._single_audience(claims["aud"]),
            subject=str(claims["sub"]),
            expiry=datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc),
        )

    def refresh_jwks(self) -> None:
        """Drop the cached JWKS so the next verification refetches it."""
        if self._jwks_url is None:
            return
        with self._lock:
            self._keys_by_kid = None

    @staticmethod
    def _single_audience(aud: Any) -> str:
        if isinstance(aud, str):
            return aud
        if isinstance(aud, list) and len(aud) == 1 and isinstance(aud[0], str):
            return aud[0]
        raise AssertionVerificationError(f"expected a single audience, got {aud!r}")

    @staticmethod
    def _index_keys(jwks: dict[str, Any]) -> dict[str, dict[str, Any]]:
        return {key["kid"]: key for key in jwks.get("keys", []) if key.get("kid")}

    def _key_for(self, kid: str) -> dict[str, Any] | None:
        with self._lock:
            if self._keys_by_kid is None:
                self._keys_by_kid = self._fetch_jwks()
            return self._keys_by_kid.get(kid)

    def _fetch_jwks(self) -> dict[str, dict[str, Any]]:
        if not self._jwks_url:
            raise AssertionVerificationError("JWKS not available for signature verification")
        try:
            response = httpx.get(self._jwks_url, verify=self._verify_ssl, timeout=self._timeout)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("jwks_fetch_failed", url=self._jwks_url, error=str(e))
            raise AssertionVerificationError(f"failed to fetch JWKS: {e}") from e
        try:
            keys = self._index_keys(response.json())
        except (ValueError, AttributeError) as e:
            logger.error("jwks_invalid", url=self._jwks_url, error=str(e))
            raise AssertionVerificationError(f"JWKS response is not a key set: {e}") from e
        logger.debug("jwks_fetched", url=self._jwks_url, key_count=len(keys))
        return keys


__all__ = ["AssertionVerifier"]
