"""Signed, tamper-evident OAuth state tokens.

State is an HS256 JWT (same signing stack as admin access tokens) carrying
the integration type discriminator, workspace id, acting member id, a random
nonce and the issue timestamp. The callback verifies all of it before any
code exchange happens.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable

from jose import JWTError, jwt
from pydantic import ValidationError

from src.hub.integrations.errors import OAuthStateError
from src.hub.integrations.schemas import OAuthState


class OAuthStateSigner:
    """Issues and verifies OAuth state tokens.

    Args:
        secret_key: HMAC signing key.
        ttl_seconds: Maximum state age accepted on callback.
        algorithm: JWT algorithm.
        clock: Returns the current unix time in seconds.
    """

    def __init__(
        self,
        secret_key: str,
        ttl_seconds: int = 300,
        algorithm: str = "HS256",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secret_key = secret_key
        self._ttl = ttl_seconds
        self._algorithm = algorithm
        self._clock = clock

    @property
    def ttl_seconds(self) -> int:
        return self._ttl

    def issue(
        self,
        integration_type: str,
        workspace_id: str,
        member_id: str,
        pre_auth_fields: dict[str, str] | None = None,
    ) -> str:
        """Create a signed state token for one connect attempt."""
        claims = OAuthState(
            type=integration_type,
            workspace_id=workspace_id,
            member_id=member_id,
            nonce=secrets.token_urlsafe(16),
            ts=int(self._clock()),
            pre_auth_fields=pre_auth_fields or None,
        )
        return jwt.encode(claims.model_dump(exclude_none=True), self._secret_key, algorithm=self._algorithm)

    def verify(self, token: str | None, expected_type: str) -> OAuthState:
        """Decode and validate a state token.

        Raises:
            OAuthStateError: ``invalid_state`` on a missing, malformed or
                forged token or a type mismatch; ``state_expired`` when
                older than the allowed window.
        """
        if not token:
            raise OAuthStateError("invalid_state", "state is required")

        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[self._algorithm])
            state = OAuthState.model_validate(payload)
        except (JWTError, ValidationError) as exc:
            raise OAuthStateError("invalid_state", "state signature or payload invalid") from exc

        if state.type != expected_type:
            raise OAuthStateError(
                "invalid_state",
                f"state issued for {state.type}, not {expected_type}",
            )

        age = self._clock() - state.ts
        if age > self._ttl or age < 0:
            raise OAuthStateError("state_expired", "state expired")

        return state
