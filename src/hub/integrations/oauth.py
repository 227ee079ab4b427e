"""OAuth connection lifecycle: state, authorization, exchange, persistence, revoke.

OAuthConnectionManager is the only component that moves tokens from a
provider into storage. Tokens are encrypted before they reach the
repository and decrypted again only for the revoke call on disconnect.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from src.hub.core.encryption import SecretsCodec
from src.hub.integrations.capabilities import IntegrationDefinition
from src.hub.integrations.errors import (
    ConfigurationError,
    IntegrationError,
    IntegrationNotFoundError,
    OAuthStateError,
    PlatformCredentialsMissingError,
    SecretsDecryptionError,
    TokenExchangeError,
)
from src.hub.integrations.oauth_state import OAuthStateSigner
from src.hub.integrations.registry import IntegrationRegistry
from src.hub.integrations.repository import IntegrationRepository
from src.hub.integrations.schemas import IntegrationConnection, OAuthState, TokenExchangeResult

logger = structlog.get_logger(__name__)


def tokens_to_secrets(tokens: TokenExchangeResult, now: datetime | None = None) -> dict[str, Any]:
    """Secrets dict persisted for a connection after a code exchange."""
    secrets: dict[str, Any] = {"accessToken": tokens.access_token}
    if tokens.refresh_token:
        secrets["refreshToken"] = tokens.refresh_token
    if tokens.expires_in is not None:
        issued = now or datetime.now(timezone.utc)
        secrets["expiresAt"] = (issued + timedelta(seconds=tokens.expires_in)).isoformat()
    return secrets


def _merge(current: dict[str, Any], changes: dict[str, Any] | None) -> dict[str, Any]:
    merged = dict(current)
    for key, value in (changes or {}).items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    return merged


class OAuthConnectionManager:
    """Creates, completes and tears down OAuth-backed connections.

    Args:
        registry: Integration definitions.
        repository: Connection and platform credential persistence.
        codec: Secrets codec for encryption at rest.
        state_signer: Issues and verifies OAuth state tokens.
        base_url: Public URL of this deployment.
        workspace_id: Workspace this deployment serves; state issued for
            any other workspace is rejected.
    """

    def __init__(
        self,
        registry: IntegrationRegistry,
        repository: IntegrationRepository,
        codec: SecretsCodec,
        state_signer: OAuthStateSigner,
        base_url: str,
        workspace_id: str,
    ) -> None:
        self._registry = registry
        self._repository = repository
        self._codec = codec
        self._state_signer = state_signer
        self._base_url = base_url.rstrip("/")
        self._workspace_id = workspace_id

    # ── Lookups ─────────────────────────────────────────────────────────────

    def get_definition(self, integration_type: str, capability: str | None = None) -> IntegrationDefinition:
        """Resolve a definition, optionally requiring a capability.

        Raises:
            IntegrationNotFoundError: Unknown type or capability missing.
        """
        definition = self._registry.get(integration_type)
        if definition is None:
            raise IntegrationNotFoundError(integration_type)
        if capability is not None and getattr(definition, capability) is None:
            raise IntegrationNotFoundError(integration_type, capability)
        return definition

    def redirect_uri(self, integration_type: str) -> str:
        return f"{self._base_url}/oauth/{integration_type}/callback"

    def connect_url(self, integration_type: str, state: str) -> str:
        return f"{self._base_url}/oauth/{integration_type}/connect?state={state}"

    # ── State ───────────────────────────────────────────────────────────────

    def create_state(
        self,
        integration_type: str,
        workspace_id: str,
        member_id: str,
        pre_auth_fields: dict[str, str] | None = None,
    ) -> str:
        definition = self.get_definition(integration_type, "oauth")
        return self._state_signer.issue(
            definition.oauth.state_type,
            workspace_id,
            member_id,
            pre_auth_fields,
        )

    def verify_state(self, token: str | None, integration_type: str) -> OAuthState:
        """Verify a state token for the given integration type.

        Raises:
            OAuthStateError: Invalid, expired, or issued for another type or
                workspace.
        """
        definition = self.get_definition(integration_type, "oauth")
        state = self._state_signer.verify(token, definition.oauth.state_type)
        if state.workspace_id != self._workspace_id:
            raise OAuthStateError("invalid_state", f"state issued for workspace {state.workspace_id}")
        return state

    # ── Platform Credentials ────────────────────────────────────────────────

    async def get_platform_credentials(self, integration_type: str) -> dict[str, str] | None:
        blob = await self._repository.get_platform_credentials_blob(integration_type)
        if blob is None:
            return None
        return self._codec.decrypt(blob)

    async def save_platform_credentials(
        self,
        integration_type: str,
        credentials: dict[str, str],
        member_id: str | None = None,
    ) -> None:
        """Validate and store admin-supplied app credentials.

        Unknown keys are discarded.

        Raises:
            IntegrationNotFoundError: Unknown type, or it takes no credentials.
            PlatformCredentialsMissingError: A declared field is empty.
        """
        definition = self.get_definition(integration_type)
        if not definition.platform_credentials:
            raise IntegrationNotFoundError(integration_type, "platform_credentials")

        missing = definition.missing_platform_credentials(credentials)
        if missing:
            raise PlatformCredentialsMissingError(integration_type, missing)

        known = {f.key for f in definition.platform_credentials}
        cleaned = {k: v.strip() for k, v in credentials.items() if k in known}
        await self._repository.save_platform_credentials(
            integration_type, self._codec.encrypt(cleaned), member_id
        )
        logger.info("integrations.platform_credentials_saved", integration_type=integration_type)

    # ── Authorization ───────────────────────────────────────────────────────

    def build_auth_url(
        self,
        definition: IntegrationDefinition,
        state: str,
        redirect_uri: str,
        pre_auth_fields: dict[str, str] | None = None,
        platform_credentials: dict[str, str] | None = None,
    ) -> str:
        """Provider authorization URL, after a platform credential pre-flight.

        Raises:
            IntegrationNotFoundError: The definition has no OAuth capability.
            PlatformCredentialsMissingError: Required app credentials absent.
        """
        if definition.oauth is None:
            raise IntegrationNotFoundError(definition.id, "oauth")
        missing = definition.missing_platform_credentials(platform_credentials)
        if missing:
            raise PlatformCredentialsMissingError(definition.id, missing)
        return definition.oauth.build_auth_url(
            state,
            redirect_uri,
            pre_auth_fields=pre_auth_fields,
            credentials=platform_credentials,
        )

    async def exchange_code(
        self,
        definition: IntegrationDefinition,
        code: str,
        redirect_uri: str,
        fields: dict[str, str] | None = None,
        credentials: dict[str, str] | None = None,
    ) -> TokenExchangeResult:
        """Exchange an authorization code. Never retried.

        Raises:
            TokenExchangeError: The provider rejected the code or the call failed.
        """
        if definition.oauth is None:
            raise IntegrationNotFoundError(definition.id, "oauth")
        try:
            return await definition.oauth.exchange_code(
                code,
                redirect_uri,
                fields=fields,
                credentials=credentials,
            )
        except IntegrationError:
            raise
        except Exception as exc:
            raise TokenExchangeError(f"{definition.id} token exchange failed: {exc}") from exc

    async def complete_callback(
        self,
        integration_type: str,
        code: str,
        state_token: str | None,
    ) -> IntegrationConnection:
        """Finish a connect flow: verify state, exchange, encrypt and persist.

        If tokens were obtained but saving failed, they are revoked
        best-effort before the save error propagates.
        """
        definition = self.get_definition(integration_type, "oauth")
        state = self.verify_state(state_token, integration_type)

        credentials = await self.get_platform_credentials(integration_type)
        missing = definition.missing_platform_credentials(credentials)
        if missing:
            raise PlatformCredentialsMissingError(integration_type, missing)

        tokens = await self.exchange_code(
            definition,
            code,
            self.redirect_uri(integration_type),
            fields=state.pre_auth_fields,
            credentials=credentials,
        )
        secrets = tokens_to_secrets(tokens)

        try:
            connection = await self._repository.save_connection(
                integration_type,
                tokens.config,
                self._codec.encrypt(secrets),
                state.member_id,
            )
        except Exception:
            logger.exception("oauth.save_failed", integration_type=integration_type)
            await self._revoke(definition, secrets, tokens.config, credentials)
            raise

        logger.info(
            "oauth.connected",
            integration_type=integration_type,
            member_id=state.member_id,
            connection_id=connection.id,
        )
        return connection

    # ── Manual Connections ──────────────────────────────────────────────────

    async def save_manual_connection(
        self,
        integration_type: str,
        config: dict[str, Any],
        secrets: dict[str, Any],
        member_id: str | None,
    ) -> IntegrationConnection:
        """Connect an integration from admin-entered credentials (API token,
        webhook URL and signing secret, write key).

        Raises:
            ConfigurationError: The integration connects through OAuth.
        """
        definition = self.get_definition(integration_type)
        if definition.oauth is not None:
            raise ConfigurationError(f"{integration_type} connects through OAuth")
        connection = await self._repository.save_connection(
            integration_type, config, self._codec.encrypt(secrets), member_id
        )
        logger.info(
            "integrations.manually_connected",
            integration_type=integration_type,
            member_id=member_id,
            connection_id=connection.id,
        )
        return connection

    async def update_connection(
        self,
        integration_type: str,
        config: dict[str, Any] | None = None,
        secrets: dict[str, Any] | None = None,
    ) -> IntegrationConnection | None:
        """Merge config and secrets into an existing connection.

        Keys set to None are removed. Saving reactivates a connection that
        was flagged after a failure.

        Returns:
            The updated connection, or None when the type is not connected.
        """
        self.get_definition(integration_type)
        connection = await self._repository.get_connection(integration_type)
        if connection is None:
            return None

        merged_config = _merge(connection.config, config)
        blob = connection.secrets
        if secrets:
            blob = self._codec.encrypt(_merge(self._codec.decrypt(connection.secrets), secrets))

        updated = await self._repository.update_connection(connection.id, merged_config, blob)
        logger.info(
            "integrations.connection_updated",
            integration_type=integration_type,
            config_keys=sorted(config or {}),
            secret_keys=sorted(secrets or {}),
        )
        return updated

    # ── Disconnect ──────────────────────────────────────────────────────────

    async def disconnect(self, integration_type: str) -> bool:
        """Revoke (best-effort) and delete the connection for a type.

        Returns:
            False when there was no connection to remove.
        """
        definition = self.get_definition(integration_type)
        connection = await self._repository.get_connection(integration_type)
        if connection is None:
            return False

        if definition.on_disconnect is not None:
            try:
                secrets = self._codec.decrypt(connection.secrets)
            except SecretsDecryptionError:
                logger.warning(
                    "oauth.revoke_skipped",
                    integration_type=integration_type,
                    reason="secrets_undecryptable",
                )
            else:
                credentials = None
                if definition.platform_credentials:
                    try:
                        credentials = await self.get_platform_credentials(integration_type)
                    except SecretsDecryptionError:
                        logger.warning("oauth.platform_credentials_undecryptable", integration_type=integration_type)
                await self._revoke(definition, secrets, connection.config, credentials)

        deleted = await self._repository.delete_connection(connection.id)
        logger.info("oauth.disconnected", integration_type=integration_type, connection_id=connection.id)
        return deleted

    async def _revoke(
        self,
        definition: IntegrationDefinition,
        secrets: dict[str, Any],
        config: dict[str, Any],
        credentials: dict[str, str] | None,
    ) -> None:
        if definition.on_disconnect is None:
            return
        try:
            await definition.on_disconnect(secrets, config, credentials)
        except Exception as exc:
            logger.warning("oauth.revoke_failed", integration_type=definition.id, error=str(exc))
