"""OAuth2 token lifecycle: expiry detection, refresh and persistence.

One manager owns one provider's grant type (TrueLayer or Monzo) and serves
every (user_id, provider) credential issued under it. Refreshes are
single-flight per key: the first caller exchanges the refresh token while
later callers wait on the same lock and then reuse the stored result.
"""

import logging
import threading
from collections.abc import Callable

import httpx
from pydantic import BaseModel

from credit_pot.src.errors import NoCredentialError, RefreshFailedError, UpstreamError
from credit_pot.src.models import (
    CredentialRecord,
    CredentialState,
    DecryptedCredential,
    TokenResponse,
)
from credit_pot.src.secret_box import SecretBox
from credit_pot.src.token_store import TokenStore
from credit_pot.src.utils import mask, now_ms

logger = logging.getLogger(__name__)


class OAuthClientConfig(BaseModel):
    """Token endpoint and client credentials for one grant type."""

    name: str
    token_url: str
    client_id: str
    client_secret: str
    send_scope_on_refresh: bool = False  # TrueLayer wants the scope back, Monzo does not


class LockRegistry:
    """Locks keyed by (user_id, provider), created on first use."""

    def __init__(self) -> None:
        """Initialize an empty registry."""
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._guard = threading.Lock()

    def lock_for(self, user_id: str, provider: str) -> threading.Lock:
        """Return the lock for a credential, creating it if needed."""
        key = (user_id, provider)
        with self._guard:
            if key not in self._locks:
                self._locks[key] = threading.Lock()
            return self._locks[key]

    def is_locked(self, user_id: str, provider: str) -> bool:
        """True while a refresh holds the lock for this credential."""
        with self._guard:
            lock = self._locks.get((user_id, provider))
        return lock is not None and lock.locked()


class TokenLifecycleManager:
    """Hands out valid access tokens, refreshing and persisting as needed."""

    def __init__(
        self,
        config: OAuthClientConfig,
        store: TokenStore,
        box: SecretBox,
        client: httpx.Client,
        locks: LockRegistry | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        """Wire the manager to its store, cipher and HTTP client."""
        self.config = config
        self.store = store
        self.box = box
        self.client = client
        self.locks = locks or LockRegistry()
        self.clock = clock

    # ==========================================
    # PUBLIC API
    # ==========================================

    def state(self, user_id: str, provider: str) -> CredentialState:
        """Current lifecycle state of a credential."""
        if self.locks.is_locked(user_id, provider):
            return CredentialState.REFRESHING
        record = self.store.get(user_id, provider)
        if record is None:
            return CredentialState.MISSING
        if self.clock() >= record.expires_at:
            return CredentialState.EXPIRED
        return CredentialState.VALID

    def get_valid_access_token(self, user_id: str, provider: str) -> str:
        """Return an unexpired access token, refreshing it first if needed.

        Raises:
            NoCredentialError: If the user has no live grant for the provider.
            RefreshFailedError: If the token endpoint rejects the refresh.
            DecryptionError: If the stored ciphertext cannot be opened.
        """
        credential = self._load(user_id, provider)
        if not credential.is_expired(self.clock()):
            return credential.access_token

        logger.info(f"{provider} token expired for user {user_id}, refreshing...")
        return self._refresh(user_id, provider, only_if_expired=True)

    def refresh(self, user_id: str, provider: str, rejected_token: str | None = None) -> str:
        """Force a token exchange, e.g. after the provider answered 401.

        When ``rejected_token`` is given and another caller has already
        replaced it with a fresh token, that token is returned and no second
        exchange is made.
        """
        return self._refresh(user_id, provider, rejected_token=rejected_token)

    def store_grant(self, user_id: str, provider: str, token: TokenResponse) -> CredentialRecord:
        """Encrypt and persist a newly issued grant (OAuth callback)."""
        record = self._persist(
            user_id,
            provider,
            token,
            refresh_token=token.refresh_token,
            scope=token.scope or "",
        )
        logger.info(f"Stored new {provider} grant for user {user_id}")
        return record

    def exchange_code(
        self, code: str, redirect_uri: str, code_verifier: str | None = None
    ) -> TokenResponse:
        """Exchange an authorization code for tokens.

        Raises:
            UpstreamError: If the token endpoint rejects the code or cannot be reached.
        """
        data = {
            "grant_type": "authorization_code",
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "redirect_uri": redirect_uri,
            "code": code,
        }
        if code_verifier:
            data["code_verifier"] = code_verifier
        try:
            resp = self.client.post(self.config.token_url, data=data)
        except httpx.HTTPError as e:
            msg = f"{self.config.name} token endpoint unreachable: {e}"
            raise UpstreamError(msg) from e
        if not resp.is_success:
            msg = f"{self.config.name} authorization code exchange failed"
            raise UpstreamError(msg, resp.status_code, resp.text)
        return TokenResponse.model_validate(resp.json())

    # ==========================================
    # INTERNALS
    # ==========================================

    def _load(self, user_id: str, provider: str) -> DecryptedCredential:
        record = self.store.get(user_id, provider)
        if record is None:
            raise NoCredentialError(user_id, provider)
        return DecryptedCredential(
            access_token=self.box.open(record.access_token_ciphertext),
            refresh_token=(
                self.box.open(record.refresh_token_ciphertext)
                if record.refresh_token_ciphertext
                else None
            ),
            expires_at=record.expires_at,
            scope=record.scope,
        )

    def _refresh(
        self,
        user_id: str,
        provider: str,
        *,
        rejected_token: str | None = None,
        only_if_expired: bool = False,
    ) -> str:
        with self.locks.lock_for(user_id, provider):
            # Re-read under the lock: a concurrent caller may have refreshed already
            credential = self._load(user_id, provider)
            fresh = not credential.is_expired(self.clock())
            if only_if_expired and fresh:
                logger.debug(f"{provider} token for user {user_id} already refreshed")
                return credential.access_token
            if rejected_token is not None and fresh and credential.access_token != rejected_token:
                logger.debug(f"{provider} token for user {user_id} replaced since rejection")
                return credential.access_token

            if not credential.refresh_token:
                raise RefreshFailedError(
                    provider, "no refresh token stored, the user must re-authorize"
                )

            token = self._exchange(provider, credential)
            self._persist(
                user_id,
                provider,
                token,
                # Monzo may omit a new refresh token; keep the previous one
                refresh_token=token.refresh_token or credential.refresh_token,
                scope=token.scope or credential.scope,
            )
            logger.info(f"{provider} token refreshed for user {user_id}: {mask(token.access_token)}")
            return token.access_token

    def _exchange(self, provider: str, credential: DecryptedCredential) -> TokenResponse:
        data = {
            "grant_type": "refresh_token",
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "refresh_token": credential.refresh_token,
        }
        if self.config.send_scope_on_refresh and credential.scope:
            data["scope"] = credential.scope

        try:
            resp = self.client.post(self.config.token_url, data=data)
        except httpx.HTTPError as e:
            raise RefreshFailedError(provider, f"token endpoint unreachable: {e}") from e

        if not resp.is_success:
            logger.error(f"{provider} refresh rejected: {resp.status_code} {resp.text}")
            raise RefreshFailedError(
                provider, "token endpoint rejected the refresh token", resp.status_code, resp.text
            )
        return TokenResponse.model_validate(resp.json())

    def _persist(
        self,
        user_id: str,
        provider: str,
        token: TokenResponse,
        refresh_token: str | None,
        scope: str,
    ) -> CredentialRecord:
        return self.store.upsert(
            user_id,
            provider,
            access_token_ciphertext=self.box.seal(token.access_token),
            refresh_token_ciphertext=self.box.seal(refresh_token) if refresh_token else None,
            expires_at=self.clock() + token.expires_in * 1000,
            scope=scope,
        )
