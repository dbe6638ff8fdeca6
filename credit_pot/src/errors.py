"""Exception types for token handling, provider calls and transfers."""


class CreditPotError(Exception):
    """Base class for all errors raised by credit_pot."""


class ConfigError(CreditPotError):
    """Raised when required settings are missing or invalid."""


class DecryptionError(CreditPotError):
    """Raised when a sealed value fails authentication or cannot be parsed.

    Indicates corrupted storage or a changed ENCRYPTION_KEY. Never treat this
    as a missing credential.
    """


class NoCredentialError(CreditPotError):
    """Raised when no live grant exists for a user and provider."""

    def __init__(self, user_id: str, provider: str) -> None:
        """Initialize with a hint on how to re-authorize."""
        self.user_id = user_id
        self.provider = provider
        super().__init__(
            f"No {provider} credential for user {user_id}.\n"
            f"Run 'credit-pot auth {provider} --user {user_id}' to connect."
        )


class RefreshFailedError(CreditPotError):
    """Raised when the token endpoint rejects a refresh, or it cannot be reached."""

    def __init__(
        self,
        provider: str,
        reason: str,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        """Initialize with the upstream status and body."""
        self.provider = provider
        self.status_code = status_code
        self.body = body
        detail = f" ({status_code}: {body})" if status_code is not None else ""
        super().__init__(f"Failed to refresh {provider} token: {reason}{detail}")


class AuthorizationError(RefreshFailedError):
    """Raised when a freshly refreshed access token is rejected again."""


class UpstreamError(CreditPotError):
    """Raised for non-auth HTTP failures and timeouts from a provider."""

    def __init__(self, message: str, status_code: int | None = None, body: str | None = None) -> None:
        """Initialize with the upstream status and body for diagnostics."""
        self.status_code = status_code
        self.body = body
        super().__init__(f"{message} ({status_code}: {body})" if status_code else message)


class TransferError(CreditPotError):
    """Raised when Monzo rejects a pot deposit or withdrawal.

    ``ambiguous`` is set when the request failed in transport, so the ledger
    outcome is unknown.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
        ambiguous: bool = False,
    ) -> None:
        """Initialize with the upstream error body."""
        self.status_code = status_code
        self.body = body
        self.ambiguous = ambiguous
        super().__init__(f"{message} ({status_code}: {body})" if status_code else message)
