"""
Google OAuth token endpoint client.

Wraps google-auth for refresh and google-auth-oauthlib for the
authorization-code exchange. Each refresh is a single token-endpoint
request whose failure is classified for the RefreshScheduler: retryable,
revoked grant (invalid_grant only) or any other rejection.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Protocol, runtime_checkable

import google.auth.exceptions
from google.auth.transport.requests import Request
from google.oauth2 import _client
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow

from auth.credential_types import TokenRecord, utcnow
from core.errors import (
    AuthenticationError,
    NonRetryableRefreshError,
    RefreshError,
    RejectedRefreshError,
    RetryableRefreshError,
    ServiceConfigurationError,
)

logger = logging.getLogger(__name__)

# Google omits expires_in only in unusual responses; assume the standard hour.
DEFAULT_TOKEN_LIFETIME = timedelta(hours=1)


@runtime_checkable
class OAuthClient(Protocol):
    """Token-endpoint collaborator consumed by the refresh scheduler."""

    def exchange(self, code: str) -> TokenRecord:
        """Exchange an authorization code for a token pair."""
        ...

    def refresh(self, refresh_token: str) -> TokenRecord:
        """
        Refresh an access token.

        Raises:
            RetryableRefreshError: Network errors, timeouts, 5xx, rate limits.
            NonRetryableRefreshError: Invalid or revoked grant.
            RejectedRefreshError: Any other rejection, e.g. invalid_client.
        """
        ...


class TimeoutRequest(Request):
    """google-auth transport that applies a default timeout to every call."""

    def __init__(self, timeout: float, session=None):
        super().__init__(session=session)
        self.default_timeout = timeout

    def __call__(self, url, method="GET", body=None, headers=None, timeout=None, **kwargs):
        return super().__call__(
            url, method=method, body=body, headers=headers, timeout=timeout or self.default_timeout, **kwargs
        )


def _expires_at(expiry: datetime | None) -> datetime:
    if expiry is None:
        return utcnow() + DEFAULT_TOKEN_LIFETIME
    # google-auth reports expiry as naive UTC
    return expiry.replace(tzinfo=timezone.utc)


def _credentials_to_record(credentials: Credentials) -> TokenRecord:
    scopes = credentials.granted_scopes or credentials.scopes or []
    return TokenRecord(
        access_token=credentials.token,
        refresh_token=credentials.refresh_token,
        scope=" ".join(scopes),
        token_type="Bearer",
        expires_at=_expires_at(credentials.expiry),
    )


def refresh_error_code(error: google.auth.exceptions.RefreshError) -> str | None:
    """OAuth error code from the token endpoint's response, if it sent JSON."""
    if len(error.args) > 1 and isinstance(error.args[1], dict):
        return error.args[1].get("error")
    return None


def classify_refresh_error(error: google.auth.exceptions.RefreshError) -> RefreshError:
    """
    Map a google-auth refresh failure onto the scheduler's error types.

    Only invalid_grant means the refresh token is dead. Rejections such as
    invalid_client leave the stored tokens alone.
    """
    code = refresh_error_code(error)
    if code == "invalid_grant":
        return NonRetryableRefreshError(str(error))
    if getattr(error, "retryable", False):
        return RetryableRefreshError(str(error))
    logger.error(f"Token endpoint rejected the refresh ({code or 'no error code'}); check the OAuth client settings")
    return RejectedRefreshError(str(error))


class GoogleOAuthClient:
    """OAuthClient backed by Google's token endpoint."""

    def __init__(
        self,
        client_config: dict,
        timeout: float,
        scopes: list[str] | None = None,
        redirect_uri: str | None = None,
    ):
        self.client_config = client_config
        self.timeout = timeout
        self.scopes = scopes
        self.redirect_uri = redirect_uri
        self._flow: Flow | None = None

    @property
    def _client(self) -> dict:
        return self.client_config["installed"]

    def _request(self) -> Request:
        return TimeoutRequest(self.timeout)

    def create_flow(self, redirect_uri: str | None = None, state: str | None = None) -> Flow:
        """Build the authorization-code flow for the consent step."""
        return Flow.from_client_config(
            self.client_config,
            scopes=self.scopes,
            redirect_uri=redirect_uri or self.redirect_uri,
            state=state,
        )

    def authorization_url(self, redirect_uri: str, state: str | None = None) -> tuple[str, str]:
        """
        Build the consent URL.

        Returns:
            (url, state) tuple; the state must be checked on callback.
        """
        self.redirect_uri = redirect_uri
        # Kept for exchange(): the flow holds the PKCE code verifier
        self._flow = flow = self.create_flow(redirect_uri, state)
        # offline + consent guarantees a refresh token is issued
        return flow.authorization_url(access_type="offline", prompt="consent", include_granted_scopes="true")

    def exchange(self, code: str) -> TokenRecord:
        """
        Exchange an authorization code.

        Raises:
            AuthenticationError: If the code is rejected or no refresh token was issued.
        """
        flow = self._flow or self.create_flow()
        try:
            flow.fetch_token(code=code, timeout=self.timeout)
        except Exception as e:
            logger.error(f"Authorization code exchange failed: {e}")
            raise AuthenticationError(f"Authorization code exchange failed: {e}") from e

        credentials = flow.credentials
        if not credentials.refresh_token:
            raise AuthenticationError(
                "Google did not issue a refresh token. Revoke the app's access in your Google account and retry."
            )
        logger.info("Authorization code exchanged for tokens")
        return _credentials_to_record(credentials)

    def refresh(self, refresh_token: str) -> TokenRecord:
        """
        Refresh an access token with exactly one token-endpoint request.

        google-auth's own retry loop is disabled; the RefreshScheduler owns
        retries and backoff.
        """
        try:
            access_token, new_refresh_token, expiry, response = _client.refresh_grant(
                self._request(),
                self._client["token_uri"],
                refresh_token,
                self._client["client_id"],
                self._client["client_secret"],
                can_retry=False,
            )
        except google.auth.exceptions.TransportError as e:
            raise RetryableRefreshError(f"network error contacting token endpoint: {e}") from e
        except google.auth.exceptions.RefreshError as e:
            raise classify_refresh_error(e) from e

        return TokenRecord(
            access_token=access_token,
            refresh_token=new_refresh_token or refresh_token,
            scope=response.get("scope", ""),
            token_type=response.get("token_type", "Bearer"),
            expires_at=_expires_at(expiry),
        )


class UnconfiguredOAuthClient:
    """Stand-in used when no OAuth client id/secret is configured."""

    def _error(self) -> ServiceConfigurationError:
        return ServiceConfigurationError(
            "Google OAuth credentials not configured. "
            "Set GOOGLE_OAUTH_CLIENT_ID and GOOGLE_OAUTH_CLIENT_SECRET environment variables."
        )

    def exchange(self, code: str) -> TokenRecord:
        raise self._error()

    def refresh(self, refresh_token: str) -> TokenRecord:
        raise self._error()
