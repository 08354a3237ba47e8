"""Google OAuth credential store with transparent, single-flight refresh."""

import asyncio
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from oauthlib.oauth2.rfc6749.errors import InvalidGrantError, OAuth2Error
import httpx
import pytz

from .base import (
    AuthenticationError, ClientNotConfigured, InvalidGrant,
    ReauthorizationRequired, TransientNetworkError, Unauthenticated,
)
from ..config import Settings
from ..models import CredentialStatus, OAuthCredential

# Google answers with a reordered scope list (openid first); oauthlib would
# otherwise reject the token response.
os.environ.setdefault("OAUTHLIB_RELAX_TOKEN_SCOPE", "1")

AUTH_URI = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URI = "https://oauth2.googleapis.com/token"
REVOKE_URI = "https://oauth2.googleapis.com/revoke"
USERINFO_URI = "https://www.googleapis.com/oauth2/v2/userinfo"

MAX_PENDING_FLOWS = 5

logger = logging.getLogger(__name__)


def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    """google-auth reports expiry as naive UTC."""
    if dt is not None and dt.tzinfo is None:
        return pytz.UTC.localize(dt)
    return dt


class FileTokenStore:
    """Persists a single OAuth credential as JSON, readable by the owner only."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> Optional[OAuthCredential]:
        if not self.path.exists():
            return None
        try:
            return OAuthCredential.model_validate_json(self.path.read_text())
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable credential file {self.path}: {e}")
            return None

    def save(self, credential: OAuthCredential) -> None:
        """Write the credential atomically with 0600 permissions."""
        self.path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        tmp_path = self.path.with_suffix('.tmp')
        with open(tmp_path, 'w') as f:
            f.write(credential.model_dump_json())
        tmp_path.chmod(0o600)
        os.replace(tmp_path, self.path)

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()


class CredentialManager:
    """Owns the OAuth credential lifecycle for the single connected account.

    Refresh is single-flight: concurrent callers wait on one lock and re-check
    freshness after acquiring it, so only the first caller talks to the
    token endpoint.
    """

    def __init__(self, settings: Settings, token_store: Optional[FileTokenStore] = None):
        """Initialize credential manager.

        Args:
            settings: Application settings
            token_store: Where the credential is persisted (defaults to the token file)
        """
        self.settings = settings
        self.token_store = token_store or FileTokenStore(settings.google_token_path)
        self.logger = logger.getChild('manager')
        self._credential: Optional[OAuthCredential] = None
        self._loaded = False
        self._refresh_lock = asyncio.Lock()
        self._pending_flows: Dict[str, Flow] = {}

    @property
    def client_configured(self) -> bool:
        return self.settings.client_configured

    def _client_config(self) -> Dict[str, Any]:
        return {
            "web": {
                "client_id": self.settings.google_client_id,
                "client_secret": self.settings.google_client_secret,
                "auth_uri": AUTH_URI,
                "token_uri": TOKEN_URI,
                "redirect_uris": [self.settings.google_redirect_uri],
            }
        }

    def _new_flow(self, autogenerate_code_verifier: bool) -> Flow:
        if not self.client_configured:
            missing = ", ".join(self.settings.validate_required_settings())
            raise ClientNotConfigured(f"Google OAuth client is not configured (missing {missing})")
        return Flow.from_client_config(
            self._client_config(),
            scopes=self.settings.google_scopes,
            redirect_uri=self.settings.google_redirect_uri,
            autogenerate_code_verifier=autogenerate_code_verifier,
        )

    def begin_authorization(self, state: str) -> str:
        """Build the consent URL for the configured client.

        Args:
            state: Opaque anti-replay token echoed back on the redirect

        Returns:
            Authorization URL to open in a browser

        Raises:
            ClientNotConfigured: If the OAuth client is incomplete
        """
        flow = self._new_flow(autogenerate_code_verifier=True)
        url, _ = flow.authorization_url(
            access_type='offline',
            prompt='consent',
            state=state,
        )
        # The flow holds the PKCE verifier needed by the code exchange.
        self._pending_flows[state] = flow
        while len(self._pending_flows) > MAX_PENDING_FLOWS:
            self._pending_flows.pop(next(iter(self._pending_flows)))
        return url

    def _take_flow(self, state: Optional[str]) -> Flow:
        if state is not None and state in self._pending_flows:
            return self._pending_flows.pop(state)
        if state is None and self._pending_flows:
            return self._pending_flows.pop(next(reversed(list(self._pending_flows))))
        if state is not None and self._pending_flows:
            raise InvalidGrant("Authorization state does not match a pending request")
        return self._new_flow(autogenerate_code_verifier=False)

    async def exchange_code(self, code: str, state: Optional[str] = None) -> OAuthCredential:
        """Exchange an authorization code for a stored credential.

        Args:
            code: Code from the OAuth redirect
            state: State echoed on the redirect, checked against pending requests

        Returns:
            The new credential, including the account profile when available

        Raises:
            InvalidGrant: If the code is rejected or was already used
            TransientNetworkError: If the token endpoint is unreachable
        """
        if not code:
            raise InvalidGrant("Authorization code is empty")
        flow = self._take_flow(state)

        loop = asyncio.get_event_loop()
        try:
            await loop.run_in_executor(None, lambda: flow.fetch_token(code=code))
        except InvalidGrantError as e:
            raise InvalidGrant(f"Authorization code rejected: {e.description or e.error}")
        except OAuth2Error as e:
            raise AuthenticationError(f"Token exchange failed: {e.description or e.error}")
        except OSError as e:
            raise TransientNetworkError(f"Token endpoint unreachable: {e}")

        creds = flow.credentials
        scopes = getattr(creds, 'granted_scopes', None) or creds.scopes or self.settings.google_scopes
        credential = OAuthCredential(
            access_token=creds.token,
            refresh_token=creds.refresh_token,
            expiry=_aware(creds.expiry),
            scope=" ".join(scopes),
        )
        profile = await self._fetch_profile(credential.access_token)
        if profile:
            credential = credential.model_copy(update=profile)

        self._store(credential)
        self.logger.info(f"Connected Google account {credential.user_email or '(unknown)'}")
        return credential

    async def _fetch_profile(self, access_token: str) -> Dict[str, Optional[str]]:
        """Fetch email, name and picture for the authorized account."""
        try:
            async with httpx.AsyncClient(timeout=self.settings.request_timeout_seconds) as client:
                response = await client.get(
                    USERINFO_URI,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            self.logger.warning(f"Could not fetch Google account profile: {e}")
            return {}
        return {
            'user_email': data.get('email'),
            'user_name': data.get('name'),
            'picture': data.get('picture'),
        }

    def current_credential(self) -> Optional[OAuthCredential]:
        """Return the stored credential, loading it on first use."""
        if not self._loaded:
            self._credential = self.token_store.load()
            self._loaded = True
        return self._credential

    def _needs_refresh(self, credential: OAuthCredential) -> bool:
        return credential.expires_within(self.settings.sync_config.token_expiry_margin_seconds)

    async def ensure_fresh_access_token(self) -> str:
        """Return a usable access token, refreshing it when close to expiry.

        Raises:
            Unauthenticated: If no credential is stored
            ReauthorizationRequired: If the credential cannot be refreshed
        """
        credential = self.current_credential()
        if credential is None:
            raise Unauthenticated("Not connected to Google")
        if not self._needs_refresh(credential):
            return credential.access_token

        async with self._refresh_lock:
            # Another caller may have refreshed while we waited.
            credential = self.current_credential()
            if credential is None:
                raise Unauthenticated("Not connected to Google")
            if not self._needs_refresh(credential):
                return credential.access_token
            credential = await self._refresh(credential)
            return credential.access_token

    async def _refresh(self, credential: OAuthCredential) -> OAuthCredential:
        if not credential.refresh_token:
            self._clear()
            raise ReauthorizationRequired("Access token expired and no refresh token is stored")
        if not self.client_configured:
            raise ClientNotConfigured("Cannot refresh: Google OAuth client is not configured")

        self.logger.debug("Refreshing Google access token")
        loop = asyncio.get_event_loop()
        try:
            refreshed = await loop.run_in_executor(None, self._refresh_blocking, credential)
        except RefreshError as e:
            if getattr(e, 'retryable', False):
                raise TransientNetworkError(f"Token refresh failed: {e}")
            self._clear()
            raise ReauthorizationRequired(f"Google rejected the refresh token: {e}")
        except TransportError as e:
            raise TransientNetworkError(f"Token endpoint unreachable: {e}")

        self._store(refreshed)
        self.logger.info(f"Access token refreshed, expires at {refreshed.expiry}")
        return refreshed

    def _refresh_blocking(self, credential: OAuthCredential) -> OAuthCredential:
        """Call the token endpoint. Runs in an executor thread."""
        creds = Credentials(
            token=credential.access_token,
            refresh_token=credential.refresh_token,
            token_uri=TOKEN_URI,
            client_id=self.settings.google_client_id,
            client_secret=self.settings.google_client_secret,
            scopes=credential.scope.split() or None,
        )
        creds.refresh(Request())
        return credential.model_copy(update={
            'access_token': creds.token,
            # Google usually omits the refresh token on refresh; keep ours.
            'refresh_token': creds.refresh_token or credential.refresh_token,
            'expiry': _aware(creds.expiry),
        })

    async def logout(self) -> None:
        """Drop the stored credential and revoke it at Google (best effort)."""
        credential = self.current_credential()
        self._clear()
        self._pending_flows.clear()
        if credential is None:
            return

        token = credential.refresh_token or credential.access_token
        try:
            async with httpx.AsyncClient(timeout=self.settings.request_timeout_seconds) as client:
                response = await client.post(
                    REVOKE_URI,
                    data={'token': token},
                    headers={'Content-Type': 'application/x-www-form-urlencoded'},
                )
            if response.status_code != 200:
                self.logger.warning(f"Token revocation returned HTTP {response.status_code}")
        except httpx.HTTPError as e:
            self.logger.warning(f"Token revocation failed: {e}")
        self.logger.info("Disconnected Google account")

    def get_status(self) -> CredentialStatus:
        """Summarize the connection for display."""
        credential = self.current_credential()
        if credential is None:
            return CredentialStatus(client_configured=self.client_configured)

        connected = bool(credential.refresh_token) or not credential.expires_within(0)
        return CredentialStatus(
            connected=connected,
            client_configured=self.client_configured,
            expires_at=credential.expiry,
            scope=credential.scope,
            has_refresh_token=bool(credential.refresh_token),
            user_email=credential.user_email,
            user_name=credential.user_name,
            picture=credential.picture,
        )

    def _store(self, credential: OAuthCredential) -> None:
        self.token_store.save(credential)
        self._credential = credential
        self._loaded = True

    def _clear(self) -> None:
        self.token_store.clear()
        self._credential = None
        self._loaded = True
