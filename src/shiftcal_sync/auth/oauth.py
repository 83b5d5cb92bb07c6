"""Google OAuth connection lifecycle: connect, refresh, disconnect."""

import asyncio
import logging
import webbrowser
from typing import Callable, Dict, Optional, TYPE_CHECKING

from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
import httpx

from .loopback import LoopbackListener
from .token_store import FileTokenStore
from ..config import Settings
from ..models import ConnectionStatus
from ..services.base import AuthenticationError, NotConfiguredError

if TYPE_CHECKING:
    from ..database import DatabaseManager

logger = logging.getLogger(__name__)

AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
TOKEN_URI = "https://oauth2.googleapis.com/token"
REVOKE_URI = "https://oauth2.googleapis.com/revoke"
USERINFO_URI = "https://www.googleapis.com/oauth2/v2/userinfo"

NOT_CONFIGURED_MESSAGE = "Google OAuth is not configured. Set GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET."
NOT_CONNECTED_MESSAGE = "Google account is not connected."


class GoogleOAuthManager:
    """Owns the refresh token and hands out authorized credentials."""

    def __init__(
        self,
        settings: Settings,
        token_store: Optional[FileTokenStore] = None,
        db_manager: Optional["DatabaseManager"] = None,
        browser_launcher: Optional[Callable[[str], bool]] = None
    ):
        self.settings = settings
        self.token_store = token_store or FileTokenStore(settings.token_store_path)
        self.db_manager = db_manager
        self.browser_launcher = browser_launcher or webbrowser.open
        self.logger = logger.getChild('oauth')

    def load_client_config(self) -> Optional[Dict[str, str]]:
        """Client id/secret from the environment, else from stored settings."""
        if self.settings.google_client_id and self.settings.google_client_secret:
            return {
                'client_id': self.settings.google_client_id,
                'client_secret': self.settings.google_client_secret,
            }
        if self.db_manager is not None:
            with self.db_manager.get_session() as session:
                client_id, client_secret = self.db_manager.get_oauth_client_config(session)
            if client_id and client_secret:
                return {'client_id': client_id, 'client_secret': client_secret}
        return None

    def is_configured(self) -> bool:
        return self.load_client_config() is not None

    def is_connected(self) -> bool:
        return bool(self.token_store.load())

    def _require_client_config(self) -> Dict[str, str]:
        config = self.load_client_config()
        if config is None:
            raise NotConfiguredError(NOT_CONFIGURED_MESSAGE)
        return config

    def _build_flow(self, config: Dict[str, str], redirect_uri: str) -> Flow:
        client_config = {
            "installed": {
                "client_id": config['client_id'],
                "client_secret": config['client_secret'],
                "auth_uri": AUTH_URI,
                "token_uri": TOKEN_URI,
                "redirect_uris": [redirect_uri],
            }
        }
        return Flow.from_client_config(
            client_config,
            scopes=self.settings.google_scopes,
            redirect_uri=redirect_uri,
        )

    async def connect_interactive(self) -> ConnectionStatus:
        """Run the browser authorization flow and store the refresh token.

        Returns:
            Connection status including the account email when it could be read

        Raises:
            NotConfiguredError: No OAuth client is configured
            AuthenticationError: Authorization was denied, timed out or
                yielded no refresh token
        """
        config = self._require_client_config()

        async with LoopbackListener(host=self.settings.oauth_callback_host) as listener:
            flow = self._build_flow(config, listener.redirect_uri)
            auth_url, _ = flow.authorization_url(access_type='offline', prompt='consent')
            self.logger.info(f"Open this URL to authorize Google Calendar access: {auth_url}")
            self._launch_browser(auth_url)
            code = await listener.wait_for_code(self.settings.oauth_callback_timeout_seconds)

        loop = asyncio.get_event_loop()
        try:
            await loop.run_in_executor(None, lambda: flow.fetch_token(code=code))
        except Exception as e:
            raise AuthenticationError(f"Google token exchange failed: {e}") from e

        creds = flow.credentials
        refresh_token = creds.refresh_token or self.token_store.load()
        if not refresh_token:
            raise AuthenticationError(
                "Google OAuth did not return a refresh token. Try reconnecting with prompt=consent."
            )
        self.token_store.save(refresh_token)
        self.logger.info("Google account connected")

        account_email = await self._fetch_account_email(creds.token)
        if self.db_manager is not None:
            with self.db_manager.get_session() as session:
                self.db_manager.set_account_email(session, account_email)

        return ConnectionStatus(configured=True, connected=True, account_email=account_email)

    def _launch_browser(self, url: str) -> None:
        if not self.settings.open_browser:
            return
        try:
            if not self.browser_launcher(url):
                self.logger.warning("Browser did not open; open the URL above manually")
        except Exception as e:
            self.logger.warning(f"Could not launch browser: {e}")

    async def _fetch_account_email(self, access_token: Optional[str]) -> Optional[str]:
        if not access_token:
            return None
        try:
            async with httpx.AsyncClient(timeout=self.settings.request_timeout_seconds) as client:
                response = await client.get(
                    USERINFO_URI,
                    headers={'Authorization': f'Bearer {access_token}'},
                )
                response.raise_for_status()
                return response.json().get('email')
        except (httpx.HTTPError, ValueError) as e:
            self.logger.warning(f"Could not read Google account email: {e}")
            return None

    async def get_authorized_client(self) -> Credentials:
        """Return credentials whose access token has just been refreshed.

        Raises:
            NotConfiguredError: No OAuth client is configured
            AuthenticationError: Not connected, or the refresh exchange failed
        """
        config = self._require_client_config()
        refresh_token = self.token_store.load()
        if not refresh_token:
            raise AuthenticationError(NOT_CONNECTED_MESSAGE)

        creds = Credentials(
            None,
            refresh_token=refresh_token,
            token_uri=TOKEN_URI,
            client_id=config['client_id'],
            client_secret=config['client_secret'],
            scopes=self.settings.google_scopes,
        )
        try:
            await asyncio.get_event_loop().run_in_executor(None, lambda: creds.refresh(Request()))
        except GoogleAuthError as e:
            self.logger.error(f"Failed to refresh Google access token: {e}")
            raise AuthenticationError(f"Google token refresh failed: {e}") from e
        return creds

    async def disconnect(self) -> None:
        """Revoke the refresh token (best effort) and forget it locally."""
        try:
            refresh_token = self.token_store.load()
            if refresh_token:
                async with httpx.AsyncClient(timeout=self.settings.request_timeout_seconds) as client:
                    response = await client.post(
                        REVOKE_URI,
                        data={'token': refresh_token},
                        headers={'Content-Type': 'application/x-www-form-urlencoded'},
                    )
                if response.status_code >= 400:
                    self.logger.warning(
                        f"Token revocation returned HTTP {response.status_code}; clearing local token anyway"
                    )
        except httpx.HTTPError as e:
            self.logger.warning(f"Token revocation failed, proceeding with local cleanup: {e}")
        finally:
            self.token_store.clear()
            if self.db_manager is not None:
                with self.db_manager.get_session() as session:
                    self.db_manager.set_account_email(session, None)
        self.logger.info("Google account disconnected")

    def status(self) -> ConnectionStatus:
        account_email = None
        if self.db_manager is not None:
            with self.db_manager.get_session() as session:
                account_email = self.db_manager.get_account_email(session)
        return ConnectionStatus(
            configured=self.is_configured(),
            connected=self.is_connected(),
            account_email=account_email,
        )
