import asyncio
import logging
import time
from typing import Any, Dict, Optional

import msal
from cryptography.fernet import Fernet, InvalidToken

from enrollment_calendar.auth.token_provider import AccessToken
from enrollment_calendar.exceptions import AuthUnavailable
from enrollment_calendar.sync.storage import SyncStorageManager
from enrollment_calendar.utils.config import settings

logger = logging.getLogger(__name__)

# OAuth scopes for Microsoft Graph Calendar access
SCOPES = [
    'https://graph.microsoft.com/Calendars.ReadWrite',
    'https://graph.microsoft.com/User.Read'
]


class MicrosoftGraphAuth:
    """
    Connects Outlook accounts and hands out valid Graph access tokens.

    Tokens are stored encrypted and refreshed through MSAL when they are
    about to expire.
    """

    def __init__(
        self,
        storage: SyncStorageManager,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        tenant_id: Optional[str] = None,
        encryption_key: Optional[str] = None,
        refresh_margin_seconds: Optional[int] = None,
    ):
        """Initialize Microsoft Graph authentication"""
        self.storage = storage
        self.client_id = client_id or settings.MS_CLIENT_ID
        self.client_secret = client_secret or settings.MS_CLIENT_SECRET
        self.redirect_uri = redirect_uri or settings.MS_REDIRECT_URI
        self.default_tenant_id = tenant_id or settings.MS_TENANT_ID or "common"
        self.refresh_margin_seconds = (
            refresh_margin_seconds if refresh_margin_seconds is not None
            else settings.TOKEN_REFRESH_MARGIN_SECONDS
        )

        key = encryption_key or settings.TOKEN_ENCRYPTION_KEY
        if not key:
            # Tokens stored with a temporary key cannot be read after a restart
            logger.warning("TOKEN_ENCRYPTION_KEY not set. Generating a temporary key.")
            key = Fernet.generate_key().decode()
        self.fernet = Fernet(key.encode() if isinstance(key, str) else key)

    def _encrypt(self, data: Optional[str]) -> Optional[str]:
        if not data:
            return None
        return self.fernet.encrypt(data.encode()).decode()

    def _decrypt(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return None
        try:
            return self.fernet.decrypt(token.encode()).decode()
        except InvalidToken:
            logger.error("Failed to decrypt stored token")
            return None

    def _build_app(self, tenant_id: Optional[str] = None) -> msal.ConfidentialClientApplication:
        if not all([self.client_id, self.client_secret]):
            raise AuthUnavailable("Microsoft Graph API credentials not configured")

        tenant = tenant_id or self.default_tenant_id
        return msal.ConfidentialClientApplication(
            self.client_id,
            authority=f"https://login.microsoftonline.com/{tenant}",
            client_credential=self.client_secret
        )

    def create_auth_url(self, state: Optional[str] = None) -> Dict[str, str]:
        """Create authentication URL for the Microsoft OAuth flow"""
        app = self._build_app()
        auth_url = app.get_authorization_request_url(
            scopes=SCOPES,
            redirect_uri=self.redirect_uri,
            state=state,
            prompt="consent"
        )
        return {"auth_url": auth_url}

    async def exchange_code(self, user_id: str, code: str) -> Dict[str, Any]:
        """Exchange an authorization code for tokens and store them for the user"""
        app = self._build_app()
        # MSAL performs blocking HTTP calls
        result = await asyncio.to_thread(
            app.acquire_token_by_authorization_code,
            code=code,
            scopes=SCOPES,
            redirect_uri=self.redirect_uri
        )

        if "error" in result:
            message = result.get("error_description", result.get("error"))
            logger.error(f"Failed to exchange code for user {user_id}: {message}")
            raise AuthUnavailable(f"Failed to exchange code: {message}", operation="exchange_code")

        claims = result.get("id_token_claims") or {}
        email = claims.get("preferred_username") or claims.get("email") or ""

        await self._save_tokens(user_id, result, email)
        logger.info(f"Connected Outlook for user {user_id}, email: {email}")
        return {"connected": True, "email": email}

    async def _save_tokens(self, user_id: str, result: Dict[str, Any], email: str,
                           previous_refresh_token: Optional[str] = None) -> None:
        refresh_token = result.get("refresh_token") or previous_refresh_token
        await self.storage.save_account_tokens(user_id, {
            "access_token": self._encrypt(result.get("access_token")),
            "refresh_token": self._encrypt(refresh_token),
            "expires_at": time.time() + result.get("expires_in", 3600),
            "email": email,
            "connected": True,
        })

    def refresh_token(self, refresh_token: str) -> Dict[str, Any]:
        """Acquire a new access token using the refresh token"""
        app = self._build_app()
        result = app.acquire_token_by_refresh_token(
            refresh_token=refresh_token,
            scopes=SCOPES
        )

        if "error" in result:
            message = result.get("error_description", result.get("error"))
            logger.error(f"Token refresh failed: {message}")
            raise AuthUnavailable(f"Failed to refresh token: {message}", operation="refresh_token")

        return result

    async def get_valid_token(self, user_id: str) -> AccessToken:
        """Return a valid access token for the user, refreshing it if it expires soon"""
        stored = await self.storage.get_account_tokens(user_id)
        if not stored or not stored.get("connected"):
            raise AuthUnavailable("Outlook is not connected for this user", operation="get_valid_token")

        access_token = self._decrypt(stored.get("access_token"))
        email = stored.get("email") or ""

        expires_at = float(stored.get("expires_at") or 0)
        if access_token and expires_at - time.time() > self.refresh_margin_seconds:
            return AccessToken(bearer_token=access_token, account_address=email)

        refresh_token = self._decrypt(stored.get("refresh_token"))
        if not refresh_token:
            raise AuthUnavailable("Stored Outlook token expired and cannot be refreshed",
                                  operation="get_valid_token")

        logger.info(f"Token for user {user_id} expiring soon, refreshing")
        result = await asyncio.to_thread(self.refresh_token, refresh_token)
        await self._save_tokens(user_id, result, email, previous_refresh_token=refresh_token)
        logger.info("Token refreshed successfully")

        return AccessToken(bearer_token=result["access_token"], account_address=email)

    async def connection_status(self, user_id: str) -> Dict[str, Any]:
        """Report whether the user has a connected Outlook account"""
        stored = await self.storage.get_account_tokens(user_id)
        if not stored:
            return {"connected": False, "email": None, "expires_at": None}
        return {
            "connected": bool(stored.get("connected")),
            "email": stored.get("email"),
            "expires_at": stored.get("expires_at"),
        }

    async def disconnect(self, user_id: str) -> None:
        """Forget the stored tokens of the user"""
        await self.storage.delete_account_tokens(user_id)
        logger.info(f"Disconnected Outlook for user {user_id}")
