"""
Calendar Token Service
Stores and refreshes encrypted provider tokens for internal mailboxes
"""
import base64
import hashlib
import logging
from datetime import timedelta
from typing import Optional

import httpx
from cryptography.fernet import Fernet
from sqlalchemy.orm import Session

from ..config import (
    CALENDAR_TIMEOUT_SECONDS,
    MICROSOFT_CLIENT_ID,
    MICROSOFT_CLIENT_SECRET,
    MICROSOFT_TENANT,
    SECRET_KEY,
)
from ..models_calendar import CalendarIntegration
from ..utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

MICROSOFT_TOKEN_URL = f"https://login.microsoftonline.com/{MICROSOFT_TENANT}/oauth2/v2.0/token"
GRAPH_SCOPES = "offline_access Calendars.ReadWrite Mail.Send Mail.ReadWrite"


def get_fernet_key() -> bytes:
    key = hashlib.sha256(SECRET_KEY.encode()).digest()
    return base64.urlsafe_b64encode(key)


def _cipher() -> Fernet:
    return Fernet(get_fernet_key())


def encrypt_token(token: str) -> str:
    return _cipher().encrypt(token.encode()).decode()


def decrypt_token(token: str) -> str:
    return _cipher().decrypt(token.encode()).decode()


def save_integration(
    db: Session,
    user_email: str,
    access_token: str,
    refresh_token: str,
    expires_in: int = 3600,
    mailbox_address: Optional[str] = None,
) -> CalendarIntegration:
    """Create or update the integration for a mailbox with freshly issued tokens"""
    integration = (
        db.query(CalendarIntegration).filter(CalendarIntegration.user_email == user_email.lower()).first()
    )
    if not integration:
        integration = CalendarIntegration(user_email=user_email.lower())
        db.add(integration)

    integration.access_token = encrypt_token(access_token)
    integration.refresh_token = encrypt_token(refresh_token)
    integration.token_expires_at = utcnow() + timedelta(seconds=expires_in)
    integration.mailbox_address = mailbox_address or user_email
    db.commit()
    db.refresh(integration)
    return integration


async def get_valid_access_token(
    integration: CalendarIntegration,
    db: Session,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Optional[str]:
    """
    Get a valid access token, refreshing if necessary
    Returns None if refresh fails
    """
    try:
        # Token still valid for at least 5 minutes
        if integration.token_expires_at > utcnow() + timedelta(minutes=5):
            return decrypt_token(integration.access_token)

        logger.info(f"🔄 Calendar token expired for {integration.user_email}, refreshing...")
        refresh_token = decrypt_token(integration.refresh_token)

        async with httpx.AsyncClient(timeout=CALENDAR_TIMEOUT_SECONDS, transport=transport) as client:
            response = await client.post(
                MICROSOFT_TOKEN_URL,
                data={
                    "client_id": MICROSOFT_CLIENT_ID,
                    "client_secret": MICROSOFT_CLIENT_SECRET,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                    "scope": GRAPH_SCOPES,
                },
            )

        if response.status_code != 200:
            logger.error(f"❌ Token refresh failed: {response.text}")
            return None

        tokens = response.json()
        new_access_token = tokens.get("access_token")
        if not new_access_token:
            logger.error("❌ No access token in refresh response")
            return None

        integration.access_token = encrypt_token(new_access_token)
        # Providers may rotate the refresh token
        if tokens.get("refresh_token"):
            integration.refresh_token = encrypt_token(tokens["refresh_token"])
        integration.token_expires_at = utcnow() + timedelta(seconds=tokens.get("expires_in", 3600))
        db.commit()

        logger.info("✅ Calendar token refreshed successfully")
        return new_access_token

    except Exception as e:
        logger.error(f"❌ Error getting valid access token: {str(e)}")
        return None


async def get_access_token_for(
    db: Session, user_email: str, transport: Optional[httpx.AsyncBaseTransport] = None
) -> Optional[str]:
    """Look up the integration for a mailbox and return a usable token (None if not connected)"""
    integration = (
        db.query(CalendarIntegration).filter(CalendarIntegration.user_email == (user_email or "").lower()).first()
    )
    if not integration:
        logger.info(f"ℹ️ No calendar integration for {user_email}")
        return None
    return await get_valid_access_token(integration, db, transport=transport)
