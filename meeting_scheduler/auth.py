import logging

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import SCHEDULER_API_KEY
from .webhook_security import constant_time_compare

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


async def require_api_key(credentials: HTTPAuthorizationCredentials = Depends(security)) -> str:
    """
    Operator authentication for the scheduling endpoints.
    Expects Authorization: Bearer <SCHEDULER_API_KEY>; open when no key is configured.
    """
    if not SCHEDULER_API_KEY:
        logger.debug("⚠️ SCHEDULER_API_KEY not set - scheduling API is unauthenticated")
        return "anonymous"

    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing bearer token")

    if not constant_time_compare(credentials.credentials, SCHEDULER_API_KEY):
        logger.warning("🚫 Rejected scheduling API call with invalid token")
        raise HTTPException(status_code=401, detail="Invalid API key")

    return "operator"
