import hmac
import logging

from fastapi import Header, HTTPException, status

from config.env import ADMIN_API_KEY, ENV

logger = logging.getLogger(__name__)


async def require_admin(x_admin_key: str | None = Header(default=None)):
    """
    Single shared-key check for the finance back office. Without a configured
    key the API is open, which only ever happens outside production
    (validate_production_env refuses to start otherwise).
    """
    if not ADMIN_API_KEY:
        if (ENV or "").lower() == "production":
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Admin key not configured",
            )
        return "admin"

    if not x_admin_key or not hmac.compare_digest(x_admin_key, ADMIN_API_KEY):
        logger.warning("ADMIN_KEY_REJECTED")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access only",
        )

    return "admin"
