"""Authentication dependencies and webhook signature verification"""
import hashlib
import hmac
from typing import Optional
from fastapi import HTTPException, Request
from paygate.db import redis as redis_store
from paygate.core.config import settings
from paygate.core.logging import api_access_logger, security_logger


def _session_id_from_request(request: Request) -> Optional[str]:
    session_id = request.cookies.get("session_id")
    if session_id:
        return session_id

    auth_header = request.headers.get("Authorization", "")
    if auth_header.lower().startswith("bearer "):
        return auth_header[7:].strip() or None
    return None


def require_auth(request: Request) -> str:
    """Dependency: Require authentication, return user_id"""
    session_id = _session_id_from_request(request)

    if not session_id:
        raise HTTPException(401, "Not authenticated. Please log in.")

    user_id = redis_store.get_session(session_id)
    if not user_id:
        raise HTTPException(401, "Session expired. Please log in again.")

    return user_id


def compute_webhook_signature(payload: bytes, secret: str) -> str:
    """HMAC-SHA256 hex digest of the raw request body"""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_webhook_signature(payload: bytes, signature: Optional[str], secret: Optional[str] = None) -> bool:
    """Check the processor's signature header against the raw body.

    With no secret configured the check is skipped outside production so local
    webhook replays keep working; production always rejects.
    """
    if secret is None:
        secret = settings.FANBASES_WEBHOOK_SECRET

    if not secret:
        if settings.ENVIRONMENT == "production":
            security_logger.error("Webhook rejected: FANBASES_WEBHOOK_SECRET not configured")
            return False
        security_logger.warning("Webhook signature not verified: no secret configured")
        return True

    if not signature:
        security_logger.warning("Webhook rejected: missing x-webhook-signature header")
        return False

    expected = compute_webhook_signature(payload, secret)
    if not hmac.compare_digest(expected, signature.strip().lower()):
        security_logger.warning("Webhook rejected: signature mismatch")
        return False
    return True


def log_api_access(request: Request, user_id: Optional[str], status_code: int, error: Optional[str] = None):
    """Log API access for audit purposes"""
    client_ip = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if not client_ip:
        client_ip = request.client.host if request.client else "unknown"

    message = (
        f"{request.method} {request.url.path} - Status: {status_code} - "
        f"User: {user_id or 'anonymous'} - IP: {client_ip}"
    )
    if error:
        message += f" - Error: {error}"

    if status_code >= 500:
        api_access_logger.error(message)
    elif status_code >= 400:
        api_access_logger.warning(message)
    else:
        api_access_logger.info(message)
