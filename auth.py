"""
Mining Ops — Authentication
Bearer session tokens for pilots and a shared service token for the periodic
trigger that calls the sweep endpoints.
"""

import hmac
import logging
from dataclasses import dataclass
from typing import Optional, Tuple
from fastapi import Request, HTTPException, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

import config
from database import OperationsDatabase
from models import Session

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════════
# AUTH CONTEXT
# ══════════════════════════════════════════════════════════════════════════════

@dataclass
class AuthContext:
    """Who is calling, as resolved from the bearer session token."""
    user_id: str
    user_name: str
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


# ══════════════════════════════════════════════════════════════════════════════
# TOKEN VALIDATOR
# ══════════════════════════════════════════════════════════════════════════════

class TokenValidator:
    """Issues and validates session tokens."""

    def __init__(self, db: OperationsDatabase, ttl_hours: int = config.SESSION_TTL_HOURS):
        self.db = db
        self.ttl_hours = ttl_hours

    def issue(self, user_id: str) -> Tuple[Session, str]:
        """Create a session, returns (session, raw_token). Only the hash is stored."""
        session, raw_token = self.db.create_session(user_id, self.ttl_hours)
        logger.info(f"Session {session.id} issued for user {user_id}")
        return session, raw_token

    def validate_session_token(self, raw_token: str) -> Optional[Session]:
        return self.db.validate_session(raw_token)

    def logout(self, session_id: str) -> bool:
        return self.db.terminate_session(session_id)


# ══════════════════════════════════════════════════════════════════════════════
# FASTAPI DEPENDENCIES
# ══════════════════════════════════════════════════════════════════════════════

# Bound once by init_auth() when the app is built
_db: Optional[OperationsDatabase] = None
_token_validator: Optional[TokenValidator] = None
_service_token: str = ""

security = HTTPBearer(auto_error=False)


def init_auth(db: OperationsDatabase, service_token: str = config.SERVICE_TOKEN):
    """Initialize auth module with database and the sweep service token."""
    global _db, _token_validator, _service_token
    _db = db
    _token_validator = TokenValidator(db)
    _service_token = service_token


def request_origin(request: Request) -> Tuple[str, str]:
    """(client ip, user agent). The first X-Forwarded-For hop wins behind a proxy."""
    hops = [h.strip() for h in request.headers.get("X-Forwarded-For", "").split(",") if h.strip()]
    if hops:
        ip = hops[0]
    elif request.client:
        ip = request.client.host
    else:
        ip = "unknown"
    return ip, request.headers.get("User-Agent", "unknown")


async def get_auth_context(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> AuthContext:
    """Resolve the bearer session token to the pilot making the request."""
    if _token_validator is None:
        raise HTTPException(status_code=500, detail="Authentication is not set up")
    if credentials is None:
        raise HTTPException(status_code=401, detail="Bearer session token required")

    session = _token_validator.validate_session_token(credentials.credentials)
    user = _db.get_user(session.user_id) if session else None
    if user is None:
        raise HTTPException(status_code=401, detail="Session expired or unknown")

    ip, agent = request_origin(request)
    return AuthContext(user.id, user.name, session.id, ip, agent)


async def require_service_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> str:
    """FastAPI dependency for service-only endpoints (session issuing, sweeps, webhooks)."""
    if not _service_token:
        raise HTTPException(status_code=403, detail="Service token not configured")
    if not credentials or not hmac.compare_digest(credentials.credentials, _service_token):
        raise HTTPException(status_code=403, detail="Service token required")
    return "service"


def get_validator() -> TokenValidator:
    """Validator bound by init_auth()."""
    if not _token_validator:
        raise RuntimeError("init_auth() has not been called")
    return _token_validator
