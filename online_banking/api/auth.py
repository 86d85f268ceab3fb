"""
Authentication and authorization dependencies
"""

from datetime import datetime, timezone, timedelta
from typing import Dict, Optional

import jwt
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..system import BankingSystem, get_banking_system
from ..users import User
from ..exceptions import NotFoundError
from ..logging_config import get_logger, log_action

logger = get_logger("online_banking.api.auth")

# JWT Security
security = HTTPBearer(auto_error=False)


def get_system() -> BankingSystem:
    """Dependency returning the banking system; overridden by ``create_app(system)``"""
    return get_banking_system()


def create_access_token(system: BankingSystem, user: User) -> str:
    """Issue a bearer token for a user"""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user.id,
        "role": user.role.value,
        "iat": now,
        "exp": now + timedelta(hours=system.config.jwt_expiry_hours),
    }
    return jwt.encode(payload, system.config.jwt_secret, algorithm=system.config.jwt_algorithm)


def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    system: BankingSystem = Depends(get_system)
) -> User:
    """Dependency that validates the JWT and returns the calling user"""
    if not system.config.auth_enabled:
        # Development mode: trust the caller's X-User-Id header
        user_id = request.headers.get("X-User-Id")
        if not user_id:
            raise HTTPException(status_code=401, detail="Not authenticated")
    else:
        if not credentials:
            raise HTTPException(status_code=401, detail="Not authenticated")
        try:
            payload = jwt.decode(credentials.credentials, system.config.jwt_secret,
                                 algorithms=[system.config.jwt_algorithm])
        except jwt.ExpiredSignatureError:
            raise HTTPException(status_code=401, detail="Token expired")
        except jwt.InvalidTokenError:
            raise HTTPException(status_code=401, detail="Invalid token")
        user_id = payload.get("sub")
        if not user_id:
            raise HTTPException(status_code=401, detail="Invalid token")

    try:
        user = system.users.get_user(user_id)
    except NotFoundError:
        raise HTTPException(status_code=401, detail="Invalid token")
    if not user.is_active:
        log_action(logger, "warning", "Request from deactivated user",
                   user_id=user.id, action="authenticate")
        raise HTTPException(status_code=403, detail="Account is deactivated")
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Unauthorized. Admin access required.")
    return user


def require_super_admin(user: User = Depends(require_admin)) -> User:
    if not user.is_super_admin:
        raise HTTPException(status_code=403, detail="Super admin access required")
    return user


def client_info(request: Request) -> Dict[str, Optional[str]]:
    """Caller address and user agent, recorded on audit rows"""
    return {
        'ip_address': request.client.host if request.client else None,
        'user_agent': request.headers.get("user-agent"),
    }
