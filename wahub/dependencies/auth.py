"""
Authentication dependencies for FastAPI.

SECURITY: All queries MUST include organisation_id filter.
Failure to do so will result in data leakage between tenants.
"""
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from wahub.services.jwt_service import JWTService, Principal, check_permission


# Security scheme
security = HTTPBearer()


def get_jwt_service() -> JWTService:
    return JWTService()


async def get_current_principal(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
    jwt_service: JWTService = Depends(get_jwt_service),
) -> Principal:
    """
    Dependency that requires valid JWT token.

    Returns the principal if valid, raises 401 if invalid.

    Usage:
        @app.get("/protected")
        async def protected_route(principal: Principal = Depends(get_current_principal)):
            ...
    """
    principal = jwt_service.verify_credential(credentials.credentials)

    if principal is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    # picked up by LoggingMiddleware
    request.state.org_id = principal.organisation_id
    request.state.user_id = principal.user_id
    return principal


def require_permission(action: str):
    """
    Dependency factory that requires the caller's role to allow action.

    Usage:
        @app.post("/messages")
        async def send(principal: Principal = Depends(require_permission("messages:send"))):
            ...
    """

    async def dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if not check_permission(principal, action):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: {action}"
            )
        return principal

    return dependency
