from fastapi import Depends, HTTPException, status

from .security import Principal, get_current_user


def require_role(principal: Principal, allowed_roles: list[str]) -> None:
    if not principal.roles:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Roles missing in token",
        )

    allowed = {r.lower() for r in allowed_roles}
    roles = {r.lower() for r in principal.roles}

    if roles.isdisjoint(allowed):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access forbidden for this role",
        )


def role_required(*allowed_roles: str):
    def dependency(principal: Principal = Depends(get_current_user)) -> Principal:
        require_role(principal, list(allowed_roles))
        return principal

    return dependency
