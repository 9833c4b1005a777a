import uuid
from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError
from pydantic import BaseModel
from hospital_scheduling.core.config import settings

http_bearer = HTTPBearer(auto_error=False)

# scopes implied by staff roles when a token carries roles but no explicit scopes
ROLE_SCOPES: dict[str, set[str]] = {
    "admin": {"*"},
    "scheduler": {"appointments:*", "availability:*", "resources:*", "waitlist:*", "scheduling:*"},
    "front_desk": {"appointments:*", "waitlist:*", "availability:read", "resources:read", "scheduling:read"},
    "doctor": {"appointments:read", "availability:*", "scheduling:read", "waitlist:read"},
    "resource_manager": {"resources:*", "scheduling:read"},
}

class Principal(BaseModel):
    user_id: uuid.UUID
    hospital_id: uuid.UUID
    roles: list[str] = []
    scopes: list[str] = []

    def granted(self) -> set[str]:
        out = set(self.scopes)
        for role in self.roles:
            out |= ROLE_SCOPES.get(role, set())
        return out

    def allows(self, scope: str) -> bool:
        granted = self.granted()
        if "*" in granted or scope in granted:
            return True
        area = scope.split(":", 1)[0]
        return f"{area}:*" in granted

def _decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG], audience=settings.REQUIRED_AUDIENCE)
    except JWTError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"Invalid token: {e}")

def _active_hospital(data: dict, requested: str | None) -> uuid.UUID:
    # staff attached to several hospitals pick one per request with X-Hospital-Id
    allowed = [str(h) for h in data.get("hospital_ids") or []]
    if data.get("hospital_id"):
        allowed.insert(0, str(data["hospital_id"]))
    if requested:
        if allowed and requested not in allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Hospital not permitted for this token")
        return uuid.UUID(requested)
    return uuid.UUID(allowed[0] if allowed else settings.DEFAULT_HOSPITAL_ID)

async def get_principal(
    creds: HTTPAuthorizationCredentials | None = Depends(http_bearer),
    x_hospital_id: str | None = Header(default=None),
) -> Principal:
    if creds is None and settings.ENV in ("local", "test"):
        hospital_id = uuid.UUID(x_hospital_id or settings.DEFAULT_HOSPITAL_ID)
        return Principal(user_id=uuid.uuid4(), hospital_id=hospital_id, roles=["admin"])
    if creds is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")

    data = _decode_token(creds.credentials)
    try:
        user_id = uuid.UUID(str(data.get("sub") or data.get("user_id")))
        hospital_id = _active_hospital(data, x_hospital_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Malformed identity claims")
    return Principal(user_id=user_id, hospital_id=hospital_id, roles=data.get("roles", []), scopes=data.get("scopes", []))

def require_scopes(*needed: str):
    def dep(principal: Principal = Depends(get_principal)) -> Principal:
        missing = [s for s in needed if not principal.allows(s)]
        if missing:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing scopes: {', '.join(missing)}")
        return principal
    return dep
