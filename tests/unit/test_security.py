"""Principal resolution and scope checks."""

import uuid

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials
from jose import jwt

from hospital_scheduling.core.config import settings
from hospital_scheduling.core.security import Principal, get_principal, require_scopes

HOSPITAL_A = uuid.UUID(int=1)
HOSPITAL_B = uuid.UUID(int=2)


def bearer(**claims) -> HTTPAuthorizationCredentials:
    claims.setdefault("sub", str(uuid.uuid4()))
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALG))


class TestPrincipalScopes:
    def test_role_grants_area_wildcard(self):
        p = Principal(user_id=uuid.uuid4(), hospital_id=HOSPITAL_A, roles=["front_desk"])
        assert p.allows("appointments:write")
        assert p.allows("resources:read")
        assert not p.allows("resources:approve")

    def test_explicit_scopes_without_roles(self):
        p = Principal(user_id=uuid.uuid4(), hospital_id=HOSPITAL_A, scopes=["waitlist:read"])
        assert p.allows("waitlist:read")
        assert not p.allows("waitlist:write")

    def test_admin_allows_everything(self):
        p = Principal(user_id=uuid.uuid4(), hospital_id=HOSPITAL_A, roles=["admin"])
        assert p.allows("scheduling:admin")

    def test_require_scopes_rejects_missing(self):
        dep = require_scopes("resources:approve", "resources:read")
        p = Principal(user_id=uuid.uuid4(), hospital_id=HOSPITAL_A, roles=["doctor"])
        with pytest.raises(HTTPException) as exc:
            dep(p)
        assert exc.value.status_code == 403
        assert "resources:approve" in exc.value.detail


@pytest.mark.asyncio
class TestGetPrincipal:
    async def test_missing_token_in_test_env_is_admin(self):
        p = await get_principal(None, None)
        assert p.hospital_id == uuid.UUID(settings.DEFAULT_HOSPITAL_ID)
        assert p.allows("scheduling:admin")

    async def test_token_hospital_claim(self):
        p = await get_principal(bearer(hospital_id=str(HOSPITAL_A), roles=["doctor"]), None)
        assert p.hospital_id == HOSPITAL_A
        assert p.roles == ["doctor"]

    async def test_header_selects_permitted_hospital(self):
        creds = bearer(hospital_ids=[str(HOSPITAL_A), str(HOSPITAL_B)])
        p = await get_principal(creds, str(HOSPITAL_B))
        assert p.hospital_id == HOSPITAL_B

    async def test_header_for_foreign_hospital_is_forbidden(self):
        with pytest.raises(HTTPException) as exc:
            await get_principal(bearer(hospital_id=str(HOSPITAL_A)), str(HOSPITAL_B))
        assert exc.value.status_code == 403

    async def test_bad_signature_is_unauthorized(self):
        creds = HTTPAuthorizationCredentials(scheme="Bearer", credentials=jwt.encode({"sub": str(uuid.uuid4())}, "other-secret", algorithm="HS256"))
        with pytest.raises(HTTPException) as exc:
            await get_principal(creds, None)
        assert exc.value.status_code == 401
