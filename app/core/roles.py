# app/core/roles.py
import uuid
from dataclasses import dataclass

from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.core.security import get_current_user_id
from app.db.session import get_session
from app.db.models import Profile

ADMIN_ROLES = ("ADMIN", "ADMIN_FULL")
SHOP_ROLES = ("MAGASIN", "ADMIN", "ADMIN_FULL")


@dataclass
class CurrentUser:
    id: uuid.UUID
    role: str
    email: str | None = None


async def get_current_profile(
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),
) -> CurrentUser:
    """
    Lit le rôle de l'utilisateur courant dans `profiles`.
    Lève 403 si le profil n'existe pas.
    """
    result = await db.execute(select(Profile).where(Profile.id == user_id))
    profile = result.scalar_one_or_none()

    if not profile:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Profil utilisateur introuvable")
    return CurrentUser(id=profile.id, role=(profile.role or "").upper(), email=profile.email)


def require_roles(*roles: str, detail: str = "Permissions insuffisantes"):
    """Vérifie que l'utilisateur courant possède un des rôles listés."""
    needed = {r.upper() for r in roles}

    async def dep(current: CurrentUser = Depends(get_current_profile)) -> CurrentUser:
        if current.role not in needed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)
        return current
    return dep


def forbid_roles(*roles: str, detail: str = "Permissions insuffisantes"):
    """Inverse de require_roles : refuse les rôles listés."""
    refused = {r.upper() for r in roles}

    async def dep(current: CurrentUser = Depends(get_current_profile)) -> CurrentUser:
        if current.role in refused:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)
        return current
    return dep


require_admin = require_roles(*ADMIN_ROLES, detail="Accès réservé aux administrateurs")
require_shop = require_roles(*SHOP_ROLES)
