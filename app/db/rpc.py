# app/db/rpc.py
"""
Appels aux procédures stockées (réservation de stock, finalisation de facture,
ingestion des remboursements, rappels agenda, archivage).

Les invariants transactionnels vivent dans la base : côté API on se contente
d'appeler la fonction et de traduire son message d'erreur en code HTTP.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, List

from fastapi import Depends
from sqlalchemy import bindparam, text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from app.db.models import JSONType
from app.db.session import get_async_session

logger = logging.getLogger(__name__)

_IDENT = re.compile(r"^[a-z_][a-z0-9_]*$")


class RpcError(Exception):
    def __init__(self, name: str, message: str):
        super().__init__(message)
        self.name = name
        self.message = message

    def matches(self, *needles: str) -> bool:
        low = self.message.lower()
        return any(n.lower() in low for n in needles)


def build_statement(name: str, params: Dict[str, Any]):
    """SELECT * FROM name(p_a => :p_a, ...)"""
    if not _IDENT.match(name):
        raise ValueError(f"Nom de procédure invalide: {name}")

    args = ", ".join(f"{k} => :{k}" for k in params)
    stmt = text(f"SELECT * FROM {name}({args})")
    json_params = [bindparam(k, type_=JSONType) for k, v in params.items() if isinstance(v, (dict, list))]
    if json_params:
        stmt = stmt.bindparams(*json_params)
    return stmt


def _unwrap(rows: List[Dict[str, Any]]) -> Any:
    # fonction scalaire (json, uuid...) -> la valeur seule
    if len(rows) == 1 and len(rows[0]) == 1:
        return next(iter(rows[0].values()))
    return rows


class RpcClient:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def call(self, name: str, **params: Any) -> Any:
        stmt = build_statement(name, params)
        try:
            result = await self.session.execute(stmt, params)
            rows = [dict(r._mapping) for r in result]
            await self.session.commit()
        except DBAPIError as exc:
            await self.session.rollback()
            message = str(getattr(exc, "orig", exc))
            logger.warning("RPC %s en erreur : %s", name, message)
            raise RpcError(name, message) from exc
        return _unwrap(rows)


def call_rpc_sync(db: Session, name: str, **params: Any) -> Any:
    """Variante synchrone (jobs Celery / endpoints cron) ; le commit reste à l'appelant."""
    stmt = build_statement(name, params)
    try:
        rows = [dict(r._mapping) for r in db.execute(stmt, params)]
    except DBAPIError as exc:
        db.rollback()
        message = str(getattr(exc, "orig", exc))
        logger.warning("RPC %s en erreur : %s", name, message)
        raise RpcError(name, message) from exc
    return _unwrap(rows)


def get_rpc(session: AsyncSession = Depends(get_async_session)) -> RpcClient:
    return RpcClient(session)
