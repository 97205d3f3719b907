# app/services/emails.py
"""
Rendu des emails HTML (Jinja2) : emails clients des réparations
et digest quotidien des pièces à commander.
"""
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from jinja2 import Environment, FileSystemLoader, select_autoescape

from app.core.config import settings

EMAILS_DIR = Path(__file__).resolve().parent.parent / "templates" / "emails"

env = Environment(
    loader=FileSystemLoader(str(EMAILS_DIR)),
    autoescape=select_autoescape(["html"]),
)

SUBJECTS = {
    "repair_intake": "Prise en charge de votre appareil #{ref}",
    "repair_ready": "Votre appareil est prêt #{ref}",
    "repair_part_ordered": "Pièce commandée pour votre réparation #{ref}",
    "repair_delivered_thanks": "Merci pour votre confiance #{ref}",
    "repairs_digest": "Pièces à commander ({count})",
}


def company_context() -> Dict[str, Any]:
    return {
        "name": settings.COMPANY_NAME,
        "phone": settings.COMPANY_PHONE,
        "email": settings.COMPANY_EMAIL,
        "address": settings.COMPANY_ADDRESS,
        "opening_hours": settings.COMPANY_OPENING_HOURS,
    }


def ticket_ref(repair_id) -> str:
    """8 premiers caractères de l'id, en majuscules (#A1B2C3D4)."""
    return str(repair_id)[:8].upper()


def render_email(name: str, **ctx: Any) -> Tuple[str, str]:
    if name not in SUBJECTS:
        raise ValueError(f"Template email inconnu: {name}")

    ctx.setdefault("company", company_context())
    html = env.get_template(f"{name}.html").render(**ctx)

    count: Optional[int] = None
    if name == "repairs_digest":
        count = (ctx.get("payload") or {}).get("total_parts", 0)
    subject = SUBJECTS[name].format(ref=ctx.get("ticket_ref", ""), count=count)
    return subject, html
