# app/services/storage.py

import base64
import binascii
import uuid
from pathlib import Path

from app.core.config import settings

# =========================================================
# MÉDIAS RÉPARATIONS (SIGNATURES / PHOTOS)
# =========================================================

REPAIR_MEDIA_SUBDIR = "repairs"

_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/webp": ".webp",
}


def media_root() -> Path:
    return Path(settings.MEDIA_ROOT)


def decode_data_url(data: str) -> tuple[bytes, str]:
    """
    Accepte un data URL (data:image/png;base64,...) ou du base64 brut.
    Retourne (contenu, extension).
    """
    ext = ".png"
    payload = data.strip()
    if payload.startswith("data:"):
        header, _, payload = payload.partition(",")
        mime = header[5:].split(";")[0].lower()
        ext = _EXTENSIONS.get(mime, ".png")
    try:
        content = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Image base64 invalide") from exc
    if not content:
        raise ValueError("Image vide")
    return content, ext


def store_repair_media(*, repair_id, kind: str, data: str) -> str:
    """
    Écrit une signature / photo sous MEDIA_ROOT/repairs/<repair_id>/.
    Retourne l'URL publique (servie par le mount /media).
    """
    content, ext = decode_data_url(data)
    filename = f"{kind}_{uuid.uuid4().hex}{ext}"

    repair_dir = media_root() / REPAIR_MEDIA_SUBDIR / str(repair_id)
    repair_dir.mkdir(parents=True, exist_ok=True)
    with open(repair_dir / filename, "wb") as f:
        f.write(content)

    return f"{settings.PUBLIC_BASE_URL}/media/{REPAIR_MEDIA_SUBDIR}/{repair_id}/{filename}"


def delete_repair_media_dir(repair_id) -> int:
    """Supprime les fichiers d'un ticket (best effort). Retourne le nombre de fichiers supprimés."""
    repair_dir = media_root() / REPAIR_MEDIA_SUBDIR / str(repair_id)
    if not repair_dir.exists():
        return 0
    count = 0
    for path in repair_dir.iterdir():
        if path.is_file():
            path.unlink()
            count += 1
    repair_dir.rmdir()
    return count
