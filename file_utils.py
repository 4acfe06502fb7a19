"""File upload utilities: data URL decoding and local storage under UPLOAD_DIR"""
import base64
import binascii
import logging
import mimetypes
import re
import time
import uuid
from pathlib import Path
from typing import Optional, Tuple

from config import settings
from errors import bad_request

logger = logging.getLogger(__name__)

DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(;[\w-]+=[\w.-]+)*;base64,(?P<data>.+)$", re.DOTALL)

ALLOWED_ATTACHMENT_MIME_TYPES = {
    "image/png", "image/jpeg", "image/jpg", "image/gif", "image/webp",
    "application/pdf", "text/plain", "text/csv",
}

# Public URL prefix served by the /uploads static mount
PUBLIC_PREFIX = "/uploads"


def get_upload_root() -> Path:
    return Path(settings.UPLOAD_DIR)


def ensure_upload_dir(subdir: str = "") -> Path:
    """Create uploads directory if it doesn't exist"""
    path = get_upload_root() / subdir
    path.mkdir(parents=True, exist_ok=True)
    return path


def decode_data_url(data_url: str, max_bytes: int) -> Tuple[str, bytes]:
    """
    Decode a base64 data URL.

    Returns:
        (mime_type, content)

    Raises:
        ApiError 400: malformed payload or larger than max_bytes
    """
    match = DATA_URL_RE.match(data_url.strip())
    if not match:
        raise bad_request("Arquivo inválido.", field="data_url")

    # Reject early on the encoded size (base64 is ~4/3 of the payload)
    if len(match.group("data")) * 3 // 4 > max_bytes + 3:
        raise bad_request(f"Arquivo muito grande. Tamanho máximo: {max_bytes / (1024 * 1024):.1f}MB", field="data_url")

    try:
        content = base64.b64decode(match.group("data"), validate=True)
    except (binascii.Error, ValueError):
        raise bad_request("Arquivo inválido.", field="data_url")

    if not content:
        raise bad_request("Arquivo vazio.", field="data_url")
    if len(content) > max_bytes:
        raise bad_request(f"Arquivo muito grande. Tamanho máximo: {max_bytes / (1024 * 1024):.1f}MB", field="data_url")

    return match.group("mime") or "application/octet-stream", content


def safe_file_name(file_name: str) -> str:
    name = Path(file_name).name
    name = re.sub(r"[^\w.\-]+", "_", name).strip("._")
    return name[:120] or "arquivo"


def save_upload(content: bytes, subdir: str, file_name: str, mime_type: Optional[str] = None) -> str:
    """
    Write content under UPLOAD_DIR/subdir and return its public URL
    (e.g. "/uploads/attachments/3/1700000000_ab12cd_exame.pdf").
    """
    directory = ensure_upload_dir(subdir)
    name = safe_file_name(file_name)
    if not Path(name).suffix and mime_type:
        name += mimetypes.guess_extension(mime_type) or ""
    stored = f"{int(time.time())}_{uuid.uuid4().hex[:6]}_{name}"
    (directory / stored).write_bytes(content)
    return f"{PUBLIC_PREFIX}/{subdir}/{stored}".replace("//", "/")


def delete_upload(file_url: Optional[str]) -> None:
    """Delete a previously saved upload; missing files are ignored"""
    if not file_url or not file_url.startswith(PUBLIC_PREFIX + "/"):
        return
    root = get_upload_root().resolve()
    file_path = (root / file_url[len(PUBLIC_PREFIX) + 1:]).resolve()
    if root not in file_path.parents:
        logger.warning(f"Refusing to delete file outside uploads: {file_url}")
        return
    try:
        if file_path.is_file():
            file_path.unlink()
            logger.info(f"Deleted upload: {file_url}")
    except OSError as e:
        logger.warning(f"Failed to delete upload {file_url}: {e}")
