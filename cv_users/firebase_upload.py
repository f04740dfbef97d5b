import io
import logging
from typing import Optional
from uuid import uuid4
from urllib.parse import quote

from PIL import Image

from cv_core.firebase_admin_client import get_bucket

logger = logging.getLogger(__name__)


def normalize_jpeg(source, *, quality: int = 85, max_side: Optional[int] = None) -> bytes:
    """
    Read any Pillow-supported image (bytes or file object) and re-encode it as
    an RGB JPEG, optionally bounded to `max_side` pixels.
    """
    if isinstance(source, (bytes, bytearray)):
        source = io.BytesIO(source)
    image = Image.open(source)
    image = image.convert("RGB")
    if max_side:
        image.thumbnail((max_side, max_side))

    buf = io.BytesIO()
    image.save(buf, format="JPEG", quality=quality, optimize=True)
    return buf.getvalue()


def _download_url(bucket, blob) -> str:
    # Firebase Storage download URLs are keyed by a metadata token
    md = blob.metadata or {}
    token = md.get("firebaseStorageDownloadTokens")
    if not token:
        token = str(uuid4())
        md["firebaseStorageDownloadTokens"] = token
        blob.metadata = md
        blob.patch()
    encoded = quote(blob.name, safe="")
    return f"https://firebasestorage.googleapis.com/v0/b/{bucket.name}/o/{encoded}?alt=media&token={token}"


def upload_jpeg(object_name: str, data: bytes, *, bucket=None) -> str:
    bucket = bucket or get_bucket()
    blob = bucket.blob(object_name)
    blob.upload_from_string(data, content_type="image/jpeg")
    url = _download_url(bucket, blob)
    logger.info("⬆️ uploaded %s (%d bytes)", object_name, len(data))
    return url


def upload_profile_image(file_obj, uid: str, *, bucket=None) -> str:
    """Avatar lives at the fixed key `{uid}` so a new upload replaces the old one."""
    if not file_obj or not uid:
        raise ValueError("profile upload needs a file and a uid")
    return upload_jpeg(uid, normalize_jpeg(file_obj, quality=90, max_side=1024), bucket=bucket)


def upload_chat_image(chat_id: str, data: bytes, *, bucket=None) -> str:
    if not data or not chat_id:
        raise ValueError("chat image upload needs data and a chat id")
    object_name = f"chat_images/{chat_id}/{uuid4()}.jpg"
    return upload_jpeg(object_name, normalize_jpeg(data, quality=80, max_side=2048), bucket=bucket)
