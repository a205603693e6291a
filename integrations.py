"""
Clients for third-party collaborators: object storage, reverse geocoding,
image classification and content moderation.

All of them are constructed once in main.py and injected, so tests can swap
in doubles.
"""
import io
import logging
import os
import re
import uuid
from typing import Callable, List, Optional, Tuple

import imagehash
from geopy.geocoders import Nominatim
from PIL import Image, UnidentifiedImageError

from errors import ExternalServiceFailure, ValidationError
from schemas import WASTE_TYPES
import settings

logger = logging.getLogger(__name__)

ADDRESS_PLACEHOLDER = "Address unavailable"


# ------------------ Object storage ------------------
class LocalObjectStorage:
    """Stores uploads on local disk (in production -> Cloudinary/S3)."""

    def __init__(self, directory: Optional[str] = None, base_url: Optional[str] = None):
        self.directory = directory or settings.STORAGE_DIR
        self.base_url = (base_url or settings.STORAGE_BASE_URL).rstrip("/")
        os.makedirs(self.directory, exist_ok=True)

    def upload(self, filename: str, content: bytes) -> dict:
        ext = os.path.splitext(filename or "")[1].lower()
        storage_key = f"{uuid.uuid4().hex}{ext}"
        path = os.path.join(self.directory, storage_key)
        try:
            with open(path, "wb") as f:
                f.write(content)
        except OSError as e:
            raise ExternalServiceFailure(f"Upload of {filename} failed: {e}") from e
        return {"url": f"{self.base_url}/{storage_key}", "storage_key": storage_key}

    def delete(self, storage_key: str) -> None:
        path = os.path.join(self.directory, os.path.basename(storage_key))
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise ExternalServiceFailure(f"Delete of {storage_key} failed: {e}") from e


def upload_many(storage, files: List[Tuple[str, bytes]]) -> List[dict]:
    """Upload every file or none: on failure the files already stored are removed."""
    stored = []
    try:
        for filename, content in files:
            stored.append(storage.upload(filename, content))
    except Exception as e:
        discard_uploads(storage, stored)
        if isinstance(e, ExternalServiceFailure):
            raise
        raise ExternalServiceFailure(f"Upload failed: {e}") from e
    return stored


def discard_uploads(storage, refs: List[dict]) -> None:
    for ref in refs:
        try:
            storage.delete(ref["storage_key"])
        except Exception as e:
            logger.warning("Could not remove stored file %s: %s", ref.get("storage_key"), e)


# ------------------ Geocoding ------------------
class ReverseGeocoder:
    def __init__(self, user_agent: Optional[str] = None, timeout: Optional[float] = None):
        self.geolocator = Nominatim(user_agent=user_agent or settings.GEOCODER_USER_AGENT,
                                    timeout=timeout or settings.EXTERNAL_TIMEOUT_SECONDS)

    def address_for(self, lng: float, lat: float) -> str:
        try:
            location = self.geolocator.reverse(f"{lat}, {lng}", language="en")
        except Exception as e:
            logger.warning("Reverse geocoding failed for %s, %s: %s", lat, lng, e)
            return ADDRESS_PLACEHOLDER
        if not location:
            return ADDRESS_PLACEHOLDER
        return location.address


# ------------------ Image classification ------------------
CATEGORIES = WASTE_TYPES + ["other"]


class ImageClassifier:
    def classify(self, image_bytes: bytes) -> Tuple[str, float]:
        # Placeholder simple hash-derived pseudo classification
        h = imagehash.average_hash(self._open(image_bytes))
        idx = int(str(h)[-2:], 16) % len(CATEGORIES)
        confidence = 0.6 + (int(str(h)[-1], 16) / 32.0)
        return CATEGORIES[idx], min(confidence, 0.99)

    def perceptual_hash(self, image_bytes: bytes) -> str:
        return str(imagehash.phash(self._open(image_bytes)))

    def _open(self, image_bytes: bytes) -> Image.Image:
        try:
            img = Image.open(io.BytesIO(image_bytes))
            img.load()
            return img
        except (UnidentifiedImageError, OSError) as e:
            raise ValidationError("Uploaded file is not a readable image") from e


# ------------------ Content moderation ------------------
MODERATION_LABELS = {"SPAM", "GIBBERISH", "NOSPAM"}
SAFE_DEFAULT_LABEL = "SPAM"

SPAM_PATTERNS = [
    re.compile(r"\b(free money|click here|buy now|limited offer|earn \$?\d+|casino|lottery)\b", re.I),
]


def heuristic_moderation(title: str, description: str, link: str) -> str:
    text = f"{title} {description}"
    words = re.findall(r"[A-Za-z]+", text)
    if not words:
        return "GIBBERISH"
    voweless = [w for w in words if len(w) > 3 and not re.search(r"[aeiouyAEIOUY]", w)]
    if len(voweless) * 2 > len(words):
        return "GIBBERISH"
    if any(p.search(text) for p in SPAM_PATTERNS):
        return "SPAM"
    if len(re.findall(r"https?://", text)) > 2:
        return "SPAM"
    return "NOSPAM"


class ContentModerator:
    """Advisory classifier for user-generated posts.

    ``backend`` returns a free-form label; anything outside the known label
    set is treated as SPAM so an ambiguous answer never publishes content.
    """

    def __init__(self, backend: Optional[Callable[[str, str, str], str]] = None):
        self.backend = backend or heuristic_moderation

    def classify(self, title: str, description: str, link: str = "") -> str:
        try:
            raw = self.backend(title, description, link)
        except Exception as e:
            logger.warning("Moderation backend failed: %s", e)
            return SAFE_DEFAULT_LABEL
        label = str(raw or "").strip().upper()
        return label if label in MODERATION_LABELS else SAFE_DEFAULT_LABEL

    def is_acceptable(self, title: str, description: str, link: str = "") -> Tuple[bool, str]:
        label = self.classify(title, description, link)
        return label == "NOSPAM", label
