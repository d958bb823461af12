"""Helpers for base64-encoded image payloads."""

import base64

# Leading base64 characters of common image signatures
_SIGNATURES = (
    ("iVBORw0KGgo", "image/png"),
    ("/9j/", "image/jpeg"),
    ("R0lGOD", "image/gif"),
    ("UklGR", "image/webp"),
    ("Qk", "image/bmp"),
)


def strip_data_url(image: str) -> str:
    """Return the bare base64 body of ``image``, dropping a data: URL prefix."""
    image = image.strip()
    if image.startswith("data:") and "," in image:
        return image.split(",", 1)[1]
    return image


def guess_image_mime(image: str, default: str = "image/png") -> str:
    body = strip_data_url(image)
    for prefix, mime in _SIGNATURES:
        if body.startswith(prefix):
            return mime
    return default


def to_data_url(image: str) -> str:
    body = strip_data_url(image)
    return f"data:{guess_image_mime(body)};base64,{body}"


def encode_image_bytes(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")

