"""
Image processing utilities for avatars.
Handles validation, resizing and optimization with Pillow.
"""

from PIL import Image, UnidentifiedImageError
import io

from errors import bad_request


ALLOWED_MIME_TYPES = {"image/png", "image/jpeg", "image/jpg", "image/webp", "image/gif"}
AVATAR_MAX_DIMENSION = 1024  # Longest side in pixels


def load_image(content: bytes) -> Image.Image:
    """
    Open and verify image bytes.

    Raises:
        ApiError 400: If the bytes are not a readable image
    """
    try:
        image = Image.open(io.BytesIO(content))
        image.load()
    except (UnidentifiedImageError, OSError):
        raise bad_request("Imagem inválida.", field="data_url")
    return image


def resize_to_fit(image: Image.Image, max_dimension: int = AVATAR_MAX_DIMENSION) -> Image.Image:
    """
    Shrink an image so its longest side is at most max_dimension,
    maintaining aspect ratio. Smaller images are returned unchanged.
    """
    resized = image.copy()
    resized.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)
    return resized


def optimize_image(image: Image.Image, quality: int = 85) -> bytes:
    """
    Optimize image for web delivery.

    Args:
        image: PIL Image object
        quality: JPEG quality (1-100, default 85)

    Returns:
        bytes: Optimized JPEG data
    """
    # Convert to RGB if needed
    if image.mode in ('RGBA', 'LA') or (image.mode == 'P' and 'transparency' in image.info):
        image = image.convert('RGBA')
        background = Image.new('RGB', image.size, (255, 255, 255))
        background.paste(image, mask=image.split()[3])
        image = background
    elif image.mode != 'RGB':
        image = image.convert('RGB')

    buffer = io.BytesIO()
    image.save(
        buffer,
        format='JPEG',
        quality=quality,
        optimize=True,
        progressive=True
    )
    return buffer.getvalue()


def process_avatar(content: bytes, mime_type: str) -> bytes:
    """Validate, resize (max 1024px) and re-encode an avatar as JPEG"""
    if mime_type not in ALLOWED_MIME_TYPES:
        raise bad_request("Formato de imagem não suportado.", field="data_url")
    image = load_image(content)
    return optimize_image(resize_to_fit(image))
