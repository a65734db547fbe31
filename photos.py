import base64, io
from dataclasses import dataclass
from PIL import Image, ImageOps, UnidentifiedImageError

import config
from errors import ValidationError

DATA_URL_PREFIX = "data:image/jpeg;base64,"

@dataclass
class CompressedPhoto:
    data: bytes
    width: int
    height: int

def scaled_size(width: int, height: int, max_dimension: int):
    longest = max(width, height)
    if longest <= max_dimension: return width, height
    ratio = max_dimension / longest
    return max(1, round(width * ratio)), max(1, round(height * ratio))

def compress_image(raw: bytes, max_dimension: int = config.PHOTO_MAX_DIMENSION, quality: int = config.PHOTO_QUALITY) -> CompressedPhoto:
    """Downsample so the longest side fits max_dimension, then re-encode as JPEG."""
    try:
        img = Image.open(io.BytesIO(raw)); img.load()
    except (UnidentifiedImageError, OSError) as e:
        raise ValidationError("File yang dipilih bukan gambar yang valid.") from e
    img = ImageOps.exif_transpose(img)
    if img.mode != "RGB": img = img.convert("RGB")
    size = scaled_size(img.width, img.height, max_dimension)
    if size != img.size: img = img.resize(size, Image.Resampling.LANCZOS)
    out = io.BytesIO()
    img.save(out, format="JPEG", quality=quality)
    return CompressedPhoto(out.getvalue(), img.width, img.height)

def to_data_url(photo: CompressedPhoto) -> str:
    return DATA_URL_PREFIX + base64.b64encode(photo.data).decode("ascii")

def decode_data_url(url: str) -> bytes:
    _, _, payload = url.partition(",") if url.startswith("data:") else ("", "", url)
    return base64.b64decode(payload)
