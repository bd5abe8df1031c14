"""
Storage abstraction for item images.
Supports AWS S3 (production) and local disk (development).

Uploads are checked before anything is written: the content type must be an
image and the payload at most MAX_IMAGE_SIZE. Accepted images are normalized
to JPEG with Pillow and stored under a generated key; the returned public URL
is what Item.image_url keeps.
"""
import os
import logging
import secrets
import time
from io import BytesIO

from PIL import Image, ImageOps, UnidentifiedImageError

from constants import MAX_IMAGE_SIZE, IMAGE_MIME_PREFIX, IMAGE_QUALITY, MAX_IMAGE_DIMENSION
from errors import ValidationError, Unavailable

logger = logging.getLogger(__name__)


def validate_image_upload(file_obj, content_type):
    """
    Check an upload before storing it. Returns the payload bytes.
    Raises ValidationError for non-images and files over MAX_IMAGE_SIZE.
    """
    if file_obj is None:
        raise ValidationError("No file provided")
    if not content_type or not content_type.lower().startswith(IMAGE_MIME_PREFIX):
        raise ValidationError("Please select an image file")

    # Read one byte past the limit so oversized files are rejected without loading them whole
    data = file_obj.read(MAX_IMAGE_SIZE + 1)
    if len(data) > MAX_IMAGE_SIZE:
        raise ValidationError(f"Image size should be less than {MAX_IMAGE_SIZE // (1024 * 1024)}MB")
    if not data:
        raise ValidationError("The selected file is empty")
    return data


def _process_image(data: bytes) -> bytes:
    """
    Process uploaded image: EXIF transpose, resize if needed, convert to JPEG.
    Returns JPEG bytes.
    """
    try:
        img = Image.open(BytesIO(data))
        img = ImageOps.exif_transpose(img)
        img = img.convert("RGBA")
    except (UnidentifiedImageError, OSError) as e:
        raise ValidationError("Unsupported or corrupt image file") from e
    bg = Image.new("RGB", img.size, (255, 255, 255))
    bg.paste(img, (0, 0), img)
    if bg.width > MAX_IMAGE_DIMENSION or bg.height > MAX_IMAGE_DIMENSION:
        bg.thumbnail((MAX_IMAGE_DIMENSION, MAX_IMAGE_DIMENSION), Image.Resampling.LANCZOS)
    buf = BytesIO()
    bg.save(buf, "JPEG", quality=IMAGE_QUALITY, optimize=True)
    return buf.getvalue()


def generate_image_key():
    """Unique object key, e.g. item_1718000000_3f9a1c2b.jpg"""
    return f"item_{int(time.time())}_{secrets.token_hex(4)}.jpg"


class LocalStorage:
    """Store images on local disk."""

    def __init__(self, upload_folder: str):
        self.upload_folder = upload_folder
        os.makedirs(upload_folder, exist_ok=True)

    def is_s3(self) -> bool:
        return False

    def save_image(self, jpeg_bytes: bytes, key: str) -> str:
        path = os.path.join(self.upload_folder, key)
        with open(path, "wb") as f:
            f.write(jpeg_bytes)
        return key

    def delete_image(self, key: str) -> bool:
        """Delete image from disk. Returns True if deleted."""
        path = os.path.join(self.upload_folder, key)
        if os.path.exists(path):
            try:
                os.remove(path)
                return True
            except OSError as e:
                logger.error(f"Error deleting file {path}: {e}", exc_info=True)
                return False
        return False

    def get_image_url(self, key: str) -> str:
        return f"/uploads/{key}"

    def key_for_url(self, url: str):
        """Inverse of get_image_url for URLs this backend issued; None otherwise."""
        prefix = "/uploads/"
        if url and url.startswith(prefix):
            return url[len(prefix):]
        return None

    def exists(self, key: str) -> bool:
        return os.path.exists(os.path.join(self.upload_folder, key))


class S3Storage:
    """Store images in AWS S3."""

    def __init__(self, bucket: str, region: str, cdn_url: str = None, client=None):
        self.bucket = bucket
        self.region = region
        self.cdn_url = cdn_url.rstrip("/") if cdn_url else None
        if client is None:
            import boto3
            client = boto3.client("s3", region_name=region)
        self.client = client

    def is_s3(self) -> bool:
        return True

    def _key(self, filename: str) -> str:
        """S3 object key with uploads/ prefix."""
        return f"uploads/{filename}"

    def _base_url(self) -> str:
        if self.cdn_url:
            return self.cdn_url
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com"

    def save_image(self, jpeg_bytes: bytes, key: str) -> str:
        from botocore.exceptions import BotoCoreError, ClientError
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=self._key(key),
                Body=jpeg_bytes,
                ContentType="image/jpeg",
                CacheControl="max-age=3600",
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to upload S3 object {key}: {e}", exc_info=True)
            raise Unavailable("Image storage is unavailable. Please try again.") from e
        return key

    def delete_image(self, key: str) -> bool:
        """Delete image from S3. Returns True if deleted."""
        from botocore.exceptions import BotoCoreError, ClientError
        s3_key = self._key(key)
        try:
            self.client.delete_object(Bucket=self.bucket, Key=s3_key)
            return True
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Error deleting S3 object {s3_key}: {e}", exc_info=True)
            return False

    def get_image_url(self, key: str) -> str:
        return f"{self._base_url()}/uploads/{key}"

    def key_for_url(self, url: str):
        prefix = f"{self._base_url()}/uploads/"
        if url and url.startswith(prefix):
            return url[len(prefix):]
        return None

    def exists(self, key: str) -> bool:
        from botocore.exceptions import ClientError
        try:
            self.client.head_object(Bucket=self.bucket, Key=self._key(key))
            return True
        except ClientError:
            return False


def upload_image(storage, file_obj, content_type) -> str:
    """Validate, normalize and store an uploaded image. Returns its public URL."""
    data = validate_image_upload(file_obj, content_type)
    jpeg_bytes = _process_image(data)
    key = storage.save_image(jpeg_bytes, generate_image_key())
    logger.info(f"Stored image {key} ({len(jpeg_bytes)} bytes)")
    return storage.get_image_url(key)


def delete_image_url(storage, url) -> bool:
    """Remove a stored image by the URL we handed out. External URLs are left alone."""
    key = storage.key_for_url(url)
    if not key:
        return False
    return storage.delete_image(key)


# Module-level storage instance (initialized when app loads)
_storage = None


def init_storage(app):
    """Initialize storage with app config. Call from app startup."""
    global _storage
    bucket = os.environ.get("AWS_S3_BUCKET")
    if bucket:
        region = os.environ.get("AWS_S3_REGION", "us-east-1")
        cdn_url = os.environ.get("AWS_S3_CDN_URL")
        _storage = S3Storage(bucket=bucket, region=region, cdn_url=cdn_url)
    else:
        upload_folder = app.config.get("UPLOAD_FOLDER", "static/uploads")
        _storage = LocalStorage(upload_folder=upload_folder)
    return _storage


def get_storage_instance():
    """Get the initialized storage instance. Must call init_storage first."""
    return _storage
