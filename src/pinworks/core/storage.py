"""Artifact and upload file storage.

Layout::

    outputs_dir/bulk/<job_id>/<name>   served at /generated/bulk/<job_id>/<name>
    uploads_dir/<name>                 served at /uploads/<name>

Artifacts are write-once: every saved file gets a fresh unique name.

Image references
----------------
Rows point at their source image with either an ``http(s)`` URL or the
public path of a stored upload (``/uploads/<name>``).  Providers cannot
reach local files, so :meth:`ArtifactStorage.to_provider_url` turns local
references into base64 ``data:`` URLs.
"""

from __future__ import annotations

import asyncio
import base64
import io
import logging
import mimetypes
import uuid
from pathlib import Path, PurePosixPath
from urllib.parse import urlparse

import httpx
from PIL import Image, ImageOps, UnidentifiedImageError

from pinworks.core.config import PinworksConfig
from pinworks.core.errors import ConfigurationError, StageError
from pinworks.core.models import Stage

logger = logging.getLogger(__name__)

GENERATED_PREFIX = "/generated/"
UPLOADS_PREFIX = "/uploads/"

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp")

_CONTENT_TYPE_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/bmp": ".bmp",
}


def extension_from_url(url: str) -> str:
    """Return a known image extension from the URL path, defaulting to ``.png``."""
    try:
        suffix = PurePosixPath(urlparse(url).path).suffix.lower()
    except ValueError:
        return ".png"
    return suffix if suffix in IMAGE_EXTENSIONS else ".png"


def image_to_data_url(image_path: Path) -> str:
    """Encode a local file as a base64 data URL."""
    mime, _ = mimetypes.guess_type(str(image_path))
    if not mime:
        mime = "application/octet-stream"
    with open(image_path, "rb") as f:
        b64 = base64.b64encode(f.read()).decode("utf-8")
    return f"data:{mime};base64,{b64}"


def decode_data_url(url: str) -> tuple[bytes, str]:
    """Return ``(payload, extension)`` for a base64 ``data:`` URL."""
    header, _, encoded = url.partition(",")
    mime = header[5:].split(";", 1)[0]
    if ";base64" not in header:
        raise ValueError("Only base64 data URLs are supported")
    data = base64.b64decode(encoded, validate=True)
    return data, _CONTENT_TYPE_EXTENSIONS.get(mime, ".png")


def fit_image_file(path: Path, size: tuple[int, int]) -> bool:
    """Cover-fit the image at *path* to *size* in place.

    Returns:
        True if the file was rewritten, False if it already had that size.
    """
    with Image.open(path) as image:
        if image.size == size:
            return False
        image_format = image.format or "PNG"
        fitted = ImageOps.fit(image, size, method=Image.Resampling.LANCZOS)
    if image_format == "JPEG" and fitted.mode not in ("RGB", "L"):
        fitted = fitted.convert("RGB")
    fitted.save(path, format=image_format)
    return True


class ArtifactStorage:
    """Read and write pipeline files below the configured directories."""

    def __init__(self, config: PinworksConfig):
        self.config = config
        self.outputs_dir = Path(config.outputs_dir)
        self.uploads_dir = Path(config.uploads_dir)

    # -- Paths ---------------------------------------------------------------

    def job_dir(self, job_id: str) -> Path:
        path = Path(self.config.bulk_outputs_dir) / job_id
        path.mkdir(parents=True, exist_ok=True)
        return path

    def new_artifact_path(self, job_id: str, prefix: str, extension: str = ".png") -> Path:
        return self.job_dir(job_id) / f"{prefix}_{uuid.uuid4().hex}{extension}"

    def relative_path(self, path: Path) -> str:
        """Path relative to ``outputs_dir`` in POSIX form."""
        return Path(path).resolve().relative_to(self.outputs_dir.resolve()).as_posix()

    def public_url(self, path: Path) -> str:
        return GENERATED_PREFIX + self.relative_path(path)

    def resolve_output(self, relative: str) -> Path | None:
        """Map a stored relative artifact path back to a file inside ``outputs_dir``."""
        if not relative:
            return None
        root = self.outputs_dir.resolve()
        candidate = (root / relative.lstrip("/")).resolve()
        if root not in candidate.parents:
            return None
        return candidate

    def resolve_local_reference(self, reference: str) -> Path | None:
        """Return the file behind a ``/uploads/`` or ``/generated/`` path, if any."""
        for prefix, root in ((UPLOADS_PREFIX, self.uploads_dir), (GENERATED_PREFIX, self.outputs_dir)):
            if reference.startswith(prefix):
                root = root.resolve()
                candidate = (root / reference[len(prefix):]).resolve()
                if root in candidate.parents and candidate.is_file():
                    return candidate
                return None
        return None

    # -- References ----------------------------------------------------------

    def validate_reference(self, reference: str) -> None:
        """Check that a row's source image reference is usable.

        Raises:
            ConfigurationError: If the reference is neither an http(s) URL
                nor an existing upload.
        """
        scheme = urlparse(reference).scheme.lower()
        if scheme in ("http", "https"):
            return
        if self.resolve_local_reference(reference) is None:
            raise ConfigurationError(f"Image not found: {reference}")

    def to_provider_url(self, reference: str) -> str:
        """Return a URL a remote provider can read.

        Raises:
            FileNotFoundError: If a local reference does not point to a file.
        """
        scheme = urlparse(reference).scheme.lower()
        if scheme in ("http", "https", "data"):
            return reference
        path = self.resolve_local_reference(reference)
        if path is None:
            raise FileNotFoundError(f"Image not found: {reference}")
        return image_to_data_url(path)

    # -- Writes --------------------------------------------------------------

    def save_upload(self, filename: str, data: bytes) -> str:
        """Validate and store an uploaded image.

        Returns:
            The public ``/uploads/...`` reference of the stored file.

        Raises:
            ConfigurationError: If the bytes are not a readable image.
        """
        try:
            with Image.open(io.BytesIO(data)) as image:
                image.verify()
                image_format = (image.format or "PNG").lower()
        except (UnidentifiedImageError, OSError, SyntaxError) as e:
            raise ConfigurationError(f"Uploaded file is not a valid image: {filename}") from e

        extension = Path(filename).suffix.lower()
        if extension not in IMAGE_EXTENSIONS:
            extension = ".jpg" if image_format == "jpeg" else f".{image_format}"
        name = f"upload_{uuid.uuid4().hex}{extension}"
        self.uploads_dir.mkdir(parents=True, exist_ok=True)
        (self.uploads_dir / name).write_bytes(data)
        logger.info(f"Stored upload {filename} as {name} ({len(data)} bytes)")
        return UPLOADS_PREFIX + name

    async def download(
        self,
        client: httpx.AsyncClient,
        url: str,
        job_id: str,
        prefix: str,
        size: tuple[int, int] | None = None,
    ) -> Path:
        """Fetch a generated image into the job's artifact directory.

        ``data:`` URLs are decoded in place.  With *size*, an image of other
        dimensions is cover-fitted to exactly ``(width, height)``; providers
        only render a fixed set of sizes.

        Raises:
            StageError: If the image cannot be fetched, decoded or written.
        """
        try:
            if url.startswith("data:"):
                data, extension = decode_data_url(url)
            else:
                response = await client.get(url, follow_redirects=True)
                response.raise_for_status()
                data = response.content
                extension = extension_from_url(url)
            path = self.new_artifact_path(job_id, prefix, extension)
            path.write_bytes(data)
            if size is not None:
                await asyncio.to_thread(fit_image_file, path, size)
        except (httpx.HTTPError, ValueError, OSError, Image.DecompressionBombError) as e:
            raise StageError(
                f"Failed to download image from {url[:120]}: {e}",
                stage=Stage.DOWNLOAD.value,
            ) from e
        logger.debug(f"Downloaded {len(data)} bytes to {path}")
        return path
