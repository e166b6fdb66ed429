"""ZIP and CSV exports of a job's generated pins."""

from __future__ import annotations

import csv
import io
import json
import logging
import zipfile
from collections.abc import Sequence

from pinworks.core.models import GeneratedPin
from pinworks.core.storage import ArtifactStorage

logger = logging.getLogger(__name__)

CSV_HEADER = ["Title", "Description", "Media URL", "Pinterest board", "Thumbnail"]


def build_zip(pins: Sequence[GeneratedPin], storage: ArtifactStorage) -> bytes:
    """Bundle pins into a ZIP archive.

    Each pin gets a ``pinK/`` folder (K counts from 1) holding
    ``image<ext>`` when the file still exists and a ``data.json`` with the
    pin's title, description, keywords, image URL, status and creation time.
    """
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        for number, pin in enumerate(pins, start=1):
            folder = f"pin{number}"
            image_path = storage.resolve_output(pin.image_path)
            if image_path is not None and image_path.is_file():
                archive.write(image_path, f"{folder}/image{image_path.suffix}")
            else:
                logger.warning(f"Image for pin {pin.id} missing; exporting data only")

            data = {
                "title": pin.title,
                "description": pin.description,
                "keywords": pin.keywords,
                "imageUrl": pin.image_url,
                "status": pin.status,
                "createdAt": pin.created_at,
            }
            archive.writestr(f"{folder}/data.json", json.dumps(data, indent=2, ensure_ascii=False))
    return buffer.getvalue()


def build_csv(pins: Sequence[GeneratedPin], public_base_url: str) -> str:
    """Render the Pinterest bulk-upload CSV.

    Only pins with an image are listed.  Fields are quoted only when they
    contain a comma, quote or newline; quotes are doubled.
    """
    base = public_base_url.rstrip("/")
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for pin in pins:
        if not pin.image_url:
            continue
        writer.writerow([pin.title, pin.description, f"{base}{pin.image_url}", "", ""])
    return buffer.getvalue()
