"""Descriptive and camera-provenance metadata for final images.

:meth:`MetadataEmbedder.embed_metadata` rewrites the final artifact in place
with:

- EXIF ``ImageDescription``, ``XPTitle``, ``XPKeywords`` and ``XPComment``
  (the ``XP*`` tags are UTF-16LE, as Windows Explorer expects),
- PNG ``Title``/``Description``/``Keywords`` international text chunks for
  PNG files,
- optionally, a randomized camera profile: body and lens, exposure
  settings, a daytime capture date within the last 180 days, GPS
  coordinates near one of ten cities, and a Lightroom software tag.

Embedding is best-effort: every failure is logged and reported through the
boolean return value, never raised.
"""

from __future__ import annotations

import logging
import os
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

from PIL import Image
from PIL.ExifTags import GPS, IFD, Base
from PIL.PngImagePlugin import PngInfo
from PIL.TiffImagePlugin import IFDRational

from pinworks.core.models import PinContent

logger = logging.getLogger(__name__)

CAMERAS = [
    ("Canon", "Canon EOS R5", "RF24-70mm F2.8 L IS USM"),
    ("Canon", "Canon EOS 5D Mark IV", "EF 50mm f/1.4 USM"),
    ("Nikon", "NIKON Z 7II", "NIKKOR Z 24-70mm f/2.8 S"),
    ("Nikon", "NIKON D850", "AF-S NIKKOR 85mm f/1.4G"),
    ("Sony", "ILCE-7RM4", "FE 24-70mm F2.8 GM"),
    ("Sony", "ILCE-7M4", "FE 50mm F1.8"),
    ("Fujifilm", "X-T4", "XF35mmF1.4 R"),
    ("Olympus", "E-M1 Mark III", "M.ZUIKO DIGITAL ED 12-40mm F2.8 PRO"),
]
ISO_VALUES = [100, 200, 400, 800, 1600, 3200]
APERTURES = [1.4, 1.8, 2.8, 4.0, 5.6, 8.0]
SHUTTER_DENOMINATORS = [125, 160, 200, 250, 320, 400, 500, 640]
FOCAL_LENGTHS = [24, 35, 50, 70, 85, 105]
CITIES = [
    ("New York", 40.7128, -74.006),
    ("London", 51.5074, -0.1278),
    ("Paris", 48.8566, 2.3522),
    ("Tokyo", 35.6762, 139.6503),
    ("Sydney", -33.8688, 151.2093),
    ("San Francisco", 37.7749, -122.4194),
    ("Berlin", 52.52, 13.405),
    ("Rome", 41.9028, 12.4964),
    ("Los Angeles", 34.0522, -118.2437),
    ("Toronto", 43.6532, -79.3832),
]

EXIF_DATE_FORMAT = "%Y:%m:%d %H:%M:%S"


@dataclass
class CameraProfile:
    make: str
    model: str
    lens: str
    iso: int
    f_number: float
    exposure_denominator: int
    focal_length: int
    captured_at: datetime
    city: str
    latitude: float
    longitude: float
    altitude: int
    software: str


def random_camera_profile(rng: random.Random, now: datetime | None = None) -> CameraProfile:
    """Draw a plausible camera profile."""
    now = now or datetime.now()
    make, model, lens = rng.choice(CAMERAS)
    day = now - timedelta(days=rng.randint(0, 180))
    captured_at = day.replace(
        hour=rng.randint(8, 17),
        minute=rng.randint(0, 59),
        second=rng.randint(0, 59),
        microsecond=0,
    )
    city, lat, lon = rng.choice(CITIES)
    return CameraProfile(
        make=make,
        model=model,
        lens=lens,
        iso=rng.choice(ISO_VALUES),
        f_number=rng.choice(APERTURES),
        exposure_denominator=rng.choice(SHUTTER_DENOMINATORS),
        focal_length=rng.choice(FOCAL_LENGTHS),
        captured_at=captured_at,
        city=city,
        latitude=lat + rng.uniform(-0.01, 0.01),
        longitude=lon + rng.uniform(-0.01, 0.01),
        altitude=rng.randint(10, 210),
        software=f"Adobe Photoshop Lightroom Classic 12.{rng.randint(0, 4)} (Windows)",
    )


def _xp(text: str) -> bytes:
    return text.encode("utf-16le") + b"\x00\x00"


def _dms(value: float) -> tuple[IFDRational, IFDRational, IFDRational]:
    value = abs(value)
    degrees = int(value)
    minutes_float = (value - degrees) * 60
    minutes = int(minutes_float)
    seconds = round((minutes_float - minutes) * 60 * 1000)
    return IFDRational(degrees, 1), IFDRational(minutes, 1), IFDRational(seconds, 1000)


class MetadataEmbedder:
    """Write descriptive and camera metadata into final images.

    Args:
        embed_camera: Whether to add the randomized camera profile
        rng: Random source for the camera profile (injectable for tests)
    """

    def __init__(self, embed_camera: bool = True, rng: random.Random | None = None):
        self.embed_camera = embed_camera
        self.rng = rng or random.Random()

    def embed_metadata(self, final_path: Path, content: PinContent) -> bool:
        """Rewrite *final_path* with metadata for *content*.

        Returns:
            True if the metadata was written, False on any failure
        """
        final_path = Path(final_path)
        tmp_path = final_path.with_name(f".{final_path.name}.tmp")
        try:
            with Image.open(final_path) as image:
                image.load()
                image_format = image.format or "PNG"
                size = image.size
                exif = image.getexif()
                self._write_descriptive(exif, content)
                if self.embed_camera:
                    self._write_camera(exif, random_camera_profile(self.rng), size)

                save_kwargs: dict = {"format": image_format, "exif": exif.tobytes()}
                if image_format == "PNG":
                    info = PngInfo()
                    info.add_itxt("Title", content.title)
                    info.add_itxt("Description", content.description)
                    info.add_itxt("Keywords", ", ".join(content.keywords))
                    save_kwargs["pnginfo"] = info
                elif image_format == "JPEG":
                    save_kwargs["quality"] = 95
                    image = image.convert("RGB")
                image.save(tmp_path, **save_kwargs)
            os.replace(tmp_path, final_path)
        except Exception as e:
            logger.warning(f"Could not embed metadata in {final_path}: {e}")
            tmp_path.unlink(missing_ok=True)
            return False

        logger.debug(f"Embedded metadata in {final_path}")
        return True

    @staticmethod
    def _write_descriptive(exif: Image.Exif, content: PinContent) -> None:
        exif[Base.ImageDescription] = content.description
        exif[Base.XPTitle] = _xp(content.title)
        exif[Base.XPKeywords] = _xp("; ".join(content.keywords))
        exif[Base.XPComment] = _xp(content.description)

    @staticmethod
    def _write_camera(exif: Image.Exif, profile: CameraProfile, size: tuple[int, int]) -> None:
        timestamp = profile.captured_at.strftime(EXIF_DATE_FORMAT)

        exif[Base.Make] = profile.make
        exif[Base.Model] = profile.model
        exif[Base.Software] = profile.software
        exif[Base.DateTime] = timestamp
        exif[Base.Orientation] = 1
        exif[Base.XResolution] = IFDRational(72, 1)
        exif[Base.YResolution] = IFDRational(72, 1)
        exif[Base.ResolutionUnit] = 2

        ifd = dict(exif.get_ifd(IFD.Exif))
        ifd[Base.ExposureTime] = IFDRational(1, profile.exposure_denominator)
        ifd[Base.FNumber] = IFDRational(int(profile.f_number * 10), 10)
        ifd[Base.ExposureProgram] = 1
        ifd[Base.ISOSpeedRatings] = profile.iso
        ifd[Base.DateTimeOriginal] = timestamp
        ifd[Base.DateTimeDigitized] = timestamp
        ifd[Base.MeteringMode] = 5
        ifd[Base.LightSource] = 1
        ifd[Base.Flash] = 0
        ifd[Base.FocalLength] = IFDRational(profile.focal_length, 1)
        ifd[Base.ColorSpace] = 1
        ifd[Base.ExifImageWidth] = size[0]
        ifd[Base.ExifImageHeight] = size[1]
        ifd[Base.ExposureMode] = 1
        ifd[Base.WhiteBalance] = 0
        ifd[Base.FocalLengthIn35mmFilm] = round(profile.focal_length * 1.5)
        ifd[Base.SceneCaptureType] = 0
        ifd[Base.Contrast] = 0
        ifd[Base.Saturation] = 0
        ifd[Base.Sharpness] = 0
        ifd[Base.SubjectDistanceRange] = 2
        ifd[Base.LensMake] = profile.make
        ifd[Base.LensModel] = profile.lens
        exif[IFD.Exif] = ifd

        gps = dict(exif.get_ifd(IFD.GPSInfo))
        gps[GPS.GPSVersionID] = b"\x02\x03\x00\x00"
        gps[GPS.GPSLatitudeRef] = "N" if profile.latitude >= 0 else "S"
        gps[GPS.GPSLatitude] = _dms(profile.latitude)
        gps[GPS.GPSLongitudeRef] = "E" if profile.longitude >= 0 else "W"
        gps[GPS.GPSLongitude] = _dms(profile.longitude)
        gps[GPS.GPSAltitudeRef] = b"\x00"
        gps[GPS.GPSAltitude] = IFDRational(profile.altitude, 1)
        exif[IFD.GPSInfo] = gps
