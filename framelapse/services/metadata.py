from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import piexif
from PIL import Image

from framelapse.services.image_utils import apply_exif_orientation, exif_orientation

logger = logging.getLogger(__name__)


def _bytes_to_str(v: Any) -> Optional[str]:
	if v is None:
		return None
	if isinstance(v, bytes):
		return v.decode("utf-8", errors="ignore").strip("\x00 ") or None
	return str(v)


def extract_capture_metadata(path: Path) -> Dict[str, Any]:
	"""
	Upright size, EXIF orientation and capture time of one frame. Frames without
	(readable) EXIF keep the size fields only.
	"""
	with Image.open(path) as img:
		orientation = exif_orientation(img)
		upright = apply_exif_orientation(img, orientation)
		info: Dict[str, Any] = {
			"filename": path.name,
			"width": upright.width,
			"height": upright.height,
			"orientation": orientation,
		}
	try:
		ex = piexif.load(str(path))
	except (piexif.InvalidImageDataError, ValueError, OSError) as e:
		logger.debug("No EXIF in %s: %s", path.name, e)
		return info
	exif = ex.get("Exif", {})
	zeroth = ex.get("0th", {})
	dt = exif.get(piexif.ExifIFD.DateTimeOriginal) or zeroth.get(piexif.ImageIFD.DateTime)
	info["datetime_original"] = _bytes_to_str(dt)
	info["camera_make"] = _bytes_to_str(zeroth.get(piexif.ImageIFD.Make))
	info["camera_model"] = _bytes_to_str(zeroth.get(piexif.ImageIFD.Model))
	return info
