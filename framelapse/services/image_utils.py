from __future__ import annotations

from pathlib import Path
from typing import Union

import numpy as np
from PIL import ExifTags, Image

ORIENTATION_TAG = next(tag_id for tag_id, name in ExifTags.TAGS.items() if name == "Orientation")


def exif_orientation(img: Image.Image) -> int:
	try:
		value = img.getexif().get(ORIENTATION_TAG, 1)
		return int(value)
	except (TypeError, ValueError):
		return 1


def apply_exif_orientation(img: Image.Image, orientation: int) -> Image.Image:
	"""
	Rotate/flip so the pixel data matches what the camera showed (EXIF 1..8).
	"""
	if orientation == 2:
		return img.transpose(Image.FLIP_LEFT_RIGHT)
	if orientation == 3:
		return img.rotate(180, expand=True)
	if orientation == 4:
		return img.transpose(Image.FLIP_TOP_BOTTOM)
	if orientation == 5:
		return img.transpose(Image.FLIP_LEFT_RIGHT).rotate(90, expand=True)
	if orientation == 6:
		return img.rotate(270, expand=True)
	if orientation == 7:
		return img.transpose(Image.FLIP_LEFT_RIGHT).rotate(270, expand=True)
	if orientation == 8:
		return img.rotate(90, expand=True)
	return img


def load_rgb(path: Union[str, Path]) -> np.ndarray:
	"""Upright uint8 RGB array [H,W,3]."""
	with Image.open(path) as img:
		upright = apply_exif_orientation(img, exif_orientation(img))
		return np.asarray(upright.convert("RGB"), dtype=np.uint8).copy()


def save_rgb(arr: np.ndarray, path: Union[str, Path]) -> Path:
	out = Path(path)
	out.parent.mkdir(parents=True, exist_ok=True)
	img = Image.fromarray(to_uint8(arr))
	if out.suffix.lower() in (".jpg", ".jpeg"):
		img.save(out, quality=95)
	else:
		img.save(out)
	return out


def to_uint8(arr: np.ndarray) -> np.ndarray:
	if arr.dtype == np.uint8:
		return arr
	if np.issubdtype(arr.dtype, np.floating) and float(np.nanmax(arr)) <= 1.0:
		arr = arr * 255.0
	return np.clip(np.nan_to_num(arr), 0, 255).astype(np.uint8)


def to_gray(rgb: np.ndarray) -> np.ndarray:
	"""
	uint8 luminance for feature detection. Uses Rec.709 coefficients.
	"""
	if rgb.ndim == 2:
		return to_uint8(rgb)
	if rgb.ndim != 3 or rgb.shape[2] < 3:
		raise ValueError("Expected HxW or HxWx3 image array")
	r = rgb[..., 0].astype(np.float32)
	g = rgb[..., 1].astype(np.float32)
	b = rgb[..., 2].astype(np.float32)
	return np.clip(0.2126 * r + 0.7152 * g + 0.0722 * b, 0, 255).astype(np.uint8)
