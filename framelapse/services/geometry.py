from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Tuple

import numpy as np

EPSILON = 1e-6


@dataclass(frozen=True)
class LandmarkPoint:
	x: float
	y: float
	z: float = 0.0

	def to_pixels(self, width: int, height: int) -> "LandmarkPoint":
		return LandmarkPoint(self.x * width, self.y * height, self.z)

	def to_normalized(self, width: int, height: int) -> "LandmarkPoint":
		return LandmarkPoint(self.x / float(width), self.y / float(height), self.z)

	def distance_to(self, other: "LandmarkPoint") -> float:
		return math.hypot(other.x - self.x, other.y - self.y)


def midpoint(a: LandmarkPoint, b: LandmarkPoint) -> LandmarkPoint:
	return LandmarkPoint((a.x + b.x) / 2.0, (a.y + b.y) / 2.0, (a.z + b.z) / 2.0)


def pair_angle(left: LandmarkPoint, right: LandmarkPoint) -> float:
	"""
	Angle (radians) of the vector left -> right, image axes (y grows downward).
	"""
	return math.atan2(right.y - left.y, right.x - left.x)


@dataclass(frozen=True)
class AlignmentMatrix:
	"""
	2x3 affine transform in row-major form:

		x' = scale_x * x + skew_x * y + translate_x
		y' = skew_y * x + scale_y * y + translate_y

	Coordinates are output-canvas pixels. Instances are never mutated; every
	correction builds a new matrix.
	"""
	scale_x: float = 1.0
	skew_x: float = 0.0
	translate_x: float = 0.0
	skew_y: float = 0.0
	scale_y: float = 1.0
	translate_y: float = 0.0

	@classmethod
	def identity(cls) -> "AlignmentMatrix":
		return cls()

	@classmethod
	def translation(cls, tx: float, ty: float) -> "AlignmentMatrix":
		return cls(translate_x=tx, translate_y=ty)

	@classmethod
	def rotation_scale_about(cls, center: LandmarkPoint, angle: float, scale: float) -> "AlignmentMatrix":
		"""
		Rotate by `angle` radians and scale uniformly, keeping `center` fixed.
		"""
		c = math.cos(angle) * scale
		s = math.sin(angle) * scale
		return cls(
			scale_x=c,
			skew_x=-s,
			translate_x=center.x - c * center.x + s * center.y,
			skew_y=s,
			scale_y=c,
			translate_y=center.y - s * center.x - c * center.y,
		)

	@classmethod
	def from_array(cls, arr: np.ndarray) -> "AlignmentMatrix":
		a = np.asarray(arr, dtype=np.float64)
		if a.shape not in ((2, 3), (3, 3)):
			raise ValueError("Expected a 2x3 or 3x3 affine array, got shape {}".format(a.shape))
		return cls(
			scale_x=float(a[0, 0]),
			skew_x=float(a[0, 1]),
			translate_x=float(a[0, 2]),
			skew_y=float(a[1, 0]),
			scale_y=float(a[1, 1]),
			translate_y=float(a[1, 2]),
		)

	def to_array(self) -> np.ndarray:
		return np.array(
			[
				[self.scale_x, self.skew_x, self.translate_x],
				[self.skew_y, self.scale_y, self.translate_y],
			],
			dtype=np.float32,
		)

	def apply(self, point: LandmarkPoint) -> LandmarkPoint:
		return LandmarkPoint(
			self.scale_x * point.x + self.skew_x * point.y + self.translate_x,
			self.skew_y * point.x + self.scale_y * point.y + self.translate_y,
			point.z,
		)

	def then(self, other: "AlignmentMatrix") -> "AlignmentMatrix":
		"""
		Compose: apply `self` first, then `other` (other * self).
		"""
		return compose(self, other)

	def with_translation_delta(self, dx: float, dy: float) -> "AlignmentMatrix":
		return AlignmentMatrix(
			self.scale_x, self.skew_x, self.translate_x + dx,
			self.skew_y, self.scale_y, self.translate_y + dy,
		)

	@property
	def rotation_degrees(self) -> float:
		return math.degrees(math.atan2(self.skew_y, self.scale_x))

	@property
	def uniform_scale(self) -> float:
		return math.hypot(self.scale_x, self.skew_y)

	@property
	def determinant(self) -> float:
		return self.scale_x * self.scale_y - self.skew_x * self.skew_y


def compose(first: AlignmentMatrix, second: AlignmentMatrix) -> AlignmentMatrix:
	"""
	Matrix that applies `first`, then `second`. Associative, not commutative.
	"""
	a, b = first, second
	return AlignmentMatrix(
		scale_x=b.scale_x * a.scale_x + b.skew_x * a.skew_y,
		skew_x=b.scale_x * a.skew_x + b.skew_x * a.scale_y,
		translate_x=b.scale_x * a.translate_x + b.skew_x * a.translate_y + b.translate_x,
		skew_y=b.skew_y * a.scale_x + b.scale_y * a.skew_y,
		scale_y=b.skew_y * a.skew_x + b.scale_y * a.scale_y,
		translate_y=b.skew_y * a.translate_x + b.scale_y * a.translate_y + b.translate_y,
	)


def similarity_from_pairs(
	src_left: LandmarkPoint,
	src_right: LandmarkPoint,
	dst_left: LandmarkPoint,
	dst_right: LandmarkPoint,
) -> AlignmentMatrix:
	"""
	Rotation + uniform scale + translation mapping the source pair onto the
	destination pair (midpoint onto midpoint). Degenerate source pairs keep scale 1.
	"""
	src_dist = src_left.distance_to(src_right)
	dst_dist = dst_left.distance_to(dst_right)
	scale = dst_dist / src_dist if src_dist > EPSILON else 1.0
	angle = pair_angle(dst_left, dst_right) - pair_angle(src_left, src_right)
	src_mid = midpoint(src_left, src_right)
	dst_mid = midpoint(dst_left, dst_right)
	centered = AlignmentMatrix.translation(-src_mid.x, -src_mid.y)
	rot = AlignmentMatrix.rotation_scale_about(LandmarkPoint(0.0, 0.0), angle, scale)
	return centered.then(rot).then(AlignmentMatrix.translation(dst_mid.x, dst_mid.y))


@dataclass(frozen=True)
class HomographyMatrix:
	"""
	3x3 projective transform, row-major (h11..h33). Only used by the landscape path.
	"""
	h11: float
	h12: float
	h13: float
	h21: float
	h22: float
	h23: float
	h31: float
	h32: float
	h33: float

	@classmethod
	def identity(cls) -> "HomographyMatrix":
		return cls(1.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 1.0)

	@classmethod
	def from_array(cls, arr: np.ndarray) -> "HomographyMatrix":
		a = np.asarray(arr, dtype=np.float64).reshape(-1)
		if a.size != 9:
			raise ValueError("Homography matrix requires exactly 9 values")
		return cls(*[float(v) for v in a])

	def to_array(self) -> np.ndarray:
		return np.array(
			[[self.h11, self.h12, self.h13], [self.h21, self.h22, self.h23], [self.h31, self.h32, self.h33]],
			dtype=np.float64,
		)

	def to_list(self) -> List[float]:
		return [self.h11, self.h12, self.h13, self.h21, self.h22, self.h23, self.h31, self.h32, self.h33]

	def transform_point(self, x: float, y: float) -> Tuple[float, float]:
		w = self.h31 * x + self.h32 * y + self.h33
		if abs(w) < EPSILON:
			# point at infinity
			return (math.inf, math.inf)
		return ((self.h11 * x + self.h12 * y + self.h13) / w, (self.h21 * x + self.h22 * y + self.h23) / w)

	def determinant(self) -> float:
		return float(np.linalg.det(self.to_array()))

	def is_valid(self) -> bool:
		return abs(self.determinant()) > EPSILON

	def is_near_identity(self, tolerance: float = 0.01) -> bool:
		return bool(np.all(np.abs(self.to_array() - np.eye(3)) < tolerance))

	def approximate_rotation_degrees(self) -> float:
		return math.degrees(math.atan2(self.h21, self.h11))

	def approximate_scale(self) -> float:
		return math.hypot(self.h11, self.h21)


@dataclass(frozen=True)
class BoundingBox:
	left: float
	top: float
	right: float
	bottom: float

	@property
	def width(self) -> float:
		return self.right - self.left

	@property
	def height(self) -> float:
		return self.bottom - self.top

	def to_pixel_bounds(self, image_width: int, image_height: int) -> "BoundingBox":
		return BoundingBox(
			self.left * image_width,
			self.top * image_height,
			self.right * image_width,
			self.bottom * image_height,
		)

	def to_int_box(self) -> Tuple[int, int, int, int]:
		return (int(round(self.left)), int(round(self.top)), int(round(self.right)), int(round(self.bottom)))


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
	return max(low, min(high, value))
