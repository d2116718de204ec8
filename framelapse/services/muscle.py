"""
Square crop rectangles around a body region, computed from aligned body
landmarks. Runs after alignment; not part of the pass loop.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Optional, Tuple

from framelapse.services.capabilities import BodyPoseDetector, ImageProcessor, ProgressCallback
from framelapse.services.entities import MuscleRegion, StabilizationResult
from framelapse.services.exceptions import DetectionError
from framelapse.services.geometry import BoundingBox, clamp
from framelapse.services.landmarks import BodyKeypointType, BodyLandmarks
from framelapse.services.settings import MuscleAlignmentSettings
from framelapse.services.stabilization import BodyStabilizer

logger = logging.getLogger(__name__)

# fractions of the normalized frame
HEAD_MARGIN = 0.05
SIDE_MARGIN = 0.03
SHOULDER_MARGIN = 0.05
SHOULDER_TOP_MARGIN = 0.08
HIP_MARGIN = 0.03
HIP_TOP_MARGIN = 0.02
ANKLE_MARGIN = 0.02
WRIST_MARGIN = 0.03
ARM_SIDE_MARGIN = 0.05
BACK_SIDE_MARGIN = 0.08
BACK_HIP_MARGIN = 0.05

# used when ankles/wrists were not detected
LOWER_BODY_ESTIMATE = 0.35
ARM_LENGTH_ESTIMATE = 0.25

DEFAULT_REGION_PADDING = 0.1


@dataclass(frozen=True)
class MuscleRegionBounds:
	region: MuscleRegion
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

	@property
	def center_x(self) -> float:
		return self.left + self.width / 2.0

	@property
	def center_y(self) -> float:
		return self.top + self.height / 2.0

	def with_padding(self, padding: float) -> "MuscleRegionBounds":
		pad_x = self.width * padding
		pad_y = self.height * padding
		return replace(
			self,
			left=max(0.0, self.left - pad_x),
			top=max(0.0, self.top - pad_y),
			right=min(1.0, self.right + pad_x),
			bottom=min(1.0, self.bottom + pad_y),
		)

	def to_square_bounds(self) -> "MuscleRegionBounds":
		"""
		Grow the shorter side around the center; at a frame edge the square is
		shifted back inside instead of shrunk.
		"""
		size = max(self.width, self.height)
		left = self.center_x - size / 2.0
		top = self.center_y - size / 2.0
		right = left + size
		bottom = top + size

		if left < 0.0:
			left, right = 0.0, min(size, 1.0)
		if right > 1.0:
			left, right = max(1.0 - size, 0.0), 1.0
		if top < 0.0:
			top, bottom = 0.0, min(size, 1.0)
		if bottom > 1.0:
			top, bottom = max(1.0 - size, 0.0), 1.0
		return replace(self, left=left, top=top, right=right, bottom=bottom)

	def to_pixel_bounds(self, image_width: int, image_height: int) -> BoundingBox:
		return BoundingBox(self.left, self.top, self.right, self.bottom).to_pixel_bounds(image_width, image_height)


def _bounds(region: MuscleRegion, left: float, top: float, right: float, bottom: float) -> MuscleRegionBounds:
	return MuscleRegionBounds(region, clamp(left), clamp(top), clamp(right), clamp(bottom))


def _head_y(landmarks: BodyLandmarks, fallback: float) -> float:
	nose = landmarks.keypoint(BodyKeypointType.NOSE)
	return nose.y if nose is not None else fallback


def _lowest_ankle_y(landmarks: BodyLandmarks) -> float:
	estimate = landmarks.hip_center.y + LOWER_BODY_ESTIMATE
	left = landmarks.keypoint(BodyKeypointType.LEFT_ANKLE)
	right = landmarks.keypoint(BodyKeypointType.RIGHT_ANKLE)
	return max(left.y if left else estimate, right.y if right else estimate)


def _x_or(landmarks: BodyLandmarks, kind: BodyKeypointType, fallback: float) -> float:
	point = landmarks.keypoint(kind)
	return point.x if point is not None else fallback


def full_body_bounds(landmarks: BodyLandmarks) -> MuscleRegionBounds:
	return _bounds(
		MuscleRegion.FULL_BODY,
		min(landmarks.left_shoulder.x, landmarks.left_hip.x) - SIDE_MARGIN,
		_head_y(landmarks, landmarks.shoulder_center.y) - HEAD_MARGIN,
		max(landmarks.right_shoulder.x, landmarks.right_hip.x) + SIDE_MARGIN,
		_lowest_ankle_y(landmarks) + ANKLE_MARGIN,
	)


def upper_body_bounds(landmarks: BodyLandmarks) -> MuscleRegionBounds:
	return _bounds(
		MuscleRegion.UPPER_BODY,
		landmarks.left_shoulder.x - SHOULDER_MARGIN,
		_head_y(landmarks, landmarks.neck_center.y) - HEAD_MARGIN,
		landmarks.right_shoulder.x + SHOULDER_MARGIN,
		landmarks.hip_center.y + HIP_MARGIN,
	)


def lower_body_bounds(landmarks: BodyLandmarks) -> MuscleRegionBounds:
	hip_left, hip_right = landmarks.left_hip.x, landmarks.right_hip.x
	left = min(
		hip_left,
		_x_or(landmarks, BodyKeypointType.LEFT_KNEE, hip_left),
		_x_or(landmarks, BodyKeypointType.LEFT_ANKLE, hip_left),
	)
	right = max(
		hip_right,
		_x_or(landmarks, BodyKeypointType.RIGHT_KNEE, hip_right),
		_x_or(landmarks, BodyKeypointType.RIGHT_ANKLE, hip_right),
	)
	return _bounds(
		MuscleRegion.LOWER_BODY,
		left - SIDE_MARGIN,
		landmarks.hip_center.y - HIP_TOP_MARGIN,
		right + SIDE_MARGIN,
		_lowest_ankle_y(landmarks) + ANKLE_MARGIN,
	)


def arms_bounds(landmarks: BodyLandmarks) -> MuscleRegionBounds:
	shoulder_y = landmarks.shoulder_center.y
	lowest = []
	for kind, estimate in (
		(BodyKeypointType.LEFT_WRIST, shoulder_y + ARM_LENGTH_ESTIMATE),
		(BodyKeypointType.RIGHT_WRIST, shoulder_y + ARM_LENGTH_ESTIMATE),
		(BodyKeypointType.LEFT_ELBOW, shoulder_y),
		(BodyKeypointType.RIGHT_ELBOW, shoulder_y),
	):
		point = landmarks.keypoint(kind)
		lowest.append(point.y if point is not None else estimate)

	shoulder_left, shoulder_right = landmarks.left_shoulder.x, landmarks.right_shoulder.x
	left = min(
		shoulder_left,
		_x_or(landmarks, BodyKeypointType.LEFT_ELBOW, shoulder_left),
		_x_or(landmarks, BodyKeypointType.LEFT_WRIST, shoulder_left),
	)
	right = max(
		shoulder_right,
		_x_or(landmarks, BodyKeypointType.RIGHT_ELBOW, shoulder_right),
		_x_or(landmarks, BodyKeypointType.RIGHT_WRIST, shoulder_right),
	)
	return _bounds(
		MuscleRegion.ARMS,
		left - ARM_SIDE_MARGIN,
		min(landmarks.left_shoulder.y, landmarks.right_shoulder.y) - SHOULDER_TOP_MARGIN,
		right + ARM_SIDE_MARGIN,
		max(lowest) + WRIST_MARGIN,
	)


def back_bounds(landmarks: BodyLandmarks) -> MuscleRegionBounds:
	# upper body framing, wider to show the lats
	return _bounds(
		MuscleRegion.BACK,
		landmarks.left_shoulder.x - BACK_SIDE_MARGIN,
		_head_y(landmarks, landmarks.neck_center.y) - HEAD_MARGIN,
		landmarks.right_shoulder.x + BACK_SIDE_MARGIN,
		landmarks.hip_center.y + BACK_HIP_MARGIN,
	)


REGION_CALCULATORS: Dict[MuscleRegion, Callable[[BodyLandmarks], MuscleRegionBounds]] = {
	MuscleRegion.FULL_BODY: full_body_bounds,
	MuscleRegion.UPPER_BODY: upper_body_bounds,
	MuscleRegion.LOWER_BODY: lower_body_bounds,
	MuscleRegion.ARMS: arms_bounds,
	MuscleRegion.BACK: back_bounds,
}


def calculate_region_bounds(
	landmarks: BodyLandmarks, region: MuscleRegion, padding: float = DEFAULT_REGION_PADDING
) -> MuscleRegionBounds:
	return REGION_CALCULATORS[region](landmarks).with_padding(padding).to_square_bounds()


async def crop_to_region(
	image_processor: ImageProcessor,
	aligned_image: Any,
	landmarks: BodyLandmarks,
	settings: Optional[MuscleAlignmentSettings] = None,
) -> Any:
	"""Crop the aligned frame to the region and resize it to the square output size."""
	settings = settings or MuscleAlignmentSettings()
	bounds = calculate_region_bounds(landmarks, settings.region, settings.region_padding)
	width, height = image_processor.image_size(aligned_image)
	logger.debug("Cropping %s region %s", settings.region.value, bounds)
	cropped = await image_processor.crop_image(aligned_image, bounds.to_pixel_bounds(width, height))
	return await image_processor.resize_image(
		cropped, settings.output_size, settings.output_size, maintain_aspect_ratio=False
	)


async def align_muscle(
	detector: BodyPoseDetector,
	image_processor: ImageProcessor,
	source_image: Any,
	settings: Optional[MuscleAlignmentSettings] = None,
	reference_landmarks: Optional[BodyLandmarks] = None,
	progress_callback: Optional[ProgressCallback] = None,
	cancel_event: Optional[asyncio.Event] = None,
) -> Tuple[StabilizationResult, Any]:
	"""
	Body stabilization followed by the region crop.

	Returns:
		(stabilization result, cropped square image)
	Raises:
		DetectionError when there are no aligned landmarks to crop around.
	"""
	settings = settings or MuscleAlignmentSettings()
	stabilizer = BodyStabilizer(detector, image_processor, settings.body, progress_callback)
	result = await stabilizer.stabilize(
		source_image, reference_landmarks=reference_landmarks, cancel_event=cancel_event
	)
	if result.landmarks is None:
		raise DetectionError("No aligned body landmarks for the {} crop".format(settings.region.value))
	size = settings.body.output_size
	aligned = await image_processor.apply_affine_transform(source_image, result.matrix, size, size)
	cropped = await crop_to_region(image_processor, aligned, result.landmarks, settings)
	return result, cropped
