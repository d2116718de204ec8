from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple

from framelapse.services.geometry import BoundingBox, LandmarkPoint, midpoint


@dataclass(frozen=True)
class FaceLandmarks:
	"""
	Normalized (0..1) face landmarks relative to the image they were detected on.
	"""
	left_eye: LandmarkPoint
	right_eye: LandmarkPoint
	nose_tip: Optional[LandmarkPoint] = None
	bounding_box: BoundingBox = BoundingBox(0.0, 0.0, 1.0, 1.0)
	confidence: float = 1.0

	def reference_pair(self) -> Tuple[LandmarkPoint, LandmarkPoint]:
		return (self.left_eye, self.right_eye)


class BodyKeypointType(Enum):
	NOSE = "nose"
	LEFT_EYE = "left_eye"
	RIGHT_EYE = "right_eye"
	LEFT_EAR = "left_ear"
	RIGHT_EAR = "right_ear"
	LEFT_SHOULDER = "left_shoulder"
	RIGHT_SHOULDER = "right_shoulder"
	LEFT_ELBOW = "left_elbow"
	RIGHT_ELBOW = "right_elbow"
	LEFT_WRIST = "left_wrist"
	RIGHT_WRIST = "right_wrist"
	LEFT_HIP = "left_hip"
	RIGHT_HIP = "right_hip"
	LEFT_KNEE = "left_knee"
	RIGHT_KNEE = "right_knee"
	LEFT_ANKLE = "left_ankle"
	RIGHT_ANKLE = "right_ankle"


@dataclass(frozen=True)
class BodyLandmarks:
	"""
	Normalized body pose. Shoulders/hips/neck are always present; the optional
	keypoints (nose, elbows, wrists, knees, ankles) live in `keypoints` and may
	be missing when the detector could not see them.
	"""
	left_shoulder: LandmarkPoint
	right_shoulder: LandmarkPoint
	left_hip: LandmarkPoint
	right_hip: LandmarkPoint
	neck_center: LandmarkPoint
	keypoints: Dict[BodyKeypointType, LandmarkPoint] = field(default_factory=dict)
	bounding_box: BoundingBox = BoundingBox(0.0, 0.0, 1.0, 1.0)
	confidence: float = 1.0

	def reference_pair(self) -> Tuple[LandmarkPoint, LandmarkPoint]:
		return (self.left_shoulder, self.right_shoulder)

	def keypoint(self, kind: BodyKeypointType) -> Optional[LandmarkPoint]:
		return self.keypoints.get(kind)

	@property
	def shoulder_center(self) -> LandmarkPoint:
		return midpoint(self.left_shoulder, self.right_shoulder)

	@property
	def hip_center(self) -> LandmarkPoint:
		return midpoint(self.left_hip, self.right_hip)

	@property
	def shoulder_distance(self) -> float:
		return self.left_shoulder.distance_to(self.right_shoulder)


@dataclass(frozen=True)
class FeatureKeypoint:
	"""
	Keypoint in normalized coordinates plus detector metadata. Descriptors are
	kept by the feature matcher alongside the keypoint list, never here.
	"""
	position: LandmarkPoint
	response: float = 0.0
	size: float = 0.0
	angle: float = -1.0
	octave: int = 0

	def to_pixel_coordinates(self, image_width: int, image_height: int) -> Tuple[float, float]:
		return (self.position.x * image_width, self.position.y * image_height)

	@classmethod
	def from_pixel_coordinates(
		cls, x: float, y: float, image_width: int, image_height: int, response: float = 0.0,
		size: float = 0.0, angle: float = -1.0, octave: int = 0,
	) -> "FeatureKeypoint":
		return cls(
			position=LandmarkPoint(x / float(image_width), y / float(image_height)),
			response=response,
			size=size,
			angle=angle,
			octave=octave,
		)
