"""Pytest configuration and shared fakes for the stabilization engine tests.

The fake image processor never touches pixels: every "image" is a handle that
remembers the affine matrix it was warped with, and the geometric detectors
apply that matrix to ground-truth landmark positions. This keeps the pass loop
fully deterministic.
"""
import logging
from dataclasses import dataclass, field, replace
from typing import Any, List, Optional, Sequence, Tuple

import pytest

from framelapse.services.capabilities import (
	BodyPoseDetector,
	FaceDetector,
	FeatureMatcher,
	ImageProcessor,
	LandscapeFeatures,
	ReprojectionError,
)
from framelapse.services.exceptions import HomographyEstimationError
from framelapse.services.geometry import AlignmentMatrix, BoundingBox, HomographyMatrix, LandmarkPoint, midpoint
from framelapse.services.landmarks import BodyKeypointType, BodyLandmarks, FaceLandmarks, FeatureKeypoint

logging.getLogger("PIL").setLevel(logging.WARNING)

CANVAS = 512


@dataclass(frozen=True)
class FakeImage:
	name: str
	width: int
	height: int
	matrix: AlignmentMatrix = AlignmentMatrix()
	homography: Optional[HomographyMatrix] = None


class FakeImageProcessor(ImageProcessor):
	def __init__(self):
		self.warps: List[AlignmentMatrix] = []
		self.crops: List[BoundingBox] = []
		self.resizes: List[Tuple[int, int, bool]] = []
		self.saved: List[str] = []

	async def load_image(self, path: str) -> FakeImage:
		return FakeImage(path, CANVAS, CANVAS)

	async def save_image(self, image: Any, path: str) -> str:
		self.saved.append(path)
		return path

	async def crop_image(self, image: FakeImage, box: BoundingBox) -> FakeImage:
		self.crops.append(box)
		return replace(image, width=int(round(box.width)), height=int(round(box.height)))

	async def resize_image(self, image: FakeImage, width: int, height: int, maintain_aspect_ratio: bool = True) -> FakeImage:
		self.resizes.append((width, height, maintain_aspect_ratio))
		return replace(image, width=width, height=height)

	async def apply_affine_transform(self, image: FakeImage, matrix: AlignmentMatrix, output_width: int, output_height: int) -> FakeImage:
		self.warps.append(matrix)
		return replace(image, width=output_width, height=output_height, matrix=matrix)

	async def apply_homography(self, image: FakeImage, homography: HomographyMatrix, output_width: int, output_height: int) -> FakeImage:
		return replace(image, width=output_width, height=output_height, homography=homography)

	def image_size(self, image: FakeImage) -> Tuple[int, int]:
		return image.width, image.height


def _normalized(matrix: AlignmentMatrix, point: LandmarkPoint, image: FakeImage) -> LandmarkPoint:
	return matrix.apply(point).to_normalized(image.width, image.height)


class GeometricFaceDetector(FaceDetector):
	"""Eyes at fixed source-pixel positions, seen through the warp matrix."""

	def __init__(self, left_eye: LandmarkPoint, right_eye: LandmarkPoint, confidence: float = 0.95, available: bool = True):
		self.left_eye = left_eye
		self.right_eye = right_eye
		self.confidence = confidence
		self.available = available
		self.calls = 0

	@property
	def is_available(self) -> bool:
		return self.available

	async def detect(self, image: FakeImage) -> Optional[FaceLandmarks]:
		self.calls += 1
		left = _normalized(image.matrix, self.left_eye, image)
		right = _normalized(image.matrix, self.right_eye, image)
		center = midpoint(left, right)
		return FaceLandmarks(
			left_eye=left,
			right_eye=right,
			nose_tip=LandmarkPoint(center.x, center.y + 0.1),
			bounding_box=BoundingBox(center.x - 0.2, center.y - 0.2, center.x + 0.2, center.y + 0.3),
			confidence=self.confidence,
		)


class GeometricBodyDetector(BodyPoseDetector):
	"""Shoulders at fixed source-pixel positions; hips 120px below them."""

	def __init__(self, left_shoulder: LandmarkPoint, right_shoulder: LandmarkPoint, confidence: float = 0.9):
		self.points = {
			"left_shoulder": left_shoulder,
			"right_shoulder": right_shoulder,
			"left_hip": LandmarkPoint(left_shoulder.x + 10, left_shoulder.y + 120),
			"right_hip": LandmarkPoint(right_shoulder.x - 10, right_shoulder.y + 120),
			"neck_center": LandmarkPoint((left_shoulder.x + right_shoulder.x) / 2, (left_shoulder.y + right_shoulder.y) / 2 - 20),
		}
		self.confidence = confidence
		self.calls = 0

	@property
	def is_available(self) -> bool:
		return True

	async def detect(self, image: FakeImage) -> Optional[BodyLandmarks]:
		self.calls += 1
		seen = {name: _normalized(image.matrix, p, image) for name, p in self.points.items()}
		return BodyLandmarks(
			keypoints={BodyKeypointType.NOSE: LandmarkPoint(seen["neck_center"].x, seen["neck_center"].y - 0.08)},
			bounding_box=BoundingBox(0.1, 0.1, 0.9, 0.9),
			confidence=self.confidence,
			**seen,
		)


class ScriptedDetector(FaceDetector):
	"""
	Returns the scripted responses in order, repeating the last one. An
	exception instance in the script is raised instead of returned.
	"""

	def __init__(self, responses: Sequence[Any]):
		self.responses = list(responses)
		self.calls = 0

	@property
	def is_available(self) -> bool:
		return True

	async def detect(self, image: Any):
		response = self.responses[min(self.calls, len(self.responses) - 1)]
		self.calls += 1
		if isinstance(response, Exception):
			raise response
		return response


def face_at(left_px: Tuple[float, float], right_px: Tuple[float, float], confidence: float = 0.95) -> FaceLandmarks:
	return FaceLandmarks(
		left_eye=LandmarkPoint(left_px[0] / CANVAS, left_px[1] / CANVAS),
		right_eye=LandmarkPoint(right_px[0] / CANVAS, right_px[1] / CANVAS),
		confidence=confidence,
	)


@dataclass
class FakeFeatureMatcher(FeatureMatcher):
	"""
	Perfect one-to-one correspondences. Homographies and reprojection errors are
	scripted per call (the last entry repeats).
	"""
	keypoint_count: int = 20
	match_count: Optional[int] = None
	homographies: List[HomographyMatrix] = field(default_factory=lambda: [HomographyMatrix.identity()])
	errors: List[float] = field(default_factory=lambda: [0.0])
	available: bool = True
	reprojection_fails: bool = False
	# trailing keypoints that are weak and never inliers
	outliers: int = 0
	thresholds: List[float] = field(default_factory=list)

	@property
	def is_available(self) -> bool:
		return self.available

	async def detect_features(self, image: Any, max_keypoints: int) -> LandscapeFeatures:
		keypoints = [
			FeatureKeypoint(
				LandmarkPoint(0.05 + 0.9 * (i % 5) / 4.0, 0.05 + 0.9 * (i // 5) / 4.0),
				response=0.2 if self._is_outlier(i) else 1.0,
			)
			for i in range(self.keypoint_count)
		]
		return LandscapeFeatures(keypoints, None, 640, 480)

	async def match_features(self, source, reference, ratio_test_threshold):
		count = self.keypoint_count if self.match_count is None else self.match_count
		return [(i, i) for i in range(count)]

	async def compute_homography(self, source_keypoints, reference_keypoints, matches, ransac_threshold, image_width, image_height):
		index = min(len(self.thresholds), len(self.homographies) - 1)
		self.thresholds.append(ransac_threshold)
		return self.homographies[index], sum(1 for s, _ in matches if not self._is_outlier(s))

	def _is_outlier(self, index: int) -> bool:
		return index >= self.keypoint_count - self.outliers

	async def calculate_reprojection_error(self, source_keypoints, reference_keypoints, matches, homography, image_width, image_height):
		if self.reprojection_fails:
			raise HomographyEstimationError("no inliers")
		error = self.errors[min(len(self.thresholds), len(self.errors)) - 1]
		return ReprojectionError(error, error, error, len(matches), len(matches), 5.0)


@pytest.fixture
def processor():
	return FakeImageProcessor()


@pytest.fixture
def source_image():
	return FakeImage("source.jpg", CANVAS, CANVAS)
