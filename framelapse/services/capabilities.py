"""
Collaborators the stabilization engine consumes but does not implement.

Every call into one of these is a suspension point (async); the refinement
math between calls is synchronous. Images are opaque handles: the engine only
passes them back into the image processor or a detector.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, Tuple

from framelapse.services.entities import StabilizationProgress
from framelapse.services.geometry import AlignmentMatrix, BoundingBox, HomographyMatrix
from framelapse.services.landmarks import BodyLandmarks, FaceLandmarks, FeatureKeypoint

ProgressCallback = Callable[[StabilizationProgress], None]
Match = Tuple[int, int]


@dataclass(frozen=True)
class LandscapeFeatures:
	keypoints: List[FeatureKeypoint]
	descriptors: Any
	image_width: int
	image_height: int


@dataclass(frozen=True)
class ReprojectionError:
	mean_error: float
	median_error: float
	max_error: float
	inlier_count: int
	total_matches: int
	inlier_threshold: float


class FaceDetector(ABC):
	@property
	@abstractmethod
	def is_available(self) -> bool:
		pass

	@abstractmethod
	async def detect(self, image: Any) -> Optional[FaceLandmarks]:
		"""
		Returns:
			Normalized face landmarks, or None when the detector ran but found no face.
		Raises:
			DetectionError when the detector itself failed.
		"""
		pass


class BodyPoseDetector(ABC):
	@property
	@abstractmethod
	def is_available(self) -> bool:
		pass

	@abstractmethod
	async def detect(self, image: Any) -> Optional[BodyLandmarks]:
		"""
		Returns:
			Normalized body landmarks, or None when no body was found.
		"""
		pass


class FeatureMatcher(ABC):
	@property
	@abstractmethod
	def is_available(self) -> bool:
		pass

	@abstractmethod
	async def detect_features(self, image: Any, max_keypoints: int) -> LandscapeFeatures:
		pass

	@abstractmethod
	async def match_features(
		self, source: LandscapeFeatures, reference: LandscapeFeatures, ratio_test_threshold: float
	) -> List[Match]:
		"""
		Returns (source_index, reference_index) pairs.
		"""
		pass

	@abstractmethod
	async def compute_homography(
		self,
		source_keypoints: Sequence[FeatureKeypoint],
		reference_keypoints: Sequence[FeatureKeypoint],
		matches: Sequence[Match],
		ransac_threshold: float,
		image_width: int,
		image_height: int,
	) -> Tuple[HomographyMatrix, int]:
		"""
		Pixel-space homography (source -> reference) and its RANSAC inlier count.
		"""
		pass

	@abstractmethod
	async def calculate_reprojection_error(
		self,
		source_keypoints: Sequence[FeatureKeypoint],
		reference_keypoints: Sequence[FeatureKeypoint],
		matches: Sequence[Match],
		homography: HomographyMatrix,
		image_width: int,
		image_height: int,
	) -> ReprojectionError:
		pass


class ImageProcessor(ABC):
	@abstractmethod
	async def load_image(self, path: str) -> Any:
		pass

	@abstractmethod
	async def save_image(self, image: Any, path: str) -> str:
		pass

	@abstractmethod
	async def crop_image(self, image: Any, box: BoundingBox) -> Any:
		pass

	@abstractmethod
	async def resize_image(self, image: Any, width: int, height: int, maintain_aspect_ratio: bool = True) -> Any:
		pass

	@abstractmethod
	async def apply_affine_transform(self, image: Any, matrix: AlignmentMatrix, output_width: int, output_height: int) -> Any:
		pass

	@abstractmethod
	async def apply_homography(self, image: Any, homography: HomographyMatrix, output_width: int, output_height: int) -> Any:
		pass

	@abstractmethod
	def image_size(self, image: Any) -> Tuple[int, int]:
		"""
		(width, height) in pixels.
		"""
		pass
