"""
OpenCV implementations of the feature matcher and image processor capabilities.
Images are uint8 RGB numpy arrays [H,W,3]. CPU-bound calls run in a worker
thread so the event loop stays responsive.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Sequence, Tuple

import cv2
import numpy as np

from framelapse.services.capabilities import FeatureMatcher, ImageProcessor, LandscapeFeatures, Match, ReprojectionError
from framelapse.services.exceptions import HomographyEstimationError, ImageProcessingError, InsufficientMatchesError
from framelapse.services.geometry import AlignmentMatrix, BoundingBox, HomographyMatrix
from framelapse.services.image_utils import load_rgb, save_rgb, to_gray
from framelapse.services.landmarks import FeatureKeypoint

logger = logging.getLogger(__name__)

REPROJECTION_INLIER_THRESHOLD = 5.0


def _pixel_points(keypoints: Sequence[FeatureKeypoint], indices: Sequence[int], width: int, height: int) -> np.ndarray:
	pts = [keypoints[i].to_pixel_coordinates(width, height) for i in indices]
	return np.asarray(pts, dtype=np.float32).reshape(-1, 1, 2)


class OpenCvFeatureMatcher(FeatureMatcher):
	def __init__(self, detector: str = "orb"):
		detector = detector.lower()
		if detector not in ("orb", "akaze"):
			raise ValueError("Unsupported feature detector: {}".format(detector))
		self.detector = detector

	@property
	def is_available(self) -> bool:
		return True

	def _detect_sync(self, image: np.ndarray, max_keypoints: int) -> LandscapeFeatures:
		gray = to_gray(image)
		h, w = gray.shape[:2]
		if self.detector == "orb":
			extractor = cv2.ORB_create(nfeatures=max_keypoints)
		else:
			extractor = cv2.AKAZE_create()
		cv_keypoints, descriptors = extractor.detectAndCompute(gray, None)
		cv_keypoints = list(cv_keypoints or [])
		if len(cv_keypoints) > max_keypoints:
			# AKAZE has no keypoint cap; keep the strongest
			order = sorted(range(len(cv_keypoints)), key=lambda i: cv_keypoints[i].response, reverse=True)[:max_keypoints]
			cv_keypoints = [cv_keypoints[i] for i in order]
			descriptors = descriptors[order]
		keypoints = [
			FeatureKeypoint.from_pixel_coordinates(
				kp.pt[0], kp.pt[1], w, h, response=kp.response, size=kp.size, angle=kp.angle, octave=kp.octave
			)
			for kp in cv_keypoints
		]
		logger.debug("Detected %d %s keypoints on %dx%d image", len(keypoints), self.detector, w, h)
		return LandscapeFeatures(keypoints, descriptors, w, h)

	async def detect_features(self, image: np.ndarray, max_keypoints: int) -> LandscapeFeatures:
		return await asyncio.to_thread(self._detect_sync, image, max_keypoints)

	async def match_features(
		self, source: LandscapeFeatures, reference: LandscapeFeatures, ratio_test_threshold: float
	) -> List[Match]:
		if source.descriptors is None or reference.descriptors is None:
			return []
		if len(source.descriptors) < 2 or len(reference.descriptors) < 2:
			return []
		matcher = cv2.BFMatcher(cv2.NORM_HAMMING)
		knn = matcher.knnMatch(source.descriptors, reference.descriptors, k=2)
		matches = []
		for pair in knn:
			if len(pair) < 2:
				continue
			best, second = pair
			# Lowe's ratio test
			if best.distance < ratio_test_threshold * second.distance:
				matches.append((best.queryIdx, best.trainIdx))
		return matches

	async def compute_homography(
		self,
		source_keypoints: Sequence[FeatureKeypoint],
		reference_keypoints: Sequence[FeatureKeypoint],
		matches: Sequence[Match],
		ransac_threshold: float,
		image_width: int,
		image_height: int,
	) -> Tuple[HomographyMatrix, int]:
		if len(matches) < 4:
			raise InsufficientMatchesError("At least 4 matches are required, got {}".format(len(matches)))
		src = _pixel_points(source_keypoints, [m[0] for m in matches], image_width, image_height)
		dst = _pixel_points(reference_keypoints, [m[1] for m in matches], image_width, image_height)
		H, mask = cv2.findHomography(src, dst, cv2.RANSAC, float(ransac_threshold))
		if H is None:
			raise HomographyEstimationError("findHomography failed at threshold {:.3f}".format(ransac_threshold))
		inliers = int(mask.sum()) if mask is not None else 0
		return HomographyMatrix.from_array(H), inliers

	async def calculate_reprojection_error(
		self,
		source_keypoints: Sequence[FeatureKeypoint],
		reference_keypoints: Sequence[FeatureKeypoint],
		matches: Sequence[Match],
		homography: HomographyMatrix,
		image_width: int,
		image_height: int,
	) -> ReprojectionError:
		if not matches:
			raise InsufficientMatchesError("No matches to measure")
		src = _pixel_points(source_keypoints, [m[0] for m in matches], image_width, image_height)
		dst = _pixel_points(reference_keypoints, [m[1] for m in matches], image_width, image_height)
		projected = cv2.perspectiveTransform(src, homography.to_array())
		errors = np.linalg.norm((projected - dst).reshape(-1, 2), axis=1)
		inlier_errors = errors[errors < REPROJECTION_INLIER_THRESHOLD]
		if inlier_errors.size == 0:
			raise HomographyEstimationError("No inliers within {:.1f}px".format(REPROJECTION_INLIER_THRESHOLD))
		return ReprojectionError(
			mean_error=float(np.mean(inlier_errors)),
			median_error=float(np.median(inlier_errors)),
			max_error=float(np.max(inlier_errors)),
			inlier_count=int(inlier_errors.size),
			total_matches=len(matches),
			inlier_threshold=REPROJECTION_INLIER_THRESHOLD,
		)


class OpenCvImageProcessor(ImageProcessor):
	async def load_image(self, path: str) -> np.ndarray:
		try:
			return await asyncio.to_thread(load_rgb, path)
		except OSError as e:
			raise ImageProcessingError("Failed to load image {}: {}".format(path, e)) from e

	async def save_image(self, image: np.ndarray, path: str) -> str:
		try:
			out = await asyncio.to_thread(save_rgb, image, path)
		except (OSError, ValueError) as e:
			raise ImageProcessingError("Failed to save image {}: {}".format(path, e)) from e
		return str(out)

	async def crop_image(self, image: np.ndarray, box: BoundingBox) -> np.ndarray:
		h, w = image.shape[:2]
		left, top, right, bottom = box.to_int_box()
		left, top = max(0, left), max(0, top)
		right, bottom = min(w, right), min(h, bottom)
		if right <= left or bottom <= top:
			raise ImageProcessingError("Empty crop box {} for {}x{} image".format(box, w, h))
		return image[top:bottom, left:right].copy()

	async def resize_image(
		self, image: np.ndarray, width: int, height: int, maintain_aspect_ratio: bool = True
	) -> np.ndarray:
		h, w = image.shape[:2]
		if maintain_aspect_ratio:
			scale = min(width / float(w), height / float(h))
			width, height = max(1, int(round(w * scale))), max(1, int(round(h * scale)))
		interpolation = cv2.INTER_AREA if width * height < w * h else cv2.INTER_LINEAR
		return cv2.resize(image, (width, height), interpolation=interpolation)

	async def apply_affine_transform(
		self, image: np.ndarray, matrix: AlignmentMatrix, output_width: int, output_height: int
	) -> np.ndarray:
		return await asyncio.to_thread(
			cv2.warpAffine, image, matrix.to_array(), (output_width, output_height),
			flags=cv2.INTER_LINEAR, borderMode=cv2.BORDER_CONSTANT,
		)

	async def apply_homography(
		self, image: np.ndarray, homography: HomographyMatrix, output_width: int, output_height: int
	) -> np.ndarray:
		if not homography.is_valid():
			raise ImageProcessingError("Cannot warp with a singular homography")
		return await asyncio.to_thread(
			cv2.warpPerspective, image, homography.to_array(), (output_width, output_height),
			flags=cv2.INTER_LINEAR, borderMode=cv2.BORDER_CONSTANT,
		)

	def image_size(self, image: np.ndarray) -> Tuple[int, int]:
		return int(image.shape[1]), int(image.shape[0])
