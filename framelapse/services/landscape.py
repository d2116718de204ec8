"""
Landscape (feature-based) stabilization: a projective transform estimated from
sparse feature matches and refined in up to three stages of at most three passes:

	1. match quality       keep the strongest matches     -> INLIER_RATIO_CONVERGED
	2. RANSAC threshold    tighten the inlier threshold   -> REPROJECTION_ERROR_CONVERGED
	3. perspective         pull folded frames to identity -> PERSPECTIVE_CONVERGED

A stage that converges hands over to the next one. HOMOGRAPHY_INVALID and
NO_IMPROVEMENT end the run with the last accepted homography.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

import numpy as np

from framelapse.services.capabilities import FeatureMatcher, LandscapeFeatures, Match, ProgressCallback
from framelapse.services.entities import (
	STAGE_MESSAGES,
	EarlyStopReason,
	LandscapeStabilizationResult,
	StabilizationPass,
	StabilizationProgress,
	StabilizationStage,
)
from framelapse.services.exceptions import (
	CapabilityUnavailableError,
	FramelapseError,
	HomographyEstimationError,
	InsufficientMatchesError,
)
from framelapse.services.geometry import HomographyMatrix
from framelapse.services.settings import LandscapeStabilizationSettings

logger = logging.getLogger(__name__)

MIN_MATCHES = 4
STAGE_PASSES = 3
# share of the current matches kept by each match-quality pass
MATCH_KEEP_FRACTIONS = (0.85, 0.70, 0.55)
CONVEXITY_EPSILON = 1e-6

TERMINAL_REASONS = (EarlyStopReason.HOMOGRAPHY_INVALID, EarlyStopReason.NO_IMPROVEMENT)


@dataclass(frozen=True)
class RansacRefinement:
	homography: HomographyMatrix
	ransac_threshold: float
	inlier_count: int
	inlier_ratio: float
	mean_reprojection_error: float
	converged: bool


@dataclass(frozen=True)
class MatchQualityRefinement:
	homography: HomographyMatrix
	matches: List[Match]
	inlier_count: int
	inlier_ratio: float
	improvement: float
	converged: bool


@dataclass(frozen=True)
class PerspectiveRefinement:
	homography: HomographyMatrix
	determinant: float
	perspective_valid: bool
	blend_factor: float
	determinant_change: float
	converged: bool
	issues: Tuple[str, ...] = ()


def next_ransac_threshold(previous: float, reduction_factor: float, minimum: float) -> float:
	return max(previous * reduction_factor, minimum)


def homography_issues(homography: HomographyMatrix, settings: LandscapeStabilizationSettings) -> List[str]:
	issues = []
	det = homography.determinant()
	if not (settings.min_determinant <= det <= settings.max_determinant):
		issues.append("Determinant {:.4f} outside [{}, {}]".format(det, settings.min_determinant, settings.max_determinant))
	scale = homography.approximate_scale()
	if not (settings.min_scale_factor <= scale <= settings.max_scale_factor):
		issues.append("Scale {:.4f} outside [{}, {}]".format(scale, settings.min_scale_factor, settings.max_scale_factor))
	rotation = homography.approximate_rotation_degrees()
	if abs(rotation) > settings.max_rotation_degrees:
		issues.append("Rotation {:.2f} exceeds {} degrees".format(rotation, settings.max_rotation_degrees))
	return issues


def is_homography_acceptable(homography: HomographyMatrix, settings: LandscapeStabilizationSettings) -> bool:
	"""
	Non-singular, bounded determinant, plausible scale and rotation. Anything
	else would fold or flip the frame when warped.
	"""
	return homography.is_valid() and not homography_issues(homography, settings)


def frame_stays_convex(homography: HomographyMatrix, width: int, height: int) -> bool:
	"""True when the image corners map onto a finite convex quadrilateral."""
	corners = [homography.transform_point(x, y) for x, y in ((0, 0), (width, 0), (width, height), (0, height))]
	if any(not (math.isfinite(x) and math.isfinite(y)) for x, y in corners):
		return False
	last_sign = 0
	for i in range(4):
		ax, ay = corners[i]
		bx, by = corners[(i + 1) % 4]
		cx, cy = corners[(i + 2) % 4]
		cross = (bx - ax) * (cy - by) - (by - ay) * (cx - bx)
		if abs(cross) <= CONVEXITY_EPSILON:
			continue
		sign = 1 if cross > 0 else -1
		if last_sign and sign != last_sign:
			return False
		last_sign = sign
	return last_sign != 0


def blend_with_identity(homography: HomographyMatrix, factor: float) -> HomographyMatrix:
	"""factor 1.0 keeps the homography, 0.0 gives the identity."""
	identity = np.eye(3)
	return HomographyMatrix.from_array(identity + (homography.to_array() - identity) * factor)


def check_correspondences(
	source: LandscapeFeatures, reference: LandscapeFeatures, matches: Optional[Sequence[Match]] = None
) -> None:
	if not source.keypoints or not reference.keypoints:
		raise InsufficientMatchesError(
			"Keypoints required on both images (source={}, reference={})".format(
				len(source.keypoints), len(reference.keypoints)
			)
		)
	if matches is not None and len(matches) < MIN_MATCHES:
		raise InsufficientMatchesError(
			"At least {} matches are required for homography estimation, got {}".format(MIN_MATCHES, len(matches))
		)


class RansacThresholdRefiner:
	"""
	One call per pass. Stateless across passes: the caller hands in the previous
	threshold and gets the new one back.
	"""

	def __init__(self, matcher: FeatureMatcher, settings: Optional[LandscapeStabilizationSettings] = None):
		self.matcher = matcher
		self.settings = settings or LandscapeStabilizationSettings()

	async def refine(
		self,
		source: LandscapeFeatures,
		reference: LandscapeFeatures,
		matches: Sequence[Match],
		previous_threshold: float,
	) -> RansacRefinement:
		if not self.matcher.is_available:
			raise CapabilityUnavailableError("Feature matcher is not available")
		check_correspondences(source, reference, matches)

		settings = self.settings
		threshold = next_ransac_threshold(
			previous_threshold, settings.ransac_threshold_reduction_factor, settings.min_ransac_threshold
		)
		width, height = source.image_width, source.image_height
		homography, inliers = await self.matcher.compute_homography(
			source.keypoints, reference.keypoints, matches, threshold, width, height
		)
		try:
			error = await self.matcher.calculate_reprojection_error(
				source.keypoints, reference.keypoints, matches, homography, width, height
			)
			mean_error = error.mean_error
		except FramelapseError as e:
			logger.debug("Reprojection error unavailable (%s), estimating from threshold", e)
			mean_error = threshold / 2.0

		ratio = inliers / float(len(matches))
		converged = mean_error < settings.mean_reproj_error_threshold or threshold <= settings.min_ransac_threshold
		logger.debug(
			"RANSAC refine threshold=%.3f inliers=%d/%d mean_error=%.4f converged=%s",
			threshold, inliers, len(matches), mean_error, converged,
		)
		return RansacRefinement(homography, threshold, inliers, ratio, mean_error, converged)


class MatchQualityRefiner:
	"""
	Keeps the strongest share of the current matches, ranked by the product of
	both keypoint responses, and re-estimates at the initial RANSAC threshold.
	"""

	def __init__(self, matcher: FeatureMatcher, settings: Optional[LandscapeStabilizationSettings] = None):
		self.matcher = matcher
		self.settings = settings or LandscapeStabilizationSettings()

	async def refine(
		self,
		source: LandscapeFeatures,
		reference: LandscapeFeatures,
		matches: Sequence[Match],
		previous_ratio: float,
		step: int = 0,
	) -> MatchQualityRefinement:
		if not self.matcher.is_available:
			raise CapabilityUnavailableError("Feature matcher is not available")
		check_correspondences(source, reference, matches)

		valid = [
			(s, r) for s, r in matches
			if 0 <= s < len(source.keypoints) and 0 <= r < len(reference.keypoints)
		]
		check_correspondences(source, reference, valid)
		ranked = sorted(
			valid, key=lambda m: source.keypoints[m[0]].response * reference.keypoints[m[1]].response, reverse=True
		)
		keep = MATCH_KEEP_FRACTIONS[min(step, len(MATCH_KEEP_FRACTIONS) - 1)]
		filtered = ranked[:min(max(int(round(len(ranked) * keep)), MIN_MATCHES), len(ranked))]

		settings = self.settings
		homography, inliers = await self.matcher.compute_homography(
			source.keypoints, reference.keypoints, filtered, settings.initial_ransac_threshold,
			source.image_width, source.image_height,
		)
		ratio = inliers / float(len(filtered))
		improvement = ratio - previous_ratio
		converged = ratio >= 1.0 or improvement < settings.inlier_ratio_improvement_threshold
		logger.debug(
			"Match quality refine kept=%d/%d inliers=%d ratio=%.4f improvement=%.4f converged=%s",
			len(filtered), len(ranked), inliers, ratio, improvement, converged,
		)
		return MatchQualityRefinement(homography, filtered, inliers, ratio, improvement, converged)


class PerspectiveStabilityRefiner:
	"""
	Checks that the homography keeps the frame plausible and, when it does not,
	blends it toward the identity. Converges once a valid homography's
	determinant stops moving between passes.
	"""

	def __init__(self, settings: Optional[LandscapeStabilizationSettings] = None):
		self.settings = settings or LandscapeStabilizationSettings()

	def refine(
		self, homography: HomographyMatrix, previous_determinant: Optional[float], width: int, height: int
	) -> PerspectiveRefinement:
		if not homography.is_valid():
			raise HomographyEstimationError("Homography is singular")
		settings = self.settings
		issues = homography_issues(homography, settings)
		if not frame_stays_convex(homography, width, height):
			issues.append("Frame corners do not map to a convex quadrilateral")

		valid = not issues
		blend = 1.0 if valid else settings.perspective_blend_factor
		refined = homography if valid else blend_with_identity(homography, blend)
		determinant = homography.determinant()
		change = math.inf if previous_determinant is None else abs(determinant - previous_determinant)
		converged = valid and (previous_determinant is None or change < settings.determinant_change_threshold)
		if issues:
			logger.debug("Perspective issues: %s", "; ".join(issues))
		return PerspectiveRefinement(refined, refined.determinant(), valid, blend, change, converged, tuple(issues))


@dataclass
class _Estimate:
	homography: HomographyMatrix
	matches: List[Match]
	inlier_count: int
	mean_error: float
	threshold: float

	@property
	def inlier_ratio(self) -> float:
		return self.inlier_count / float(len(self.matches)) if self.matches else 0.0


class LandscapeStabilizer:
	def __init__(
		self,
		matcher: FeatureMatcher,
		settings: Optional[LandscapeStabilizationSettings] = None,
		progress_callback: Optional[ProgressCallback] = None,
	):
		self.matcher = matcher
		self.settings = settings or LandscapeStabilizationSettings()
		self.match_refiner = MatchQualityRefiner(matcher, self.settings)
		self.refiner = RansacThresholdRefiner(matcher, self.settings)
		self.perspective_refiner = PerspectiveStabilityRefiner(self.settings)
		self.progress_callback = progress_callback

	def _emit(self, current_pass: int, max_passes: int, stage: StabilizationStage, score: float, percent: float):
		if self.progress_callback is None:
			return
		try:
			self.progress_callback(StabilizationProgress(
				current_pass, max_passes, stage, score, percent, STAGE_MESSAGES[stage], self.settings.mode
			))
		except Exception:
			logger.warning("Progress callback failed", exc_info=True)

	async def _mean_error(
		self, source: LandscapeFeatures, reference: LandscapeFeatures, matches: List[Match],
		homography: HomographyMatrix, threshold: float,
	) -> float:
		try:
			error = await self.matcher.calculate_reprojection_error(
				source.keypoints, reference.keypoints, matches, homography, source.image_width, source.image_height
			)
		except FramelapseError:
			return threshold / 2.0
		return error.mean_error

	def _has_budget(self, passes: List[StabilizationPass], cancel_event: Optional[asyncio.Event]) -> bool:
		if len(passes) >= self.settings.max_passes:
			return False
		if cancel_event is not None and cancel_event.is_set():
			logger.info("Landscape stabilization cancelled before pass %d", len(passes) + 1)
			raise asyncio.CancelledError()
		return True

	def _record(
		self, passes: List[StabilizationPass], stage: StabilizationStage, before: float, after: float,
		converged: bool, pass_started: float,
	) -> None:
		pass_number = len(passes) + 1
		max_passes = self.settings.max_passes
		passes.append(StabilizationPass(
			pass_number, stage, before, after, converged, (time.perf_counter() - pass_started) * 1000.0,
		))
		self._emit(pass_number, max_passes, stage, after, pass_number / float(max_passes))

	async def _match_quality_stage(
		self, source: LandscapeFeatures, reference: LandscapeFeatures, estimate: _Estimate,
		passes: List[StabilizationPass], cancel_event: Optional[asyncio.Event],
	) -> Optional[EarlyStopReason]:
		stage = StabilizationStage.MATCH_QUALITY_REFINE
		for step in range(STAGE_PASSES):
			# every match is already an inlier
			if estimate.inlier_ratio >= 1.0 or not self._has_budget(passes, cancel_event):
				return None
			pass_started = time.perf_counter()
			before = estimate.mean_error
			try:
				refined = await self.match_refiner.refine(
					source, reference, estimate.matches, estimate.inlier_ratio, step
				)
			except HomographyEstimationError as e:
				logger.warning("Match quality refinement failed on pass %d: %s", len(passes) + 1, e)
				self._record(passes, stage, before, math.inf, True, pass_started)
				return EarlyStopReason.HOMOGRAPHY_INVALID

			if not is_homography_acceptable(refined.homography, self.settings):
				self._record(passes, stage, before, before, True, pass_started)
				return EarlyStopReason.HOMOGRAPHY_INVALID
			if refined.improvement <= 0:
				# filtering did not help: keep the previous estimate
				self._record(passes, stage, before, before, True, pass_started)
				return EarlyStopReason.INLIER_RATIO_CONVERGED

			estimate.homography = refined.homography
			estimate.matches = refined.matches
			estimate.inlier_count = refined.inlier_count
			estimate.mean_error = await self._mean_error(
				source, reference, refined.matches, refined.homography, estimate.threshold
			)
			self._record(passes, stage, before, estimate.mean_error, refined.converged, pass_started)
			if refined.converged:
				return EarlyStopReason.INLIER_RATIO_CONVERGED
		return None

	async def _ransac_stage(
		self, source: LandscapeFeatures, reference: LandscapeFeatures, estimate: _Estimate,
		passes: List[StabilizationPass], cancel_event: Optional[asyncio.Event],
	) -> Optional[EarlyStopReason]:
		stage = StabilizationStage.RANSAC_THRESHOLD_REFINE
		for _ in range(STAGE_PASSES):
			if not self._has_budget(passes, cancel_event):
				return None
			pass_started = time.perf_counter()
			before = estimate.mean_error
			try:
				refined = await self.refiner.refine(source, reference, estimate.matches, estimate.threshold)
			except HomographyEstimationError as e:
				logger.warning("Homography refinement failed on pass %d: %s", len(passes) + 1, e)
				self._record(passes, stage, before, math.inf, True, pass_started)
				return EarlyStopReason.HOMOGRAPHY_INVALID

			reason = None
			if not is_homography_acceptable(refined.homography, self.settings):
				reason = EarlyStopReason.HOMOGRAPHY_INVALID
			elif refined.mean_reprojection_error >= before:
				# a bottomed-out threshold must not push a worse estimate through
				reason = EarlyStopReason.NO_IMPROVEMENT
			elif refined.converged:
				reason = EarlyStopReason.REPROJECTION_ERROR_CONVERGED
			self._record(passes, stage, before, refined.mean_reprojection_error, reason is not None, pass_started)
			if reason in TERMINAL_REASONS:
				return reason

			estimate.homography = refined.homography
			estimate.inlier_count = refined.inlier_count
			estimate.mean_error = refined.mean_reprojection_error
			estimate.threshold = refined.ransac_threshold
			if reason is not None:
				return reason
		return None

	async def _perspective_stage(
		self, source: LandscapeFeatures, reference: LandscapeFeatures, estimate: _Estimate,
		passes: List[StabilizationPass], cancel_event: Optional[asyncio.Event],
	) -> Optional[EarlyStopReason]:
		stage = StabilizationStage.PERSPECTIVE_STABILITY_REFINE
		previous_determinant = None
		for _ in range(STAGE_PASSES):
			if not self._has_budget(passes, cancel_event):
				return None
			pass_started = time.perf_counter()
			before = estimate.mean_error
			refined = self.perspective_refiner.refine(
				estimate.homography, previous_determinant, source.image_width, source.image_height
			)
			previous_determinant = estimate.homography.determinant()
			if not refined.perspective_valid:
				logger.info("Blending homography toward identity on pass %d", len(passes) + 1)
				estimate.homography = refined.homography
				estimate.mean_error = await self._mean_error(
					source, reference, estimate.matches, refined.homography, estimate.threshold
				)
			self._record(passes, stage, before, estimate.mean_error, refined.converged, pass_started)
			if refined.converged:
				return EarlyStopReason.PERSPECTIVE_CONVERGED
		return None

	async def _refine_stages(
		self, source: LandscapeFeatures, reference: LandscapeFeatures, estimate: _Estimate,
		passes: List[StabilizationPass], cancel_event: Optional[asyncio.Event],
	) -> Optional[EarlyStopReason]:
		if estimate.mean_error < self.settings.mean_reproj_error_threshold:
			reason = EarlyStopReason.REPROJECTION_ERROR_CONVERGED
		else:
			reason = await self._match_quality_stage(source, reference, estimate, passes, cancel_event)
			if reason in TERMINAL_REASONS:
				return reason
			if len(passes) < self.settings.max_passes:
				reason = await self._ransac_stage(source, reference, estimate, passes, cancel_event)
		if reason in (None, EarlyStopReason.REPROJECTION_ERROR_CONVERGED) and len(passes) < self.settings.max_passes:
			perspective = await self._perspective_stage(source, reference, estimate, passes, cancel_event)
			# a stage cut short by the pass budget keeps the earlier outcome
			if perspective is not None or reason is None:
				reason = perspective
		return reason

	async def stabilize(
		self, source_image: Any, reference_image: Any, cancel_event: Optional[asyncio.Event] = None
	) -> LandscapeStabilizationResult:
		"""
		Pass 1 is the initial estimate at the loosest threshold; SLOW mode then
		runs the refinement stages within the pass budget.

		Raises:
			CapabilityUnavailableError, InsufficientMatchesError, HomographyEstimationError
		"""
		if not self.matcher.is_available:
			raise CapabilityUnavailableError("Feature matcher is not available")

		started = time.perf_counter()
		settings = self.settings
		max_passes = settings.max_passes
		self._emit(0, max_passes, StabilizationStage.INITIAL, math.inf, 0.0)

		source = await self.matcher.detect_features(source_image, settings.max_keypoints)
		reference = await self.matcher.detect_features(reference_image, settings.max_keypoints)
		check_correspondences(source, reference)
		matches = list(await self.matcher.match_features(source, reference, settings.ratio_test_threshold))
		check_correspondences(source, reference, matches)

		pass_started = time.perf_counter()
		threshold = settings.initial_ransac_threshold
		homography, inliers = await self.matcher.compute_homography(
			source.keypoints, reference.keypoints, matches, threshold, source.image_width, source.image_height
		)
		if not is_homography_acceptable(homography, settings):
			raise HomographyEstimationError("Initial homography is degenerate or outside the accepted bounds")
		mean_error = await self._mean_error(source, reference, matches, homography, threshold)
		estimate = _Estimate(homography, matches, inliers, mean_error, threshold)

		passes = []
		converged = mean_error < settings.mean_reproj_error_threshold
		self._record(passes, StabilizationStage.DETECTION, math.inf, mean_error, converged, pass_started)

		if max_passes > 1:
			reason = await self._refine_stages(source, reference, estimate, passes, cancel_event)
		else:
			reason = EarlyStopReason.REPROJECTION_ERROR_CONVERGED if converged else None
		if reason is None:
			reason = EarlyStopReason.MAX_PASSES_REACHED

		passes_executed = len(passes)
		result = LandscapeStabilizationResult(
			homography=estimate.homography,
			early_stop_reason=reason,
			passes_executed=passes_executed,
			mode=settings.mode,
			max_passes=max_passes,
			ransac_threshold=estimate.threshold,
			mean_reprojection_error=estimate.mean_error,
			inlier_count=estimate.inlier_count,
			match_count=len(estimate.matches),
			passes=passes,
			duration_ms=(time.perf_counter() - started) * 1000.0,
		)
		logger.info(
			"Landscape stabilization finished: reason=%s passes=%d/%d error=%.4f inliers=%d/%d",
			reason.value, passes_executed, max_passes, estimate.mean_error,
			estimate.inlier_count, len(estimate.matches),
		)
		self._emit(passes_executed, max_passes, StabilizationStage.CLEANUP, estimate.mean_error, 1.0)
		return result
