"""
Multi-pass face/body stabilization.

Each pass warps the source image with the current candidate matrix onto the
square output canvas, detects the reference landmark pair (eyes or shoulders)
on the warped image, scores it against the goal pair and either stops or
refines the matrix. Stop checks run in a fixed priority order:

	1. score below the no-action threshold   -> SCORE_BELOW_THRESHOLD
	2. score not better than the last pass   -> NO_IMPROVEMENT (pass discarded)
	3. SLOW: rotation error <= threshold     -> ROTATION_CONVERGED
	4. SLOW: distance error <= threshold     -> SCALE_CONVERGED
	   (3 and 4 only after a refinement and below the success threshold)
	5. improvement below threshold           -> TRANSLATION_CONVERGED
	6. last permitted pass                   -> MAX_PASSES_REACHED

FAST mode runs one pass and applies the translation correction only. SLOW mode
follows a stop that leaves the best score at or above the success threshold
with one translation-only cleanup pass, kept only if it scores better.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Any, List, Optional, Tuple, Union

from framelapse.services.capabilities import BodyPoseDetector, FaceDetector, ImageProcessor, ProgressCallback
from framelapse.services.entities import (
	STAGE_MESSAGES,
	AlignmentDiagnostics,
	EarlyStopReason,
	OvershootCorrection,
	StabilizationMode,
	StabilizationPass,
	StabilizationProgress,
	StabilizationResult,
	StabilizationScore,
	StabilizationStage,
)
from framelapse.services.exceptions import CapabilityUnavailableError, DetectionError
from framelapse.services.geometry import AlignmentMatrix, BoundingBox, LandmarkPoint, midpoint, similarity_from_pairs
from framelapse.services.landmarks import BodyLandmarks, FaceLandmarks
from framelapse.services.refinement import refine_rotation_scale, refine_translation, rotation_error_px, scale_error_px
from framelapse.services.settings import AlignmentSettings, BodyAlignmentSettings, StabilizationSettings
from framelapse.services.validation import body_alignment_issues, face_alignment_issues

logger = logging.getLogger(__name__)

Landmarks = Union[FaceLandmarks, BodyLandmarks]
Pair = Tuple[LandmarkPoint, LandmarkPoint]

FALLBACK_CONFIDENCE = 0.5


class MultiPassStabilizer(ABC):
	subject = "landmarks"
	detection_failed_reason = EarlyStopReason.FACE_DETECTION_FAILED

	def __init__(
		self,
		detector: Any,
		image_processor: ImageProcessor,
		settings: Union[AlignmentSettings, BodyAlignmentSettings],
		progress_callback: Optional[ProgressCallback] = None,
	):
		self.detector = detector
		self.image_processor = image_processor
		self.settings = settings
		self.progress_callback = progress_callback

	@property
	def stabilization(self) -> StabilizationSettings:
		return self.settings.stabilization

	@property
	def output_size(self) -> int:
		return self.settings.output_size

	@abstractmethod
	def default_goal(self) -> Pair:
		"""Normalized goal pair used when no reference frame exists."""

	@abstractmethod
	def fallback_landmarks(self, goal_left: LandmarkPoint, goal_right: LandmarkPoint) -> Landmarks:
		"""Minimal normalized landmarks placed at the (normalized) goal pair."""

	@abstractmethod
	def validation_issues(self, landmarks: Landmarks) -> List[str]:
		pass

	def resolve_goal(self, reference_landmarks: Optional[Landmarks] = None) -> Pair:
		"""Goal pair in output-canvas pixels."""
		if reference_landmarks is not None:
			left, right = reference_landmarks.reference_pair()
		else:
			left, right = self.default_goal()
		size = self.output_size
		return left.to_pixels(size, size), right.to_pixels(size, size)

	def initial_matrix(
		self,
		source_image: Any,
		goal: Pair,
		source_landmarks: Optional[Landmarks] = None,
		initial_matrix: Optional[AlignmentMatrix] = None,
	) -> AlignmentMatrix:
		if initial_matrix is not None:
			return initial_matrix
		if source_landmarks is None:
			return AlignmentMatrix.identity()
		width, height = self.image_processor.image_size(source_image)
		left, right = source_landmarks.reference_pair()
		return similarity_from_pairs(left.to_pixels(width, height), right.to_pixels(width, height), goal[0], goal[1])

	def _emit(self, current_pass: int, max_passes: int, stage: StabilizationStage, score: float, percent: float):
		if self.progress_callback is None:
			return
		progress = StabilizationProgress(
			current_pass=current_pass,
			max_passes=max_passes,
			current_stage=stage,
			current_score=score,
			progress_percent=percent,
			message=STAGE_MESSAGES[stage],
			mode=self.stabilization.mode,
		)
		try:
			self.progress_callback(progress)
		except Exception:
			logger.warning("Progress callback failed", exc_info=True)

	async def _detect(self, image: Any) -> Tuple[Optional[Landmarks], Optional[str]]:
		try:
			landmarks = await self.detector.detect(image)
		except DetectionError as e:
			logger.warning("%s detection error: %s", self.subject.capitalize(), e)
			return None, str(e)
		if landmarks is None:
			return None, "No {} detected".format(self.subject)
		return landmarks, None

	def _to_canvas(self, landmarks: Landmarks) -> Pair:
		size = self.output_size
		left, right = landmarks.reference_pair()
		return left.to_pixels(size, size), right.to_pixels(size, size)

	def _stop_reason(
		self, pass_number: int, max_passes: int, score: float, previous_score: float, detected: Pair, goal: Pair
	) -> Optional[EarlyStopReason]:
		settings = self.stabilization
		if score < settings.no_action_score_threshold:
			return EarlyStopReason.SCORE_BELOW_THRESHOLD
		if score >= previous_score:
			return EarlyStopReason.NO_IMPROVEMENT
		# pass 1 is unrefined
		if settings.mode is StabilizationMode.SLOW and pass_number > 1 and score < settings.success_score_threshold:
			if rotation_error_px(detected[0], detected[1], goal[0], goal[1]) <= settings.rotation_stop_threshold:
				return EarlyStopReason.ROTATION_CONVERGED
			if scale_error_px(detected[0], detected[1], goal[0], goal[1]) <= settings.scale_error_threshold:
				return EarlyStopReason.SCALE_CONVERGED
		if previous_score - score < settings.convergence_threshold:
			return EarlyStopReason.TRANSLATION_CONVERGED
		if settings.mode is StabilizationMode.SLOW and pass_number >= max_passes:
			return EarlyStopReason.MAX_PASSES_REACHED
		return None

	def _refine(self, matrix: AlignmentMatrix, detected: Pair, goal: Pair, score: float) -> Tuple[AlignmentMatrix, StabilizationStage]:
		settings = self.stabilization
		overshoot = OvershootCorrection.calculate(
			detected[0], detected[1], goal[0], goal[1], score, settings.no_action_score_threshold
		)
		translation = refine_translation(matrix, overshoot)
		if settings.mode is StabilizationMode.FAST:
			return translation.matrix, StabilizationStage.TRANSLATION_REFINE
		# translation moved the detected pair on the output canvas
		shift = AlignmentMatrix.translation(translation.correction_x, translation.correction_y)
		refined = refine_rotation_scale(
			translation.matrix,
			shift.apply(detected[0]),
			shift.apply(detected[1]),
			goal[0],
			goal[1],
			settings,
			pivot=midpoint(goal[0], goal[1]),
		)
		if refined.scale_error > refined.rotation_error:
			return refined.matrix, StabilizationStage.SCALE_REFINE
		return refined.matrix, StabilizationStage.ROTATION_REFINE

	async def _cleanup(
		self, source_image: Any, matrix: AlignmentMatrix, detected: Pair, goal: Pair, score: float
	) -> Tuple[AlignmentMatrix, float]:
		"""One translation-only pass from the best matrix; returns the candidate and its score."""
		settings = self.stabilization
		size = self.output_size
		overshoot = OvershootCorrection.calculate(
			detected[0], detected[1], goal[0], goal[1], score, settings.no_action_score_threshold
		)
		candidate = refine_translation(matrix, overshoot).matrix
		warped = await self.image_processor.apply_affine_transform(source_image, candidate, size, size)
		landmarks, error = await self._detect(warped)
		if landmarks is None:
			logger.debug("Cleanup pass lost the %s: %s", self.subject, error)
			return candidate, math.inf
		seen = self._to_canvas(landmarks)
		return candidate, StabilizationScore.calculate(
			seen[0], seen[1], goal[0], goal[1], size,
			settings.no_action_score_threshold, settings.success_score_threshold,
		).value

	async def stabilize(
		self,
		source_image: Any,
		reference_landmarks: Optional[Landmarks] = None,
		source_landmarks: Optional[Landmarks] = None,
		initial_matrix: Optional[AlignmentMatrix] = None,
		cancel_event: Optional[asyncio.Event] = None,
	) -> StabilizationResult:
		if not self.detector.is_available:
			raise CapabilityUnavailableError("{} detector is not available".format(self.subject.capitalize()))

		started = time.perf_counter()
		settings = self.stabilization
		mode = settings.mode
		max_passes = settings.max_passes
		size = self.output_size
		goal = self.resolve_goal(reference_landmarks)
		matrix = self.initial_matrix(source_image, goal, source_landmarks, initial_matrix)

		best_matrix = matrix
		best_score = math.inf
		best_detected = None
		initial_score = math.inf
		previous_score = math.inf
		reason = None
		detection_error = None
		passes = []
		passes_executed = 0

		self._emit(0, max_passes, StabilizationStage.INITIAL, math.inf, 0.0)

		for pass_number in range(1, max_passes + 1):
			if cancel_event is not None and cancel_event.is_set():
				logger.info("%s stabilization cancelled before pass %d", self.subject.capitalize(), pass_number)
				raise asyncio.CancelledError()

			pass_started = time.perf_counter()
			passes_executed = pass_number
			warped = await self.image_processor.apply_affine_transform(source_image, matrix, size, size)
			landmarks, error = await self._detect(warped)
			if landmarks is None:
				reason = self.detection_failed_reason
				detection_error = error
				passes.append(StabilizationPass(
					pass_number, StabilizationStage.DETECTION, previous_score, math.inf, False,
					(time.perf_counter() - pass_started) * 1000.0,
				))
				break

			detected = self._to_canvas(landmarks)
			score = StabilizationScore.calculate(
				detected[0], detected[1], goal[0], goal[1], size,
				settings.no_action_score_threshold, settings.success_score_threshold,
			)
			if pass_number == 1:
				initial_score = score.value
			logger.debug("Pass %d/%d score=%.4f", pass_number, max_passes, score.value)

			reason = self._stop_reason(pass_number, max_passes, score.value, previous_score, detected, goal)
			stage = StabilizationStage.DETECTION
			if reason is not EarlyStopReason.NO_IMPROVEMENT:
				best_matrix, best_score, best_detected = matrix, score.value, detected
			if reason is None:
				matrix, stage = self._refine(matrix, detected, goal, score.value)
				if mode is StabilizationMode.FAST:
					best_matrix = matrix
					reason = EarlyStopReason.TRANSLATION_CONVERGED

			passes.append(StabilizationPass(
				pass_number, stage, previous_score, score.value, reason is not None,
				(time.perf_counter() - pass_started) * 1000.0,
			))
			self._emit(pass_number, max_passes, stage, score.value, pass_number / float(max_passes))
			previous_score = score.value
			if reason is not None:
				break

		if (
			mode is StabilizationMode.SLOW
			and best_detected is not None
			and not reason.is_detection_failure
			and best_score >= settings.success_score_threshold
			and passes_executed < max_passes
		):
			passes_executed += 1
			pass_started = time.perf_counter()
			candidate, cleanup_score = await self._cleanup(source_image, best_matrix, best_detected, goal, best_score)
			improved = cleanup_score < best_score
			if improved:
				best_matrix = candidate
			passes.append(StabilizationPass(
				passes_executed, StabilizationStage.CLEANUP, best_score, cleanup_score, improved,
				(time.perf_counter() - pass_started) * 1000.0,
			))
			self._emit(
				passes_executed, max_passes, StabilizationStage.CLEANUP, cleanup_score, passes_executed / float(max_passes)
			)
			logger.debug("Cleanup pass score=%.4f kept=%s", cleanup_score, improved)

		result = await self._finish(
			source_image, best_matrix, goal, reason, detection_error, passes_executed, max_passes, initial_score, passes
		)
		result = replace(result, duration_ms=(time.perf_counter() - started) * 1000.0)
		logger.info(
			"%s stabilization finished: reason=%s passes=%d/%d score=%.4f",
			self.subject.capitalize(), result.early_stop_reason.value, result.passes_executed,
			max_passes, result.final_score.value,
		)
		self._emit(passes_executed, max_passes, StabilizationStage.CLEANUP, result.final_score.value, 1.0)
		return result

	async def _finish(
		self,
		source_image: Any,
		matrix: AlignmentMatrix,
		goal: Pair,
		reason: EarlyStopReason,
		detection_error: Optional[str],
		passes_executed: int,
		max_passes: int,
		initial_score: float,
		passes: List[StabilizationPass],
	) -> StabilizationResult:
		"""Verify the returned matrix with one more detection and assemble the result."""
		settings = self.stabilization
		size = self.output_size
		landmarks = None
		error = detection_error
		if not reason.is_detection_failure:
			warped = await self.image_processor.apply_affine_transform(source_image, matrix, size, size)
			landmarks, error = await self._detect(warped)

		if landmarks is not None:
			detected = self._to_canvas(landmarks)
			final_score = StabilizationScore.calculate(
				detected[0], detected[1], goal[0], goal[1], size,
				settings.no_action_score_threshold, settings.success_score_threshold,
			)
			diagnostics = AlignmentDiagnostics(validation_issues=tuple(self.validation_issues(landmarks)))
			confidence = landmarks.confidence
		else:
			final_score = StabilizationScore.unavailable()
			fallback = settings.synthesize_fallback_landmarks
			if fallback:
				logger.warning("Aligned %s not detected (%s); synthesizing fallback landmarks", self.subject, error)
				landmarks = self.fallback_landmarks(goal[0].to_normalized(size, size), goal[1].to_normalized(size, size))
			diagnostics = AlignmentDiagnostics(
				aligned_landmarks_detected=False,
				aligned_landmarks_error=error,
				fallback_landmarks_generated=fallback,
			)
			confidence = landmarks.confidence if landmarks is not None else 0.0

		return StabilizationResult(
			matrix=matrix,
			early_stop_reason=reason,
			passes_executed=passes_executed,
			final_score=final_score,
			mode=settings.mode,
			max_passes=max_passes,
			initial_score=initial_score,
			goal_distance=goal[0].distance_to(goal[1]),
			detection_confidence=confidence,
			passes=passes,
			landmarks=landmarks,
			diagnostics=diagnostics,
		)


class FaceStabilizer(MultiPassStabilizer):
	subject = "face"
	detection_failed_reason = EarlyStopReason.FACE_DETECTION_FAILED

	def __init__(
		self,
		detector: FaceDetector,
		image_processor: ImageProcessor,
		settings: Optional[AlignmentSettings] = None,
		progress_callback: Optional[ProgressCallback] = None,
	):
		super().__init__(detector, image_processor, settings or AlignmentSettings(), progress_callback)

	def default_goal(self) -> Pair:
		half = self.settings.target_eye_distance / 2.0
		y = 0.5 - self.settings.vertical_offset
		return LandmarkPoint(0.5 - half, y), LandmarkPoint(0.5 + half, y)

	def fallback_landmarks(self, goal_left: LandmarkPoint, goal_right: LandmarkPoint) -> FaceLandmarks:
		center = midpoint(goal_left, goal_right)
		eye_distance = goal_left.distance_to(goal_right)
		nose = LandmarkPoint(center.x, center.y + eye_distance * 0.6)
		half = eye_distance
		return FaceLandmarks(
			left_eye=goal_left,
			right_eye=goal_right,
			nose_tip=nose,
			bounding_box=BoundingBox(
				max(0.0, center.x - half), max(0.0, center.y - half),
				min(1.0, center.x + half), min(1.0, center.y + half * 1.5),
			),
			confidence=FALLBACK_CONFIDENCE,
		)

	def validation_issues(self, landmarks: FaceLandmarks) -> List[str]:
		return face_alignment_issues(landmarks, self.settings)


class BodyStabilizer(MultiPassStabilizer):
	subject = "body"
	detection_failed_reason = EarlyStopReason.BODY_DETECTION_FAILED

	def __init__(
		self,
		detector: BodyPoseDetector,
		image_processor: ImageProcessor,
		settings: Optional[BodyAlignmentSettings] = None,
		progress_callback: Optional[ProgressCallback] = None,
	):
		super().__init__(detector, image_processor, settings or BodyAlignmentSettings(), progress_callback)

	def default_goal(self) -> Pair:
		half = self.settings.target_shoulder_distance / 2.0
		y = 0.5 - self.settings.vertical_offset
		return LandmarkPoint(0.5 - half, y), LandmarkPoint(0.5 + half, y)

	def fallback_landmarks(self, goal_left: LandmarkPoint, goal_right: LandmarkPoint) -> BodyLandmarks:
		center = midpoint(goal_left, goal_right)
		left_hip = LandmarkPoint(goal_left.x, goal_left.y + 0.25)
		right_hip = LandmarkPoint(goal_right.x, goal_right.y + 0.25)
		return BodyLandmarks(
			left_shoulder=goal_left,
			right_shoulder=goal_right,
			left_hip=left_hip,
			right_hip=right_hip,
			neck_center=LandmarkPoint(center.x, center.y - 0.05),
			bounding_box=BoundingBox(
				max(0.0, goal_left.x - 0.05), max(0.0, center.y - 0.1),
				min(1.0, goal_right.x + 0.05), min(1.0, left_hip.y + 0.05),
			),
			confidence=FALLBACK_CONFIDENCE,
		)

	def validation_issues(self, landmarks: BodyLandmarks) -> List[str]:
		return body_alignment_issues(landmarks, self.settings)
