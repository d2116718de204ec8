"""
Scalar quality score in [0, 1] for a finished stabilization run.

Face/body: the detector's own confidence times a factor derived from the final
alignment score, minus a penalty for how the run terminated, plus a small bonus
for finishing in fewer passes. Landscape: inlier ratio blended with a
reprojection-error factor, using the same penalty table.
"""

import math
from typing import Dict

from framelapse.services.entities import (
	NO_ACTION_THRESHOLD,
	SUCCESS_THRESHOLD,
	EarlyStopReason,
	LandscapeStabilizationResult,
	StabilizationResult,
)
from framelapse.services.geometry import clamp

REASON_PENALTIES: Dict[EarlyStopReason, float] = {
	EarlyStopReason.SCORE_BELOW_THRESHOLD: 0.0,
	EarlyStopReason.REPROJECTION_ERROR_CONVERGED: 0.0,
	EarlyStopReason.PERSPECTIVE_CONVERGED: 0.0,
	EarlyStopReason.ROTATION_CONVERGED: 0.02,
	EarlyStopReason.SCALE_CONVERGED: 0.02,
	EarlyStopReason.TRANSLATION_CONVERGED: 0.03,
	EarlyStopReason.INLIER_RATIO_CONVERGED: 0.05,
	EarlyStopReason.NO_IMPROVEMENT: 0.1,
	EarlyStopReason.MAX_PASSES_REACHED: 0.15,
	EarlyStopReason.HOMOGRAPHY_INVALID: 0.2,
	# capped below instead
	EarlyStopReason.FACE_DETECTION_FAILED: 0.0,
	EarlyStopReason.BODY_DETECTION_FAILED: 0.0,
}

PASS_BONUS = 0.05
DETECTION_FAILED_CAP = 0.3
POOR_SCORE_FLOOR = 0.3


def score_factor(score: float) -> float:
	"""
	- score < 0.5: 1.0 (nothing left to correct)
	- score < 20: 0.7 .. 0.99
	- otherwise: 0.3 .. 0.7, degrading over the next 100 points
	"""
	if math.isinf(score) or math.isnan(score):
		return POOR_SCORE_FLOOR
	if score < NO_ACTION_THRESHOLD:
		return 1.0
	if score < SUCCESS_THRESHOLD:
		return 0.7 + (SUCCESS_THRESHOLD - score) / SUCCESS_THRESHOLD * 0.29
	return max(POOR_SCORE_FLOOR, 0.7 - (score - SUCCESS_THRESHOLD) / 100.0 * 0.4)


def pass_bonus(passes_executed: int, max_passes: int) -> float:
	if max_passes <= 0:
		return 0.0
	used = min(max(passes_executed, 0), max_passes)
	return PASS_BONUS * (1.0 - used / float(max_passes))


def calculate_confidence(result: StabilizationResult) -> float:
	base = clamp(result.detection_confidence) * score_factor(result.final_score.value)
	confidence = base - REASON_PENALTIES[result.early_stop_reason]
	confidence += pass_bonus(result.passes_executed, result.max_passes)
	if result.early_stop_reason.is_detection_failure:
		confidence = min(confidence, DETECTION_FAILED_CAP)
	return clamp(confidence)


def reprojection_factor(mean_error: float, target_error: float) -> float:
	"""1.0 at zero error, 0.5 at the target, 0.0 from twice the target on."""
	if math.isinf(mean_error) or math.isnan(mean_error) or target_error <= 0:
		return 0.0
	return clamp(1.0 - mean_error / (2.0 * target_error))


def calculate_landscape_confidence(result: LandscapeStabilizationResult, target_error: float = 1.0) -> float:
	base = result.inlier_ratio * (0.7 + 0.3 * reprojection_factor(result.mean_reprojection_error, target_error))
	confidence = base - REASON_PENALTIES[result.early_stop_reason]
	confidence += pass_bonus(result.passes_executed, result.max_passes)
	return clamp(confidence)
