from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional

from framelapse.services.entities import NO_ACTION_THRESHOLD, OvershootCorrection
from framelapse.services.geometry import EPSILON, AlignmentMatrix, LandmarkPoint, midpoint, pair_angle
from framelapse.services.settings import StabilizationSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TranslationRefinement:
	matrix: AlignmentMatrix
	correction_applied: bool
	correction_x: float
	correction_y: float


def refine_translation(matrix: AlignmentMatrix, overshoot: OvershootCorrection) -> TranslationRefinement:
	"""
	Shift the translate terms by the negated average overshoot.

	Only translate_x/translate_y change, so this correction can run alone (FAST
	mode) or ahead of the rotation/scale refiner (SLOW mode).
	"""
	if not overshoot.needs_correction:
		return TranslationRefinement(matrix, False, 0.0, 0.0)
	correction_x = -overshoot.average_overshoot_x
	correction_y = -overshoot.average_overshoot_y
	logger.debug("Translation correction dx=%.3f dy=%.3f", correction_x, correction_y)
	return TranslationRefinement(
		matrix.with_translation_delta(correction_x, correction_y),
		True,
		correction_x,
		correction_y,
	)


def refine_translation_from_overshoot(
	matrix: AlignmentMatrix,
	overshot_left_x: float,
	overshot_left_y: float,
	overshot_right_x: float,
	overshot_right_y: float,
	current_score: float,
	no_action_threshold: float = NO_ACTION_THRESHOLD,
) -> TranslationRefinement:
	overshoot = OvershootCorrection(
		overshot_left_x, overshot_left_y, overshot_right_x, overshot_right_y, current_score, no_action_threshold
	)
	return refine_translation(matrix, overshoot)


def _wrap_angle(angle: float) -> float:
	while angle <= -math.pi:
		angle += 2.0 * math.pi
	while angle > math.pi:
		angle -= 2.0 * math.pi
	return angle


def rotation_error_px(
	detected_left: LandmarkPoint, detected_right: LandmarkPoint, goal_left: LandmarkPoint, goal_right: LandmarkPoint
) -> float:
	"""
	Perpendicular offset (px) of the detected pair relative to the goal direction.
	For a horizontal goal pair this is |delta-Y| of the detected pair.
	"""
	delta = _wrap_angle(pair_angle(goal_left, goal_right) - pair_angle(detected_left, detected_right))
	return abs(detected_left.distance_to(detected_right) * math.sin(delta))


def scale_error_px(
	detected_left: LandmarkPoint, detected_right: LandmarkPoint, goal_left: LandmarkPoint, goal_right: LandmarkPoint
) -> float:
	return abs(detected_left.distance_to(detected_right) - goal_left.distance_to(goal_right))


@dataclass(frozen=True)
class RotationScaleRefinement:
	matrix: AlignmentMatrix
	angle_correction: float
	scale_correction: float
	rotation_error: float
	scale_error: float


def refine_rotation_scale(
	matrix: AlignmentMatrix,
	detected_left: LandmarkPoint,
	detected_right: LandmarkPoint,
	goal_left: LandmarkPoint,
	goal_right: LandmarkPoint,
	settings: StabilizationSettings,
	pivot: Optional[LandmarkPoint] = None,
) -> RotationScaleRefinement:
	"""
	Rotate by the damped difference between goal and detected pair angles and
	scale by the (clamped, damped) goal/detected distance ratio, about `pivot`
	(the detected pair midpoint unless given). Landmarks are output-canvas pixels.
	"""
	delta = _wrap_angle(pair_angle(goal_left, goal_right) - pair_angle(detected_left, detected_right))
	angle = delta * settings.rotation_damping

	detected_distance = detected_left.distance_to(detected_right)
	if detected_distance > EPSILON:
		ratio = goal_left.distance_to(goal_right) / detected_distance
	else:
		ratio = 1.0
	ratio = min(max(ratio, settings.min_scale_correction), settings.max_scale_correction)
	scale = ratio ** settings.scale_damping

	center = pivot if pivot is not None else midpoint(detected_left, detected_right)
	correction = AlignmentMatrix.rotation_scale_about(center, angle, scale)
	logger.debug("Rotation/scale correction angle=%.5f rad scale=%.5f", angle, scale)
	return RotationScaleRefinement(
		matrix=matrix.then(correction),
		angle_correction=angle,
		scale_correction=scale,
		rotation_error=rotation_error_px(detected_left, detected_right, goal_left, goal_right),
		scale_error=scale_error_px(detected_left, detected_right, goal_left, goal_right),
	)
