from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from framelapse.services.geometry import AlignmentMatrix, HomographyMatrix, LandmarkPoint
from framelapse.services.landmarks import BodyLandmarks, FaceLandmarks

NO_ACTION_THRESHOLD = 0.5
SUCCESS_THRESHOLD = 20.0


class StabilizationMode(Enum):
	FAST = "fast"
	SLOW = "slow"


class MuscleRegion(Enum):
	FULL_BODY = "full_body"
	UPPER_BODY = "upper_body"
	LOWER_BODY = "lower_body"
	ARMS = "arms"
	BACK = "back"

	@classmethod
	def from_string(cls, value: str) -> "MuscleRegion":
		for region in cls:
			if value and value.strip().lower() in (region.value, region.name.lower()):
				return region
		return cls.FULL_BODY


class StabilizationStage(Enum):
	INITIAL = "initial"
	DETECTION = "detection"
	ROTATION_REFINE = "rotation_refine"
	SCALE_REFINE = "scale_refine"
	TRANSLATION_REFINE = "translation_refine"
	MATCH_QUALITY_REFINE = "match_quality_refine"
	RANSAC_THRESHOLD_REFINE = "ransac_threshold_refine"
	PERSPECTIVE_STABILITY_REFINE = "perspective_stability_refine"
	CLEANUP = "cleanup"


class EarlyStopReason(Enum):
	SCORE_BELOW_THRESHOLD = "score_below_threshold"
	NO_IMPROVEMENT = "no_improvement"
	ROTATION_CONVERGED = "rotation_converged"
	SCALE_CONVERGED = "scale_converged"
	TRANSLATION_CONVERGED = "translation_converged"
	MAX_PASSES_REACHED = "max_passes_reached"
	FACE_DETECTION_FAILED = "face_detection_failed"
	BODY_DETECTION_FAILED = "body_detection_failed"
	# landscape
	INLIER_RATIO_CONVERGED = "inlier_ratio_converged"
	REPROJECTION_ERROR_CONVERGED = "reprojection_error_converged"
	PERSPECTIVE_CONVERGED = "perspective_converged"
	HOMOGRAPHY_INVALID = "homography_invalid"

	@property
	def is_detection_failure(self) -> bool:
		return self in (
			EarlyStopReason.FACE_DETECTION_FAILED,
			EarlyStopReason.BODY_DETECTION_FAILED,
		)


@dataclass(frozen=True)
class StabilizationScore:
	"""
	Mean landmark-to-goal distance scaled by 1000 / canvas height. Lower is better.
	"""
	value: float
	left_distance: float
	right_distance: float
	no_action_threshold: float = NO_ACTION_THRESHOLD
	success_threshold: float = SUCCESS_THRESHOLD

	@property
	def needs_correction(self) -> bool:
		return self.value >= self.no_action_threshold

	@property
	def is_success(self) -> bool:
		return self.value < self.success_threshold

	@classmethod
	def calculate(
		cls,
		detected_left: LandmarkPoint,
		detected_right: LandmarkPoint,
		goal_left: LandmarkPoint,
		goal_right: LandmarkPoint,
		canvas_height: int,
		no_action_threshold: float = NO_ACTION_THRESHOLD,
		success_threshold: float = SUCCESS_THRESHOLD,
	) -> "StabilizationScore":
		left = detected_left.distance_to(goal_left)
		right = detected_right.distance_to(goal_right)
		value = ((left + right) / 2.0) * 1000.0 / float(canvas_height)
		return cls(value, left, right, no_action_threshold, success_threshold)

	@classmethod
	def unavailable(cls) -> "StabilizationScore":
		return cls(math.inf, 0.0, 0.0)


@dataclass(frozen=True)
class OvershootCorrection:
	overshot_left_x: float
	overshot_left_y: float
	overshot_right_x: float
	overshot_right_y: float
	current_score: float
	no_action_threshold: float = NO_ACTION_THRESHOLD

	@property
	def average_overshoot_x(self) -> float:
		return (self.overshot_left_x + self.overshot_right_x) / 2.0

	@property
	def average_overshoot_y(self) -> float:
		return (self.overshot_left_y + self.overshot_right_y) / 2.0

	@property
	def same_direction_x(self) -> bool:
		return (self.overshot_left_x > 0 and self.overshot_right_x > 0) or (
			self.overshot_left_x < 0 and self.overshot_right_x < 0
		)

	@property
	def same_direction_y(self) -> bool:
		return (self.overshot_left_y > 0 and self.overshot_right_y > 0) or (
			self.overshot_left_y < 0 and self.overshot_right_y < 0
		)

	@property
	def needs_correction(self) -> bool:
		return self.current_score >= self.no_action_threshold or self.same_direction_x or self.same_direction_y

	@classmethod
	def calculate(
		cls,
		detected_left: LandmarkPoint,
		detected_right: LandmarkPoint,
		goal_left: LandmarkPoint,
		goal_right: LandmarkPoint,
		current_score: float,
		no_action_threshold: float = NO_ACTION_THRESHOLD,
	) -> "OvershootCorrection":
		return cls(
			overshot_left_x=detected_left.x - goal_left.x,
			overshot_left_y=detected_left.y - goal_left.y,
			overshot_right_x=detected_right.x - goal_right.x,
			overshot_right_y=detected_right.y - goal_right.y,
			current_score=current_score,
			no_action_threshold=no_action_threshold,
		)


@dataclass(frozen=True)
class StabilizationProgress:
	"""
	Observational snapshot handed to the progress sink; the engine never reads it back.
	"""
	current_pass: int
	max_passes: int
	current_stage: StabilizationStage
	current_score: float
	progress_percent: float
	message: str
	mode: StabilizationMode

	@property
	def progress_percent_int(self) -> int:
		return max(0, min(100, int(self.progress_percent * 100)))

	def to_dict(self) -> Dict[str, Any]:
		return {
			"current_pass": self.current_pass,
			"max_passes": self.max_passes,
			"stage": self.current_stage.value,
			"score": None if math.isinf(self.current_score) else self.current_score,
			"percent": self.progress_percent_int,
			"message": self.message,
			"mode": self.mode.value,
		}


@dataclass(frozen=True)
class StabilizationPass:
	pass_number: int
	stage: StabilizationStage
	score_before: float
	score_after: float
	converged: bool
	duration_ms: float


@dataclass(frozen=True)
class AlignmentDiagnostics:
	aligned_landmarks_detected: bool = True
	aligned_landmarks_error: Optional[str] = None
	fallback_landmarks_generated: bool = False
	validation_issues: Tuple[str, ...] = ()


@dataclass(frozen=True)
class StabilizationResult:
	matrix: AlignmentMatrix
	early_stop_reason: EarlyStopReason
	passes_executed: int
	final_score: StabilizationScore
	mode: StabilizationMode
	max_passes: int
	initial_score: float = math.inf
	goal_distance: float = 0.0
	detection_confidence: float = 1.0
	passes: List[StabilizationPass] = field(default_factory=list)
	landmarks: Optional[Union[FaceLandmarks, BodyLandmarks]] = None
	diagnostics: AlignmentDiagnostics = AlignmentDiagnostics()
	duration_ms: float = 0.0

	@property
	def success(self) -> bool:
		return not self.early_stop_reason.is_detection_failure and self.final_score.is_success

	def to_dict(self) -> Dict[str, Any]:
		score = self.final_score.value
		return {
			"matrix": asdict(self.matrix),
			"early_stop_reason": self.early_stop_reason.value,
			"passes_executed": self.passes_executed,
			"max_passes": self.max_passes,
			"final_score": None if math.isinf(score) else score,
			"mode": self.mode.value,
			"success": self.success,
			"diagnostics": asdict(self.diagnostics),
			"duration_ms": self.duration_ms,
		}


@dataclass(frozen=True)
class LandscapeStabilizationResult:
	homography: HomographyMatrix
	early_stop_reason: EarlyStopReason
	passes_executed: int
	mode: StabilizationMode
	max_passes: int
	ransac_threshold: float
	mean_reprojection_error: float
	inlier_count: int
	match_count: int
	passes: List[StabilizationPass] = field(default_factory=list)
	duration_ms: float = 0.0

	@property
	def inlier_ratio(self) -> float:
		return self.inlier_count / float(self.match_count) if self.match_count else 0.0

	def to_dict(self) -> Dict[str, Any]:
		return {
			"homography": self.homography.to_list(),
			"early_stop_reason": self.early_stop_reason.value,
			"passes_executed": self.passes_executed,
			"max_passes": self.max_passes,
			"mode": self.mode.value,
			"ransac_threshold": self.ransac_threshold,
			"mean_reprojection_error": self.mean_reprojection_error,
			"inlier_count": self.inlier_count,
			"match_count": self.match_count,
			"inlier_ratio": self.inlier_ratio,
			"duration_ms": self.duration_ms,
		}


STAGE_MESSAGES: Dict[StabilizationStage, str] = {
	StabilizationStage.INITIAL: "Preparing stabilization",
	StabilizationStage.DETECTION: "Detecting landmarks",
	StabilizationStage.ROTATION_REFINE: "Refining rotation",
	StabilizationStage.SCALE_REFINE: "Refining scale",
	StabilizationStage.TRANSLATION_REFINE: "Refining translation",
	StabilizationStage.MATCH_QUALITY_REFINE: "Refining match quality",
	StabilizationStage.RANSAC_THRESHOLD_REFINE: "Tightening RANSAC threshold",
	StabilizationStage.PERSPECTIVE_STABILITY_REFINE: "Stabilizing perspective",
	StabilizationStage.CLEANUP: "Finishing",
}
