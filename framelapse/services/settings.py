from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from framelapse.services.entities import NO_ACTION_THRESHOLD, SUCCESS_THRESHOLD, MuscleRegion, StabilizationMode

logger = logging.getLogger(__name__)

MIN_OUTPUT_SIZE = 128
MAX_OUTPUT_SIZE = 2048


@dataclass(frozen=True)
class StabilizationSettings:
	"""
	Tunables of the face/body pass loop. The thresholds are empirically tuned
	defaults, not proven optima.
	"""
	mode: StabilizationMode = StabilizationMode.FAST
	rotation_stop_threshold: float = 0.1
	scale_error_threshold: float = 1.0
	convergence_threshold: float = 0.05
	success_score_threshold: float = SUCCESS_THRESHOLD
	no_action_score_threshold: float = NO_ACTION_THRESHOLD
	rotation_damping: float = 1.0
	scale_damping: float = 1.0
	min_scale_correction: float = 0.5
	max_scale_correction: float = 2.0
	synthesize_fallback_landmarks: bool = True
	max_passes_fast: int = 1
	max_passes_slow: int = 10

	def __post_init__(self):
		if self.rotation_stop_threshold <= 0:
			raise ValueError("Rotation stop threshold must be positive")
		if self.scale_error_threshold <= 0:
			raise ValueError("Scale error threshold must be positive")
		if self.convergence_threshold <= 0:
			raise ValueError("Convergence threshold must be positive")
		if self.success_score_threshold <= 0:
			raise ValueError("Success score threshold must be positive")
		if self.no_action_score_threshold < 0:
			raise ValueError("No-action score threshold must be non-negative")
		if not (0.0 < self.rotation_damping <= 1.0) or not (0.0 < self.scale_damping <= 1.0):
			raise ValueError("Damping factors must be in (0, 1]")
		if not (0.0 < self.min_scale_correction <= 1.0 <= self.max_scale_correction):
			raise ValueError("Scale correction range must contain 1.0")
		# FAST stops after its single translation pass
		if self.max_passes_fast != 1:
			raise ValueError("FAST mode runs exactly one pass")
		if self.max_passes_slow < 1:
			raise ValueError("Pass limits must be at least 1")

	@property
	def max_passes(self) -> int:
		if self.mode is StabilizationMode.FAST:
			return self.max_passes_fast
		return self.max_passes_slow


@dataclass(frozen=True)
class AlignmentSettings:
	"""Face alignment: goal eye geometry on a square output canvas."""
	output_size: int = 512
	target_eye_distance: float = 0.3
	vertical_offset: float = 0.1
	min_confidence: float = 0.7
	stabilization: StabilizationSettings = field(default_factory=StabilizationSettings)

	def __post_init__(self):
		_check_output_size(self.output_size)
		if not (0.0 < self.target_eye_distance < 1.0):
			raise ValueError("Target eye distance must be between 0 and 1")


@dataclass(frozen=True)
class BodyAlignmentSettings:
	"""Body alignment: goal shoulder geometry on a square output canvas."""
	output_size: int = 512
	target_shoulder_distance: float = 0.4
	vertical_offset: float = -0.1
	min_confidence: float = 0.5
	stabilization: StabilizationSettings = field(default_factory=StabilizationSettings)

	def __post_init__(self):
		_check_output_size(self.output_size)
		if not (0.0 < self.target_shoulder_distance < 1.0):
			raise ValueError("Target shoulder distance must be between 0 and 1")


@dataclass(frozen=True)
class LandscapeStabilizationSettings:
	mode: StabilizationMode = StabilizationMode.FAST
	initial_ransac_threshold: float = 5.0
	min_ransac_threshold: float = 1.5
	ransac_threshold_reduction_factor: float = 0.6
	mean_reproj_error_threshold: float = 1.0
	ratio_test_threshold: float = 0.75
	max_keypoints: int = 500
	min_determinant: float = 0.5
	max_determinant: float = 2.0
	min_scale_factor: float = 0.5
	max_scale_factor: float = 2.0
	max_rotation_degrees: float = 45.0
	inlier_ratio_improvement_threshold: float = 0.01
	determinant_change_threshold: float = 0.01
	perspective_blend_factor: float = 0.5
	max_passes_fast: int = 1
	max_passes_slow: int = 10

	def __post_init__(self):
		if self.min_ransac_threshold <= 0 or self.initial_ransac_threshold < self.min_ransac_threshold:
			raise ValueError("RANSAC thresholds must satisfy 0 < min <= initial")
		if not (0.0 < self.ransac_threshold_reduction_factor < 1.0):
			raise ValueError("RANSAC reduction factor must be between 0 and 1")
		if not (0.5 <= self.ratio_test_threshold <= 0.95):
			raise ValueError("Ratio test threshold must be between 0.5 and 0.95")
		if self.max_keypoints < 4:
			raise ValueError("At least 4 keypoints are required")
		if self.inlier_ratio_improvement_threshold <= 0 or self.determinant_change_threshold <= 0:
			raise ValueError("Convergence thresholds must be positive")
		if not (0.0 < self.perspective_blend_factor < 1.0):
			raise ValueError("Perspective blend factor must be between 0 and 1")

	@property
	def max_passes(self) -> int:
		if self.mode is StabilizationMode.FAST:
			return self.max_passes_fast
		return self.max_passes_slow


@dataclass(frozen=True)
class MuscleAlignmentSettings:
	region: MuscleRegion = MuscleRegion.FULL_BODY
	region_padding: float = 0.1
	output_size: int = 512
	body: BodyAlignmentSettings = field(default_factory=BodyAlignmentSettings)

	def __post_init__(self):
		if not (0.0 <= self.region_padding <= 0.5):
			raise ValueError("Region padding must be between 0 and 0.5")


def _check_output_size(size: int) -> None:
	if not (MIN_OUTPUT_SIZE <= size <= MAX_OUTPUT_SIZE):
		raise ValueError("Output size must be between {} and {}".format(MIN_OUTPUT_SIZE, MAX_OUTPUT_SIZE))


@dataclass(frozen=True)
class AppConfig:
	"""Process-level configuration, read once from the environment."""
	data_dir: Path = Path("data")
	output_size: int = 512
	mode: StabilizationMode = StabilizationMode.FAST
	debug_logging: bool = False

	@classmethod
	def from_env(cls, environ: Optional[dict] = None) -> "AppConfig":
		env = os.environ if environ is None else environ
		data_dir = Path(env.get("FRAMELAPSE_DATA_DIR", "data"))

		output_size = 512
		raw_size = env.get("FRAMELAPSE_OUTPUT_SIZE")
		if raw_size:
			try:
				output_size = int(raw_size)
				_check_output_size(output_size)
			except ValueError:
				logger.warning("Invalid FRAMELAPSE_OUTPUT_SIZE=%r, using 512", raw_size)
				output_size = 512

		mode = StabilizationMode.FAST
		raw_mode = env.get("FRAMELAPSE_MODE")
		if raw_mode:
			try:
				mode = StabilizationMode(raw_mode.strip().lower())
			except ValueError:
				logger.warning("Invalid FRAMELAPSE_MODE=%r, using fast", raw_mode)

		debug = env.get("FRAMELAPSE_DEBUG_LOGGING", "").strip().lower() in ("1", "true", "yes", "on")
		return cls(data_dir=data_dir, output_size=output_size, mode=mode, debug_logging=debug)
