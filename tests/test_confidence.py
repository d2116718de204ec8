import math

import pytest

from framelapse.services.confidence import (
	DETECTION_FAILED_CAP,
	REASON_PENALTIES,
	calculate_confidence,
	calculate_landscape_confidence,
	pass_bonus,
	reprojection_factor,
	score_factor,
)
from framelapse.services.entities import (
	EarlyStopReason,
	LandscapeStabilizationResult,
	StabilizationMode,
	StabilizationResult,
	StabilizationScore,
)
from framelapse.services.geometry import AlignmentMatrix, HomographyMatrix


def face_result(reason, score=0.3, confidence=0.9, passes=1, max_passes=10):
	return StabilizationResult(
		matrix=AlignmentMatrix.identity(),
		early_stop_reason=reason,
		passes_executed=passes,
		final_score=StabilizationScore(score, 0.0, 0.0),
		mode=StabilizationMode.SLOW,
		max_passes=max_passes,
		detection_confidence=confidence,
	)


def landscape_result(reason, inliers=80, matches=100, error=0.5, passes=2, max_passes=10):
	return LandscapeStabilizationResult(
		homography=HomographyMatrix.identity(),
		early_stop_reason=reason,
		passes_executed=passes,
		mode=StabilizationMode.SLOW,
		max_passes=max_passes,
		ransac_threshold=3.0,
		mean_reprojection_error=error,
		inlier_count=inliers,
		match_count=matches,
	)


def test_every_stop_reason_has_a_penalty():
	assert set(REASON_PENALTIES) == set(EarlyStopReason)


@pytest.mark.parametrize("score,expected", [
	(0.2, 1.0),
	(10.0, 0.845),
	(20.0, 0.7),
	(70.0, 0.5),
	(500.0, 0.3),
	(math.inf, 0.3),
	(math.nan, 0.3),
])
def test_score_factor(score, expected):
	assert score_factor(score) == pytest.approx(expected)


def test_pass_bonus():
	assert pass_bonus(0, 10) == pytest.approx(0.05)
	assert pass_bonus(1, 10) == pytest.approx(0.045)
	assert pass_bonus(10, 10) == 0.0
	assert pass_bonus(12, 10) == 0.0
	assert pass_bonus(1, 0) == 0.0


class TestFaceBodyConfidence:
	def test_clean_run(self):
		assert calculate_confidence(face_result(EarlyStopReason.SCORE_BELOW_THRESHOLD)) == pytest.approx(0.945)

	def test_hitting_the_pass_limit_scores_below_convergence(self):
		converged = calculate_confidence(face_result(EarlyStopReason.TRANSLATION_CONVERGED, score=5.0, passes=4))
		exhausted = calculate_confidence(face_result(EarlyStopReason.MAX_PASSES_REACHED, score=5.0, passes=4))
		assert exhausted < converged

	@pytest.mark.parametrize("reason", [EarlyStopReason.FACE_DETECTION_FAILED, EarlyStopReason.BODY_DETECTION_FAILED])
	def test_detection_failure_is_capped(self, reason):
		assert calculate_confidence(face_result(reason, score=0.1, confidence=1.0)) == DETECTION_FAILED_CAP

	def test_clamped_to_unit_interval(self):
		high = calculate_confidence(face_result(EarlyStopReason.SCORE_BELOW_THRESHOLD, score=0.1, confidence=1.0, passes=0))
		low = calculate_confidence(face_result(EarlyStopReason.MAX_PASSES_REACHED, score=math.inf, confidence=0.1, passes=10))
		assert high == 1.0
		assert low == 0.0


class TestLandscapeConfidence:
	def test_reprojection_factor(self):
		assert reprojection_factor(0.0, 1.0) == 1.0
		assert reprojection_factor(1.0, 1.0) == pytest.approx(0.5)
		assert reprojection_factor(3.0, 1.0) == 0.0
		assert reprojection_factor(math.inf, 1.0) == 0.0

	def test_blend(self):
		result = landscape_result(EarlyStopReason.REPROJECTION_ERROR_CONVERGED)
		assert calculate_landscape_confidence(result) == pytest.approx(0.78)

	def test_invalid_homography_penalized(self):
		good = calculate_landscape_confidence(landscape_result(EarlyStopReason.REPROJECTION_ERROR_CONVERGED))
		bad = calculate_landscape_confidence(landscape_result(EarlyStopReason.HOMOGRAPHY_INVALID))
		assert bad == pytest.approx(good - 0.2)

	def test_no_matches(self):
		result = landscape_result(EarlyStopReason.MAX_PASSES_REACHED, inliers=0, matches=0, passes=10)
		assert calculate_landscape_confidence(result) == 0.0
