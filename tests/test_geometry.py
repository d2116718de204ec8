"""Unit tests for the affine/homography primitives."""
import math

import numpy as np
import pytest

from framelapse.services.geometry import (
	AlignmentMatrix,
	BoundingBox,
	HomographyMatrix,
	LandmarkPoint,
	compose,
	similarity_from_pairs,
)


def _close(a: AlignmentMatrix, b: AlignmentMatrix) -> bool:
	return np.allclose(a.to_array(), b.to_array(), atol=1e-5)


class TestAlignmentMatrix:
	def test_identity_leaves_points_alone(self):
		p = LandmarkPoint(12.5, -3.0)
		assert AlignmentMatrix.identity().apply(p) == p

	def test_compose_applies_first_then_second(self):
		scale = AlignmentMatrix(scale_x=2.0, scale_y=2.0)
		shift = AlignmentMatrix.translation(10.0, 5.0)
		p = LandmarkPoint(1.0, 1.0)

		scaled_then_shifted = compose(scale, shift).apply(p)
		shifted_then_scaled = compose(shift, scale).apply(p)

		assert (scaled_then_shifted.x, scaled_then_shifted.y) == pytest.approx((12.0, 7.0))
		assert (shifted_then_scaled.x, shifted_then_scaled.y) == pytest.approx((22.0, 12.0))

	def test_compose_is_associative(self):
		a = AlignmentMatrix.rotation_scale_about(LandmarkPoint(3, 4), 0.3, 1.2)
		b = AlignmentMatrix.translation(-7.0, 2.5)
		c = AlignmentMatrix(scale_x=0.8, skew_x=0.1, translate_x=4.0, skew_y=-0.2, scale_y=1.1, translate_y=1.0)
		assert _close(a.then(b).then(c), a.then(b.then(c)))

	def test_rotation_about_center_keeps_center_fixed(self):
		center = LandmarkPoint(256.0, 300.0)
		m = AlignmentMatrix.rotation_scale_about(center, math.radians(30), 1.5)
		moved = m.apply(center)
		assert (moved.x, moved.y) == pytest.approx((256.0, 300.0))
		assert m.rotation_degrees == pytest.approx(30.0)
		assert m.uniform_scale == pytest.approx(1.5)

	def test_with_translation_delta_touches_translate_terms_only(self):
		m = AlignmentMatrix(1.1, 0.2, 3.0, -0.2, 1.1, 4.0)
		shifted = m.with_translation_delta(2.0, -1.0)
		assert (shifted.scale_x, shifted.skew_x, shifted.skew_y, shifted.scale_y) == (1.1, 0.2, -0.2, 1.1)
		assert (shifted.translate_x, shifted.translate_y) == pytest.approx((5.0, 3.0))

	def test_array_round_trip_uses_opencv_layout(self):
		m = AlignmentMatrix(1.0, 0.5, 10.0, -0.5, 1.0, 20.0)
		arr = m.to_array()
		assert arr.shape == (2, 3)
		assert arr.dtype == np.float32
		assert _close(AlignmentMatrix.from_array(arr), m)

	def test_from_array_rejects_wrong_shape(self):
		with pytest.raises(ValueError):
			AlignmentMatrix.from_array(np.zeros((4, 4)))


class TestSimilarityFromPairs:
	def test_maps_source_pair_onto_destination_pair(self):
		src_l, src_r = LandmarkPoint(100, 200), LandmarkPoint(180, 230)
		dst_l, dst_r = LandmarkPoint(179.2, 204.8), LandmarkPoint(332.8, 204.8)
		m = similarity_from_pairs(src_l, src_r, dst_l, dst_r)
		for src, dst in ((src_l, dst_l), (src_r, dst_r)):
			out = m.apply(src)
			assert (out.x, out.y) == pytest.approx((dst.x, dst.y), abs=1e-6)

	def test_degenerate_source_pair_keeps_unit_scale(self):
		p = LandmarkPoint(50, 50)
		m = similarity_from_pairs(p, p, LandmarkPoint(0, 0), LandmarkPoint(10, 0))
		assert m.uniform_scale == pytest.approx(1.0)


class TestHomographyMatrix:
	def test_identity_is_valid_and_near_identity(self):
		h = HomographyMatrix.identity()
		assert h.is_valid()
		assert h.is_near_identity()
		assert h.transform_point(3.0, 4.0) == pytest.approx((3.0, 4.0))

	def test_projective_division(self):
		h = HomographyMatrix(2, 0, 0, 0, 2, 0, 0, 0, 2)
		assert h.transform_point(5.0, 7.0) == pytest.approx((5.0, 7.0))

	def test_point_at_infinity(self):
		h = HomographyMatrix(1, 0, 0, 0, 1, 0, 1, 0, 0)
		x, y = h.transform_point(0.0, 3.0)
		assert math.isinf(x) and math.isinf(y)

	def test_singular_matrix_is_invalid(self):
		assert not HomographyMatrix(1, 2, 3, 2, 4, 6, 0, 0, 1).is_valid()

	def test_from_array_requires_nine_values(self):
		with pytest.raises(ValueError):
			HomographyMatrix.from_array(np.zeros(8))

	def test_approximate_rotation_and_scale(self):
		a = math.radians(10)
		h = HomographyMatrix(1.2 * math.cos(a), -1.2 * math.sin(a), 0, 1.2 * math.sin(a), 1.2 * math.cos(a), 0, 0, 0, 1)
		assert h.approximate_rotation_degrees() == pytest.approx(10.0)
		assert h.approximate_scale() == pytest.approx(1.2)


def test_bounding_box_to_pixel_bounds():
	box = BoundingBox(0.25, 0.1, 0.75, 0.6).to_pixel_bounds(400, 200)
	assert (box.left, box.top, box.right, box.bottom) == pytest.approx((100.0, 20.0, 300.0, 120.0))
	assert box.to_int_box() == (100, 20, 300, 120)
