"""OpenCV/Pillow backends on small synthetic frames."""
import cv2
import numpy as np
import pytest
from PIL import Image

from framelapse.services.exceptions import ImageProcessingError
from framelapse.services.geometry import AlignmentMatrix, BoundingBox, HomographyMatrix
from framelapse.services.image_utils import ORIENTATION_TAG, load_rgb, to_gray, to_uint8
from framelapse.services.opencv_backend import OpenCvFeatureMatcher, OpenCvImageProcessor


def textured_frame(width: int = 640, height: int = 480) -> np.ndarray:
	rng = np.random.default_rng(0)
	img = np.full((height, width, 3), 96, dtype=np.uint8)
	for _ in range(80):
		x, y = int(rng.integers(0, width - 40)), int(rng.integers(0, height - 40))
		w, h = int(rng.integers(8, 60)), int(rng.integers(8, 60))
		color = tuple(int(c) for c in rng.integers(0, 256, size=3))
		cv2.rectangle(img, (x, y), (x + w, y + h), color, -1)
	return img


async def estimate(matcher, source, reference, threshold=3.0):
	src = await matcher.detect_features(source, 500)
	ref = await matcher.detect_features(reference, 500)
	matches = await matcher.match_features(src, ref, 0.75)
	h, inliers = await matcher.compute_homography(
		src.keypoints, ref.keypoints, matches, threshold, src.image_width, src.image_height
	)
	return src, ref, matches, h, inliers


class TestFeatureMatcher:
	def test_unknown_detector_rejected(self):
		with pytest.raises(ValueError):
			OpenCvFeatureMatcher("sift")

	@pytest.mark.asyncio
	async def test_keypoints_are_normalized(self):
		features = await OpenCvFeatureMatcher().detect_features(textured_frame(), 200)
		assert 0 < len(features.keypoints) <= 200
		assert (features.image_width, features.image_height) == (640, 480)
		assert all(0.0 <= kp.position.x <= 1.0 and 0.0 <= kp.position.y <= 1.0 for kp in features.keypoints)

	@pytest.mark.asyncio
	async def test_identical_frames_give_identity(self):
		matcher = OpenCvFeatureMatcher()
		frame = textured_frame()
		src, ref, matches, h, inliers = await estimate(matcher, frame, frame)
		assert len(matches) >= 4
		assert inliers > 0
		assert np.allclose(h.to_array(), np.eye(3), atol=0.01)

		error = await matcher.calculate_reprojection_error(
			src.keypoints, ref.keypoints, matches, h, src.image_width, src.image_height
		)
		assert error.mean_error < 0.5
		assert error.inlier_count <= error.total_matches == len(matches)

	@pytest.mark.asyncio
	async def test_shifted_frame_gives_translation(self):
		frame = textured_frame()
		shifted = cv2.warpAffine(frame, np.float32([[1, 0, 15], [0, 1, 10]]), (640, 480))
		_, _, _, h, _ = await estimate(OpenCvFeatureMatcher(), frame, shifted)
		assert h.h13 == pytest.approx(15.0, abs=1.0)
		assert h.h23 == pytest.approx(10.0, abs=1.0)
		assert h.approximate_scale() == pytest.approx(1.0, abs=0.02)

	@pytest.mark.asyncio
	async def test_blank_frame_has_no_matches(self):
		matcher = OpenCvFeatureMatcher()
		blank = np.zeros((240, 320, 3), dtype=np.uint8)
		src = await matcher.detect_features(blank, 100)
		assert src.keypoints == []
		assert await matcher.match_features(src, src, 0.75) == []


class TestImageProcessor:
	@pytest.mark.asyncio
	async def test_resize_keeps_aspect_when_asked(self):
		processor = OpenCvImageProcessor()
		frame = textured_frame()
		assert (await processor.resize_image(frame, 320, 320)).shape == (240, 320, 3)
		assert (await processor.resize_image(frame, 320, 320, maintain_aspect_ratio=False)).shape == (320, 320, 3)

	@pytest.mark.asyncio
	async def test_crop(self):
		processor = OpenCvImageProcessor()
		crop = await processor.crop_image(textured_frame(), BoundingBox(10, 20, 110, 70))
		assert crop.shape == (50, 100, 3)
		with pytest.raises(ImageProcessingError):
			await processor.crop_image(textured_frame(), BoundingBox(700, 0, 800, 10))

	@pytest.mark.asyncio
	async def test_affine_warp_moves_pixels(self):
		img = np.zeros((20, 20, 3), dtype=np.uint8)
		img[5, 5] = 255
		out = await OpenCvImageProcessor().apply_affine_transform(img, AlignmentMatrix.translation(3, 2), 20, 20)
		assert out[7, 8].tolist() == [255, 255, 255]
		assert out[5, 5].tolist() == [0, 0, 0]

	@pytest.mark.asyncio
	async def test_singular_homography_rejected(self):
		with pytest.raises(ImageProcessingError):
			await OpenCvImageProcessor().apply_homography(
				textured_frame(), HomographyMatrix(1, 2, 3, 2, 4, 6, 0, 0, 1), 640, 480
			)

	@pytest.mark.asyncio
	async def test_save_and_load(self, tmp_path):
		processor = OpenCvImageProcessor()
		frame = textured_frame(64, 48)
		path = await processor.save_image(frame, str(tmp_path / "nested" / "frame.png"))
		loaded = await processor.load_image(path)
		assert processor.image_size(loaded) == (64, 48)
		assert np.array_equal(loaded, frame)

	@pytest.mark.asyncio
	async def test_missing_file(self, tmp_path):
		with pytest.raises(ImageProcessingError):
			await OpenCvImageProcessor().load_image(str(tmp_path / "missing.jpg"))


class TestImageUtils:
	def test_exif_rotation_applied_on_load(self, tmp_path):
		path = tmp_path / "portrait.jpg"
		exif = Image.Exif()
		exif[ORIENTATION_TAG] = 6
		Image.new("RGB", (40, 20), (200, 10, 10)).save(path, exif=exif)
		assert load_rgb(path).shape == (40, 20, 3)

	def test_to_gray(self):
		rgb = np.zeros((2, 2, 3), dtype=np.uint8)
		rgb[..., 1] = 255
		gray = to_gray(rgb)
		assert gray.shape == (2, 2)
		assert int(gray[0, 0]) == 182
		with pytest.raises(ValueError):
			to_gray(np.zeros((2, 2, 2)))

	def test_to_uint8_scales_unit_floats(self):
		assert to_uint8(np.array([0.0, 0.5, 1.0])).tolist() == [0, 127, 255]
