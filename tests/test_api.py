"""HTTP surface and background pipeline, with the feature matcher faked."""
import io
import json
from pathlib import Path

import numpy as np
import piexif
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from conftest import FakeFeatureMatcher
from framelapse.main import create_app
from framelapse.services import stabilize_pipeline, status_store
from framelapse.services.entities import StabilizationMode, StabilizationProgress, StabilizationStage
from framelapse.services.metadata import extract_capture_metadata
from framelapse.services.settings import AppConfig


def png_bytes(color=(30, 120, 200), size=(64, 48)) -> bytes:
	arr = np.zeros((size[1], size[0], 3), dtype=np.uint8)
	arr[...] = color
	arr[10:20, 10:30] = (255, 255, 255)
	buf = io.BytesIO()
	Image.fromarray(arr).save(buf, format="PNG")
	return buf.getvalue()


@pytest.fixture
def client(tmp_path, monkeypatch):
	monkeypatch.setattr(stabilize_pipeline, "OpenCvFeatureMatcher", lambda: FakeFeatureMatcher(errors=[0.2]))
	app = create_app(AppConfig(data_dir=tmp_path))
	with TestClient(app) as c:
		yield c


def upload(client, mode=None, source=None):
	data = {"mode": mode} if mode is not None else {}
	files = {
		"source": ("Beach Sunrise.png", source if source is not None else png_bytes(), "image/png"),
		"reference": ("reference.png", png_bytes((40, 110, 190)), "image/png"),
	}
	return client.post("/stabilize/landscape", files=files, data=data)


class TestStabilizeEndpoints:
	def test_landscape_job_completes(self, client, tmp_path):
		response = upload(client, mode="slow")
		assert response.status_code == 200
		body = response.json()
		assert body["mode"] == "slow"
		assert body["job_id"].startswith("beach-sunrise_")

		status = client.get(body["status_endpoint"]).json()
		assert status["status"] == "completed"

		result = client.get(body["result_endpoint"]).json()
		assert result["early_stop_reason"] == "perspective_converged"
		assert result["passes_executed"] == 2
		assert result["homography"] == [1.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 1.0]
		assert 0.0 < result["confidence"] <= 1.0
		assert Path(result["output"]).exists()
		transform = json.loads(Path(result["transform"]).read_text())
		assert transform["metadata"]["source"]["width"] == 64

	def test_mode_defaults_to_config(self, client):
		assert upload(client).json()["mode"] == "fast"

	def test_bad_mode_rejected(self, client):
		assert upload(client, mode="warp-speed").status_code == 422

	def test_empty_upload_rejected(self, client):
		assert upload(client, source=b"").status_code == 422

	def test_unknown_job(self, client):
		assert client.get("/stabilize/status/nope").json() == {"job_id": "nope", "status": "unknown"}
		assert client.get("/stabilize/result/nope").json()["status"] == "unknown"


class TestPipeline:
	@pytest.mark.asyncio
	async def test_failure_is_recorded(self, tmp_path):
		status_store.configure_jobs_dir(tmp_path)
		files = [
			{"role": "source", "filename": "a.png", "data": b"not an image"},
			{"role": "reference", "filename": "b.png", "data": png_bytes()},
		]
		await stabilize_pipeline.run_landscape_pipeline(
			"broken", files, StabilizationMode.FAST, AppConfig(data_dir=tmp_path), matcher=FakeFeatureMatcher()
		)
		status = status_store.read_status("broken")
		assert status["status"] == "error"
		assert status["error"]

	@pytest.mark.asyncio
	async def test_too_few_matches_is_an_error(self, tmp_path):
		status_store.configure_jobs_dir(tmp_path)
		files = [
			{"role": "source", "filename": "a.png", "data": png_bytes()},
			{"role": "reference", "filename": "b.png", "data": png_bytes()},
		]
		await stabilize_pipeline.run_landscape_pipeline(
			"sparse", files, StabilizationMode.SLOW, AppConfig(data_dir=tmp_path),
			matcher=FakeFeatureMatcher(match_count=3),
		)
		assert status_store.read_status("sparse")["status"] == "error"


class TestStatusStore:
	def test_progress_writer_keeps_base_fields(self, tmp_path):
		status_store.configure_jobs_dir(tmp_path)
		write = status_store.progress_writer("job1", {"status": "stabilizing", "mode": "slow"})
		write(StabilizationProgress(2, 10, StabilizationStage.ROTATION_REFINE, 12.5, 0.2, "Refining rotation", StabilizationMode.SLOW))
		data = status_store.read_status("job1")
		assert data["status"] == "stabilizing"
		assert data["progress"]["current_pass"] == 2
		assert data["progress"]["percent"] == 20
		assert not list(status_store.jobs_dir().glob("*.tmp"))


class TestCaptureMetadata:
	def test_exif_fields(self, tmp_path):
		path = tmp_path / "frame.jpg"
		exif = piexif.dump({
			"0th": {piexif.ImageIFD.Make: b"Canon", piexif.ImageIFD.Model: b"EOS R6", piexif.ImageIFD.Orientation: 6},
			"Exif": {piexif.ExifIFD.DateTimeOriginal: b"2024:05:01 06:30:00"},
		})
		Image.new("RGB", (40, 20)).save(path, exif=exif)
		info = extract_capture_metadata(path)
		assert (info["width"], info["height"], info["orientation"]) == (20, 40, 6)
		assert info["camera_make"] == "Canon"
		assert info["camera_model"] == "EOS R6"
		assert info["datetime_original"] == "2024:05:01 06:30:00"

	def test_png_without_exif(self, tmp_path):
		path = tmp_path / "frame.png"
		path.write_bytes(png_bytes())
		info = extract_capture_metadata(path)
		assert (info["width"], info["height"]) == (64, 48)
		assert "camera_make" not in info
