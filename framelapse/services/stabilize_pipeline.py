from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from framelapse.services.capabilities import FeatureMatcher, ImageProcessor
from framelapse.services.confidence import calculate_landscape_confidence
from framelapse.services.entities import StabilizationMode
from framelapse.services.landscape import LandscapeStabilizer
from framelapse.services.metadata import extract_capture_metadata
from framelapse.services.opencv_backend import OpenCvFeatureMatcher, OpenCvImageProcessor
from framelapse.services.settings import AppConfig, LandscapeStabilizationSettings
from framelapse.services.status_store import progress_writer, write_status

logger = logging.getLogger(__name__)


async def run_landscape_pipeline(
	job_id: str,
	files_meta: List[Dict[str, Any]],
	mode: StabilizationMode,
	config: AppConfig,
	matcher: Optional[FeatureMatcher] = None,
	processor: Optional[ImageProcessor] = None,
) -> None:
	"""
	files_meta: [{"role": "source"|"reference", "filename": ..., "data": bytes}]
	"""
	matcher = matcher or OpenCvFeatureMatcher()
	processor = processor or OpenCvImageProcessor()
	try:
		# 1) Save uploads to <data>/input/<job_id>/
		write_status(job_id, {"job_id": job_id, "status": "saving", "step": "Save Images"})
		in_dir = config.data_dir / "input" / job_id
		in_dir.mkdir(parents=True, exist_ok=True)
		saved: Dict[str, Path] = {}
		for fm in files_meta:
			suffix = Path(fm["filename"]).suffix.lower() or ".jpg"
			p = in_dir / f"{fm['role']}{suffix}"
			with p.open("wb") as f:
				f.write(fm["data"])
			saved[fm["role"]] = p

		# 2) Capture metadata
		write_status(job_id, {"job_id": job_id, "status": "metadata", "step": "Extract Metadata"})
		metadata = {role: extract_capture_metadata(p) for role, p in saved.items()}

		# 3) Load both frames on a common pixel grid
		write_status(job_id, {"job_id": job_id, "status": "loading", "step": "Load Images", "metadata": metadata})
		source = await processor.load_image(str(saved["source"]))
		reference = await processor.load_image(str(saved["reference"]))
		width, height = processor.image_size(source)
		if processor.image_size(reference) != (width, height):
			reference = await processor.resize_image(reference, width, height, maintain_aspect_ratio=False)

		# 4) Multi-pass homography stabilization
		base = {"status": "stabilizing", "step": "Stabilize", "mode": mode.value, "metadata": metadata}
		write_status(job_id, {"job_id": job_id, **base})
		settings = LandscapeStabilizationSettings(mode=mode)
		stabilizer = LandscapeStabilizer(matcher, settings, progress_callback=progress_writer(job_id, base))
		result = await stabilizer.stabilize(source, reference)
		confidence = calculate_landscape_confidence(result, settings.mean_reproj_error_threshold)

		# 5) Warp the source onto the reference frame
		write_status(job_id, {"job_id": job_id, "status": "warping", "step": "Warp Image", "mode": mode.value})
		out_dir = config.data_dir / "output" / job_id
		out_dir.mkdir(parents=True, exist_ok=True)
		warped = await processor.apply_homography(source, result.homography, width, height)
		output_path = await processor.save_image(warped, str(out_dir / "stabilized.png"))

		transform = {**result.to_dict(), "confidence": confidence, "metadata": metadata}
		transform_path = out_dir / "transform.json"
		with transform_path.open("w", encoding="utf-8") as f:
			json.dump(transform, f, indent=2)

		# 6) Complete
		write_status(job_id, {
			"job_id": job_id,
			"status": "completed",
			"step": "Done",
			"mode": mode.value,
			"metadata": metadata,
			"homography": result.homography.to_list(),
			"early_stop_reason": result.early_stop_reason.value,
			"passes_executed": result.passes_executed,
			"mean_reprojection_error": result.mean_reprojection_error,
			"inlier_ratio": result.inlier_ratio,
			"confidence": confidence,
			"output": output_path,
			"transform": str(transform_path),
		})
		logger.info("Job %s completed: %s", job_id, result.early_stop_reason.value)
	except Exception as e:
		logger.exception("Job %s failed", job_id)
		write_status(job_id, {"job_id": job_id, "status": "error", "error": str(e)})
