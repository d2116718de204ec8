from __future__ import annotations

import uuid
from datetime import datetime
from pathlib import Path

from fastapi import APIRouter, BackgroundTasks, File, Form, HTTPException, Request, UploadFile

from framelapse.services.entities import StabilizationMode
from framelapse.services.stabilize_pipeline import run_landscape_pipeline
from framelapse.services.status_store import read_status, write_status


router = APIRouter(prefix="/stabilize", tags=["stabilize"])


def _slugify(text: str) -> str:
	return "".join(ch if (ch.isalnum() or ch in ("-", "_")) else "-" for ch in text).strip("-_").lower()


@router.post("/landscape", summary="Upload a frame and its reference and start landscape stabilization")
async def stabilize_landscape(
	request: Request,
	background_tasks: BackgroundTasks,
	source: UploadFile = File(...),
	reference: UploadFile = File(...),
	mode: str = Form(None),
):
	config = request.app.state.config
	try:
		run_mode = StabilizationMode(mode.strip().lower()) if mode else config.mode
	except ValueError:
		raise HTTPException(status_code=422, detail="mode must be 'fast' or 'slow'")

	files_meta = []
	for role, f in (("source", source), ("reference", reference)):
		data = await f.read()
		if not data:
			raise HTTPException(status_code=422, detail=f"{role} image is empty")
		files_meta.append({"role": role, "filename": f.filename or f"{role}.jpg", "data": data})

	# Human-readable job_id: "<source_stem>_<ddmmyyyy>_<short uuid>"
	stem = _slugify(Path(files_meta[0]["filename"]).stem) or "frame"
	job_id = f"{stem}_{datetime.now().strftime('%d%m%Y')}_{uuid.uuid4().hex[:6]}"
	write_status(job_id, {"job_id": job_id, "status": "queued", "step": "Queued", "mode": run_mode.value})
	background_tasks.add_task(run_landscape_pipeline, job_id, files_meta, run_mode, config)
	return {
		"job_id": job_id,
		"status": "queued",
		"mode": run_mode.value,
		"filenames": [m["filename"] for m in files_meta],
		"status_endpoint": f"/stabilize/status/{job_id}",
		"result_endpoint": f"/stabilize/result/{job_id}",
	}


@router.get("/status/{job_id}", summary="Get stabilization status")
def status(job_id: str):
	return read_status(job_id)


@router.get("/result/{job_id}", summary="Get stabilization result")
def result(job_id: str):
	data = read_status(job_id)
	if data.get("status") != "completed":
		return {"job_id": job_id, "status": data.get("status"), "message": "not completed yet", "error": data.get("error")}
	return {
		"job_id": job_id,
		"status": "completed",
		"homography": data.get("homography"),
		"early_stop_reason": data.get("early_stop_reason"),
		"passes_executed": data.get("passes_executed"),
		"mean_reprojection_error": data.get("mean_reprojection_error"),
		"inlier_ratio": data.get("inlier_ratio"),
		"confidence": data.get("confidence"),
		"output": data.get("output"),
		"transform": data.get("transform"),
	}
