from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from framelapse.services.entities import StabilizationProgress

logger = logging.getLogger(__name__)

_jobs_dir = Path("data") / "jobs"


def configure_jobs_dir(data_dir: Path) -> Path:
	global _jobs_dir
	_jobs_dir = Path(data_dir) / "jobs"
	_jobs_dir.mkdir(parents=True, exist_ok=True)
	return _jobs_dir


def jobs_dir() -> Path:
	return _jobs_dir


def write_status(job_id: str, data: Dict[str, Any]) -> None:
	_jobs_dir.mkdir(parents=True, exist_ok=True)
	status_path = _jobs_dir / f"{job_id}.json"
	tmp_path = status_path.with_suffix(".json.tmp")
	with tmp_path.open("w", encoding="utf-8") as f:
		json.dump(data, f, indent=2)
	# readers never see a half-written file
	tmp_path.replace(status_path)


def read_status(job_id: str) -> Dict[str, Any]:
	status_path = _jobs_dir / f"{job_id}.json"
	if not status_path.exists():
		return {"job_id": job_id, "status": "unknown"}
	with status_path.open("r", encoding="utf-8") as f:
		return json.load(f)


def progress_writer(job_id: str, base: Optional[Dict[str, Any]] = None) -> Callable[[StabilizationProgress], None]:
	"""Progress sink that stores the latest snapshot in the job status file."""
	fields = dict(base or {})

	def _write(progress: StabilizationProgress) -> None:
		write_status(job_id, {**fields, "job_id": job_id, "progress": progress.to_dict()})

	return _write
