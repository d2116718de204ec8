from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from framelapse.routers.stabilize import router as stabilize_router
from framelapse.services.logging_config import configure_logging
from framelapse.services.settings import AppConfig
from framelapse.services.status_store import configure_jobs_dir


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
	config = config or AppConfig.from_env()
	configure_logging(config.debug_logging)
	configure_jobs_dir(config.data_dir)

	app = FastAPI(title="Framelapse - Stabilization API", version="0.1.0")
	app.state.config = config

	# CORS (adjust origins in production)
	app.add_middleware(
		CORSMiddleware,
		allow_origins=["*"],
		allow_credentials=False,
		allow_methods=["*"],
		allow_headers=["*"],
	)

	# Routers
	app.include_router(stabilize_router)

	return app


app = create_app()


if __name__ == "__main__":
	# Local dev server: uvicorn framelapse.main:app --reload
	import uvicorn

	uvicorn.run("framelapse.main:app", host="0.0.0.0", port=8000, reload=True)
