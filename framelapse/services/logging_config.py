import logging
import sys

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(debug: bool = False) -> None:
	"""Install one stream handler on the package logger (idempotent)."""
	root = logging.getLogger("framelapse")
	root.setLevel(logging.DEBUG if debug else logging.INFO)
	if not any(getattr(h, "_framelapse", False) for h in root.handlers):
		handler = logging.StreamHandler(sys.stdout)
		handler.setFormatter(logging.Formatter(LOG_FORMAT))
		handler._framelapse = True  # type: ignore[attr-defined]
		root.addHandler(handler)
	# OpenCV/PIL chatter
	logging.getLogger("PIL").setLevel(logging.WARNING)
