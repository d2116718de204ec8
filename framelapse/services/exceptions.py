"""Exceptions raised across the stabilization engine."""


class FramelapseError(Exception):
	"""Base application error."""
	pass


class CapabilityUnavailableError(FramelapseError):
	"""A detector or matcher is not available on this platform/build."""
	pass


class DetectionError(FramelapseError):
	"""The detector ran into an error (as opposed to finding nothing)."""
	pass


class InsufficientMatchesError(FramelapseError, ValueError):
	"""Too few correspondences (or empty keypoint sets) for homography estimation."""
	pass


class HomographyEstimationError(FramelapseError):
	"""The feature matcher could not produce a usable homography."""
	pass


class ImageProcessingError(FramelapseError):
	"""Image load/save/warp failures coming from the image processor."""
	pass
