from typing import List

from framelapse.services.geometry import LandmarkPoint
from framelapse.services.landmarks import BodyLandmarks, FaceLandmarks
from framelapse.services.settings import AlignmentSettings, BodyAlignmentSettings

MIN_EYE_DISTANCE = 0.05
MIN_SHOULDER_DISTANCE = 0.05
MIN_BODY_SIZE = 0.1


def _inside(point: LandmarkPoint) -> bool:
	return 0.0 <= point.x <= 1.0 and 0.0 <= point.y <= 1.0


def face_alignment_issues(landmarks: FaceLandmarks, settings: AlignmentSettings) -> List[str]:
	"""Human-readable reasons an aligned face is unusable; empty when it passes."""
	issues = []
	if landmarks.confidence < settings.min_confidence:
		issues.append("Low detection confidence ({}%)".format(int(landmarks.confidence * 100)))
	dx = landmarks.right_eye.x - landmarks.left_eye.x
	if landmarks.left_eye.distance_to(landmarks.right_eye) <= MIN_EYE_DISTANCE or dx <= 0:
		issues.append("Invalid eye detection")
	if not (_inside(landmarks.left_eye) and _inside(landmarks.right_eye)):
		issues.append("Eyes outside the frame")
	return issues


def body_alignment_issues(landmarks: BodyLandmarks, settings: BodyAlignmentSettings) -> List[str]:
	issues = []
	if landmarks.confidence < settings.min_confidence:
		issues.append("Low detection confidence ({}%)".format(int(landmarks.confidence * 100)))
	dx = landmarks.right_shoulder.x - landmarks.left_shoulder.x
	if landmarks.shoulder_distance <= MIN_SHOULDER_DISTANCE or dx <= 0:
		issues.append("Invalid shoulder detection")
	box = landmarks.bounding_box
	if box.width <= MIN_BODY_SIZE or box.height <= MIN_BODY_SIZE or box.left < 0 or box.top < 0:
		issues.append("Body too small or partially visible")
	key_points = (landmarks.left_shoulder, landmarks.right_shoulder, landmarks.left_hip, landmarks.right_hip)
	if not all(_inside(p) for p in key_points):
		issues.append("Key body landmarks not visible")
	return issues
