from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, Union

import cv2
import numpy as np

from common.geometry import normalize_heading
from common.logging_setup import get_logger
from common.types import ResolutionHint, VisionFix


log = get_logger("sensors.apriltag")


_FAMILIES = {
    "16h5": cv2.aruco.DICT_APRILTAG_16h5,
    "25h9": cv2.aruco.DICT_APRILTAG_25h9,
    "36h10": cv2.aruco.DICT_APRILTAG_36h10,
    "36h11": cv2.aruco.DICT_APRILTAG_36h11,
}


@dataclass(frozen=True, slots=True)
class FieldTag:
    """
    A tag fixed on the field.

    Attributes:
        tag_id: AprilTag id.
        x, y: tag center on the field (cm).
        facing_deg: field direction the printed face points to (its outward normal).
    """
    tag_id: int
    x: float
    y: float
    facing_deg: float


def load_field_tags(P: Dict) -> Dict[int, FieldTag]:
    """`vision.field_tags: {id: [x_cm, y_cm, facing_deg]}` -> {id: FieldTag}."""
    raw = P.get("vision", {}).get("field_tags") or {}
    out: Dict[int, FieldTag] = {}
    for k, v in raw.items():
        if len(v) != 3:
            raise ValueError(f"field tag {k} must be [x_cm, y_cm, facing_deg]")
        out[int(k)] = FieldTag(int(k), float(v[0]), float(v[1]), float(v[2]))
    return out


def tag_object_points(tag_size: float) -> np.ndarray:
    """Tag corners in the tag frame, in cv2.aruco order (TL, TR, BR, BL; y up, z out of the face)."""
    h = 0.5 * float(tag_size)
    return np.array(
        [[-h, h, 0.0], [h, h, 0.0], [h, -h, 0.0], [-h, -h, 0.0]],
        dtype=np.float64,
    )


def robot_pose_from_tag(tvec: np.ndarray, R: np.ndarray, tag: FieldTag) -> VisionFix:
    """
    Planar robot pose on the field from one tag's camera-frame pose.

    Camera frame (OpenCV): x right, y down, z forward. The camera sits at the
    robot origin looking along robot-forward; mounting offsets are not modelled.

    Args:
        tvec: (3,) tag center in the camera frame (same unit as the field, cm).
        R: (3,3) rotation tag -> camera.
        tag: the tag's field placement.
    """
    t = np.asarray(tvec, dtype=np.float64).reshape(3)
    R = np.asarray(R, dtype=np.float64).reshape(3, 3)

    # Tag center and outward normal in robot coords (forward, left)
    fwd, left = float(t[2]), float(-t[0])
    n = R[:, 2]
    alpha = math.degrees(math.atan2(-float(n[0]), float(n[2])))

    heading = normalize_heading(tag.facing_deg - alpha)
    th = math.radians(heading)
    x = tag.x - (fwd * math.cos(th) - left * math.sin(th))
    y = tag.y - (fwd * math.sin(th) + left * math.cos(th))
    return VisionFix(x=x, y=y, heading=heading, tag_id=tag.tag_id)


@dataclass
class AprilTagLocalizer:
    """
    Camera + AprilTag detector producing robot field poses from known tags.

    Args:
        source: webcam index or video path for cv2.VideoCapture
        field_tags: {id: FieldTag}; detections of unknown ids are ignored
        K: (3,3) camera matrix; dist: distortion coefficients
        tag_size: printed tag edge length (cm)
        family: AprilTag family name ("36h11", ...)
        size: optional (width, height) capture resolution
        decimation: quad decimation per ResolutionHint
    """
    source: Union[int, str]
    field_tags: Dict[int, FieldTag]
    K: np.ndarray
    dist: np.ndarray
    tag_size: float = 10.16
    family: str = "36h11"
    size: Optional[Tuple[int, int]] = None
    decimation: Optional[Dict[ResolutionHint, float]] = None

    def __post_init__(self) -> None:
        if self.family not in _FAMILIES:
            raise ValueError(f"Unsupported tag family: {self.family}")
        self.K = np.asarray(self.K, dtype=np.float64).reshape(3, 3)
        self.dist = np.asarray(self.dist, dtype=np.float64).reshape(-1)
        if self.decimation is None:
            self.decimation = {ResolutionHint.HIGH_ACCURACY: 1.0, ResolutionHint.BALANCED: 3.0}
        self._obj_pts = tag_object_points(self.tag_size)

        self._cap = cv2.VideoCapture(self.source)
        if not self._cap.isOpened():
            raise RuntimeError(f"Cannot open camera: {self.source}")
        if self.size:
            w, h = self.size
            self._cap.set(cv2.CAP_PROP_FRAME_WIDTH, w)
            self._cap.set(cv2.CAP_PROP_FRAME_HEIGHT, h)

        dictionary = cv2.aruco.getPredefinedDictionary(_FAMILIES[self.family])
        self._params = cv2.aruco.DetectorParameters()
        self._detector = cv2.aruco.ArucoDetector(dictionary, self._params)
        self._hint: Optional[ResolutionHint] = None
        self._closed = False
        self.set_resolution_hint(ResolutionHint.BALANCED)

    @property
    def hint(self) -> Optional[ResolutionHint]:
        return self._hint

    @property
    def quad_decimate(self) -> float:
        """aprilTagQuadDecimate currently applied to the detector."""
        return float(self._detector.getDetectorParameters().aprilTagQuadDecimate)

    @property
    def closed(self) -> bool:
        return self._closed

    def set_resolution_hint(self, level: ResolutionHint) -> None:
        level = ResolutionHint(level)
        if level == self._hint:
            return
        self._params.aprilTagQuadDecimate = float(self.decimation[level])
        self._detector.setDetectorParameters(self._params)
        self._hint = level
        log.info("AprilTag decimation set", extra={"extra": {"hint": level.value,
                                                               "decimation": self._params.aprilTagQuadDecimate}})

    def get_fixes(self) -> Sequence[VisionFix]:
        if self._closed:
            raise RuntimeError("AprilTag localizer already closed")
        ok, img = self._cap.read()
        if not ok:
            return []
        gray = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY) if img.ndim == 3 else img
        corners, ids, _ = self._detector.detectMarkers(gray)
        if ids is None:
            return []

        fixes: List[VisionFix] = []
        for c, tag_id in zip(corners, ids.reshape(-1)):
            tag = self.field_tags.get(int(tag_id))
            if tag is None:
                continue
            ok, rvec, tvec = cv2.solvePnP(
                self._obj_pts,
                np.asarray(c, dtype=np.float64).reshape(4, 2),
                self.K,
                self.dist,
                flags=cv2.SOLVEPNP_IPPE_SQUARE,
            )
            if not ok:
                continue
            R, _ = cv2.Rodrigues(rvec)
            fixes.append(robot_pose_from_tag(tvec, R, tag))
        return fixes

    def close(self) -> None:
        if not self._closed:
            self._cap.release()
            self._closed = True


def localizer_from_config(P: Dict) -> AprilTagLocalizer:
    V = P["vision"]
    I = V["intrinsics"]
    K = np.array([[I["fx"], 0.0, I["cx"]], [0.0, I["fy"], I["cy"]], [0.0, 0.0, 1.0]], dtype=np.float64)
    size = None
    if V.get("size"):
        w, h = str(V["size"]).lower().split("x")
        size = (int(w), int(h))
    dec = V.get("decimation", {})
    return AprilTagLocalizer(
        source=V.get("camera", 0),
        field_tags=load_field_tags(P),
        K=K,
        dist=np.asarray(I.get("dist", [0, 0, 0, 0, 0]), dtype=np.float64),
        tag_size=float(V.get("tag_size_cm", 10.16)),
        family=str(V.get("tag_family", "36h11")),
        size=size,
        decimation={
            ResolutionHint.HIGH_ACCURACY: float(dec.get("high_accuracy", 1.0)),
            ResolutionHint.BALANCED: float(dec.get("balanced", 3.0)),
        },
    )
