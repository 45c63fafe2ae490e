import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

import cv2
import numpy as np
import orjson

from .config import settings

logger = logging.getLogger(__name__)


@dataclass
class FaceRegion:
    x: int
    y: int
    width: int
    height: int
    confidence: float
    descriptor: Optional[np.ndarray] = None


@dataclass
class Candidate:
    student_id: int
    name: str
    descriptors: List[np.ndarray]


@dataclass
class Match:
    student_id: int
    name: str
    distance: float
    confidence: float


class FaceLocator(Protocol):
    def locate(self, frame: np.ndarray) -> List[FaceRegion]:
        ...


class Recognizer(Protocol):
    def recognize(self, face: FaceRegion, candidates: Sequence[Candidate]) -> Optional[Match]:
        ...


@lru_cache(maxsize=1)
def get_face_app():
    from insightface.app import FaceAnalysis

    app = FaceAnalysis(name="buffalo_l")
    app.prepare(ctx_id=0, det_size=(640, 640))
    return app


class InsightFaceLocator:
    """Detects faces and computes their normed embeddings with InsightFace."""

    def __init__(self, min_score: Optional[float] = None):
        self.min_score = settings.min_detection_score if min_score is None else min_score

    def locate(self, frame: np.ndarray) -> List[FaceRegion]:
        faces = get_face_app().get(frame)
        regions = []
        for face in faces:
            score = float(face.det_score)
            if score < self.min_score:
                continue
            x1, y1, x2, y2 = (int(v) for v in face.bbox)
            regions.append(
                FaceRegion(
                    x=x1,
                    y=y1,
                    width=x2 - x1,
                    height=y2 - y1,
                    confidence=min(1.0, max(0.0, score)),
                    descriptor=face.normed_embedding.astype(np.float32),
                )
            )
        return regions


def cosine_distance(a: np.ndarray, b: np.ndarray) -> float:
    return float(1 - np.dot(a, b) / (np.linalg.norm(a) * np.linalg.norm(b) + 1e-8))


class DescriptorRecognizer:
    """Nearest neighbour over stored descriptors, accepted under a distance threshold."""

    def __init__(self, threshold: Optional[float] = None):
        self.threshold = settings.embedding_threshold if threshold is None else threshold

    def recognize(self, face: FaceRegion, candidates: Sequence[Candidate]) -> Optional[Match]:
        if face.descriptor is None:
            return None
        best = None
        best_dist = 1e9
        for candidate in candidates:
            for ref in candidate.descriptors:
                if ref.shape != face.descriptor.shape:
                    continue
                dist = cosine_distance(face.descriptor, ref)
                if dist < best_dist:
                    best_dist = dist
                    best = candidate
        if best is None or best_dist > self.threshold:
            return None
        confidence = min(1.0, max(0.0, 1 - best_dist))
        return Match(student_id=best.student_id, name=best.name, distance=best_dist, confidence=confidence)


def encode_descriptor(vector: np.ndarray) -> bytes:
    return orjson.dumps(vector, option=orjson.OPT_SERIALIZE_NUMPY)


def decode_descriptor(raw: bytes) -> np.ndarray:
    return np.array(orjson.loads(raw), dtype=np.float32)


def group_descriptors(rows) -> Dict[int, List[np.ndarray]]:
    """Map student id to decoded vectors from ``FaceDescriptor`` rows."""
    grouped: Dict[int, List[np.ndarray]] = {}
    for row in rows:
        grouped.setdefault(row.student_id, []).append(decode_descriptor(row.descriptor))
    return grouped


def image_bytes_to_bgr(img_bytes: bytes) -> Optional[np.ndarray]:
    """Decode an uploaded image; None when the bytes are not an image."""
    if not img_bytes:
        return None
    return cv2.imdecode(np.frombuffer(img_bytes, np.uint8), cv2.IMREAD_COLOR)


def embed_image_bgr(img_bgr: np.ndarray, locator: Optional[FaceLocator] = None) -> Optional[Tuple[np.ndarray, float]]:
    locator = locator or InsightFaceLocator()
    faces = [f for f in locator.locate(img_bgr) if f.descriptor is not None]
    if not faces:
        return None
    face = max(faces, key=lambda f: f.confidence)
    return face.descriptor, face.confidence


THUMB_MAX_SIDE = 256


def save_face_thumb(img_bgr: np.ndarray, out_path: str) -> str:
    """Write a downscaled copy of a training photo, used as the student's photo."""
    os.makedirs(os.path.dirname(out_path), exist_ok=True)
    h, w = img_bgr.shape[:2]
    scale = THUMB_MAX_SIDE / max(h, w)
    if scale < 1:
        img_bgr = cv2.resize(img_bgr, (int(w * scale), int(h * scale)), interpolation=cv2.INTER_AREA)
    cv2.imwrite(out_path, img_bgr)
    return out_path


# face mesh landmarks: (outer corner, inner corner, upper lid, lower lid)
LEFT_EYE = (33, 133, 159, 145)
RIGHT_EYE = (362, 263, 386, 374)
EYE_OPEN_RANGE = (0.18, 0.35)


def _eye_ratio(landmarks, eye) -> float:
    outer, inner, upper, lower = (landmarks[i] for i in eye)
    width = np.hypot(outer.x - inner.x, outer.y - inner.y)
    height = np.hypot(upper.x - lower.x, upper.y - lower.y)
    return height / (width + 1e-6)


def mediapipe_liveness_heuristic(img_bgr: np.ndarray) -> bool:
    """Crude check that a full face mesh is found with open, plausible eyes."""
    import mediapipe as mp

    rgb = cv2.cvtColor(img_bgr, cv2.COLOR_BGR2RGB)
    with mp.solutions.face_mesh.FaceMesh(static_image_mode=True, max_num_faces=1, refine_landmarks=True) as mesh:
        res = mesh.process(rgb)
    if not res.multi_face_landmarks:
        return False
    landmarks = res.multi_face_landmarks[0].landmark
    low, high = EYE_OPEN_RANGE
    return all(low < _eye_ratio(landmarks, eye) < high for eye in (LEFT_EYE, RIGHT_EYE))
