import logging
import threading
from datetime import datetime

import cv2
import numpy as np
from sklearn.metrics.pairwise import euclidean_distances

from .attendance import Outcome, RecognitionEvent
from .config import DETECTION_SIZE, MATCH_THRESHOLD, UNKNOWN_LABEL

logger = logging.getLogger(__name__)

# Execution providers in order of preference
PROVIDER_LIST = [
    'CUDAExecutionProvider',  # NVIDIA GPU
    'DmlExecutionProvider',   # DirectML on Windows
    'CPUExecutionProvider'    # Always available
]

# Box colours (BGR) for each decision
COLOR_UNKNOWN = (0, 0, 255)
COLOR_ADMITTED = (255, 0, 0)
COLOR_COOLDOWN = (0, 165, 255)

_face_analyzer = None
_analyzer_lock = threading.Lock()


def initialize_face_analyzer():
    """Create an InsightFace FaceAnalysis, falling back through the providers"""
    # insightface is the optional "insightface" extra; only the camera and photo
    # registration paths need it
    from insightface.app import FaceAnalysis

    for provider in PROVIDER_LIST:
        try:
            logger.info("Attempting to initialize FaceAnalysis with %s...", provider)
            analyzer = FaceAnalysis(name='buffalo_l', providers=[provider])
            analyzer.prepare(ctx_id=0, det_size=(DETECTION_SIZE, DETECTION_SIZE))
            logger.info("Successfully initialized with %s", provider)
            return analyzer
        except Exception as e:
            logger.warning("Failed to initialize with %s: %s", provider, e)
    raise RuntimeError("Failed to initialize FaceAnalysis with any provider")


def get_face_analyzer():
    """Shared FaceAnalysis instance, loaded on first use"""
    global _face_analyzer
    if _face_analyzer is None:
        with _analyzer_lock:
            if _face_analyzer is None:
                _face_analyzer = initialize_face_analyzer()
    return _face_analyzer


def extract_descriptor(image):
    """Embedding of the single face in an image; None if there is not exactly one face"""
    faces = get_face_analyzer().get(image)
    if len(faces) != 1:
        return None
    return faces[0].normed_embedding.tolist()


class FaceMatcher:
    """Nearest-neighbour matcher over a fixed set of labelled descriptors."""

    def __init__(self, faces, threshold=MATCH_THRESHOLD):
        self.threshold = threshold
        self._by_length = {}
        for face in faces:
            descriptor = np.asarray(face["descriptor"], dtype=np.float64)
            if descriptor.ndim != 1 or descriptor.size == 0 or not np.all(np.isfinite(descriptor)):
                logger.warning("Ignoring descriptor of %r with shape %s", face["name"], descriptor.shape)
                continue
            labels, vectors = self._by_length.setdefault(descriptor.size, ([], []))
            labels.append(face["name"])
            vectors.append(descriptor)
        self._by_length = {
            length: (labels, np.vstack(vectors))
            for length, (labels, vectors) in self._by_length.items()
        }

    def __len__(self):
        return sum(len(labels) for labels, _ in self._by_length.values())

    def find_best_match(self, descriptor):
        """Return (label, distance); label is "unknown" when no face is close enough"""
        query = np.asarray(descriptor, dtype=np.float64).reshape(1, -1)
        candidates = self._by_length.get(query.shape[1])
        if candidates is None or not np.all(np.isfinite(query)):
            return UNKNOWN_LABEL, float("inf")

        labels, vectors = candidates
        distances = euclidean_distances(query, vectors)[0]
        best = int(np.argmin(distances))
        distance = round(float(distances[best]), 2)
        if distance >= self.threshold:
            return UNKNOWN_LABEL, distance
        return labels[best], distance


class RosterMatcher:
    """Caches a FaceMatcher built from the registered faces until the roster changes."""

    def __init__(self, load_faces, threshold=MATCH_THRESHOLD):
        self._load_faces = load_faces
        self._threshold = threshold
        self._matcher = None
        self._lock = threading.Lock()

    def invalidate(self):
        with self._lock:
            self._matcher = None

    def get(self):
        with self._lock:
            if self._matcher is None:
                self._matcher = FaceMatcher(self._load_faces(), self._threshold)
                logger.info("Face matcher rebuilt with %d registered faces", len(self._matcher))
            return self._matcher

    def match(self, descriptor):
        return self.get().find_best_match(descriptor)


def recognize_descriptor(descriptor, roster, reconciler, save_record, observed_at=None):
    """Match a descriptor, gate it through the reconciler and persist admissions"""
    label, distance = roster.match(descriptor)
    event = RecognitionEvent(label, distance, observed_at or datetime.now())
    decision = reconciler.observe(event)
    saved = save_record(decision.record) if decision.admitted else None
    return event, decision, saved


def process_frame(frame, roster, reconciler, save_record):
    """Recognize every face in a camera frame and draw the results on a copy"""
    display_frame = frame.copy()
    results = []

    try:
        faces = get_face_analyzer().get(frame)
    except Exception:
        logger.exception("Face detection failed")
        return display_frame, results

    for face in faces:
        event, decision, saved = recognize_descriptor(face.normed_embedding, roster, reconciler, save_record)
        bbox = face.bbox.astype(int)
        draw_recognition_result(display_frame, bbox, event, decision)
        results.append((event, decision, saved))

    return display_frame, results


def draw_recognition_result(frame, bbox, event, decision):
    """Draw a box coloured by the gating decision"""
    left, top, right, bottom = (int(value) for value in bbox[:4])

    if decision.outcome is Outcome.ADMITTED:
        color = COLOR_ADMITTED
        label = f"{event.subject} (MARKED!)"
    elif decision.outcome is Outcome.SUPPRESSED:
        color = COLOR_COOLDOWN
        label = f"{event.subject} (on cooldown)"
    else:
        color = COLOR_UNKNOWN
        label = f"{event.subject} ({event.confidence:.2f})"

    cv2.rectangle(frame, (left, top), (right, bottom), color, 2)

    y_position = max(top - 10, 20)  # keep the text inside the frame
    cv2.putText(frame, label, (left, y_position),
                cv2.FONT_HERSHEY_SIMPLEX, 0.6, color, 2)
