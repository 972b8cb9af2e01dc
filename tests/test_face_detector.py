"""
Tests for the Face Detection Adapter and MediaPipe task wrappers

Run with:
    pytest tests/test_face_detector.py -v
"""

import pytest
import numpy as np
import os
import sys
import time
from types import SimpleNamespace

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from badgephoto.errors import FetchFailure, NotReady
from badgephoto.face_detector import FaceDetectionAdapter, FaceDetectorCapability, clamp_box
from badgephoto.mediapipe_tasks import MediaPipeFaceDetector, RunningMode
from badgephoto.types import BoundingBox
from badgephoto import mediapipe_tasks
from tests.fakes import (
    FakeFaceCapability,
    OverlapCounter,
    SlowFaceCapability,
    fake_fetcher,
    make_face_image,
    make_raw_detection,
    run_in_threads,
)


@pytest.fixture
def image():
    return make_face_image(800, 600)


class TestAdapter:
    """Raw detector output -> Detection"""

    def test_detection_converted(self, image):
        capability = FakeFaceCapability([
            make_raw_detection(300, 150, 120, 160, score=0.93, keypoints=[(0.42, 0.3), (0.5, 0.31)])
        ])
        detections = FaceDetectionAdapter(capability).detect(image)

        assert len(detections) == 1
        detection = detections[0]
        assert detection.bounding_box == BoundingBox(300, 150, 120, 160)
        assert detection.score == pytest.approx(0.93)
        assert detection.keypoints[0].x == pytest.approx(0.42)

    def test_no_face_is_empty_list(self, image):
        assert FaceDetectionAdapter(FakeFaceCapability([])).detect(image) == []

    def test_not_initialized(self, image):
        capability = FakeFaceCapability([make_raw_detection(0, 0, 10, 10)], initialized=False)
        adapter = FaceDetectionAdapter(capability)

        assert not adapter.ready
        with pytest.raises(NotReady):
            adapter.detect(image)
        assert capability.detect_calls == 0

    def test_video_mode_switched_to_image(self, image):
        capability = FakeFaceCapability([], mode=RunningMode.VIDEO)
        FaceDetectionAdapter(capability).detect(image)

        assert capability.mode_changes == [RunningMode.IMAGE]
        assert capability.mode == RunningMode.IMAGE

    def test_box_clamped_to_image(self, image):
        capability = FakeFaceCapability([make_raw_detection(-20, 560, 100, 80)])
        detection = FaceDetectionAdapter(capability).detect(image)[0]

        box = detection.bounding_box
        assert (box.origin_x, box.origin_y) == (0, 560)
        assert (box.width, box.height) == (80, 40)

    def test_box_outside_image_dropped(self, image):
        capability = FakeFaceCapability([
            make_raw_detection(900, 100, 50, 50),
            make_raw_detection(100, 100, 50, 50),
        ])
        detections = FaceDetectionAdapter(capability).detect(image)
        assert len(detections) == 1

    def test_clamp_box_empty(self):
        assert clamp_box(BoundingBox(10, 10, 5, 5), 5, 5) is None

    def test_mediapipe_detector_is_a_capability(self):
        assert isinstance(MediaPipeFaceDetector("models/face.tflite"), FaceDetectorCapability)


class _RecordingDetector(MediaPipeFaceDetector):
    """MediaPipeFaceDetector with task creation replaced"""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.created = []

    def _create(self, model_bytes, mode):
        self.created.append((model_bytes, mode))
        return object()


class TestTaskCapability:
    """Initialize-once and mode switching"""

    def test_initialize_once(self):
        detector = _RecordingDetector("models/face.tflite", fetcher=fake_fetcher)
        detector.initialize()
        detector.initialize()

        assert detector.initialized
        assert detector.created == [(b"fake-model", RunningMode.IMAGE)]

    def test_set_mode_recreates_task(self):
        detector = _RecordingDetector("models/face.tflite", fetcher=fake_fetcher)
        detector.initialize()
        detector.set_mode(RunningMode.VIDEO)

        assert detector.mode == RunningMode.VIDEO
        assert detector.created[-1] == (b"fake-model", RunningMode.VIDEO)

    def test_set_mode_before_initialize(self):
        detector = _RecordingDetector("models/face.tflite", fetcher=fake_fetcher)
        detector.set_mode(RunningMode.VIDEO)

        assert detector.created == []
        detector.initialize()
        assert detector.created == [(b"fake-model", RunningMode.VIDEO)]

    def test_detect_before_initialize(self):
        detector = _RecordingDetector("models/face.tflite", fetcher=fake_fetcher)
        with pytest.raises(NotReady):
            detector.detect(np.zeros((4, 4, 3), dtype=np.uint8))

    def test_fetch_failure_leaves_uninitialized(self):
        def failing_fetcher(source, timeout=60):
            raise FetchFailure(source, "file not found")

        detector = _RecordingDetector("models/face.tflite", fetcher=failing_fetcher)
        with pytest.raises(FetchFailure):
            detector.initialize()
        assert not detector.initialized

    def test_task_capability_is_abstract(self):
        with pytest.raises(TypeError):
            mediapipe_tasks._TaskCapability("models/face.tflite", fetcher=fake_fetcher)


class TestConcurrency:
    """One detector task shared by every session"""

    def test_adapter_serializes_detect_calls(self, image):
        capability = SlowFaceCapability([make_raw_detection(300, 150, 120, 160)])
        adapter = FaceDetectionAdapter(capability)

        errors = run_in_threads(*[lambda: adapter.detect(image)] * 4)

        assert errors == []
        assert capability.detect_calls == 4
        assert capability.counter.max_active == 1

    def test_mode_switched_once_under_concurrent_calls(self, image):
        capability = SlowFaceCapability([make_raw_detection(300, 150, 120, 160)], mode=RunningMode.VIDEO)
        adapter = FaceDetectionAdapter(capability)

        errors = run_in_threads(*[lambda: adapter.detect(image)] * 4)

        assert errors == []
        assert capability.mode_changes == [RunningMode.IMAGE]

    def test_set_mode_waits_for_running_detect(self, monkeypatch):
        """The task being replaced is closed only after the in-flight detect returns"""
        monkeypatch.setattr(mediapipe_tasks, "_to_mp_image", lambda image_rgb: image_rgb)
        counter = OverlapCounter(delay=0.1)
        used_after_close = []

        class _SlowTask:
            closed = False

            def detect(self, mp_image):
                with counter:
                    pass
                used_after_close.append(self.closed)
                return SimpleNamespace(detections=[])

            def detect_for_video(self, mp_image, timestamp_ms):
                return self.detect(mp_image)

            def close(self):
                self.closed = True

        class _SlowTaskDetector(MediaPipeFaceDetector):
            def _create(self, model_bytes, mode):
                return _SlowTask()

        detector = _SlowTaskDetector("models/face.tflite", fetcher=fake_fetcher)
        detector.initialize()
        first_task = detector._task
        frame = np.zeros((4, 4, 3), dtype=np.uint8)

        def switch_midway():
            while counter.entries == 0:
                time.sleep(0.001)
            detector.set_mode(RunningMode.VIDEO)

        errors = run_in_threads(lambda: detector.detect(frame), switch_midway)

        assert errors == []
        assert used_after_close == [False]
        assert first_task.closed
        assert detector.mode == RunningMode.VIDEO
