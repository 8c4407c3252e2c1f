import logging

import numpy as np
import pytest

from tag_markers.detector import TagDetection
from tag_markers.markers import MARKER_COLOR, MarkerArray, MarkerType
from tag_markers.pipeline import DetectionPipeline, PipelineState, reference_point, to_grayscale
from tag_markers.pose_estimator import PoseEstimator
from tag_markers.tag_sizes import TagSizeRegistry


@pytest.fixture
def published():
    return []


@pytest.fixture
def make_pipeline(published):
    def _make(detector, display_sink=None, sizes=None, active=True):
        state = PipelineState()
        state.active = active
        return DetectionPipeline(
            state=state,
            detector=detector,
            tag_sizes=TagSizeRegistry(0.1, sizes if sizes is not None else {5: 0.2}),
            estimator=PoseEstimator(),
            marker_sink=published.append,
            frame_id="camera",
            display_sink=display_sink,
            clock=lambda: 123.5
        )
    return _make


def test_frames_before_calibration_produce_nothing(make_pipeline, fake_detector_cls, frame, published, caplog, project_tag, rotation):
    detector = fake_detector_cls([project_tag(1, rotation(0, 0, 0), [0, 0, 1], 0.1)])
    pipeline = make_pipeline(detector)

    with caplog.at_level(logging.WARNING, logger="tag_markers.pipeline"):
        for _ in range(5):
            assert pipeline.on_image(frame) == []

    assert published == []
    assert detector.calls == []
    warnings = [r for r in caplog.records if "No Camera Info" in r.getMessage()]
    assert len(warnings) == 1


def test_frames_after_calibration_produce_markers(make_pipeline, fake_detector_cls, frame, published, intrinsics, project_tag, rotation):
    detector = fake_detector_cls([project_tag(1, rotation(0, 0, 0), [0, 0, 1], 0.1)])
    pipeline = make_pipeline(detector)

    pipeline.on_image(frame)
    pipeline.on_camera_info(intrinsics)
    markers = pipeline.on_image(frame)

    assert [m.marker_id for m in markers] == [1]
    assert len(published) == 1
    assert isinstance(published[0], MarkerArray)
    assert pipeline.state.has_calibration
    assert pipeline.frames_processed == 1


def test_process_frame_without_intrinsics_is_noop(make_pipeline, fake_detector_cls, frame, published):
    pipeline = make_pipeline(fake_detector_cls())
    assert pipeline.process_frame(frame, None) == []
    assert published == []


def test_zero_detections_publish_empty_batch(make_pipeline, fake_detector_cls, frame, published, intrinsics):
    pipeline = make_pipeline(fake_detector_cls([]))

    markers = pipeline.process_frame(frame, intrinsics)

    assert markers == []
    assert len(published) == 1
    assert len(published[0]) == 0


def test_degenerate_detection_is_excluded(make_pipeline, fake_detector_cls, frame, published, intrinsics, project_tag, rotation, caplog):
    collinear = TagDetection(tag_id=9, corners=[[100, 100], [150, 100], [200, 100], [150, 150]])
    detector = fake_detector_cls([
        project_tag(1, rotation(10, 0, 0), [-0.2, 0, 1], 0.1),
        collinear,
        project_tag(5, rotation(0, 10, 0), [0.2, 0, 1.5], 0.2),
    ])
    pipeline = make_pipeline(detector)

    with caplog.at_level(logging.WARNING, logger="tag_markers.pipeline"):
        markers = pipeline.process_frame(frame, intrinsics)

    assert [m.marker_id for m in markers] == [1, 5]
    assert published[0].ids == [1, 5]
    assert any("tag9" in r.getMessage() for r in caplog.records)


def test_detector_failure_skips_frame_only(make_pipeline, fake_detector_cls, frame, published, intrinsics, project_tag, rotation):
    detector = fake_detector_cls([project_tag(1, rotation(0, 0, 0), [0, 0, 1], 0.1)], fail=True)
    pipeline = make_pipeline(detector)

    assert pipeline.process_frame(frame, intrinsics) == []
    assert published == []

    detector.fail = False
    assert len(pipeline.process_frame(frame, intrinsics)) == 1
    assert len(published) == 1


def test_marker_fields(make_pipeline, fake_detector_cls, frame, intrinsics, project_tag, rotation):
    detector = fake_detector_cls([project_tag(5, rotation(0, 0, 0), [0.0, 0.0, 2.0], 0.2)])
    pipeline = make_pipeline(detector)

    (marker,) = pipeline.process_frame(frame, intrinsics)

    assert marker.marker_id == 5
    assert marker.namespace == "tag5"
    assert marker.frame_id == "camera"
    assert marker.stamp == 123.5
    assert marker.scale == pytest.approx((0.2, 1.0, 0.2))
    assert marker.color == MARKER_COLOR
    assert marker.marker_type == MarkerType.ARROW
    assert marker.pose.translation[2] == pytest.approx(2.0, rel=1e-5)

    d = marker.to_dict()
    assert d['ns'] == "tag5"
    assert d['pose']['orientation']['w'] == pytest.approx(1.0)
    assert d['header']['frame_id'] == "camera"


def test_configured_size_drives_pose(make_pipeline, fake_detector_cls, frame, intrinsics):
    # Perfect 60 px square: 2 m away for a 0.2 m tag
    corners = [[290, 210], [350, 210], [350, 270], [290, 270]]
    detector = fake_detector_cls([
        TagDetection(tag_id=5, corners=corners),
        TagDetection(tag_id=6, corners=corners),
    ])
    pipeline = make_pipeline(detector)

    tag5, tag6 = pipeline.process_frame(frame, intrinsics)

    assert tag5.pose.translation[2] == pytest.approx(2.0, rel=1e-5)
    assert tag5.scale[0] == pytest.approx(0.2)
    assert tag6.pose.translation[2] == pytest.approx(1.0, rel=1e-5)
    assert tag6.scale[0] == pytest.approx(0.1)


def test_reference_point_is_image_center(make_pipeline, fake_detector_cls, intrinsics):
    detector = fake_detector_cls([])
    pipeline = make_pipeline(detector)

    pipeline.process_frame(np.zeros((480, 640, 3), dtype=np.uint8), intrinsics)

    shape, ref = detector.calls[0]
    assert shape == (480, 640)
    assert ref == (320.0, 240.0)
    assert reference_point(np.zeros((100, 200))) == (100.0, 50.0)


def test_display_sink_receives_annotated_frame(make_pipeline, fake_detector_cls, frame, intrinsics):
    shown = []
    detector = fake_detector_cls([])
    pipeline = make_pipeline(detector, display_sink=shown.append)

    pipeline.process_frame(frame, intrinsics)

    assert len(shown) == 1
    assert detector.annotated == 1


def test_unconvertible_frame_is_skipped(make_pipeline, fake_detector_cls, published, intrinsics):
    pipeline = make_pipeline(fake_detector_cls([]))
    assert pipeline.process_frame(np.zeros((4, 4, 2), dtype=np.uint8), intrinsics) == []
    assert published == []


def test_to_grayscale_variants():
    assert to_grayscale(np.zeros((4, 5, 3), dtype=np.uint8)).shape == (4, 5)
    assert to_grayscale(np.zeros((4, 5, 4), dtype=np.uint8)).shape == (4, 5)
    assert to_grayscale(np.zeros((4, 5, 1), dtype=np.uint8)).shape == (4, 5)
    assert to_grayscale(np.zeros((4, 5), dtype=np.float32)).dtype == np.uint8
    with pytest.raises(ValueError):
        to_grayscale(np.zeros((0, 0), dtype=np.uint8))


def test_state_calibration_survives_deactivation(intrinsics):
    state = PipelineState()
    state.set_intrinsics(intrinsics)
    state.active = True
    state.active = False
    assert state.has_calibration
    assert state.require_intrinsics() is intrinsics


def test_frames_ignored_while_inactive(make_pipeline, fake_detector_cls, frame, published, intrinsics, project_tag, rotation):
    detector = fake_detector_cls([project_tag(1, rotation(0, 0, 0), [0, 0, 1], 0.1)])
    pipeline = make_pipeline(detector, active=False)
    pipeline.on_camera_info(intrinsics)

    assert pipeline.on_image(frame) == []
    assert published == []
    assert detector.calls == []

    pipeline.state.active = True
    assert len(pipeline.on_image(frame)) == 1
