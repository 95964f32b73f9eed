"""Tests for the loop closure worker and process host."""

import logging
import queue
from pathlib import Path

import numpy as np
import pytest

from conftest import IMAGE_HEIGHT, IMAGE_WIDTH, make_pose
from loopgraph.config import FeatureParams, Parameters
from loopgraph.geometry import SE3
from loopgraph.loop_closure.loop_closure_process import LoopClosureProcess, LoopClosureWorker
from loopgraph.loop_closure.messages import (
    LoopCandidateMessage,
    LoopConstraintMessage,
    LoopKeyframeData,
    LoopKeyframeMessage,
    PoseCorrectionMessage,
    RelocalizationMessage,
    RelocalizationPointCloud,
)


class SceneExtractor:
    """Extractor returning the synthetic scene's features.

    The image's top-left pixel selects which keyframe's projections
    ``detect`` returns.
    """

    def __init__(self, keypoints_by_tag: dict[int, np.ndarray], descriptors: np.ndarray) -> None:
        self._keypoints_by_tag = keypoints_by_tag
        self._descriptors = descriptors

    def detect(self, image: np.ndarray) -> np.ndarray:
        return self._keypoints_by_tag[int(image[0, 0])]

    def describe(self, image: np.ndarray, keypoints: np.ndarray) -> np.ndarray:
        assert len(keypoints) == len(self._descriptors)
        return self._descriptors


def _tagged_image(tag: int) -> np.ndarray:
    image = np.zeros((IMAGE_HEIGHT, IMAGE_WIDTH), dtype=np.uint8)
    image[0, 0] = tag
    return image


def _keyframe_message(scene, index: int, pose: SE3) -> LoopKeyframeMessage:
    n = len(scene.points_3d)
    return LoopKeyframeMessage(
        keyframe=LoopKeyframeData(
            index=index,
            timestamp_ns=1_000 * (index + 1),
            pose_rotation=pose.rotation,
            pose_translation=pose.translation,
            keypoints=scene.project(pose),
            points_3d=scene.points_3d,
            point_ids=np.arange(n),
            image=_tagged_image(index),
        )
    )


OLD_POSE = SE3.identity()
CURRENT_POSE = make_pose(10.0, (2.0, 0.0, 0.0))


@pytest.fixture
def worker(params: Parameters, scene) -> LoopClosureWorker:
    extractor = SceneExtractor(
        {0: scene.project(OLD_POSE), 1: scene.project(CURRENT_POSE)},
        scene.descriptors,
    )
    worker = LoopClosureWorker(params, extractor=extractor)
    worker.handle(_keyframe_message(scene, 0, OLD_POSE))
    worker.handle(_keyframe_message(scene, 1, CURRENT_POSE))
    return worker


class TestLoopClosureWorker:
    """Test suite for LoopClosureWorker."""

    def test_keyframes_registered_with_covisibility(self, worker: LoopClosureWorker, scene):
        assert len(worker.registry) == 2
        current = worker.registry[1]
        assert current.connections == {0: len(scene.points_3d)}
        assert worker.observations.num_keyframes == 2

    def test_loop_outputs_without_observer(self, worker: LoopClosureWorker, scene):
        outputs = worker.handle(LoopCandidateMessage(current_index=1, candidate_indices=[0]))

        assert [type(o) for o in outputs] == [LoopConstraintMessage, RelocalizationMessage]
        constraint = outputs[0].constraint
        assert (constraint.current_index, constraint.old_index) == (1, 0)
        assert constraint.relative_yaw == pytest.approx(10.0, abs=1e-3)
        assert worker.registry[1].has_loop

        point_cloud = outputs[1].point_cloud
        assert len(point_cloud) == len(scene.points_3d)
        assert point_cloud.timestamp_ns == worker.registry[1].timestamp_ns

    def test_observer_receives_point_cloud(self, worker: LoopClosureWorker):
        received: list[RelocalizationPointCloud] = []
        worker.register_relocalization_observer(received.append)

        outputs = worker.handle(LoopCandidateMessage(current_index=1, candidate_indices=[0]))

        assert [type(o) for o in outputs] == [LoopConstraintMessage]
        assert len(received) == 1
        assert (received[0].current_index, received[0].old_index) == (1, 0)

    def test_second_observer_rejected(self, worker: LoopClosureWorker):
        worker.register_relocalization_observer(lambda cloud: None)
        with pytest.raises(RuntimeError, match="already registered"):
            worker.register_relocalization_observer(lambda cloud: None)

    def test_unknown_and_self_candidates_skipped(self, worker: LoopClosureWorker):
        outputs = worker.handle(LoopCandidateMessage(current_index=1, candidate_indices=[1, 42]))
        assert outputs == []
        assert not worker.registry[1].has_loop

    def test_unknown_current_raises(self, worker: LoopClosureWorker):
        with pytest.raises(KeyError):
            worker.handle(LoopCandidateMessage(current_index=99, candidate_indices=[0]))

    def test_duplicate_keyframe_raises(self, worker: LoopClosureWorker, scene):
        with pytest.raises(ValueError, match="already registered"):
            worker.handle(_keyframe_message(scene, 0, OLD_POSE))

    def test_pose_corrections_applied(self, worker: LoopClosureWorker):
        corrected = make_pose(0.0, (0.0, 0.0, 1.0))
        outputs = worker.handle(PoseCorrectionMessage(pose_corrections={0: corrected.to_matrix(), 7: np.eye(4)}))

        assert outputs == []
        np.testing.assert_allclose(worker.registry[0].get_pose().translation, [0.0, 0.0, 1.0])
        np.testing.assert_allclose(worker.registry[0].get_vio_pose().translation, [0.0, 0.0, 0.0])

    def test_pose_only_keyframe(self, params: Parameters, scene):
        worker = LoopClosureWorker(params, extractor=SceneExtractor({}, scene.descriptors))
        worker.handle(
            LoopKeyframeMessage(
                keyframe=LoopKeyframeData(
                    index=5,
                    timestamp_ns=0,
                    pose_rotation=np.eye(3),
                    pose_translation=np.zeros(3),
                    observation_counts={},
                    is_keyframe=False,
                )
            )
        )
        assert not worker.registry[5].is_keyframe

    def test_failed_keyframe_leaves_no_observations(self, worker: LoopClosureWorker, scene):
        n = len(scene.points_3d)
        bad = LoopKeyframeData(
            index=5,
            timestamp_ns=0,
            pose_rotation=2.0 * np.eye(3),
            pose_translation=np.zeros(3),
            point_ids=np.arange(n),
        )
        with pytest.raises(ValueError):
            worker.add_keyframe(bad)
        assert 5 not in worker.registry
        assert 5 not in worker.observations

        keyframe = worker.add_keyframe(
            LoopKeyframeData(
                index=6,
                timestamp_ns=0,
                pose_rotation=np.eye(3),
                pose_translation=np.zeros(3),
                point_ids=np.arange(n),
                is_keyframe=False,
            )
        )
        assert 5 not in keyframe.connections
        assert keyframe.connections == {0: n, 1: n}

    def test_self_candidate_logs_warning(self, worker: LoopClosureWorker, caplog):
        with caplog.at_level(logging.WARNING):
            worker.handle(LoopCandidateMessage(current_index=1, candidate_indices=[1]))
        assert "self candidate 1" in caplog.text

    def test_unsupported_message_raises(self, worker: LoopClosureWorker):
        with pytest.raises(TypeError):
            worker.handle("hello")


class TestLoopClosureProcess:
    """Test suite for LoopClosureProcess."""

    def test_not_started(self, params: Parameters):
        process = LoopClosureProcess(params)
        assert not process.is_running
        assert not process.send(LoopCandidateMessage(current_index=0, candidate_indices=[]))
        assert process.get_output() is None
        assert process.poll() == []

    def test_missing_brief_pattern_raises(self, camera, tmp_path: Path):
        params = Parameters(camera=camera, features=FeatureParams(brief_pattern_file=str(tmp_path / "missing.yml")))
        with pytest.raises(FileNotFoundError):
            LoopClosureProcess(params)

    def test_missing_vocabulary_raises(self, params: Parameters, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            LoopClosureProcess(params, vocabulary_path=tmp_path / "missing.npz")

    def test_second_observer_rejected(self, params: Parameters):
        process = LoopClosureProcess(params)
        process.register_relocalization_observer(lambda cloud: None)
        with pytest.raises(RuntimeError):
            process.register_relocalization_observer(lambda cloud: None)

    def test_poll_dispatches_relocalization(self, params: Parameters):
        process = LoopClosureProcess(params)
        received = []
        process.register_relocalization_observer(received.append)

        cloud = RelocalizationPointCloud(
            current_index=2,
            old_index=0,
            timestamp_ns=5,
            points_3d=np.zeros((1, 3)),
            point_ids=np.zeros(1),
            points_2d_old_norm=np.zeros((1, 2)),
        )
        constraint_msg = object()
        outbox = queue.Queue()
        outbox.put(RelocalizationMessage(point_cloud=cloud))
        outbox.put(constraint_msg)
        process._from_loop_closure = outbox

        outputs = process.poll()

        assert outputs == [constraint_msg]
        assert received == [cloud]

    def test_start_stop(self, params: Parameters):
        with LoopClosureProcess(params) as process:
            assert process.is_running
            assert process.send(PoseCorrectionMessage(pose_corrections={}))
        assert not process.is_running
