"""Tests for Keyframe and KeyframeRegistry."""

import numpy as np
import pytest

from conftest import IMAGE_HEIGHT, IMAGE_WIDTH, make_pose
from loopgraph.backend.keyframe import Keyframe, KeyframeRegistry, LoopInfo
from loopgraph.config import Parameters
from loopgraph.features.brief import BriefExtractor
from loopgraph.features.extractor import FeatureSet
from loopgraph.features.vocabulary import VisualVocabulary
from loopgraph.geometry import SE3


def _loop_info(yaw: float, t=(1.0, 0.0, 0.0)) -> LoopInfo:
    return LoopInfo(relative_t=np.array(t), relative_q=np.array([1.0, 0.0, 0.0, 0.0]), relative_yaw=yaw)


@pytest.fixture
def textured_image() -> np.ndarray:
    """Random blocks give plenty of FAST corners."""
    rng = np.random.default_rng(3)
    blocks = rng.integers(0, 256, (IMAGE_HEIGHT // 16, IMAGE_WIDTH // 16), dtype=np.uint8)
    return np.kron(blocks, np.ones((16, 16), dtype=np.uint8))


class TestLoopInfo:
    """Test suite for LoopInfo."""

    def test_pack_round_trip(self):
        info = _loop_info(12.5, (1.0, 2.0, 3.0))
        packed = info.to_array()
        assert packed.shape == (8,)
        restored = LoopInfo.from_array(packed)
        np.testing.assert_allclose(restored.relative_t, info.relative_t)
        assert restored.relative_yaw == 12.5

    def test_bad_shapes_raise(self):
        with pytest.raises(ValueError):
            LoopInfo(relative_t=np.zeros(2), relative_q=np.zeros(4), relative_yaw=0.0)

    def test_zero(self):
        info = LoopInfo.zero()
        assert info.translation_norm == 0.0
        np.testing.assert_allclose(info.relative_q, [1.0, 0.0, 0.0, 0.0])


class TestKeyframe:
    """Test suite for Keyframe."""

    def test_poses_initialized_from_vio(self):
        pose = make_pose(15.0, (1.0, 2.0, 3.0))
        keyframe = Keyframe(index=0, timestamp_ns=10, pose_vio=pose)

        np.testing.assert_allclose(keyframe.get_pose().to_matrix(), pose.to_matrix())
        np.testing.assert_allclose(keyframe.origin_pose.to_matrix(), pose.to_matrix())
        assert not keyframe.has_loop
        assert keyframe.loop_index is None

    def test_invalid_pose_raises(self):
        bad = SE3(rotation=2.0 * np.eye(3), translation=np.zeros(3))
        with pytest.raises(ValueError, match="valid rigid transform"):
            Keyframe(index=0, timestamp_ns=0, pose_vio=bad)

    def test_misaligned_window_raises(self, scene):
        features = scene.feature_set(SE3.identity())
        with pytest.raises(ValueError, match="points_3d"):
            Keyframe(
                index=0,
                timestamp_ns=0,
                pose_vio=SE3.identity(),
                window=features,
                points_3d=scene.points_3d[:5],
            )
        with pytest.raises(ValueError, match="point_ids"):
            Keyframe(
                index=0,
                timestamp_ns=0,
                pose_vio=SE3.identity(),
                window=features,
                point_ids=np.arange(3),
            )

    def test_window_arrays_read_only(self, scene):
        keyframe = scene.make_old_keyframe()
        with pytest.raises(ValueError):
            keyframe.window.descriptors[0, 0] = 1
        with pytest.raises(ValueError):
            keyframe.points_3d[0, 0] = 1.0

    def test_caller_arrays_stay_writable(self):
        points = np.ones((3, 3))
        ids = np.arange(3)
        keypoints = np.zeros((3, 2), dtype=np.float32)
        features = FeatureSet(keypoints=keypoints, keypoints_norm=keypoints, descriptors=np.zeros((3, 32), dtype=np.uint8))
        keyframe = Keyframe(index=0, timestamp_ns=0, pose_vio=SE3.identity(), window=features, points_3d=points, point_ids=ids)

        points[0, 0] = 2.0
        ids[0] = 7
        keypoints[0, 0] = 1.0
        assert keyframe.points_3d[0, 0] == 1.0
        assert keyframe.point_ids[0] == 0
        assert keyframe.window.keypoints[0, 0] == 0.0

    def test_identity_is_immutable(self):
        keyframe = Keyframe(index=0, timestamp_ns=0, pose_vio=SE3.identity())
        with pytest.raises(AttributeError):
            keyframe.index = 3

    def test_update_vio_pose_resets_current(self):
        keyframe = Keyframe(index=0, timestamp_ns=0, pose_vio=SE3.identity())
        keyframe.update_pose(make_pose(5.0, (1.0, 0.0, 0.0)))
        shifted = make_pose(0.0, (0.0, 3.0, 0.0))

        keyframe.update_vio_pose(shifted)

        np.testing.assert_allclose(keyframe.get_pose().translation, [0.0, 3.0, 0.0])
        np.testing.assert_allclose(keyframe.get_vio_pose().translation, [0.0, 3.0, 0.0])
        np.testing.assert_allclose(keyframe.origin_pose.translation, [0.0, 0.0, 0.0])

    def test_set_loop_commits_fields(self):
        keyframe = Keyframe(index=4, timestamp_ns=0, pose_vio=SE3.identity())
        keyframe.set_loop(1, _loop_info(5.0))

        assert keyframe.has_loop
        assert keyframe.loop_index == 1
        assert keyframe.get_loop_relative_yaw() == 5.0

        constraint = keyframe.loop_constraint()
        assert constraint.current_index == 4
        assert constraint.old_index == 1
        np.testing.assert_allclose(constraint.relative_pose().translation, [1.0, 0.0, 0.0])

    def test_self_loop_raises(self):
        keyframe = Keyframe(index=4, timestamp_ns=0, pose_vio=SE3.identity())
        with pytest.raises(ValueError, match="itself"):
            keyframe.set_loop(4, _loop_info(0.0))
        assert not keyframe.has_loop

    def test_no_constraint_without_loop(self):
        keyframe = Keyframe(index=0, timestamp_ns=0, pose_vio=SE3.identity())
        assert keyframe.loop_constraint() is None


class TestUpdateLoop:
    """Test suite for the loop update gate."""

    @pytest.fixture
    def looped(self) -> Keyframe:
        keyframe = Keyframe(index=9, timestamp_ns=0, pose_vio=SE3.identity())
        keyframe.set_loop(2, _loop_info(5.0))
        return keyframe

    def test_accepts_within_gate(self, looped: Keyframe):
        assert looped.update_loop(_loop_info(29.0, (19.0, 0.0, 0.0)))
        assert looped.get_loop_relative_yaw() == 29.0

    def test_rejects_large_yaw(self, looped: Keyframe):
        assert not looped.update_loop(_loop_info(31.0))
        assert looped.get_loop_relative_yaw() == 5.0

    def test_rejects_large_translation(self, looped: Keyframe):
        assert not looped.update_loop(_loop_info(0.0, (0.0, 21.0, 0.0)))
        np.testing.assert_allclose(looped.get_loop_relative_t(), [1.0, 0.0, 0.0])

    def test_gate_is_strict(self, looped: Keyframe):
        assert not looped.update_loop(_loop_info(30.0))
        assert not looped.update_loop(_loop_info(0.0, (20.0, 0.0, 0.0)))


class TestFromImage:
    """Keyframe construction from an image."""

    def test_full_keyframe(self, params: Parameters, textured_image, scene):
        extractor = BriefExtractor()
        keypoints = scene.project(SE3.identity())
        vocabulary = VisualVocabulary.from_words(scene.descriptors[:8])

        keyframe = Keyframe.from_image(
            index=3,
            timestamp_ns=123,
            pose=SE3.identity(),
            image=textured_image,
            keypoints=keypoints,
            points_3d=scene.points_3d,
            point_ids=np.arange(len(keypoints)),
            observation_counts={0: 25, 1: 10},
            params=params,
            extractor=extractor,
            vocabulary=vocabulary,
        )

        assert len(keyframe.window) == len(keypoints)
        assert keyframe.window.descriptors.shape == (len(keypoints), 32)
        assert len(keyframe.features) > 0
        assert keyframe.features.descriptors.shape[1] == 32
        assert keyframe.connections == {0: 25}
        assert keyframe.bow_vector
        assert keyframe.image is None  # Only kept in debug mode

    def test_image_retained_in_debug_mode(self, camera, textured_image, tmp_path):
        params = Parameters(camera=camera, debug_mode=True, debug_output_path=str(tmp_path))
        keyframe = Keyframe.from_image(
            index=0,
            timestamp_ns=0,
            pose=SE3.identity(),
            image=textured_image,
            keypoints=np.array([[100.0, 100.0]]),
            points_3d=np.array([[0.0, 0.0, 5.0]]),
            point_ids=np.array([0]),
            observation_counts={},
            params=params,
            extractor=BriefExtractor(),
        )
        assert keyframe.image is not None
        keyframe.release_image()
        assert keyframe.image is None

    def test_non_keyframe_has_no_window(self, params, textured_image):
        keyframe = Keyframe.from_image(
            index=1,
            timestamp_ns=0,
            pose=SE3.identity(),
            image=textured_image,
            keypoints=np.array([[100.0, 100.0]]),
            points_3d=np.array([[0.0, 0.0, 5.0]]),
            point_ids=np.array([0]),
            observation_counts={},
            params=params,
            extractor=BriefExtractor(),
            is_keyframe=False,
        )
        assert len(keyframe.window) == 0
        assert keyframe.points_3d is None
        assert len(keyframe.features) > 0


class TestKeyframeRegistry:
    """Test suite for KeyframeRegistry."""

    def test_add_and_lookup(self):
        registry = KeyframeRegistry()
        first = Keyframe.pose_only(0, 0, SE3.identity())
        second = Keyframe.pose_only(1, 1, SE3.identity(), {0: 30})
        registry.add(first)
        registry.add(second)

        assert len(registry) == 2
        assert 1 in registry
        assert registry[0] is first
        assert registry.get(5) is None
        assert registry.last is second
        assert [kf.index for kf in registry] == [0, 1]

    def test_duplicate_index_raises(self):
        registry = KeyframeRegistry()
        registry.add(Keyframe.pose_only(0, 0, SE3.identity()))
        with pytest.raises(ValueError, match="already registered"):
            registry.add(Keyframe.pose_only(0, 5, SE3.identity()))

    def test_unknown_index_raises(self):
        with pytest.raises(KeyError):
            KeyframeRegistry()[3]

    def test_neighbors_resolve_rows(self):
        registry = KeyframeRegistry()
        registry.add(Keyframe.pose_only(0, 0, SE3.identity()))
        registry.add(Keyframe.pose_only(1, 1, SE3.identity(), {0: 30, 7: 40}))

        neighbors = registry.neighbors(1)

        assert [(kf.index, weight) for kf, weight in neighbors] == [(0, 30)]

    def test_loop_constraints(self):
        registry = KeyframeRegistry()
        registry.add(Keyframe.pose_only(0, 0, SE3.identity()))
        looped = Keyframe.pose_only(1, 1, SE3.identity())
        looped.set_loop(0, _loop_info(3.0))
        registry.add(looped)

        constraints = registry.loop_constraints()

        assert len(constraints) == 1
        assert (constraints[0].current_index, constraints[0].old_index) == (1, 0)
