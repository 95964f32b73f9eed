"""Tests for configuration loading and validation."""

from pathlib import Path

import numpy as np
import pytest
import yaml

from loopgraph.config import CameraParams, FeatureParams, LoopClosureParams, Parameters


@pytest.fixture
def config_dict() -> dict:
    return {
        "camera": {"fx": 458.654, "fy": 457.296, "cx": 367.215, "cy": 248.375,
                   "distortion": [-0.28340811, 0.07395907, 0.00019359, 1.76187114e-05]},
        "loop_closure": {"min_correspondences": 30, "descriptor_family": "brisk"},
        "features": {"fast_threshold": 25},
    }


class TestCameraParams:
    """Test suite for CameraParams."""

    def test_camera_matrix(self):
        camera = CameraParams(fx=400.0, fy=410.0, cx=320.0, cy=240.0)
        np.testing.assert_allclose(
            camera.camera_matrix(), [[400.0, 0.0, 320.0], [0.0, 410.0, 240.0], [0.0, 0.0, 1.0]]
        )

    @pytest.mark.parametrize("fx, fy", [(0.0, 400.0), (400.0, -1.0)])
    def test_non_positive_focal_raises(self, fx, fy):
        with pytest.raises(ValueError, match="Focal lengths"):
            CameraParams(fx=fx, fy=fy, cx=0.0, cy=0.0)

    def test_bad_distortion_length_raises(self):
        with pytest.raises(ValueError, match="Distortion"):
            CameraParams(fx=1.0, fy=1.0, cx=0.0, cy=0.0, distortion=(0.1, 0.2, 0.3))

    def test_normalize_without_distortion(self):
        camera = CameraParams(fx=400.0, fy=400.0, cx=320.0, cy=240.0)
        normalized = camera.normalize(np.array([[320.0, 240.0], [720.0, 640.0]]))
        np.testing.assert_allclose(normalized, [[0.0, 0.0], [1.0, 1.0]], atol=1e-9)

    def test_normalize_empty(self):
        camera = CameraParams(fx=400.0, fy=400.0, cx=320.0, cy=240.0)
        assert camera.normalize(np.empty((0, 2))).shape == (0, 2)


class TestLoopClosureParams:
    """Test suite for LoopClosureParams."""

    def test_defaults(self):
        params = LoopClosureParams()
        assert params.min_correspondences == 25
        assert params.hamming_threshold == 80
        assert params.brisk_matching_threshold == 80.0
        assert params.covisibility_min_weight == 20
        assert (params.accept_max_yaw, params.accept_max_translation) == (25.0, 15.0)
        assert (params.update_max_yaw, params.update_max_translation) == (30.0, 20.0)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"pnp_ransac_iterations": 0},
            {"pnp_reprojection_thresh": 0.0},
            {"pnp_confidence": 1.5},
            {"hamming_threshold": 300},
            {"descriptor_family": "orb"},
            {"accept_max_yaw": -1.0},
        ],
    )
    def test_invalid_values_raise(self, kwargs):
        with pytest.raises(ValueError):
            LoopClosureParams(**kwargs)

    def test_frozen(self):
        params = LoopClosureParams()
        with pytest.raises(AttributeError):
            params.min_correspondences = 3


class TestParameters:
    """Test suite for Parameters."""

    def test_from_dict(self, config_dict):
        params = Parameters.from_dict(config_dict)

        assert params.camera.fx == pytest.approx(458.654)
        assert len(params.camera.distortion) == 4
        assert params.loop_closure.min_correspondences == 30
        assert params.loop_closure.descriptor_family == "brisk"
        assert params.features.fast_threshold == 25
        assert params.features.compute_brisk is False
        assert not params.debug_mode

    def test_missing_camera_raises(self):
        with pytest.raises(ValueError, match="camera"):
            Parameters.from_dict({"loop_closure": {}})

    def test_unknown_key_raises(self, config_dict):
        config_dict["loop_closure"]["unknown"] = 1
        with pytest.raises(ValueError, match="Invalid configuration"):
            Parameters.from_dict(config_dict)

    def test_debug_mode_requires_path(self, config_dict):
        config_dict["debug_mode"] = True
        with pytest.raises(ValueError, match="debug_output_path"):
            Parameters.from_dict(config_dict)

    def test_from_yaml(self, config_dict, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump(config_dict))

        params = Parameters.from_yaml(path)

        assert params.loop_closure.min_correspondences == 30

    def test_from_yaml_missing_file(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError, match="Configuration file not found"):
            Parameters.from_yaml(tmp_path / "missing.yaml")

    def test_to_dict_round_trip(self, config_dict):
        params = Parameters.from_dict(config_dict)
        restored = Parameters.from_dict(yaml.safe_load(yaml.safe_dump(params.to_dict())))
        assert restored == params

    def test_feature_params_validation(self):
        with pytest.raises(ValueError):
            FeatureParams(fast_threshold=0)
