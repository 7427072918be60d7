"""
Tests for configuration loading, validation and environment overrides.
"""

import pytest

from smartvision_engine.config import (
    CameraConfig,
    ConfigError,
    DetectorConfig,
    EngineConfig,
    TrackerConfig,
    apply_env_overrides,
    default_config,
    load_config,
)


class TestDefaults:
    def test_default_cameras_and_thresholds(self):
        config = default_config()
        config.validate()
        assert [camera.camera_id for camera in config.cameras] == ["cam1", "cam2"]
        assert config.thresholds() == {"license_plate": 0.7, "face": 0.6}
        assert config.kafka.topic == "video-detections"
        assert config.kafka.bootstrap_servers == "kafka:9092"
        assert config.live.port == 8765

    def test_camera_defaults_throttle_to_thirty_fps(self):
        camera = CameraConfig(camera_id="cam", uri="rtsp://x")
        assert camera.target_fps == 30.0
        assert camera.frame_drop_cooldown == 1.0


class TestValidation:
    def test_requires_a_camera(self):
        with pytest.raises(ConfigError):
            EngineConfig(cameras=[]).validate()

    def test_rejects_duplicate_camera_ids(self):
        config = EngineConfig(
            cameras=[CameraConfig("cam", "rtsp://a"), CameraConfig("cam", "rtsp://b")]
        )
        with pytest.raises(ConfigError, match="Duplicate"):
            config.validate()

    def test_rejects_empty_uri(self):
        with pytest.raises(ConfigError):
            CameraConfig(camera_id="cam", uri="").validate()

    def test_rejects_unknown_detector_kind(self):
        with pytest.raises(ConfigError):
            DetectorConfig(kind="vehicle").validate()

    def test_rejects_threshold_out_of_range(self):
        with pytest.raises(ConfigError):
            DetectorConfig(confidence_threshold=1.5).validate()

    def test_rejects_unknown_tracker(self):
        with pytest.raises(ConfigError):
            TrackerConfig(type="deepsort").validate()


class TestLoadConfig:
    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "nope.yaml")

    def test_camera_mapping_form(self, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text(
            """
cameras:
  gate: rtsp://10.0.0.1/stream
  lobby: rtsp://10.0.0.2/stream
kafka:
  topic: plates
live:
  port: 9999
"""
        )
        config = load_config(path)
        assert [(c.camera_id, c.uri) for c in config.cameras] == [
            ("gate", "rtsp://10.0.0.1/stream"),
            ("lobby", "rtsp://10.0.0.2/stream"),
        ]
        assert config.kafka.topic == "plates"
        assert config.live.port == 9999
        assert len(config.detectors) == 2

    def test_list_form_and_detectors(self, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text(
            """
cameras:
  - camera_id: gate
    uri: rtsp://10.0.0.1/stream
    target_fps: 10
    unknown_key: ignored
detectors:
  - kind: face
    model_path: models/face.pt
    confidence_threshold: 0.55
tracker:
  type: fingerprint
"""
        )
        config = load_config(path)
        assert config.cameras[0].target_fps == 10
        assert config.thresholds() == {"face": 0.55}
        assert config.tracker.type == "fingerprint"

    def test_invalid_values_are_rejected(self, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text("cameras:\n  - camera_id: gate\n    uri: rtsp://x\n    target_fps: -1\n")
        with pytest.raises(ConfigError):
            load_config(path)


class TestEnvOverrides:
    def test_overrides_camera_and_bus(self):
        config = apply_env_overrides(
            default_config(),
            {
                "RTSP_CAM1": "rtsp://override/1",
                "RTSP_CAM3": "rtsp://cam3/1",
                "RTSP_TRANSPORT": "tcp",
                "KAFKA_BOOTSTRAP_SERVERS": "b1:9092,b2:9092",
                "KAFKA_TOPIC_DETECTIONS": "detections",
                "WEBSOCKET_PORT": "9001",
                "LOG_LEVEL": "DEBUG",
            },
        )
        cameras = {camera.camera_id: camera.uri for camera in config.cameras}
        assert cameras["cam1"] == "rtsp://override/1"
        assert cameras["cam3"] == "rtsp://cam3/1"
        assert "cam2" in cameras
        assert "transport" not in cameras
        assert config.kafka.bootstrap_servers == "b1:9092,b2:9092"
        assert config.kafka.topic == "detections"
        assert config.live.port == 9001
        assert config.log_level == "DEBUG"

    def test_detector_overrides(self):
        config = apply_env_overrides(
            default_config(),
            {
                "PLATE_MODEL_PATH": "/models/plates.pt",
                "FACE_CONFIDENCE": "0.8",
            },
        )
        plate, face = config.detectors
        assert plate.model_path == "/models/plates.pt"
        assert face.confidence_threshold == 0.8

    def test_bad_numeric_value(self):
        with pytest.raises(ConfigError, match="WEBSOCKET_PORT"):
            apply_env_overrides(default_config(), {"WEBSOCKET_PORT": "http"})

    def test_rtsp_variable_overrides_configured_camera_of_any_name(self):
        config = EngineConfig(cameras=[CameraConfig("gate", "rtsp://old")])
        apply_env_overrides(config, {"RTSP_GATE": "rtsp://new", "RTSP_LOBBY": "rtsp://lobby"})
        assert [(c.camera_id, c.uri) for c in config.cameras] == [("gate", "rtsp://new")]


class TestMalformedCameras:
    @pytest.mark.parametrize(
        "cameras_yaml",
        [
            "cameras:\n  - camera_id: gate\n",
            "cameras:\n  - rtsp://10.0.0.1/stream\n",
            "cameras:\n  cam1:\n",
            "cameras:\n  cam1: 554\n",
            "cameras:\n  - camera_id: gate\n    uri: rtsp://x\n    target_fps: fast\n",
            "cameras: [unclosed\n",
        ],
        ids=["missing-uri", "scalar-item", "null-uri", "numeric-uri", "string-number", "bad-yaml"],
    )
    def test_rejected_as_config_error(self, tmp_path, cameras_yaml):
        path = tmp_path / "engine.yaml"
        path.write_text(cameras_yaml)
        with pytest.raises(ConfigError):
            load_config(path)
