"""
Smoke tests for configuration loading and validation.
"""

import pytest

from main import load_config, validate_config
from models.config import Config, DetectionConfig, RecoveryConfig


class TestValidateConfig:
    """Tests for validate_config function."""

    def test_valid_config_passes(self, valid_config):
        is_valid, error = validate_config(valid_config)

        assert is_valid is True
        assert error is None

    @pytest.mark.parametrize("section", ["detection", "storage", "log_path", "log_level"])
    def test_missing_required_section(self, valid_config, section):
        del valid_config[section]

        is_valid, error = validate_config(valid_config)

        assert is_valid is False
        assert section in error

    def test_camera_and_recovery_are_optional(self, valid_config):
        del valid_config["camera"]
        del valid_config["recovery"]

        assert validate_config(valid_config) == (True, None)

    def test_missing_model_path(self, valid_config):
        del valid_config["detection"]["model_path"]

        is_valid, error = validate_config(valid_config)

        assert is_valid is False
        assert "model_path" in error

    @pytest.mark.parametrize("value", [-0.1, 1.5, "high", True])
    def test_invalid_conf_threshold(self, valid_config, value):
        valid_config["detection"]["conf_threshold"] = value

        is_valid, error = validate_config(valid_config)

        assert is_valid is False
        assert "conf_threshold" in error

    @pytest.mark.parametrize("value", [0, 0.0, 1.1])
    def test_invalid_iou_threshold(self, valid_config, value):
        valid_config["detection"]["iou_threshold"] = value

        is_valid, error = validate_config(valid_config)

        assert is_valid is False
        assert "iou_threshold" in error

    def test_invalid_timeout(self, valid_config):
        valid_config["detection"]["batch_timeout_s"] = 0

        is_valid, error = validate_config(valid_config)

        assert is_valid is False
        assert "batch_timeout_s" in error

    def test_memory_ratios_must_be_ordered(self, valid_config):
        valid_config["recovery"]["high_memory_ratio"] = 0.95
        valid_config["recovery"]["critical_memory_ratio"] = 0.9

        is_valid, error = validate_config(valid_config)

        assert is_valid is False
        assert "memory_ratio" in error

    def test_negative_camera_index(self, valid_config):
        valid_config["camera"]["device_id"] = -1

        is_valid, error = validate_config(valid_config)

        assert is_valid is False
        assert "device_id" in error

    def test_invalid_log_level(self, valid_config):
        valid_config["log_level"] = "VERBOSE"

        is_valid, error = validate_config(valid_config)

        assert is_valid is False
        assert "log_level" in error


class TestLoadConfig:
    """Tests for layered config loading."""

    def test_loads_default(self, temp_config_dir):
        config = load_config(str(temp_config_dir / "config.yaml"))

        assert config["detection"]["conf_threshold"] == 0.25
        assert config["log_level"] == "INFO"

    def test_local_overrides(self, temp_config_dir):
        (temp_config_dir / "config.yaml").write_text("""
detection:
  conf_threshold: 0.5
log_level: "DEBUG"
""")

        config = load_config(str(temp_config_dir / "config.yaml"))

        assert config["detection"]["conf_threshold"] == 0.5
        assert config["detection"]["iou_threshold"] == 0.4
        assert config["log_level"] == "DEBUG"

    def test_explicit_config_applied_last(self, temp_config_dir):
        (temp_config_dir / "config.yaml").write_text("detection:\n  conf_threshold: 0.5\n")
        explicit = temp_config_dir / "device.yaml"
        explicit.write_text("detection:\n  conf_threshold: 0.7\n")

        config = load_config(str(explicit))

        assert config["detection"]["conf_threshold"] == 0.7
        assert config["storage"]["local_database_path"] == "data/test.sqlite"

    def test_invalid_yaml_exits(self, temp_config_dir):
        (temp_config_dir / "config.yaml").write_text("detection: [unclosed\n")

        with pytest.raises(SystemExit):
            load_config(str(temp_config_dir / "config.yaml"))


class TestTypedConfig:
    """Tests for the dataclass views."""

    def test_defaults(self):
        config = Config()

        assert config.detection.conf_threshold == 0.25
        assert config.detection.iou_threshold == 0.4
        assert config.detection.max_consecutive_oom_errors == 3
        assert config.recovery.max_crashes_per_session == 3
        assert config.recovery.crash_reset_interval_s == 24 * 60 * 60

    def test_from_dict(self, valid_config):
        config = Config.from_dict(valid_config)

        assert config.detection.num_threads == 2
        assert config.storage.local_database_path == "data/test.sqlite"
        assert config.camera.device_id == 0
        assert config.log_path == "logs/test.log"

    def test_round_trip(self, valid_config):
        config = Config.from_dict(valid_config)

        assert Config.from_dict(config.to_dict()) == config

    def test_partial_sections_use_defaults(self):
        detection = DetectionConfig.from_dict({"conf_threshold": "0.3"})
        recovery = RecoveryConfig.from_dict({})

        assert detection.conf_threshold == 0.3
        assert detection.model_path == "assets/model.onnx"
        assert recovery.memory_check_interval_ms == 1000
