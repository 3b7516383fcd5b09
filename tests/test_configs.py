from mp4flv.configs import Settings
from mp4flv.remuxer.mp4_boxes import BoxRegistry


def test_defaults(monkeypatch):
    for name in ("LOG_LEVEL", "LARGE_BOX_THRESHOLD", "STRICT_SAMPLE_TABLES"):
        monkeypatch.delenv(name, raising=False)
    settings = Settings(_env_file=None)
    assert settings.log_level == "INFO"
    assert settings.large_box_threshold == 10 * 1024 * 1024
    assert settings.strict_sample_tables is False


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("LARGE_BOX_THRESHOLD", "4096")
    monkeypatch.setenv("STRICT_SAMPLE_TABLES", "true")
    settings = Settings(_env_file=None)
    assert settings.large_box_threshold == 4096
    assert settings.strict_sample_tables is True


def test_registry_threshold_override():
    assert BoxRegistry(large_box_threshold=1).large_box_threshold == 1
