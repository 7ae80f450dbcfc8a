"""配置加载测试 -- 环境变量覆盖与非法值回退"""

from rentfinder.core import config


class TestConfig:
    """环境变量配置"""

    def test_defaults(self, monkeypatch):
        for name in (
            "RENTFINDER_DISPATCH_BATCH_SIZE",
            "RENTFINDER_CLAIM_TIMEOUT_S",
            "RENTFINDER_SCHEDULER_ENABLED",
        ):
            monkeypatch.delenv(name, raising=False)

        assert config.get_dispatch_batch_size() == 20
        assert config.get_claim_timeout_s() == 600
        assert config.get_scheduler_enabled() is False

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("RENTFINDER_DISPATCH_BATCH_SIZE", "50")
        monkeypatch.setenv("RENTFINDER_SCHEDULER_ENABLED", "TRUE")
        monkeypatch.setenv("RENTFINDER_CALL_TIMEOUT_S", "45.5")

        assert config.get_dispatch_batch_size() == 50
        assert config.get_scheduler_enabled() is True
        assert config.get_channel_timeout_s("call") == 45.5

    def test_invalid_values_fall_back(self, monkeypatch):
        monkeypatch.setenv("RENTFINDER_DISPATCH_CONCURRENCY", "many")
        monkeypatch.setenv("RENTFINDER_SMS_TIMEOUT_S", "soon")

        assert config.get_dispatch_concurrency() == 5
        assert config.get_channel_timeout_s("sms") == 10.0

    def test_db_path_from_data_dir(self, monkeypatch, tmp_path):
        monkeypatch.delenv("RENTFINDER_DB_PATH", raising=False)
        monkeypatch.setenv("RENTFINDER_DATA_DIR", str(tmp_path))

        assert config.get_db_path() == str(tmp_path / "sqlite" / "rentfinder.db")

    def test_logging_settings(self, monkeypatch):
        monkeypatch.delenv("RENTFINDER_LOG_FORMAT", raising=False)
        monkeypatch.setenv("RENTFINDER_LOG_LEVEL", "debug")
        monkeypatch.setenv("LOGFIRE_SEND_TO_LOGFIRE", "True")

        assert config.get_log_format() == "dev"
        assert config.get_log_level() == "DEBUG"
        assert config.get_logfire_enabled() is True
