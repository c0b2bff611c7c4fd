"""
設定とログ設定のテスト
"""
import logging
import os

import pytest
from pydantic import ValidationError
from unittest.mock import patch

from fluenta import logging_config
from fluenta.config import AssessmentPolicy, LimiterSettings, get_app_data_dir
from fluenta.errors import ConfigurationError
from fluenta.services import request_limiter


class TestConfig:
    """設定のテストクラス"""

    def test_default_policy(self):
        """評価方針のデフォルト値"""
        policy = AssessmentPolicy()

        assert policy.max_recordings_per_session == 3
        assert policy.selection_strategy == "largest-first"
        assert policy.max_text_length == 1000
        assert policy.min_text_length == 10
        assert policy.inter_request_delay == 0.1
        assert policy.mispronunciation_threshold == 70

    def test_invalid_strategy(self):
        """未知の選択方法はエラー"""
        with pytest.raises(ValidationError):
            AssessmentPolicy(selection_strategy="random")

    @patch.dict(os.environ, {}, clear=True)
    def test_limiter_settings_defaults(self):
        """同時実行制限のデフォルト値"""
        settings = LimiterSettings.from_env()

        assert settings.max_concurrent == 2
        assert settings.max_retries == 3

    @patch.dict(os.environ, {"FLUENTA_MAX_CONCURRENT_REQUESTS": "5", "FLUENTA_MAX_RETRIES": "1"})
    def test_limiter_settings_from_env(self):
        """環境変数から同時実行制限を設定"""
        settings = LimiterSettings.from_env()

        assert settings.max_concurrent == 5
        assert settings.max_retries == 1

    @patch.dict(os.environ, {"FLUENTA_MAX_CONCURRENT_REQUESTS": "two"})
    def test_limiter_settings_not_a_number(self):
        """整数でない値は設定エラー"""
        with pytest.raises(ConfigurationError, match="FLUENTA_MAX_CONCURRENT_REQUESTS"):
            LimiterSettings.from_env()

    @patch.dict(os.environ, {"FLUENTA_MAX_CONCURRENT_REQUESTS": "0"})
    def test_limiter_settings_out_of_range(self):
        """範囲外の値は設定エラー"""
        with pytest.raises(ConfigurationError):
            LimiterSettings.from_env()

    @patch("fluenta.config.sys.platform", "linux")
    def test_app_data_dir_fallback(self):
        """その他のOSではホームディレクトリ配下"""
        assert get_app_data_dir().name == ".fluenta"

    def test_shared_limiter_is_reused(self):
        """プロセス共有のリミッターは1つだけ作られる"""
        with patch.object(request_limiter, "_shared_limiter", None):
            first = request_limiter.get_shared_limiter()
            second = request_limiter.get_shared_limiter()

        assert first is second


class TestLoggingConfig:
    """ログ設定のテストクラス"""

    @pytest.fixture(autouse=True)
    def restore_logging(self):
        """テスト後にルートロガーの設定を戻す"""
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        with patch.object(logging_config, "_configured", False):
            yield
        for handler in root.handlers:
            if handler not in handlers:
                handler.close()
        root.handlers[:] = handlers
        root.setLevel(level)

    def test_configure_logging_writes_file(self, tmp_path):
        """ログファイルに出力する"""
        log_file = tmp_path / "logs" / "fluenta.log"

        logging_config.configure_logging(level="debug", log_file=log_file, console=False)
        logging.getLogger("fluenta.test").debug("hello log")
        for handler in logging.getLogger().handlers:
            handler.flush()

        assert logging.getLogger().level == logging.DEBUG
        assert "hello log" in log_file.read_text(encoding="utf-8")

    @patch.dict(os.environ, {"FLUENTA_LOG_LEVEL": "WARNING"})
    def test_level_from_env(self):
        """FLUENTA_LOG_LEVEL環境変数"""
        logging_config.configure_logging(log_file=None, console=True)

        assert logging.getLogger().level == logging.WARNING

    def test_configure_only_once(self, tmp_path):
        """2回目以降は何もしない（forceを除く）"""
        logging_config.configure_logging(level="INFO", log_file=None)
        logging_config.configure_logging(level="DEBUG", log_file=None)

        assert logging.getLogger().level == logging.INFO
