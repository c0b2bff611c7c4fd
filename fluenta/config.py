"""
アプリケーション設定
"""
import os
import sys
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from fluenta.errors import ConfigurationError


def get_app_data_dir() -> Path:
    """
    アプリケーションのデータディレクトリを取得

    Returns:
        アプリケーションデータディレクトリのパス
    """
    if sys.platform == "win32":
        # Windowsの場合、AppData\Local\Fluentaを使用
        app_data: str | None = os.getenv("LOCALAPPDATA")
        if app_data:
            return Path(app_data) / "Fluenta"
    elif sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "Fluenta"
    # その他のOSまたはフォールバック
    return Path.home() / ".fluenta"


def load_environment() -> bool:
    """
    .envファイルから環境変数を読み込む

    プロジェクトルートの.envを優先し、無ければカレントディレクトリから探す。
    既に設定されている環境変数は上書きしない。

    Returns:
        .envファイルを読み込めた場合True
    """
    env_path: Path = Path(__file__).parent.parent / ".env"
    if env_path.exists():
        return load_dotenv(env_path, override=False)
    return load_dotenv(override=False)


class AssessmentPolicy(BaseModel):
    """セッション評価の方針（録音の選択、テキストの切り詰めなど）"""

    max_recordings_per_session: int = Field(default=3, ge=1)  # 1セッションで評価する最大録音数
    selection_strategy: Literal["largest-first", "first"] = "largest-first"  # 録音の選択方法
    max_text_length: int = Field(default=1000, ge=1)  # 参照テキスト1件あたりの最大文字数
    min_text_length: int = Field(default=10, ge=0)  # 文法分析を行う最小文字数
    inter_request_delay: float = Field(default=0.1, ge=0)  # 発音評価の呼び出し間隔（秒）
    mispronunciation_threshold: float = Field(default=70, ge=0, le=100)  # 誤発音とみなすスコア（未満）


class LimiterSettings(BaseModel):
    """発音評価APIの同時実行制限の設定"""

    max_concurrent: int = Field(default=2, ge=1)  # 同時実行数の上限
    max_retries: int = Field(default=3, ge=0)  # レート制限時の最大リトライ回数
    backoff_base: float = Field(default=1.0, ge=0)  # バックオフの基本秒数
    backoff_jitter: float = Field(default=1.0, ge=0)  # バックオフに加えるランダム秒数の上限

    @classmethod
    def from_env(cls) -> "LimiterSettings":
        """
        環境変数から設定を作成

        Returns:
            FLUENTA_MAX_CONCURRENT_REQUESTS / FLUENTA_MAX_RETRIES を反映した設定

        Raises:
            ConfigurationError: 環境変数の値が整数でない、または範囲外の場合
        """
        values: dict[str, int] = {}
        for field, name in (
            ("max_concurrent", "FLUENTA_MAX_CONCURRENT_REQUESTS"),
            ("max_retries", "FLUENTA_MAX_RETRIES"),
        ):
            value: str | None = os.getenv(name)
            if not value:
                continue
            try:
                values[field] = int(value)
            except ValueError as e:
                raise ConfigurationError(f"{name}の値が不正です: {value!r}") from e
        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigurationError(f"同時実行制限の設定が不正です: {e}") from e


# アプリケーションデータディレクトリ
APP_DATA_DIR = get_app_data_dir()

# ログファイル
LOG_FILE = APP_DATA_DIR / "fluenta.log"

# Azure Speech Serviceの認識言語
SPEECH_RECOGNITION_LANGUAGE = os.getenv("FLUENTA_SPEECH_LANGUAGE", "en-US")
