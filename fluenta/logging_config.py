"""
ログ設定
"""
import logging
import os
from pathlib import Path

from fluenta.config import LOG_FILE

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_configured: bool = False


def configure_logging(
    level: str | None = None,
    log_file: Path | None = LOG_FILE,
    console: bool = True,
    force: bool = False,
) -> None:
    """
    アプリケーション全体のログ設定を行う

    Args:
        level: ログレベル（省略時はFLUENTA_LOG_LEVEL環境変数、無ければINFO）
        log_file: ログファイルのパス（Noneの場合はファイルに出力しない）
        console: コンソールに出力するかどうか
        force: 設定済みでも再設定するかどうか
    """
    global _configured
    if _configured and not force:
        return

    level_name: str = (level or os.getenv("FLUENTA_LOG_LEVEL", "INFO")).upper()
    handlers: list[logging.Handler] = []

    if console:
        handlers.append(logging.StreamHandler())

    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
        except OSError as e:
            # ログファイルが作れなくてもコンソール出力は続ける
            print(f"ログファイルを作成できませんでした: {e}")

    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
    _configured = True
