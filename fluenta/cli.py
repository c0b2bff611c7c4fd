"""
コマンドラインインターフェース
録音ファイルと参照テキストからセッションの評価レポートを作成する
"""
import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List

from fluenta.config import load_environment
from fluenta.errors import ConfigurationError, NoRecordingsError
from fluenta.logging_config import configure_logging
from fluenta.models.schemas import SessionAssessmentReport, UtteranceRecording
from fluenta.services.session_assessment_service import SessionAssessmentService
from fluenta.services.storage_service import LocalStorageService

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """コマンドライン引数の定義"""
    parser = argparse.ArgumentParser(
        description="Assess a speaking-practice session from recorded utterances."
    )
    parser.add_argument("audio", nargs="*", type=Path, help="録音ファイル（WAV）")
    parser.add_argument(
        "--texts", type=Path, required=True,
        help="参照テキストのファイル（録音ごとに1行）",
    )
    parser.add_argument("--session-id", help="保存時に使うセッションID")
    parser.add_argument("--save", action="store_true", help="レポートをローカルに保存する")
    parser.add_argument("--log-level", default=None, help="ログレベル（DEBUG, INFO, ...）")
    return parser


def load_recordings(audio_paths: List[Path], texts_path: Path) -> List[UtteranceRecording]:
    """
    録音ファイルと参照テキストを読み込む

    Raises:
        ValueError: 録音ファイルと参照テキストの数が一致しない場合
    """
    texts: List[str] = [
        line.strip() for line in texts_path.read_text(encoding="utf-8").splitlines() if line.strip()
    ]
    if len(texts) != len(audio_paths):
        raise ValueError(
            f"録音ファイル（{len(audio_paths)}件）と参照テキスト（{len(texts)}行）の数が一致しません"
        )
    return [
        UtteranceRecording(audio=path.read_bytes(), reference_text=text)
        for path, text in zip(audio_paths, texts)
    ]


async def run(args: argparse.Namespace) -> SessionAssessmentReport:
    """評価を実行"""
    recordings: List[UtteranceRecording] = load_recordings(args.audio, args.texts)
    service = SessionAssessmentService.from_environment()
    return await service.analyze_session_recordings(recordings)


def main(argv: List[str] | None = None) -> int:
    """アプリケーションの起動"""
    args = build_parser().parse_args(argv)

    load_environment()
    configure_logging(level=args.log_level)

    try:
        report = asyncio.run(run(args))
    except (ConfigurationError, NoRecordingsError, ValueError, OSError) as e:
        logger.error("%s", e)
        return 1

    print(json.dumps(report.to_dict(), ensure_ascii=False, indent=2))

    if args.save:
        filename = LocalStorageService().save_session_report(report, args.session_id)
        if filename is None:
            return 1
        logger.info("Saved report to %s", filename)
    return 0


if __name__ == "__main__":
    sys.exit(main())
