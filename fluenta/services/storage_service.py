"""
ローカルストレージサービス
セッションの評価レポートをローカルファイルに保存する
"""
import json
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List

from fluenta.config import APP_DATA_DIR
from fluenta.models.schemas import SessionAssessmentReport

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9_-]")


class LocalStorageService:
    """ローカルファイルに評価レポートを保存・読み込むサービスクラス"""

    def __init__(self, data_dir: Path | None = None) -> None:
        """
        初期化処理
        データ保存ディレクトリを作成する

        Args:
            data_dir: 保存先ディレクトリ（省略時はアプリケーションデータディレクトリ配下）
        """
        self.data_dir: Path = data_dir or APP_DATA_DIR / "reports"
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def save_session_report(
        self,
        report: SessionAssessmentReport,
        session_id: str | None = None,
    ) -> str | None:
        """
        評価レポートをJSONファイルに保存

        Args:
            report: 保存するレポート
            session_id: セッションID（ファイル名に使用）

        Returns:
            保存したファイル名、失敗時はNone
        """
        timestamp: str = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        if session_id:
            filename = f"report_{_UNSAFE_FILENAME_CHARS.sub('_', session_id)}_{timestamp}.json"
        else:
            filename = f"report_{timestamp}.json"

        data: Dict[str, Any] = {
            "session_id": session_id,
            "created_at": datetime.now().isoformat(),
            "report": report.to_dict(),
        }
        try:
            with open(self.data_dir / filename, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
        except OSError as e:
            logger.error("評価レポートの保存に失敗しました: %s", e)
            return None
        return filename

    def list_session_reports(self) -> List[Dict[str, Any]]:
        """
        保存済みレポートの一覧を取得

        Returns:
            ファイル名、パス、更新日時、サイズを含む辞書のリスト（新しい順）
        """
        history: List[Dict[str, Any]] = []
        for file_path in self.data_dir.glob("report_*.json"):
            try:
                stat = file_path.stat()
            except OSError as e:
                logger.warning("ファイルの読み込みに失敗しました %s: %s", file_path, e)
                continue
            history.append({
                "filename": file_path.name,
                "path": str(file_path),
                "modified": datetime.fromtimestamp(stat.st_mtime).isoformat(),
                "size": stat.st_size,
            })

        # 更新日時でソート（新しい順）
        history.sort(key=lambda x: (x["modified"], x["filename"]), reverse=True)
        return history

    def load_session_report(self, filename: str) -> Dict[str, Any] | None:
        """
        保存済みレポートを読み込む

        Args:
            filename: ファイル名

        Returns:
            保存したデータ（辞書形式）、存在しない・読み込み失敗時はNone
        """
        file_path: Path = self.data_dir / Path(filename).name
        if not file_path.exists():
            return None
        try:
            with open(file_path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error("評価レポートの読み込みに失敗しました: %s", e)
            return None
