"""
OpenAI APIサービス
"""

import asyncio
import json
import logging
import os
from typing import Any, Dict, List

from openai import OpenAI

from fluenta.errors import ProviderError
from fluenta.models.schemas import GrammarFinding, TextAnalysis

logger = logging.getLogger(__name__)

# スコアが返されなかった場合の中立的な値
NEUTRAL_SCORE = 5

GRAMMAR_SYSTEM_PROMPT = """You are a language assessment expert specializing in English grammar and linguistic accuracy analysis.
Analyze the provided speech transcription for grammar errors and linguistic accuracy.

By linguistic accuracy, we mean how correctly the speaker uses English vocabulary and grammar structures to convey meaning accurately.

Return a JSON object with the following structure:
{
  "grammarIssues": [
    {
      "text": "The incorrect text",
      "issue": "Brief description of the grammatical issue",
      "correction": "The corrected text",
      "explanation": "A brief explanation of the grammar rule"
    }
  ],
  "grammarScore": (a number from 1-10 rating the overall grammatical correctness, where 10 is perfect grammar),
  "accuracyScore": (a number from 1-10 rating the linguistic accuracy, where 10 is perfectly accurate language use)
}

If there are no grammar issues, return an empty array for grammarIssues and scores based on the quality of the grammar and accuracy.
Focus on grammar rules, sentence structure, and appropriate word usage."""


def coerce_score(value: Any) -> float:
    """
    モデルが返したスコアを1〜10の数値に変換

    Args:
        value: モデルが返した値（数値、数値文字列、欠損など）

    Returns:
        1〜10に収めたスコア（解釈できない場合は中立値の5）
    """
    if isinstance(value, bool):
        return NEUTRAL_SCORE
    try:
        score = float(value)
    except (TypeError, ValueError):
        return NEUTRAL_SCORE
    if score != score or score <= 0:  # NaNまたは0以下
        return NEUTRAL_SCORE
    return min(max(score, 1), 10)


def coerce_grammar_issues(raw_issues: Any) -> List[GrammarFinding]:
    """
    モデルが返した文法の誤りのリストを整形

    Args:
        raw_issues: モデルが返したgrammarIssues

    Returns:
        GrammarFindingのリスト（オブジェクトでない要素は除外）
    """
    if not isinstance(raw_issues, list):
        return []
    findings: List[GrammarFinding] = []
    for item in raw_issues:
        if not isinstance(item, dict):
            continue
        findings.append(GrammarFinding(
            text=str(item.get("text") or ""),
            issue=str(item.get("issue") or ""),
            correction=str(item.get("correction") or ""),
            explanation=str(item.get("explanation") or ""),
        ))
    return findings


class OpenAIService:
    """OpenAI APIを使用するサービスクラス"""

    def __init__(self) -> None:
        """
        初期化処理
        環境変数からAPIキーを取得し、OpenAIクライアントを初期化する
        """
        # OPENAI_API_KEYまたはOPENAI_APIのどちらかをサポート
        api_key: str | None = os.getenv("OPENAI_API_KEY") or os.getenv("OPENAI_API")
        if not api_key:
            raise ValueError(
                "OPENAI_API_KEYまたはOPENAI_API環境変数が設定されていません"
            )
        self.client: OpenAI = OpenAI(api_key=api_key, timeout=30.0, max_retries=2)
        self.model: str = os.getenv("OPENAI_MODEL", "gpt-4o")

    async def analyze_text(self, combined_text: str) -> TextAnalysis:
        """
        発話の書き起こしから文法の誤りと言語的な正確性を分析

        Args:
            combined_text: 分析するテキスト（複数の発話を改行で連結したもの）

        Returns:
            文法の誤りのリストと、文法・正確性のスコア（1〜10）

        Raises:
            ProviderError: レスポンスが空、またはJSONとして解析できない場合
        """
        logger.info("Analyzing grammar and linguistic accuracy with OpenAI...")
        response = await asyncio.to_thread(
            self.client.chat.completions.create,
            model=self.model,
            messages=[
                {"role": "system", "content": GRAMMAR_SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": (
                        "Here is the transcribed speech to analyze for grammar issues "
                        f"and linguistic accuracy:\n\n{combined_text}"
                    ),
                },
            ],
            temperature=0.3,
            response_format={"type": "json_object"},  # JSON形式で返すことを強制
        )
        content: str | None = response.choices[0].message.content
        if not content:
            raise ProviderError("レスポンスが空")

        try:
            analysis: Dict[str, Any] = json.loads(content)
        except json.JSONDecodeError as e:
            raise ProviderError(f"JSON解析エラー: {e}") from e
        if not isinstance(analysis, dict):
            raise ProviderError("JSON解析エラー: オブジェクトではありません")

        result = TextAnalysis(
            grammar_issues=coerce_grammar_issues(analysis.get("grammarIssues")),
            grammar_score=coerce_score(analysis.get("grammarScore")),
            accuracy_score=coerce_score(analysis.get("accuracyScore")),
        )
        logger.info(
            "Analysis complete. Found %d issues. Grammar score: %s, Accuracy score: %s",
            len(result.grammar_issues), result.grammar_score, result.accuracy_score,
        )
        return result
