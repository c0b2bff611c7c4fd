"""
データモデル（スキーマ定義）
"""

import base64
import binascii
from typing import Any, List

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class UtteranceRecording(BaseModel):
    """1回分の発話の録音と、その発話で話すべきだったテキスト"""

    audio: bytes  # 音声データ（バイト列）
    reference_text: str  # 参照テキスト


class PhonemeScore(BaseModel):
    """音素ごとの発音スコア"""

    phoneme: str
    score: float = Field(ge=0, le=100)


class WordAssessment(BaseModel):
    """単語ごとの発音評価"""

    word: str
    pronunciation_score: float = Field(ge=0, le=100)
    offset_ms: int = Field(default=0, ge=0)  # 音声の先頭からの位置（ミリ秒）
    duration_ms: int = Field(default=0, ge=0)  # 単語の長さ（ミリ秒）
    phonemes: List[PhonemeScore] | None = None


class UtteranceAssessment(BaseModel):
    """1件の録音に対する発音評価の結果（0〜100のスコア）"""

    pronunciation_score: float = Field(ge=0, le=100)  # 発音スコア
    fluency_score: float = Field(ge=0, le=100)  # 流暢さスコア
    completeness_score: float = Field(ge=0, le=100)  # 完全性スコア
    prosody_score: float | None = Field(default=None, ge=0, le=100)  # 韻律スコア
    speaking_rate: int | None = Field(default=None, ge=0)  # 話速（WPM）
    word_level_assessment: List[WordAssessment] | None = None  # 単語ごとの評価

    @classmethod
    def placeholder(cls) -> "UtteranceAssessment":
        """評価に失敗した録音の代わりに使う中立的なスコア"""
        return cls(pronunciation_score=50, fluency_score=50, completeness_score=50)


class GrammarFinding(BaseModel):
    """文法の誤り1件"""

    text: str = ""  # 誤りのある箇所
    issue: str = ""  # 誤りの種類
    correction: str = ""  # 訂正例
    explanation: str = ""  # 解説


class TextAnalysis(BaseModel):
    """文法・正確性の分析結果（1〜10のスコア）"""

    grammar_issues: List[GrammarFinding] = Field(default_factory=list)
    grammar_score: float = Field(ge=0, le=10)
    accuracy_score: float = Field(ge=0, le=10)


class Mispronunciation(WordAssessment):
    """発音スコアがしきい値未満だった単語"""


class DegradedField(BaseModel):
    """外部サービスの失敗により代替値で埋められた項目"""

    field: str
    reason: str


class SessionAssessmentReport(BaseModel):
    """セッション全体の評価結果（スコアは1〜10）"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    fluency_score: int
    pronunciation_score: int
    completeness_score: int
    accuracy_score: int
    grammar_score: int
    prosody_score: int | None = None
    speaking_rate: int | None = None  # WPM（正規化しない）
    overall_score: int
    strengths: List[str]
    areas_for_improvement: List[str]
    suggestions: str
    grammar_issues: List[GrammarFinding] = Field(default_factory=list)
    mispronunciations: List[Mispronunciation] | None = None
    degraded: List[DegradedField] = Field(default_factory=list)
    recordings_analyzed: int = 0

    def to_dict(self) -> dict[str, Any]:
        """
        JSONとして返すための辞書に変換

        Returns:
            キーをキャメルケースにした辞書（値がNoneの項目は含めない）
        """
        return self.model_dump(by_alias=True, exclude_none=True)


class SessionAnalysisRequest(BaseModel):
    """音声分析リクエスト（Base64エンコードされた音声と参照テキスト）"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    audio_buffers: List[str]  # Base64文字列またはデータURL
    reference_texts: List[str]

    @model_validator(mode="after")
    def check_lengths(self) -> "SessionAnalysisRequest":
        """音声と参照テキストの数が一致していることを確認"""
        if not self.audio_buffers:
            raise ValueError("Missing or invalid audio buffers")
        if len(self.reference_texts) != len(self.audio_buffers):
            raise ValueError("Missing or invalid reference texts")
        return self

    def to_recordings(self) -> List[UtteranceRecording]:
        """
        Base64をデコードして録音のリストに変換

        Returns:
            UtteranceRecordingのリスト

        Raises:
            ValueError: Base64として解釈できない音声が含まれている場合
        """
        recordings: List[UtteranceRecording] = []
        for index, (encoded, text) in enumerate(zip(self.audio_buffers, self.reference_texts)):
            # "data:audio/wav;base64,...." 形式の場合はヘッダーを取り除く
            payload: str = encoded.split(",", 1)[1] if "," in encoded else encoded
            # 改行などで折り返されたBase64も受け付ける
            payload = "".join(payload.split())
            try:
                audio: bytes = base64.b64decode(payload, validate=True)
            except (binascii.Error, ValueError) as e:
                raise ValueError(f"Invalid audio buffer at index {index}: {e}") from e
            recordings.append(UtteranceRecording(audio=audio, reference_text=text))
        return recordings
