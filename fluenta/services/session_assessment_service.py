"""
セッション評価サービス
1セッション分の録音を発音評価（Azure）と文法分析（OpenAI）にかけ、
1つの評価レポートにまとめる
"""
import asyncio
import logging
from typing import Awaitable, Callable, List, Protocol, Sequence, Tuple

from fluenta.config import AssessmentPolicy
from fluenta.errors import NoRecordingsError
from fluenta.models.schemas import (
    DegradedField,
    SessionAnalysisRequest,
    SessionAssessmentReport,
    TextAnalysis,
    UtteranceAssessment,
    UtteranceRecording,
)
from fluenta.services import scoring
from fluenta.services.azure_service import AzurePronunciationService
from fluenta.services.openai_service import NEUTRAL_SCORE, OpenAIService

logger = logging.getLogger(__name__)


class SpeechScorer(Protocol):
    """発音評価サービスのインターフェース"""

    async def assess_pronunciation(self, audio_data: bytes, reference_text: str) -> UtteranceAssessment:
        ...


class TextAnalyzer(Protocol):
    """文法・正確性分析サービスのインターフェース"""

    async def analyze_text(self, combined_text: str) -> TextAnalysis:
        ...


def select_recordings(
    recordings: Sequence[UtteranceRecording],
    policy: AssessmentPolicy,
) -> List[UtteranceRecording]:
    """
    処理時間を抑えるため、評価する録音を上限数まで絞り込む

    largest-firstの場合は音声データの大きい順（発話量が多いと見なす）に選ぶ。
    上限以下の場合は入力順のまま全件を返す。

    Args:
        recordings: 録音のリスト
        policy: 評価方針

    Returns:
        評価する録音のリスト（呼び出し元のリストは変更しない）
    """
    limit: int = policy.max_recordings_per_session
    if len(recordings) <= limit:
        return list(recordings)

    logger.info("Limiting analysis to %d recordings (%s)", limit, policy.selection_strategy)
    if policy.selection_strategy == "largest-first":
        return sorted(recordings, key=lambda r: len(r.audio), reverse=True)[:limit]
    return list(recordings[:limit])


def combine_reference_texts(
    recordings: Sequence[UtteranceRecording],
    max_text_length: int,
) -> str:
    """参照テキストをそれぞれ最大文字数で切り詰めて改行で連結"""
    texts: List[str] = []
    for recording in recordings:
        text: str = recording.reference_text or ""
        if len(text) > max_text_length:
            logger.debug("Trimming text from %d to %d characters", len(text), max_text_length)
            text = text[:max_text_length]
        texts.append(text)
    return "\n".join(texts)


class SessionAssessmentService:
    """セッション全体の評価を統合的に実行するサービスクラス"""

    def __init__(
        self,
        speech_service: SpeechScorer | None = None,
        text_service: TextAnalyzer | None = None,
        policy: AssessmentPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        初期化処理

        Args:
            speech_service: 発音評価サービス（Noneの場合は未設定として扱う）
            text_service: 文法分析サービス（Noneの場合は未設定として扱う）
            policy: 評価方針（省略時はデフォルト）
            sleep: 発音評価の呼び出し間隔の待機に使う関数
        """
        self.speech_service: SpeechScorer | None = speech_service
        self.text_service: TextAnalyzer | None = text_service
        self.policy: AssessmentPolicy = policy or AssessmentPolicy()
        self._sleep = sleep

    @classmethod
    def from_environment(cls, policy: AssessmentPolicy | None = None) -> "SessionAssessmentService":
        """
        環境変数の設定からAzureとOpenAIのサービスを作成
        環境変数が設定されていないサービスはNoneになる
        """
        speech_service: AzurePronunciationService | None
        try:
            speech_service = AzurePronunciationService()
        except ValueError as e:
            logger.warning("発音評価機能は使用できません: %s", e)
            speech_service = None

        text_service: OpenAIService | None
        try:
            text_service = OpenAIService()
        except ValueError as e:
            logger.warning("文法分析機能は使用できません: %s", e)
            text_service = None

        return cls(speech_service=speech_service, text_service=text_service, policy=policy)

    async def analyze_request(self, request: SessionAnalysisRequest) -> SessionAssessmentReport:
        """Base64形式のリクエストをデコードしてセッション評価を実行"""
        return await self.analyze_session_recordings(request.to_recordings())

    async def analyze_session_recordings(
        self,
        recordings: Sequence[UtteranceRecording],
    ) -> SessionAssessmentReport:
        """
        セッションの録音をまとめて評価

        Args:
            recordings: 録音と参照テキストのリスト

        Returns:
            セッションの評価レポート

        Raises:
            NoRecordingsError: 録音が1件も無い場合
        """
        if not recordings:
            raise NoRecordingsError()

        selected: List[UtteranceRecording] = select_recordings(recordings, self.policy)
        logger.info("Processing %d audio recordings sequentially", len(selected))

        degraded: List[DegradedField] = []
        assessments: List[UtteranceAssessment] = await self._score_recordings(selected, degraded)
        text_analysis: TextAnalysis = await self._analyze_text(selected, degraded)

        scores: scoring.AggregatedScores = scoring.aggregate_assessments(assessments)
        mispronunciations = scoring.extract_mispronunciations(
            assessments, self.policy.mispronunciation_threshold
        )

        overall_score: int = scoring.calculate_overall_score(
            pronunciation=scores.pronunciation_score,
            fluency=scores.fluency_score,
            accuracy=text_analysis.accuracy_score,
            grammar=text_analysis.grammar_score,
            prosody=scores.prosody_score,
        )
        strengths, areas = scoring.derive_feedback(
            scores, text_analysis.accuracy_score, text_analysis.grammar_score
        )

        return SessionAssessmentReport(
            fluency_score=scores.fluency_score,
            pronunciation_score=scores.pronunciation_score,
            completeness_score=scores.completeness_score,
            accuracy_score=scoring.round_half_up(text_analysis.accuracy_score),
            grammar_score=scoring.round_half_up(text_analysis.grammar_score),
            prosody_score=scores.prosody_score,
            speaking_rate=scores.speaking_rate,
            overall_score=overall_score,
            strengths=strengths,
            areas_for_improvement=areas,
            suggestions=scoring.build_suggestions(areas, mispronunciations, scores.speaking_rate),
            grammar_issues=text_analysis.grammar_issues,
            mispronunciations=mispronunciations or None,
            degraded=degraded,
            recordings_analyzed=len(selected),
        )

    async def _score_recordings(
        self,
        recordings: Sequence[UtteranceRecording],
        degraded: List[DegradedField],
    ) -> List[UtteranceAssessment]:
        """録音を1件ずつ順番に発音評価する（失敗した録音は中立スコアで代替）"""
        assessments: List[UtteranceAssessment] = []
        for index, recording in enumerate(recordings):
            if self.speech_service is None:
                assessments.append(UtteranceAssessment.placeholder())
                degraded.append(DegradedField(
                    field=f"recordings[{index}]", reason="speech scoring not configured"
                ))
                continue

            logger.info("Processing recording %d/%d", index + 1, len(recordings))
            try:
                assessments.append(await self.speech_service.assess_pronunciation(
                    recording.audio, recording.reference_text
                ))
            except Exception as e:
                logger.error("Error processing recording %d: %s", index + 1, e, exc_info=True)
                assessments.append(UtteranceAssessment.placeholder())
                degraded.append(DegradedField(field=f"recordings[{index}]", reason=str(e) or type(e).__name__))

            # 連続した呼び出しでAPIに負荷をかけないように間隔を空ける
            if index < len(recordings) - 1:
                await self._sleep(self.policy.inter_request_delay)

        return assessments

    async def _analyze_text(
        self,
        recordings: Sequence[UtteranceRecording],
        degraded: List[DegradedField],
    ) -> TextAnalysis:
        """参照テキストをまとめて文法・正確性を分析する"""
        if self.text_service is None:
            logger.warning("OpenAI API key not configured, skipping grammar analysis")
            degraded.extend(_degraded_text_fields("grammar analysis not configured"))
            return TextAnalysis(grammar_score=0, accuracy_score=0)

        combined_text: str = combine_reference_texts(recordings, self.policy.max_text_length)
        if len(combined_text.strip()) < self.policy.min_text_length:
            logger.info("Text too short for grammar analysis")
            return TextAnalysis(
                grammar_score=NEUTRAL_SCORE,
                accuracy_score=NEUTRAL_SCORE,
            )

        try:
            return await self.text_service.analyze_text(combined_text)
        except Exception as e:
            logger.error("Error analyzing grammar and accuracy: %s", e, exc_info=True)
            degraded.extend(_degraded_text_fields(str(e) or type(e).__name__))
            return TextAnalysis(grammar_score=0, accuracy_score=0)


def _degraded_text_fields(reason: str) -> Tuple[DegradedField, DegradedField]:
    return (
        DegradedField(field="grammarScore", reason=reason),
        DegradedField(field="accuracyScore", reason=reason),
    )
