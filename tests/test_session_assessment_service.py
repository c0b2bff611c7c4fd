"""
SessionAssessmentServiceのテスト
"""
import base64

import pytest
from unittest.mock import AsyncMock, Mock, patch

from fluenta.config import AssessmentPolicy
from fluenta.errors import ConfigurationError, NoRecordingsError, ProviderError, ProviderRateLimitError
from fluenta.models.schemas import (
    GrammarFinding,
    SessionAnalysisRequest,
    SessionAssessmentReport,
    TextAnalysis,
    UtteranceAssessment,
    UtteranceRecording,
    WordAssessment,
)
from fluenta.services.session_assessment_service import (
    SessionAssessmentService,
    combine_reference_texts,
    select_recordings,
)


def _recording(size: int, text: str = "I went to the market yesterday.") -> UtteranceRecording:
    return UtteranceRecording(audio=b"\x01" * size, reference_text=text)


def _assessment(pronunciation=90, fluency=85, completeness=95, **kwargs) -> UtteranceAssessment:
    return UtteranceAssessment(
        pronunciation_score=pronunciation,
        fluency_score=fluency,
        completeness_score=completeness,
        **kwargs,
    )


class TestSelectRecordings:
    """録音の選択のテストクラス"""

    def test_keeps_all_when_within_limit(self):
        """上限以下の場合は入力順のまま全件"""
        recordings = [_recording(10), _recording(30), _recording(20)]

        assert select_recordings(recordings, AssessmentPolicy()) == recordings

    def test_largest_first(self):
        """上限を超える場合は大きい順に3件"""
        recordings = [_recording(size) for size in (10, 50, 20, 40, 30)]

        selected = select_recordings(recordings, AssessmentPolicy())

        assert [len(r.audio) for r in selected] == [50, 40, 30]
        # 呼び出し元のリストは変更しない
        assert [len(r.audio) for r in recordings] == [10, 50, 20, 40, 30]

    def test_first_strategy(self):
        """firstの場合は先頭から"""
        recordings = [_recording(size) for size in (10, 50, 20, 40)]
        policy = AssessmentPolicy(selection_strategy="first", max_recordings_per_session=2)

        selected = select_recordings(recordings, policy)

        assert [len(r.audio) for r in selected] == [10, 50]

    def test_combine_reference_texts_truncates_each_text(self):
        """参照テキストはそれぞれ切り詰めてから改行で連結"""
        recordings = [_recording(1, "a" * 1200), _recording(1, "short")]

        combined = combine_reference_texts(recordings, 1000)

        assert combined == "a" * 1000 + "\nshort"


class TestSessionAssessmentService:
    """SessionAssessmentServiceのテストクラス"""

    @pytest.fixture
    def speech_service(self):
        """発音評価サービスのモック"""
        service = Mock()
        service.assess_pronunciation = AsyncMock(return_value=_assessment())
        return service

    @pytest.fixture
    def text_service(self):
        """文法分析サービスのモック"""
        service = Mock()
        service.analyze_text = AsyncMock(return_value=TextAnalysis(grammar_score=8, accuracy_score=9))
        return service

    @pytest.fixture
    def sleep(self):
        """呼び出し間隔の待機のモック"""
        return AsyncMock()

    @pytest.fixture
    def assessment_service(self, speech_service, text_service, sleep):
        """SessionAssessmentServiceのインスタンスを作成"""
        return SessionAssessmentService(
            speech_service=speech_service,
            text_service=text_service,
            sleep=sleep,
        )

    @pytest.mark.asyncio
    async def test_single_recording(self, assessment_service):
        """録音1件の評価"""
        report = await assessment_service.analyze_session_recordings([_recording(100)])

        assert isinstance(report, SessionAssessmentReport)
        assert report.pronunciation_score == 9
        assert report.fluency_score == 9
        assert report.completeness_score == 10
        assert report.accuracy_score == 9
        assert report.grammar_score == 8
        assert report.overall_score == 8
        assert report.prosody_score is None
        assert report.speaking_rate is None
        assert report.mispronunciations is None
        assert report.grammar_issues == []
        assert report.degraded == []
        assert report.recordings_analyzed == 1
        assert "Clear pronunciation of sounds and words" in report.strengths
        assert report.areas_for_improvement == ["Continue practicing consistently"]
        assert report.suggestions == (
            "Continue practicing regularly to maintain and improve your speaking skills."
        )

    @pytest.mark.asyncio
    async def test_fractional_text_scores(self, assessment_service, speech_service, text_service):
        """小数の文法・正確性スコアは丸めずに総合スコアと強みの判定に使う"""
        speech_service.assess_pronunciation.return_value = _assessment(50, 50, 50)
        text_service.analyze_text.return_value = TextAnalysis(grammar_score=6.5, accuracy_score=6.5)

        report = await assessment_service.analyze_session_recordings([_recording(100)])

        # 5*0.25 + 5*0.15 + 6.5*0.20 + 6.5*0.30 + 0.10 = 5.35
        assert report.overall_score == 5
        assert report.accuracy_score == 7
        assert report.grammar_score == 7
        assert "Accurate and appropriate word usage" not in report.strengths
        assert "Strong grammatical structure in your responses" not in report.strengths

    @pytest.mark.asyncio
    async def test_empty_recordings(self, assessment_service, speech_service, text_service):
        """録音が無い場合はエラーで、外部サービスは呼ばれない"""
        with pytest.raises(NoRecordingsError, match="No recordings to analyze"):
            await assessment_service.analyze_session_recordings([])

        speech_service.assess_pronunciation.assert_not_awaited()
        text_service.analyze_text.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_scores_all_recordings_in_order(self, assessment_service, speech_service, sleep):
        """3件以下の場合は全件を入力順に、間隔を空けて評価する"""
        recordings = [_recording(10, "first one"), _recording(30, "second one"), _recording(20, "third one")]

        report = await assessment_service.analyze_session_recordings(recordings)

        called_texts = [c.args[1] for c in speech_service.assess_pronunciation.await_args_list]
        assert called_texts == ["first one", "second one", "third one"]
        assert report.recordings_analyzed == 3
        assert [c.args[0] for c in sleep.await_args_list] == [0.1, 0.1]

    @pytest.mark.asyncio
    async def test_limits_to_largest_recordings(self, assessment_service, speech_service, text_service):
        """3件を超える場合は大きい順に3件だけ評価する"""
        recordings = [_recording(size, f"text number {size}") for size in (10, 50, 20, 40, 30)]

        report = await assessment_service.analyze_session_recordings(recordings)

        called_sizes = [len(c.args[0]) for c in speech_service.assess_pronunciation.await_args_list]
        assert called_sizes == [50, 40, 30]
        assert report.recordings_analyzed == 3
        text_service.analyze_text.assert_awaited_once_with(
            "text number 50\ntext number 40\ntext number 30"
        )

    @pytest.mark.asyncio
    async def test_failed_recording_uses_placeholder(self, assessment_service, speech_service):
        """1件の評価に失敗しても、中立スコアで代替して続行する"""
        speech_service.assess_pronunciation = AsyncMock(side_effect=[
            _assessment(pronunciation=90, fluency=90, completeness=90),
            ProviderRateLimitError("Too many requests"),
        ])

        report = await assessment_service.analyze_session_recordings([_recording(10), _recording(20)])

        # (90 + 50) / 2 = 70 → 7
        assert report.pronunciation_score == 7
        assert report.fluency_score == 7
        assert report.completeness_score == 7
        assert report.recordings_analyzed == 2
        assert [d.field for d in report.degraded] == ["recordings[1]"]
        assert "Too many requests" in report.degraded[0].reason

    @pytest.mark.asyncio
    async def test_all_recordings_fail(self, assessment_service, speech_service):
        """全件失敗しても総合スコアは計算される"""
        speech_service.assess_pronunciation = AsyncMock(side_effect=ProviderError("No pronunciation results returned"))

        report = await assessment_service.analyze_session_recordings([_recording(10)])

        assert report.pronunciation_score == 5
        assert report.fluency_score == 5
        assert report.completeness_score == 5
        assert report.overall_score == 6
        assert len(report.degraded) == 1

    @pytest.mark.asyncio
    async def test_short_text_skips_grammar_analysis(self, assessment_service, text_service):
        """テキストが短すぎる場合は文法分析を行わず5点にする"""
        report = await assessment_service.analyze_session_recordings([_recording(10, "Hi me")])

        text_service.analyze_text.assert_not_awaited()
        assert report.grammar_score == 5
        assert report.accuracy_score == 5
        assert report.degraded == []

    @pytest.mark.asyncio
    async def test_grammar_analysis_failure(self, assessment_service, text_service):
        """文法分析に失敗した場合は0点にする"""
        text_service.analyze_text = AsyncMock(side_effect=ProviderError("JSON解析エラー"))

        report = await assessment_service.analyze_session_recordings([_recording(10)])

        assert report.grammar_score == 0
        assert report.accuracy_score == 0
        assert [d.field for d in report.degraded] == ["grammarScore", "accuracyScore"]
        assert "Pay more attention to grammar rules and sentence structure" in report.areas_for_improvement

    @pytest.mark.asyncio
    async def test_without_text_service(self, speech_service, sleep):
        """OpenAIが設定されていない場合は0点にする"""
        service = SessionAssessmentService(speech_service=speech_service, text_service=None, sleep=sleep)

        report = await service.analyze_session_recordings([_recording(10)])

        assert report.grammar_score == 0
        assert report.accuracy_score == 0
        assert report.degraded[0].reason == "grammar analysis not configured"

    @pytest.mark.asyncio
    async def test_without_speech_service(self, text_service, sleep):
        """Azureが設定されていない場合は全件中立スコアにする"""
        service = SessionAssessmentService(speech_service=None, text_service=text_service, sleep=sleep)

        report = await service.analyze_session_recordings([_recording(10), _recording(20)])

        assert report.pronunciation_score == 5
        assert len(report.degraded) == 2
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_grammar_issues_are_passed_through(self, assessment_service, text_service):
        """文法の誤りはそのままレポートに含まれる"""
        finding = GrammarFinding(
            text="I goes", issue="Subject-verb agreement", correction="I go",
            explanation="Use the base form with 'I'.",
        )
        text_service.analyze_text = AsyncMock(return_value=TextAnalysis(
            grammar_issues=[finding], grammar_score=6, accuracy_score=7,
        ))

        report = await assessment_service.analyze_session_recordings([_recording(10)])

        assert report.grammar_issues == [finding]

    @pytest.mark.asyncio
    async def test_optional_scores_and_mispronunciations(self, assessment_service, speech_service):
        """韻律スコア・話速・誤発音の集計"""
        speech_service.assess_pronunciation = AsyncMock(side_effect=[
            _assessment(
                pronunciation=30, fluency=80, completeness=80, prosody_score=40, speaking_rate=170,
                word_level_assessment=[
                    WordAssessment(word="three", pronunciation_score=20, offset_ms=0, duration_ms=300),
                    WordAssessment(word="birds", pronunciation_score=70, offset_ms=300, duration_ms=400),
                ],
            ),
            _assessment(
                pronunciation=40, fluency=80, completeness=80,
                word_level_assessment=[
                    WordAssessment(word="thought", pronunciation_score=65, offset_ms=0, duration_ms=350),
                ],
            ),
        ])

        report = await assessment_service.analyze_session_recordings([_recording(10), _recording(20)])

        assert report.pronunciation_score == 4
        assert report.prosody_score == 4
        assert report.speaking_rate == 170
        assert [m.word for m in report.mispronunciations] == ["three", "thought"]
        assert "Work on pronouncing individual sounds more clearly" in report.areas_for_improvement
        assert "Try to slow down your speaking pace for better clarity" in report.areas_for_improvement
        assert "Focus especially on words like: three, thought." in report.suggestions
        assert "170 words per minute" in report.suggestions

    @pytest.mark.asyncio
    async def test_repeated_calls_are_identical(self, assessment_service):
        """同じ入力と応答からは同じレポートが作られる"""
        recordings = [_recording(10), _recording(20)]

        first = await assessment_service.analyze_session_recordings(recordings)
        second = await assessment_service.analyze_session_recordings(recordings)

        assert first == second

    @pytest.mark.asyncio
    async def test_analyze_request(self, assessment_service, speech_service):
        """Base64形式のリクエストから評価する"""
        encoded = base64.b64encode(b"RIFFdata").decode()
        request = SessionAnalysisRequest(
            audio_buffers=[f"data:audio/wav;base64,{encoded}"],
            reference_texts=["Hello, how are you doing today?"],
        )

        report = await assessment_service.analyze_request(request)

        speech_service.assess_pronunciation.assert_awaited_once_with(
            b"RIFFdata", "Hello, how are you doing today?"
        )
        assert report.recordings_analyzed == 1

    def test_from_environment_without_credentials(self):
        """環境変数が設定されていない場合はサービスがNoneになる"""
        with patch(
            "fluenta.services.session_assessment_service.AzurePronunciationService",
            side_effect=ValueError("No env vars"),
        ):
            with patch(
                "fluenta.services.session_assessment_service.OpenAIService",
                side_effect=ValueError("No env vars"),
            ):
                service = SessionAssessmentService.from_environment()

        assert service.speech_service is None
        assert service.text_service is None

    def test_from_environment_invalid_configuration(self):
        """設定値の誤りはサービス未設定として扱わずに呼び出し元へ伝える"""
        with patch(
            "fluenta.services.session_assessment_service.AzurePronunciationService",
            side_effect=ConfigurationError("FLUENTA_MAX_CONCURRENT_REQUESTSの値が不正です: 'two'"),
        ):
            with patch("fluenta.services.session_assessment_service.OpenAIService"):
                with pytest.raises(ConfigurationError):
                    SessionAssessmentService.from_environment()

    def test_from_environment_with_credentials(self):
        """環境変数が設定されている場合は両方のサービスを作成する"""
        with patch("fluenta.services.session_assessment_service.AzurePronunciationService") as mock_azure:
            with patch("fluenta.services.session_assessment_service.OpenAIService") as mock_openai:
                service = SessionAssessmentService.from_environment()

        assert service.speech_service is mock_azure.return_value
        assert service.text_service is mock_openai.return_value
