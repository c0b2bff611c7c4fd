"""
Azure Pronunciation Assessmentサービス
"""
import asyncio
import io
import json
import logging
import os
import wave
from typing import Any, Dict, List

import azure.cognitiveservices.speech as speechsdk

from fluenta.config import SPEECH_RECOGNITION_LANGUAGE
from fluenta.errors import ProviderError, ProviderRateLimitError
from fluenta.models.schemas import PhonemeScore, UtteranceAssessment, WordAssessment
from fluenta.services.request_limiter import RequestLimiter, get_shared_limiter, is_rate_limit_error
from fluenta.services.scoring import round_half_up

logger = logging.getLogger(__name__)

# Azureの時間単位（100ナノ秒）
TICKS_PER_MILLISECOND = 10_000
TICKS_PER_SECOND = 10_000_000


def parse_assessment_json(
    payload: Dict[str, Any] | None,
    recognized_text: str,
    duration_ticks: int,
) -> Dict[str, Any]:
    """
    認識結果の詳細JSONから韻律スコア・話速・単語ごとの評価を取り出す

    Args:
        payload: SpeechServiceResponse_JsonResultをパースした辞書
        recognized_text: 認識されたテキスト（話速の計算に使用）
        duration_ticks: 認識された音声の長さ（100ナノ秒単位）

    Returns:
        prosody_score, speaking_rate, word_level_assessment を含む辞書
    """
    best: Dict[str, Any] = {}
    if payload and payload.get("NBest"):
        best = payload["NBest"][0]

    prosody_score: float | None = None
    raw_prosody = (best.get("PronunciationAssessment") or {}).get("ProsodyScore")
    if isinstance(raw_prosody, (int, float)) and raw_prosody > 0:
        prosody_score = min(round_half_up(raw_prosody), 100)

    word_level_assessment: List[WordAssessment] | None = None
    if best.get("Words"):
        word_level_assessment = []
        for word in best["Words"]:
            phonemes: List[PhonemeScore] | None = None
            if word.get("Phonemes"):
                phonemes = [
                    PhonemeScore(
                        phoneme=p.get("Phoneme", ""),
                        score=(p.get("PronunciationAssessment") or {}).get("AccuracyScore") or 0,
                    )
                    for p in word["Phonemes"]
                ]
            word_level_assessment.append(WordAssessment(
                word=word.get("Word", ""),
                pronunciation_score=(word.get("PronunciationAssessment") or {}).get("AccuracyScore") or 0,
                offset_ms=int(word.get("Offset", 0)) // TICKS_PER_MILLISECOND,
                duration_ms=int(word.get("Duration", 0)) // TICKS_PER_MILLISECOND,
                phonemes=phonemes,
            ))

    # 話速（WPM）= 認識された単語数 / 音声の長さ
    word_count: int = len(recognized_text.split())
    seconds: float = duration_ticks / TICKS_PER_SECOND
    speaking_rate: int | None = None
    if word_count > 0 and seconds > 0:
        speaking_rate = round_half_up(word_count / seconds * 60)

    return {
        "prosody_score": prosody_score,
        "speaking_rate": speaking_rate,
        "word_level_assessment": word_level_assessment,
    }


class AzurePronunciationService:
    """Azure Pronunciation Assessmentを使用するサービスクラス"""

    def __init__(self, limiter: RequestLimiter | None = None) -> None:
        """
        初期化処理
        環境変数からAzure Speech Serviceのキーとリージョンを取得し、設定する

        Args:
            limiter: 同時実行数を制限するリミッター（省略時はプロセス共有のもの）
        """
        self.speech_key: str | None = os.getenv("AZURE_SPEECH_KEY")
        self.speech_region: str | None = os.getenv("AZURE_SPEECH_REGION")

        if not self.speech_key or not self.speech_region:
            raise ValueError("AZURE_SPEECH_KEYとAZURE_SPEECH_REGION環境変数が設定されていません")

        self.speech_config: speechsdk.SpeechConfig = speechsdk.SpeechConfig(
            subscription=self.speech_key,
            region=self.speech_region
        )
        self.speech_config.speech_recognition_language = SPEECH_RECOGNITION_LANGUAGE
        self.limiter: RequestLimiter = limiter or get_shared_limiter()

    async def assess_pronunciation(
        self,
        audio_data: bytes,
        reference_text: str
    ) -> UtteranceAssessment:
        """
        Azure Pronunciation Assessmentを使用して発音を評価

        Args:
            audio_data: 評価する音声データ（WAVまたは16kHz/16bit/モノラルのPCM）
            reference_text: 参照テキスト（正しい発音のテキスト）

        Returns:
            評価結果（0〜100のスコア）

        Raises:
            ProviderRateLimitError: リトライしてもレート制限が解除されなかった場合
            ProviderError: 音声が認識できなかった場合など
        """
        return await self.limiter.run_limited(
            lambda: asyncio.to_thread(self._recognize, audio_data, reference_text)
        )

    def _create_audio_config(self, audio_data: bytes) -> speechsdk.audio.AudioConfig:
        """音声データからAudioConfigを作成（WAVの場合はヘッダーのフォーマットを使う）"""
        stream_format: speechsdk.audio.AudioStreamFormat | None = None
        frames: bytes = audio_data
        if audio_data[:4] == b"RIFF":
            try:
                with wave.open(io.BytesIO(audio_data), "rb") as wav:
                    stream_format = speechsdk.audio.AudioStreamFormat(
                        samples_per_second=wav.getframerate(),
                        bits_per_sample=wav.getsampwidth() * 8,
                        channels=wav.getnchannels(),
                    )
                    frames = wav.readframes(wav.getnframes())
            except (wave.Error, EOFError) as e:
                logger.warning("WAVヘッダーを解析できませんでした。そのまま送信します: %s", e)
                stream_format = None
                frames = audio_data

        if stream_format is not None:
            audio_stream = speechsdk.audio.PushAudioInputStream(stream_format=stream_format)
        else:
            audio_stream = speechsdk.audio.PushAudioInputStream()
        audio_stream.write(frames)
        audio_stream.close()
        return speechsdk.audio.AudioConfig(stream=audio_stream)

    def _recognize(self, audio_data: bytes, reference_text: str) -> UtteranceAssessment:
        """音声認識と発音評価を実行（ブロッキング処理、ワーカースレッドで呼び出す）"""
        # Pronunciation assessmentの設定
        pronunciation_config: speechsdk.PronunciationAssessmentConfig = speechsdk.PronunciationAssessmentConfig(
            reference_text=reference_text,
            grading_system=speechsdk.PronunciationAssessmentGradingSystem.HundredMark,
            granularity=speechsdk.PronunciationAssessmentGranularity.Phoneme,
            enable_miscue=True
        )
        pronunciation_config.enable_prosody_assessment()

        speech_recognizer: speechsdk.SpeechRecognizer = speechsdk.SpeechRecognizer(
            speech_config=self.speech_config,
            audio_config=self._create_audio_config(audio_data)
        )
        pronunciation_config.apply_to(speech_recognizer)

        result: speechsdk.SpeechRecognitionResult = speech_recognizer.recognize_once()

        if result.reason == speechsdk.ResultReason.RecognizedSpeech:
            pronunciation_result = speechsdk.PronunciationAssessmentResult(result)
            payload: Dict[str, Any] | None = None
            try:
                payload = json.loads(
                    result.properties.get(speechsdk.PropertyId.SpeechServiceResponse_JsonResult) or "{}"
                )
            except json.JSONDecodeError as e:
                logger.warning("Could not parse detailed pronunciation data: %s", e)

            details: Dict[str, Any] = parse_assessment_json(payload, result.text or "", result.duration or 0)
            return UtteranceAssessment(
                pronunciation_score=pronunciation_result.pronunciation_score,
                fluency_score=pronunciation_result.fluency_score,
                completeness_score=pronunciation_result.completeness_score,
                **details,
            )

        if result.reason == speechsdk.ResultReason.Canceled:
            cancellation = result.cancellation_details
            error_details: str = cancellation.error_details or str(cancellation.reason)
            if cancellation.error_code == speechsdk.CancellationErrorCode.TooManyRequests:
                raise ProviderRateLimitError(error_details)
            error = ProviderError(error_details)
            if is_rate_limit_error(error):
                raise ProviderRateLimitError(error_details)
            raise error

        raise ProviderError("No pronunciation results returned")
