"""
スコア計算
0〜100の発音評価スコアを1〜10に正規化し、総合スコアとフィードバック文を作成する
"""
import math
from typing import Iterable, List, Sequence, Tuple

from pydantic import BaseModel

from fluenta.models.schemas import Mispronunciation, UtteranceAssessment

# 強み・改善点の判定しきい値（1〜10）
STRENGTH_THRESHOLD = 7
IMPROVEMENT_THRESHOLD = 4

# 適切な話速の範囲（WPM）
MIN_SPEAKING_RATE = 100
MAX_SPEAKING_RATE = 160

# 総合スコアの重み
PRONUNCIATION_WEIGHT = 0.25
FLUENCY_WEIGHT = 0.15
PROSODY_WEIGHT = 0.10
ACCURACY_WEIGHT = 0.20
GRAMMAR_WEIGHT = 0.30

# 改善点の文言
PRONUNCIATION_AREA = "Work on pronouncing individual sounds more clearly"
FLUENCY_AREA = "Practice speaking with more natural rhythm and flow"
ACCURACY_AREA = "Focus on using words more accurately and appropriately"
COMPLETENESS_AREA = "Try to complete your sentences fully"
GRAMMAR_AREA = "Pay more attention to grammar rules and sentence structure"
PROSODY_AREA = "Work on your intonation and speech rhythm to sound more natural"
TOO_FAST_AREA = "Try to slow down your speaking pace for better clarity"
TOO_SLOW_AREA = "Work on increasing your speaking speed for more natural conversation"

DEFAULT_STRENGTH = "Good overall communication"
DEFAULT_IMPROVEMENT = "Continue practicing consistently"
DEFAULT_SUGGESTION = "Continue practicing regularly to maintain and improve your speaking skills."


class AggregatedScores(BaseModel):
    """全発話の平均を1〜10に正規化したスコア"""

    pronunciation_score: int
    fluency_score: int
    completeness_score: int
    prosody_score: int | None = None
    speaking_rate: int | None = None


def round_half_up(value: float) -> int:
    """0.5を切り上げる四捨五入（Pythonのround()は偶数丸めのため使わない）"""
    return math.floor(value + 0.5)


def normalize_score(raw: float) -> int:
    """
    0〜100のスコアを1〜10に変換

    Args:
        raw: 0〜100のスコア

    Returns:
        round(raw / 100 * 10) を1〜10に収めた整数
    """
    return min(max(round_half_up(raw / 10), 1), 10)


def average(values: Iterable[float]) -> float | None:
    """平均値を計算（値が無い場合はNone）"""
    items: List[float] = list(values)
    if not items:
        return None
    return sum(items) / len(items)


def aggregate_assessments(assessments: Sequence[UtteranceAssessment]) -> AggregatedScores:
    """
    発話ごとの評価を平均し、1〜10に正規化する

    正規化は平均を取った後に1回だけ行う。韻律スコアと話速は、
    その値を返した発話だけで平均する（1件も無ければNone）。

    Args:
        assessments: 発話ごとの評価（1件以上）

    Returns:
        正規化したスコア
    """
    if not assessments:
        raise ValueError("assessments must not be empty")

    prosody: float | None = average(
        a.prosody_score for a in assessments if a.prosody_score is not None
    )
    speaking_rate: float | None = average(
        a.speaking_rate for a in assessments if a.speaking_rate is not None
    )

    return AggregatedScores(
        pronunciation_score=normalize_score(average(a.pronunciation_score for a in assessments)),
        fluency_score=normalize_score(average(a.fluency_score for a in assessments)),
        completeness_score=normalize_score(average(a.completeness_score for a in assessments)),
        prosody_score=normalize_score(prosody) if prosody is not None else None,
        # 話速はWPMのまま（正規化しない）
        speaking_rate=round_half_up(speaking_rate) if speaking_rate is not None else None,
    )


def extract_mispronunciations(
    assessments: Sequence[UtteranceAssessment],
    threshold: float = 70,
) -> List[Mispronunciation]:
    """
    発音スコアがしきい値未満の単語を、発話順・単語順に取り出す

    Args:
        assessments: 発話ごとの評価
        threshold: このスコア未満の単語を誤発音とみなす

    Returns:
        誤発音の単語のリスト
    """
    mispronunciations: List[Mispronunciation] = []
    for assessment in assessments:
        for word in assessment.word_level_assessment or []:
            if word.pronunciation_score < threshold:
                mispronunciations.append(Mispronunciation(**word.model_dump()))
    return mispronunciations


def calculate_overall_score(
    pronunciation: float,
    fluency: float,
    accuracy: float,
    grammar: float,
    prosody: float | None = None,
) -> int:
    """
    1〜10の各スコアの加重平均から総合スコアを計算

    韻律スコアが無い場合、その重み（0.10）は1点分として加算し、
    重みの合計が常に1.0になるようにする。

    Returns:
        総合スコア（整数）
    """
    total: float = (
        pronunciation * PRONUNCIATION_WEIGHT
        + fluency * FLUENCY_WEIGHT
        + accuracy * ACCURACY_WEIGHT
        + grammar * GRAMMAR_WEIGHT
    )
    if prosody is not None:
        total += prosody * PROSODY_WEIGHT
    else:
        total += PROSODY_WEIGHT
    return round_half_up(total)


def derive_feedback(
    scores: AggregatedScores,
    accuracy_score: float,
    grammar_score: float,
) -> Tuple[List[str], List[str]]:
    """
    スコアから強みと改善点の文を作成

    Args:
        scores: 正規化した発音評価スコア
        accuracy_score: 正確性スコア（1〜10）
        grammar_score: 文法スコア（1〜10）

    Returns:
        (強みのリスト, 改善点のリスト)。どちらも空にはならない
    """
    strengths: List[str] = []
    areas: List[str] = []

    rules: List[Tuple[float | None, str, str]] = [
        (scores.pronunciation_score, "Clear pronunciation of sounds and words", PRONUNCIATION_AREA),
        (scores.fluency_score, "Good speech rhythm and natural flow", FLUENCY_AREA),
        (accuracy_score, "Accurate and appropriate word usage", ACCURACY_AREA),
        (scores.completeness_score, "Good completion of thoughts and sentences", COMPLETENESS_AREA),
        (grammar_score, "Strong grammatical structure in your responses", GRAMMAR_AREA),
        (scores.prosody_score, "Excellent intonation and natural speech rhythm", PROSODY_AREA),
    ]
    for score, strength, area in rules:
        if score is None:
            continue
        if score >= STRENGTH_THRESHOLD:
            strengths.append(strength)
        elif score <= IMPROVEMENT_THRESHOLD:
            areas.append(area)

    if scores.speaking_rate is not None:
        if scores.speaking_rate > MAX_SPEAKING_RATE:
            areas.append(TOO_FAST_AREA)
        elif scores.speaking_rate < MIN_SPEAKING_RATE:
            areas.append(TOO_SLOW_AREA)
        else:
            strengths.append("Good conversational speaking pace")

    return strengths or [DEFAULT_STRENGTH], areas or [DEFAULT_IMPROVEMENT]


def build_suggestions(
    areas_for_improvement: Sequence[str],
    mispronunciations: Sequence[Mispronunciation],
    speaking_rate: int | None,
) -> str:
    """
    改善点ごとのアドバイスを決まった優先順で連結

    Args:
        areas_for_improvement: derive_feedbackが返した改善点
        mispronunciations: 誤発音の単語（発音のアドバイスで最大3語を挙げる）
        speaking_rate: 平均話速（WPM）

    Returns:
        アドバイスの文字列
    """
    parts: List[str] = []

    if PRONUNCIATION_AREA in areas_for_improvement:
        parts.append("Practice specific sounds that are difficult for you using minimal pairs exercises.")
        if mispronunciations:
            words: str = ", ".join(m.word for m in mispronunciations[:3])
            parts.append(f"Focus especially on words like: {words}.")

    if FLUENCY_AREA in areas_for_improvement:
        parts.append("Try shadowing exercises where you speak along with native speakers to improve rhythm.")

    if ACCURACY_AREA in areas_for_improvement:
        parts.append(
            "Study word collocations and practice using new vocabulary in context. Keep a vocabulary journal."
        )

    if GRAMMAR_AREA in areas_for_improvement:
        parts.append("Review basic grammar rules and practice constructing sentences with correct structure.")

    if PROSODY_AREA in areas_for_improvement:
        parts.append(
            "Listen to native speakers and practice mimicking their intonation patterns. Record yourself and compare."
        )

    if TOO_FAST_AREA in areas_for_improvement:
        parts.append(
            "Practice speaking deliberately and pausing between sentences. "
            f"Your current pace is too fast at about {speaking_rate} words per minute."
        )
    elif TOO_SLOW_AREA in areas_for_improvement:
        parts.append(
            "Practice speaking at a slightly faster pace. "
            f"Your current pace is slow at about {speaking_rate} words per minute."
        )

    return " ".join(parts) if parts else DEFAULT_SUGGESTION
