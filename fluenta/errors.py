"""
例外クラス
"""


class FluentaError(Exception):
    """Fluentaの例外の基底クラス"""


class NoRecordingsError(FluentaError, ValueError):
    """評価する録音が1件も渡されなかった場合の例外"""

    def __init__(self, message: str = "No recordings to analyze") -> None:
        super().__init__(message)


class ProviderError(FluentaError):
    """外部サービス（Azure Speech、OpenAI）の呼び出しに失敗した場合の例外"""


class ProviderRateLimitError(ProviderError):
    """外部サービスがレート制限（同時実行数超過など）を返した場合の例外"""


class ConfigurationError(FluentaError):
    """環境変数などの設定値が不正な場合の例外"""
