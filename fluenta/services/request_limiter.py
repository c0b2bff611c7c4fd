"""
リクエスト同時実行制限サービス
レート制限のある外部サービス（Azure Speech）への同時リクエスト数を制限し、
レート制限エラー時は指数バックオフでリトライする
"""
import asyncio
import logging
import random
from collections import deque
from typing import Awaitable, Callable, Deque, TypeVar

from fluenta.config import LimiterSettings
from fluenta.errors import ProviderRateLimitError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# 型付きの例外が使えない場合に、エラーメッセージからレート制限を判定するためのキーワード
RATE_LIMIT_SIGNATURES: tuple[str, ...] = (
    "concurrent",
    "exceeded",
    "parallel requests",
    "rate limit",
    "too many requests",
)


def is_rate_limit_error(error: BaseException) -> bool:
    """
    例外がレート制限によるものかどうかを判定

    Args:
        error: 判定する例外

    Returns:
        レート制限エラーの場合True
    """
    if isinstance(error, ProviderRateLimitError):
        return True
    message: str = str(error).lower()
    return any(signature in message for signature in RATE_LIMIT_SIGNATURES)


class RequestLimiter:
    """同時実行数を制限し、待機中のリクエストを到着順に実行するクラス"""

    def __init__(
        self,
        max_concurrent: int = 2,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        backoff_jitter: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        random_func: Callable[[], float] = random.random,
    ) -> None:
        """
        初期化処理

        Args:
            max_concurrent: 同時に実行できるリクエスト数の上限
            max_retries: レート制限エラー時の最大リトライ回数
            backoff_base: バックオフの基本秒数（2^試行回数 倍される）
            backoff_jitter: バックオフに加えるランダム秒数の上限
            sleep: 待機に使う関数（テスト用に差し替え可能）
            random_func: 0以上1未満の乱数を返す関数
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrentは1以上である必要があります")
        self.max_concurrent: int = max_concurrent
        self.max_retries: int = max_retries
        self.backoff_base: float = backoff_base
        self.backoff_jitter: float = backoff_jitter
        self._sleep = sleep
        self._random = random_func
        self._in_flight: int = 0
        self._waiters: Deque[asyncio.Future[None]] = deque()

    @classmethod
    def from_settings(cls, settings: LimiterSettings) -> "RequestLimiter":
        """設定からインスタンスを作成"""
        return cls(
            max_concurrent=settings.max_concurrent,
            max_retries=settings.max_retries,
            backoff_base=settings.backoff_base,
            backoff_jitter=settings.backoff_jitter,
        )

    @property
    def in_flight(self) -> int:
        """実行中のリクエスト数"""
        return self._in_flight

    @property
    def queued(self) -> int:
        """待機中のリクエスト数"""
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def run_limited(self, work: Callable[[], Awaitable[T]]) -> T:
        """
        同時実行数の制限内で処理を実行する

        レート制限エラーの場合は枠を解放してから待機し、キューの最後尾に並び直す。
        それ以外のエラーはそのまま呼び出し元に伝える。

        Args:
            work: 外部サービスを呼び出す非同期処理（呼び出すたびに新しいコルーチンを返す関数）

        Returns:
            workの戻り値
        """
        attempt: int = 0
        while True:
            await self._acquire()
            try:
                return await work()
            except Exception as e:
                if not is_rate_limit_error(e) or attempt >= self.max_retries:
                    raise
                attempt += 1
                backoff: float = (2 ** attempt) * self.backoff_base + self._random() * self.backoff_jitter
                logger.warning(
                    "Rate limit hit. Retry attempt %d/%d after %.2fs backoff: %s",
                    attempt, self.max_retries, backoff, e,
                )
            finally:
                self._release()
            await self._sleep(backoff)

    async def _acquire(self) -> None:
        """実行枠を確保する（空きが無ければ到着順に待機）"""
        if self._in_flight < self.max_concurrent and not self.queued:
            self._in_flight += 1
            logger.debug("Starting request (%d/%d active)", self._in_flight, self.max_concurrent)
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        logger.info("Queuing request (queue length: %d)", len(self._waiters))
        try:
            await waiter
        except asyncio.CancelledError:
            # 枠を受け取った直後にキャンセルされた場合は次の待機者に渡す
            if waiter.done() and not waiter.cancelled():
                self._release()
            raise
        logger.debug("Starting queued request (%d/%d active)", self._in_flight, self.max_concurrent)

    def _release(self) -> None:
        """実行枠を解放し、待機中のリクエストがあれば枠をそのまま引き渡す"""
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                logger.debug("Handing slot to next request (%d remaining)", len(self._waiters))
                return
        self._in_flight -= 1
        logger.debug("Completed request (%d/%d active)", self._in_flight, self.max_concurrent)


_shared_limiter: RequestLimiter | None = None


def get_shared_limiter() -> RequestLimiter:
    """
    プロセス全体で共有するリミッターを取得

    Returns:
        環境変数の設定から作成したRequestLimiter
    """
    global _shared_limiter
    if _shared_limiter is None:
        _shared_limiter = RequestLimiter.from_settings(LimiterSettings.from_env())
    return _shared_limiter
