"""
assetmend.reconcile.progress - 进度报告

按固定间隔向外部观察者发送 (processed, total, eta_seconds) 回调。
回调只是旁路通知：回调抛出的异常会被记录，不会阻塞或中止当前操作。
"""

import logging
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, Optional[float]], None]


class ProgressReporter:
    """进度跟踪器"""

    def __init__(
        self,
        label: str,
        total: int,
        callback: Optional[ProgressCallback] = None,
        interval: int = 50,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.label = label
        self.total = max(0, int(total))
        self.callback = callback
        self.interval = max(1, int(interval))
        self.processed = 0
        self._clock = clock
        self._started = clock()

    def eta_seconds(self) -> Optional[float]:
        """按当前平均速度估算剩余秒数；尚无数据时返回 None"""
        if self.processed <= 0 or self.total <= 0:
            return None
        elapsed = self._clock() - self._started
        remaining = max(0, self.total - self.processed)
        return elapsed / self.processed * remaining

    def percent(self) -> float:
        if self.total <= 0:
            return 100.0
        return min(100.0, self.processed * 100.0 / self.total)

    def increment(self, count: int = 1) -> bool:
        """
        增加计数

        Returns:
            本次是否触发了进度报告
        """
        self.processed += count
        if self.processed % self.interval == 0 or self.processed >= self.total:
            self.report()
            return True
        return False

    def report(self) -> None:
        eta = self.eta_seconds()
        logger.debug("%s %s", self.label, self.progress_string())
        if self.callback is None:
            return
        try:
            self.callback(self.processed, self.total, eta)
        except Exception as e:
            logger.warning("进度回调失败（已忽略）: %s", e)

    def progress_string(self) -> str:
        eta = self.eta_seconds()
        eta_text = f"{eta:.0f}s" if eta is not None else "?"
        return f"[{self.processed}/{self.total} {self.percent():.0f}% eta {eta_text}]"
