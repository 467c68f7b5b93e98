"""
限流日志
高频路径（每帧调用）上的诊断日志按 key 节流，节流状态归实例所有
"""

import logging
import time
from typing import Callable, Optional


class ThrottledLogger:
  """
  按 key 节流的日志包装

  同一个 key 在 window 秒内最多输出一次，不同 key 互不影响。
  每个管线持有自己的实例，不依赖任何进程级全局状态。

  用法:
    log = ThrottledLogger(logging.getLogger(__name__), window=3.0)
    log.info("rms_low", "RMS 过低 %.4f", rms)
  """

  def __init__(
    self,
    logger: logging.Logger,
    window: float = 3.0,
    clock: Optional[Callable[[], float]] = None,
  ):
    self._logger = logger
    self._window = window
    self._clock = clock or time.monotonic
    self._last_emit: dict[str, float] = {}

  @property
  def logger(self) -> logging.Logger:
    """底层 logger（不限流的日志直接用它）"""
    return self._logger

  def log(
    self,
    level: int,
    key: str,
    msg: str,
    *args,
    window: Optional[float] = None,
  ) -> bool:
    """
    条件输出日志

    Args:
      level: logging 级别
      key: 节流键
      msg: 日志格式串（% 风格）
      window: 覆盖默认节流窗口（秒）

    Returns:
      本次是否实际输出
    """
    if not self._logger.isEnabledFor(level):
      return False
    now = self._clock()
    last = self._last_emit.get(key)
    limit = self._window if window is None else window
    if last is not None and now - last < limit:
      return False
    self._last_emit[key] = now
    self._logger.log(level, msg, *args)
    return True

  def debug(self, key: str, msg: str, *args, window: Optional[float] = None) -> bool:
    return self.log(logging.DEBUG, key, msg, *args, window=window)

  def info(self, key: str, msg: str, *args, window: Optional[float] = None) -> bool:
    return self.log(logging.INFO, key, msg, *args, window=window)

  def warning(self, key: str, msg: str, *args, window: Optional[float] = None) -> bool:
    return self.log(logging.WARNING, key, msg, *args, window=window)

  def reset(self) -> None:
    """清空节流记录"""
    self._last_emit.clear()
