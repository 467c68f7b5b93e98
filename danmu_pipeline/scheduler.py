"""
弹幕调度器
把能量映射为 drive，再由 drive 决定下一次触发间隔和允许的并发数
"""

import math
import random
import time
from typing import Callable, Optional

from .config import SchedulerConfig
from .models import ScheduleState


def _clamp01(value: float) -> float:
  return max(0.0, min(1.0, value))


class DanmuScheduler:
  """
  能量驱动的间隔 / 并发调度器

  - drive_from_rms: drive = rms ** 0.8，中等能量也能得到较高的 drive
  - next_interval_sec: 每次调用都重新随机，避免机械的固定节奏
  - concurrency: 带滞回的高/低状态（进入 0.4s、退出 0.8s 确认），
    返回值 = clamp(1, max_concurrency, 1 + floor(2.5 * drive))
  """

  def __init__(
    self,
    config: Optional[SchedulerConfig] = None,
    rng: Optional[random.Random] = None,
    clock: Optional[Callable[[], float]] = None,
  ):
    self.config = config or SchedulerConfig()
    if self.config.max_concurrency < 1:
      raise ValueError(f"max_concurrency 必须 >= 1: {self.config.max_concurrency}")
    self._rng = rng or random.Random()
    self._clock = clock or time.monotonic
    self._high_state = False
    self._last_switch_ts: Optional[float] = None
    self._current_concurrency = 1

  @property
  def state(self) -> ScheduleState:
    """当前滞回状态快照"""
    return ScheduleState(
      high_state=self._high_state,
      last_switch_ts=self._last_switch_ts,
      current_concurrency=self._current_concurrency,
    )

  def reset(self) -> None:
    """恢复初始状态"""
    self._high_state = False
    self._last_switch_ts = None
    self._current_concurrency = 1

  @staticmethod
  def drive_from_rms(rms: float) -> float:
    """能量 [0,1] → drive [0,1]"""
    return _clamp01(rms) ** 0.8

  def next_interval_sec(self, drive: float) -> float:
    """
    下一次触发前需要等待的秒数

    drive 越高随机分布越向下限压缩，但不会低于 min_interval。
    """
    cfg = self.config
    base = self._rng.uniform(cfg.base_min, cfg.base_max)
    factor = 1.0 - 0.55 * _clamp01(drive)
    return max(cfg.min_interval, min(base * factor, cfg.base_max))

  def _since_switch(self, now: float) -> float:
    if self._last_switch_ts is None:
      return math.inf
    return now - self._last_switch_ts

  def concurrency(self, drive: float, now: Optional[float] = None) -> int:
    """
    当前允许的并发请求数

    Args:
      drive: 归一化活跃度
      now: 当前时间（秒），不传则读取时钟
    """
    cfg = self.config
    d = _clamp01(drive)
    if now is None:
      now = self._clock()

    if not self._high_state and d > cfg.up_threshold:
      if self._since_switch(now) > cfg.promote_delay:
        self._high_state = True
        self._last_switch_ts = now
    elif self._high_state and d < cfg.down_threshold:
      if self._since_switch(now) > cfg.demote_delay:
        self._high_state = False
        self._last_switch_ts = now

    base = 1 + math.floor(2.5 * d)
    if cfg.gate_concurrency_by_state and not self._high_state:
      base = 1
    self._current_concurrency = max(1, min(cfg.max_concurrency, base))
    return self._current_concurrency
