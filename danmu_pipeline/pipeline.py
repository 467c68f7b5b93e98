"""
弹幕管线核心模块
音频特征 → 触发判断 → 流式生成 → 缓冲 → 按节奏逐条出屏

单事件循环内运行：handle_features 同步处理每一帧，生成请求作为后台任务执行，
出屏由 loop.call_later 定时器逐条驱动。
"""

import asyncio
import logging
import math
import random
import time
from collections import deque
from dataclasses import replace
from typing import Any, Callable, Optional, Protocol

import httpx

from audio_features import FeatureAggregator, FeatureFrame, FeatureWindow, StabilityMetrics
from danmu_stream import CommentEvent, StreamHandlers, StyleEvent, fetch_analyze
from .config import PipelineConfig
from .log_throttle import ThrottledLogger
from .models import PipelineStatus
from .scheduler import DanmuScheduler

logger = logging.getLogger(__name__)


def _clamp01(value: Optional[float]) -> float:
  """None 和非有限值记为 0"""
  if value is None or not math.isfinite(value):
    return 0.0
  return max(0.0, min(1.0, value))


class DanmuRenderer(Protocol):
  """弹幕显示端：收到文本即显示，不返回结果"""

  def ingest_text(self, text: str) -> None: ...


class DanmuPipeline:
  """
  音频驱动的弹幕管线

  触发条件（两者同时满足）：
  - 距上次触发已超过 scheduler.next_interval_sec(drive)
  - 在途请求数 < scheduler.concurrency(drive, now)

  出屏节奏：队列每次只放出一条，间隔随 drive 缩放并带 ±15% 抖动；
  距上次出屏不足 min_gap 时补足剩余时间（至少 min_forced_gap）。

  生成失败不会补发默认弹幕，也不会自动重试，等待下一次自然触发。
  """

  def __init__(
    self,
    renderer: DanmuRenderer,
    config: Optional[PipelineConfig] = None,
    aggregator: Optional[FeatureAggregator] = None,
    scheduler: Optional[DanmuScheduler] = None,
    clock: Optional[Callable[[], float]] = None,
    rng: Optional[random.Random] = None,
    throttled_logger: Optional[ThrottledLogger] = None,
    http_client: Optional[httpx.AsyncClient] = None,
  ):
    """
    初始化弹幕管线

    Args:
      renderer: 弹幕显示端（提供 ingest_text）
      config: 管线配置
      aggregator: 自定义特征聚合器（高级用户）
      scheduler: 自定义调度器（高级用户）
      clock: 时钟函数（秒），默认 time.monotonic
      rng: 随机源，固定种子可复现间隔与抖动
      throttled_logger: 高频路径使用的限流日志
      http_client: 复用的 httpx.AsyncClient（不传则每次请求临时创建）
    """
    self.config = config or PipelineConfig()
    self._renderer = renderer
    self._clock = clock or time.monotonic
    self._rng = rng or random.Random()
    self._log = throttled_logger or ThrottledLogger(logger, clock=self._clock)
    self._http_client = http_client

    self._aggregator = aggregator or FeatureAggregator(self.config.aggregator, clock=self._clock)
    self._aggregator.update_stability_thresholds(
      min_stability_duration=self.config.stability_window,
      min_confidence=self.config.stability_confidence,
    )

    if scheduler is None:
      scheduler = DanmuScheduler(
        replace(self.config.scheduler, max_concurrency=self.config.max_concurrency),
        rng=self._rng,
        clock=self._clock,
      )
    self.scheduler = scheduler

    # 运行状态
    self._active = False
    self._last_trigger_time: Optional[float] = None
    self._pending_requests = 0
    self._last_drive = 0.0

    # 生成服务确认的风格
    self._current_style: Optional[str] = None
    self._style_confidence: Optional[float] = None

    # 稳定度门控
    self._last_stability: Optional[StabilityMetrics] = None
    self._last_stability_check: Optional[float] = None

    # 活动度阶段：idle → ready
    self._activity_score = 0.0
    self._phase = "idle"
    self._last_instrument: Optional[str] = None

    # 待出屏队列（FIFO）和出屏定时器
    self._pending_comments: deque[str] = deque()
    self._comment_timer: Optional[asyncio.TimerHandle] = None
    self._last_comment_time: Optional[float] = None
    self._danmu_count = 0
    self._recent_shown: deque[str] = deque(maxlen=self.config.shown_history_size)

    # 在途生成任务（stop 时取消）
    self._inflight: set[asyncio.Task] = set()

  # ------------------------------------------------------------------
  # 生命周期
  # ------------------------------------------------------------------

  @property
  def is_active(self) -> bool:
    return self._active

  @property
  def pending_requests(self) -> int:
    """在途生成请求数"""
    return self._pending_requests

  @property
  def recent_danmu(self) -> list[str]:
    """最近已出屏的弹幕（旧 → 新）"""
    return list(self._recent_shown)

  def start(self) -> None:
    """
    启动管线

    清空特征窗口、待出屏队列、出屏历史和计数，新会话的第一条弹幕按正常节奏排期。
    """
    self._active = True
    self._aggregator.reset()
    self._last_stability = None
    self._last_stability_check = None
    self._clear_comment_timer()
    self._reset_session()
    self._last_comment_time = None
    logger.info("弹幕管线启动")

  def stop(self) -> None:
    """
    停止管线

    取消出屏定时器和所有在途生成任务，丢弃待出屏弹幕。pending_requests 不直接清零，
    由每个被取消的任务在结束回调中各自归还。
    """
    self._active = False
    self._clear_comment_timer()
    self._reset_session()
    for task in list(self._inflight):
      task.cancel()
    logger.info("弹幕管线停止，取消在途请求 %d 个", len(self._inflight))

  def _reset_session(self) -> None:
    self._pending_comments.clear()
    self._recent_shown.clear()
    self._danmu_count = 0

  async def wait_settled(self) -> None:
    """等待所有在途生成任务结束"""
    while self._inflight:
      await asyncio.wait(set(self._inflight))

  # ------------------------------------------------------------------
  # 触发
  # ------------------------------------------------------------------

  def handle_features(self, rms: float, features: Optional[dict] = None) -> bool:
    """
    处理一帧音频特征，必要时触发弹幕生成

    需要在事件循环内调用；生成请求在后台执行，本方法不会阻塞也不会抛出生成错误。

    Args:
      rms: 瞬时能量 [0,1]
      features: 该帧的其他特征（可选）

    Returns:
      本帧是否触发了生成
    """
    if not self._active:
      return False

    cfg = self.config
    if rms < cfg.rms_threshold:
      self._log.debug("rms_low", "弹幕管线: RMS过低 %.4f < %s", rms, cfg.rms_threshold, window=5.0)
      return False

    now = self._clock()
    frame = FeatureFrame.from_features(now, rms, features)
    if frame.dominant_instrument:
      self._last_instrument = frame.dominant_instrument
    self._aggregator.add_frame(frame)

    # 出屏节奏使用最近一帧的 drive，门控拒绝的帧也要记录
    drive = self.scheduler.drive_from_rms(rms)
    self._last_drive = drive
    self._update_activity(frame)

    if cfg.require_stability and not self._passes_stability_gate(now):
      return False

    if cfg.require_activity and self._phase != "ready":
      self._log.debug(
        "phase", "弹幕管线: 活动度 %.3f 未达到 ready 阶段，继续收集", self._activity_score,
        window=2.5,
      )
      return False

    interval = self.scheduler.next_interval_sec(drive)
    concurrency = self.scheduler.concurrency(drive, now)

    if self._last_trigger_time is not None and now - self._last_trigger_time < interval:
      self._log.debug(
        "interval", "弹幕管线: 间隔未到 %.2fs < %.2fs",
        now - self._last_trigger_time, interval,
      )
      return False

    if self._pending_requests >= concurrency:
      self._log.debug(
        "concurrency", "弹幕管线: 并发限制 %d >= %d",
        self._pending_requests, concurrency,
      )
      return False

    self._log.info(
      "trigger", "弹幕管线: 触发弹幕生成 rms=%.4f drive=%.3f interval=%.2fs concurrency=%d",
      rms, drive, interval, concurrency, window=2.0,
    )
    self._last_trigger_time = now
    self._start_generation()
    return True

  def trigger(self) -> Optional[asyncio.Task]:
    """
    手动触发（跳过间隔和动态并发判断，仍受 max_concurrency 硬上限约束）

    Returns:
      生成任务；未启动、达到上限或窗口不足时返回 None
    """
    if not self._active:
      logger.info("弹幕管线未启动，忽略手动触发")
      return None
    return self._start_generation()

  async def manual_trigger(self) -> None:
    """手动触发并等待本次生成结束"""
    task = self.trigger()
    if task is not None:
      await asyncio.wait({task})

  def _update_activity(self, frame: FeatureFrame) -> None:
    """活动度 = 能量/人声/打击乐/乐器置信度加权后做指数平滑，再按进出阈值切换阶段"""
    instant = (
      _clamp01(frame.rms) * 0.45
      + _clamp01(frame.voice_prob) * 0.25
      + _clamp01(frame.percussive_ratio) * 0.2
      + _clamp01(frame.instrument_confidence) * 0.1
    )
    self._activity_score = self._activity_score * 0.75 + instant * 0.25

    cfg = self.config
    if self._phase != "ready" and self._activity_score >= cfg.energy_enter_threshold:
      self._phase = "ready"
      logger.info("弹幕管线: 活动度达到触发阈值，进入 ready 阶段")
    elif self._phase == "ready" and self._activity_score <= cfg.energy_exit_threshold:
      self._phase = "idle"
      logger.info("弹幕管线: 活动度低于退出阈值，回到 idle 阶段")

  def _passes_stability_gate(self, now: float) -> bool:
    cfg = self.config
    if (
      self._last_stability_check is None
      or now - self._last_stability_check >= cfg.stability_check_interval
    ):
      self._last_stability_check = now
      self._last_stability = self._aggregator.check_stability()

    stability = self._last_stability
    if stability is None:
      return True
    if stability.overall_stable and stability.confidence >= cfg.stability_confidence:
      return True

    self._log.debug(
      "stability", "弹幕管线: 稳定度不足，跳过触发 (stable=%s, confidence=%.2f)",
      stability.overall_stable, stability.confidence,
    )
    return False

  # ------------------------------------------------------------------
  # 生成
  # ------------------------------------------------------------------

  def _start_generation(self) -> Optional[asyncio.Task]:
    """占用一个请求名额并启动后台生成任务；名额在任务结束回调中归还"""
    loop = asyncio.get_running_loop()

    if self._pending_requests >= self.config.max_concurrency:
      self._log.info("hard_limit", "弹幕管线: 达到并发上限 %d，跳过生成", self.config.max_concurrency)
      return None

    self._pending_requests += 1

    window = self._aggregator.compute_window_features()
    if window is None:
      self._pending_requests -= 1
      self._log.info("window_starved", "弹幕管线: 特征窗口不足，跳过弹幕生成")
      return None

    body = self._build_request_body(window)
    task = loop.create_task(self._run_generation(body))
    self._inflight.add(task)
    task.add_done_callback(self._on_generation_settled)
    logger.debug("弹幕管线: 调用生成服务，当前在途 %d", self._pending_requests)
    return task

  def _build_request_body(self, window: FeatureWindow) -> dict[str, Any]:
    body = window.to_dict()
    body["need_comments"] = self.config.need_comments
    body["locale"] = self.config.locale
    if self._current_style:
      body["style"] = self._current_style
      if self._style_confidence is not None:
        body["confidence"] = self._style_confidence
    if self.config.talking_points:
      body["talking_points"] = list(self.config.talking_points)
    if self._recent_shown:
      body["existingDanmu"] = list(self._recent_shown)
    return body

  async def _run_generation(self, body: dict[str, Any]) -> None:
    handlers = StreamHandlers(
      on_style=self._on_style,
      on_comment=self._on_comment,
      on_done=self._on_stream_done,
      on_error=self._on_stream_error,
    )
    await fetch_analyze(
      self.config.api_url,
      body,
      handlers,
      client=self._http_client,
      timeout=self.config.request_timeout,
    )

  def _on_generation_settled(self, task: asyncio.Task) -> None:
    self._inflight.discard(task)
    self._pending_requests -= 1
    if task.cancelled():
      logger.info("弹幕生成已取消")
      return
    error = task.exception()
    if error is not None:
      logger.error("弹幕生成任务异常: %s", error)

  def _on_style(self, event: StyleEvent) -> None:
    self._current_style = event.label
    self._style_confidence = event.confidence
    logger.info("风格识别: %s (置信度: %.2f)", event.label, event.confidence)

  def _on_comment(self, event: CommentEvent) -> None:
    self._enqueue_comment(event.text)

  def _on_stream_done(self) -> None:
    logger.debug("弹幕流完成")
    self._schedule_comment_flush()

  def _on_stream_error(self, error: Exception) -> None:
    # 不补发默认弹幕，只记录
    logger.warning("弹幕生成失败: %s", error)

  # ------------------------------------------------------------------
  # 出屏节奏
  # ------------------------------------------------------------------

  def _enqueue_comment(self, text: str) -> None:
    text = text.strip() if text else ""
    if not text:
      return
    if not self._active:
      logger.info("弹幕管线已停止，丢弃弹幕: %s", text)
      return
    self._pending_comments.append(text)
    logger.debug("弹幕管线: 收到弹幕，缓冲区长度 %d", len(self._pending_comments))
    self._schedule_comment_flush()

  def _schedule_comment_flush(self) -> None:
    """已有定时器时不重复设置"""
    if not self._active or not self._pending_comments or self._comment_timer is not None:
      return
    delay = self._pick_comment_interval()
    loop = asyncio.get_running_loop()
    self._comment_timer = loop.call_later(delay, self._on_comment_timer)

  def _on_comment_timer(self) -> None:
    self._comment_timer = None
    self._flush_pending_comments()

  def _flush_pending_comments(self) -> None:
    """放出一条弹幕；队列仍非空时继续排下一条"""
    if not self._active or not self._pending_comments:
      return

    text = self._pending_comments.popleft()
    try:
      self._renderer.ingest_text(text)
    except Exception as e:
      logger.error("弹幕显示回调错误: %s", e)
    else:
      self._danmu_count += 1
      self._recent_shown.append(text)
    self._last_comment_time = self._clock()
    logger.debug("弹幕管线: 出屏，剩余缓冲区长度 %d", len(self._pending_comments))

    if self._pending_comments:
      self._schedule_comment_flush()

  def _pick_comment_interval(self) -> float:
    """下一条弹幕的等待时间（秒）"""
    p = self.config.pacing
    now = self._clock()
    if self._last_comment_time is not None:
      since_last = now - self._last_comment_time
      if since_last < p.min_gap:
        return max(p.min_gap - since_last, p.min_forced_gap)

    drive = _clamp01(self._last_drive)
    base = p.min_gap + (p.max_gap - p.min_gap) * (1 - drive)
    jitter = self._rng.uniform(p.jitter_min, p.jitter_max)
    return max(p.min_gap, min(p.max_gap, base * jitter))

  def _clear_comment_timer(self) -> None:
    if self._comment_timer is not None:
      self._comment_timer.cancel()
      self._comment_timer = None

  # ------------------------------------------------------------------
  # 状态
  # ------------------------------------------------------------------

  @property
  def status(self) -> PipelineStatus:
    """当前运行状态"""
    return PipelineStatus(
      is_active=self._active,
      current_style=self._current_style,
      danmu_count=self._danmu_count,
      pending_requests=self._pending_requests,
      frame_count=self._aggregator.get_frame_count(),
      queued_comments=len(self._pending_comments),
      high_state=self.scheduler.state.high_state,
      last_drive=self._last_drive,
      stability_confidence=self._last_stability.confidence if self._last_stability else 0.0,
      stability_duration=self._last_stability.stability_duration if self._last_stability else 0.0,
      dominant_instrument=self._last_instrument,
      activity_score=self._activity_score,
      phase=self._phase,
    )
