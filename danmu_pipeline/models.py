"""
数据模型
调度状态快照和管线状态
"""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class ScheduleState:
  """
  调度器滞回状态快照

  Attributes:
    high_state: 是否处于高活跃状态
    last_switch_ts: 上次状态切换时间（秒，时钟时间），尚未切换过为 None
    current_concurrency: 最近一次计算出的并发数
  """
  high_state: bool = False
  last_switch_ts: Optional[float] = None
  current_concurrency: int = 1

  def to_dict(self) -> dict:
    return {
      "high_state": self.high_state,
      "last_switch_ts": self.last_switch_ts,
      "current_concurrency": self.current_concurrency,
    }


@dataclass(frozen=True)
class PipelineStatus:
  """
  管线运行状态

  Attributes:
    is_active: 是否处于运行态
    current_style: 生成服务最近确认的风格
    danmu_count: 已出屏的弹幕数
    pending_requests: 在途生成请求数
    frame_count: 聚合器当前帧数
    queued_comments: 等待出屏的弹幕数
    high_state: 调度器是否处于高活跃状态
    last_drive: 最近一次的 drive
    stability_confidence: 最近一次稳定度检测的置信度
    stability_duration: 最近一次稳定度检测的持续稳定时长（秒）
    dominant_instrument: 最近一帧报告的主乐器
    activity_score: 活动度（平滑后）
    phase: 活动阶段，"idle" 或 "ready"
  """
  is_active: bool
  current_style: Optional[str]
  danmu_count: int
  pending_requests: int
  frame_count: int
  queued_comments: int = 0
  high_state: bool = False
  last_drive: float = 0.0
  stability_confidence: float = 0.0
  stability_duration: float = 0.0
  dominant_instrument: Optional[str] = None
  activity_score: float = 0.0
  phase: str = "idle"

  def to_dict(self) -> dict:
    """转换为字典"""
    return {
      "is_active": self.is_active,
      "current_style": self.current_style,
      "danmu_count": self.danmu_count,
      "pending_requests": self.pending_requests,
      "frame_count": self.frame_count,
      "queued_comments": self.queued_comments,
      "high_state": self.high_state,
      "last_drive": round(self.last_drive, 3),
      "stability_confidence": round(self.stability_confidence, 3),
      "stability_duration": round(self.stability_duration, 3),
      "dominant_instrument": self.dominant_instrument,
      "activity_score": round(self.activity_score, 3),
      "phase": self.phase,
    }
