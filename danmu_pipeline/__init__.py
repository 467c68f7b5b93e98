"""
danmu_pipeline 模块
音频驱动的弹幕触发调度、流式生成和出屏节奏控制
"""

from .config import PipelineConfig, SchedulerConfig, PacingConfig
from .models import PipelineStatus, ScheduleState
from .scheduler import DanmuScheduler
from .log_throttle import ThrottledLogger
from .pipeline import DanmuPipeline, DanmuRenderer

__all__ = [
  "PipelineConfig",
  "SchedulerConfig",
  "PacingConfig",
  "PipelineStatus",
  "ScheduleState",
  "DanmuScheduler",
  "ThrottledLogger",
  "DanmuPipeline",
  "DanmuRenderer",
]
