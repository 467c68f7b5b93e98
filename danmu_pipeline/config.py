"""
弹幕管线配置
触发调度、流式请求和出屏节奏相关的参数（时间单位均为秒）
"""

from dataclasses import dataclass, field

from audio_features import AggregatorConfig


@dataclass(frozen=True)
class SchedulerConfig:
  """
  DanmuScheduler 配置

  间隔 = clamp(min_interval, base_max, uniform(base_min, base_max) * (1 - 0.55 * drive))
  """

  min_interval: float = 2.5
  """触发间隔的绝对下限（秒）"""

  base_min: float = 3.0
  """随机间隔下界（秒）"""

  base_max: float = 8.0
  """随机间隔上界（秒），同时是间隔的上限"""

  max_concurrency: int = 3
  """并发请求上限"""

  up_threshold: float = 0.65
  """drive 高于此值才考虑进入高状态"""

  down_threshold: float = 0.4
  """drive 低于此值才考虑退出高状态"""

  promote_delay: float = 0.4
  """进入高状态前距上次切换的最短时间（秒）"""

  demote_delay: float = 0.8
  """退出高状态前距上次切换的最短时间（秒）"""

  gate_concurrency_by_state: bool = False
  """开启后低状态下并发数固定为 1；默认只记录状态，不影响并发公式"""


@dataclass(frozen=True)
class PacingConfig:
  """
  弹幕出屏节奏

  延迟 = clamp(min_gap, max_gap, (min_gap + (max_gap - min_gap) * (1 - drive)) * jitter)
  """

  min_gap: float = 3.0
  """相邻两条弹幕的目标最小间隔（秒）"""

  max_gap: float = 10.0
  """相邻两条弹幕的最大间隔（秒）"""

  jitter_min: float = 0.85
  """抖动系数下界"""

  jitter_max: float = 1.15
  """抖动系数上界"""

  min_forced_gap: float = 0.5
  """距上次出屏不足 min_gap 时，补足等待的最小值（秒）"""


@dataclass(frozen=True)
class PipelineConfig:
  """
  DanmuPipeline 配置

  scheduler.max_concurrency 以本配置的 max_concurrency 为准。
  """

  api_url: str = "http://localhost:3000/api/analyze"
  """生成服务地址（POST，返回 application/x-ndjson）"""

  need_comments: int = 4
  """每次请求希望生成的弹幕条数"""

  locale: str = "zh-CN"
  """弹幕语言"""

  max_concurrency: int = 2
  """同时在途的生成请求上限（硬上限，手动触发也受限）"""

  rms_threshold: float = 0.01
  """低于此能量的帧直接忽略"""

  require_stability: bool = False
  """开启后窗口不稳定或置信度不足时不触发"""

  stability_confidence: float = 0.45
  """稳定度门控所需的置信度"""

  stability_window: float = 1.5
  """稳定度门控所需的持续稳定时长（秒）"""

  stability_check_interval: float = 1.0
  """稳定度检测的最短间隔（秒）"""

  require_activity: bool = False
  """开启后活动度进入 ready 阶段前不触发"""

  energy_enter_threshold: float = 0.08
  """活动度 >= 此值进入 ready 阶段"""

  energy_exit_threshold: float = 0.035
  """活动度 <= 此值回到 idle 阶段"""

  shown_history_size: int = 50
  """保留的已出屏弹幕条数，随请求发送给生成服务用于去重"""

  talking_points: tuple[str, ...] = ()
  """附带给生成服务的话题提示（可选）"""

  request_timeout: float = 15.0
  """生成请求的连接/读取超时（秒）"""

  pacing: PacingConfig = field(default_factory=PacingConfig)
  """出屏节奏"""

  scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
  """触发调度"""

  aggregator: AggregatorConfig = field(default_factory=AggregatorConfig)
  """特征聚合窗口"""
