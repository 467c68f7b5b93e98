"""
特征聚合器配置
"""

from dataclasses import dataclass, field


@dataclass(frozen=True)
class StabilityThresholds:
  """稳定度检测阈值"""

  centroid_variance: float = 0.15
  """频谱质心方差上限"""

  chroma_variance: float = 0.08
  """chroma 平均方差上限"""

  tempo_change: float = 18.0
  """相邻两次检测的 BPM 变化上限"""

  min_stability_duration: float = 1.5
  """持续稳定的最短时长（秒）"""

  min_confidence: float = 0.4
  """整体稳定所需的最低置信度"""


@dataclass(frozen=True)
class AggregatorConfig:
  """
  FeatureAggregator 配置

  窗口长度均以秒计，上报给生成服务时转换为毫秒。
  """

  max_window: float = 4.0
  """帧保留时长（秒），超出即丢弃"""

  min_window: float = 2.0
  """统计窗口长度（秒），只有更新的帧参与统计"""

  min_frames: int = 1
  """统计窗口内至少需要的帧数，不足时视为窗口未就绪"""

  frame_period_ms: float = 23.2
  """单帧对应的时长（毫秒），用于节拍估计"""

  default_tempo: float = 120.0
  """无法估计节拍时的默认 BPM"""

  stability: StabilityThresholds = field(default_factory=StabilityThresholds)
  """稳定度检测阈值"""
