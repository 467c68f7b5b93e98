"""
audio_features 模块
音频特征帧模型 + 滑动窗口聚合器
"""

from .models import FeatureFrame, FeatureWindow, StabilityMetrics
from .config import AggregatorConfig, StabilityThresholds
from .aggregator import FeatureAggregator

__all__ = [
  "FeatureFrame",
  "FeatureWindow",
  "StabilityMetrics",
  "AggregatorConfig",
  "StabilityThresholds",
  "FeatureAggregator",
]
