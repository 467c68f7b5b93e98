"""
数据模型
定义音频特征帧、窗口统计和稳定度检测结果
"""

from dataclasses import dataclass, field
from typing import Any, Optional


# 生产者字段名（camelCase）→ 帧属性名
_SCALAR_KEYS = {
  "rms": "rms",
  "spectralCentroid": "spectral_centroid",
  "zcr": "zcr",
  "spectralFlatness": "spectral_flatness",
  "spectralFlux": "spectral_flux",
  "spectralBandwidth": "spectral_bandwidth",
  "spectralRolloff": "spectral_rolloff",
  "spectralSpread": "spectral_spread",
  "spectralSkewness": "spectral_skewness",
  "spectralKurtosis": "spectral_kurtosis",
  "loudness": "loudness",
  "perceptualSpread": "perceptual_spread",
  "perceptualSharpness": "perceptual_sharpness",
  "voiceProb": "voice_prob",
  "percussiveRatio": "percussive_ratio",
  "harmonicRatio": "harmonic_ratio",
  "instrumentConfidence": "instrument_confidence",
}

_VECTOR_KEYS = {
  "mfcc": "mfcc",
  "chroma": "chroma",
  "spectralContrast": "spectral_contrast",
}

# 帧属性名 → 窗口统计中的字段前缀（保持与生成服务约定的 camelCase 名称）
SCALAR_FEATURES: tuple[tuple[str, str], ...] = tuple(
  (attr, key) for key, attr in _SCALAR_KEYS.items()
)
VECTOR_FEATURES: tuple[tuple[str, str], ...] = tuple(
  (attr, key) for key, attr in _VECTOR_KEYS.items()
)


def _pick(data: dict, camel: str, snake: str) -> Any:
  if camel in data:
    return data[camel]
  return data.get(snake)


def _as_float(value: Any) -> Optional[float]:
  if isinstance(value, bool) or not isinstance(value, (int, float)):
    return None
  return float(value)


def _as_vector(value: Any) -> Optional[tuple[float, ...]]:
  if not isinstance(value, (list, tuple)):
    return None
  try:
    return tuple(float(v) for v in value)
  except (TypeError, ValueError):
    return None


@dataclass(frozen=True)
class FeatureFrame:
  """
  单帧音频特征（由特征提取端产出，只读）

  Attributes:
    timestamp: 帧时间戳（秒，与注入的时钟同源）
    rms: 瞬时能量
    其余标量/向量字段均可缺省
  """
  timestamp: float
  rms: Optional[float] = None
  spectral_centroid: Optional[float] = None
  zcr: Optional[float] = None
  spectral_flatness: Optional[float] = None
  spectral_flux: Optional[float] = None
  spectral_bandwidth: Optional[float] = None
  spectral_rolloff: Optional[float] = None
  spectral_spread: Optional[float] = None
  spectral_skewness: Optional[float] = None
  spectral_kurtosis: Optional[float] = None
  loudness: Optional[float] = None
  perceptual_spread: Optional[float] = None
  perceptual_sharpness: Optional[float] = None
  voice_prob: Optional[float] = None
  percussive_ratio: Optional[float] = None
  harmonic_ratio: Optional[float] = None
  instrument_confidence: Optional[float] = None
  mfcc: Optional[tuple[float, ...]] = None
  chroma: Optional[tuple[float, ...]] = None
  spectral_contrast: Optional[tuple[float, ...]] = None
  instrument_probabilities: Optional[dict[str, float]] = None
  dominant_instrument: Optional[str] = None

  @classmethod
  def from_features(
    cls,
    timestamp: float,
    rms: Optional[float] = None,
    features: Optional[dict] = None,
  ) -> "FeatureFrame":
    """
    从特征字典创建帧

    同时接受 camelCase（前端/提取端字段名）和 snake_case 键。
    特征字典中缺少 rms 时使用传入的 rms。

    Args:
      timestamp: 帧时间戳（秒）
      rms: 瞬时能量
      features: 特征字典（可选）
    """
    data = features or {}
    kwargs: dict[str, Any] = {}

    for camel, attr in _SCALAR_KEYS.items():
      value = _as_float(_pick(data, camel, attr))
      if value is not None:
        kwargs[attr] = value

    for camel, attr in _VECTOR_KEYS.items():
      value = _as_vector(_pick(data, camel, attr))
      if value is not None:
        kwargs[attr] = value

    if kwargs.get("rms") is None and rms is not None:
      kwargs["rms"] = float(rms)

    probs = _pick(data, "instrumentProbabilities", "instrument_probabilities")
    if isinstance(probs, dict):
      kwargs["instrument_probabilities"] = {
        str(k): float(v) for k, v in probs.items()
        if _as_float(v) is not None
      }

    dominant = _pick(data, "dominantInstrument", "dominant_instrument")
    if isinstance(dominant, str) and dominant:
      kwargs["dominant_instrument"] = dominant

    return cls(timestamp=timestamp, **kwargs)


@dataclass(frozen=True)
class FeatureWindow:
  """
  窗口统计摘要（按需计算，不持久化）

  Attributes:
    window_ms: 统计窗口长度（毫秒）
    features: 扁平化的统计字段（*_mean / *_variance / tempo_bpm 等）
  """
  window_ms: int
  features: dict[str, Any] = field(default_factory=dict)

  def to_dict(self) -> dict:
    """转换为请求负载片段"""
    return {
      "window_ms": self.window_ms,
      "features": dict(self.features),
    }


@dataclass(frozen=True)
class StabilityMetrics:
  """稳定度检测结果"""
  centroid_stable: bool = False
  chroma_stable: bool = False
  tempo_stable: bool = False
  tempo_change: float = 0.0
  base_stable: bool = False
  meets_min_duration: bool = False
  overall_stable: bool = False
  stability_duration: float = 0.0
  confidence: float = 0.0

  def to_dict(self) -> dict:
    return {
      "centroid_stable": self.centroid_stable,
      "chroma_stable": self.chroma_stable,
      "tempo_stable": self.tempo_stable,
      "tempo_change": round(self.tempo_change, 3),
      "base_stable": self.base_stable,
      "meets_min_duration": self.meets_min_duration,
      "overall_stable": self.overall_stable,
      "stability_duration": round(self.stability_duration, 3),
      "confidence": round(self.confidence, 3),
    }
