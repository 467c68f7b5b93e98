"""
特征聚合器
维护最近几秒的特征帧，计算窗口统计量并做稳定度检测
"""

import logging
import math
import time
from collections import deque
from dataclasses import replace
from typing import Callable, Optional

import numpy as np

from .config import AggregatorConfig, StabilityThresholds
from .models import (
  FeatureFrame, FeatureWindow, StabilityMetrics,
  SCALAR_FEATURES, VECTOR_FEATURES,
)

logger = logging.getLogger(__name__)

# 标量统计的取值范围（均值按归一化特征截断到 [0, 1]，方差放宽到 [0, 10]）
_MEAN_RANGE = (0.0, 1.0)
_VARIANCE_RANGE = (0.0, 10.0)


def _clip(value: float, low: float, high: float) -> float:
  """非有限值记为 0，其余截断到 [low, high]"""
  if not math.isfinite(value):
    return 0.0
  return max(low, min(high, value))


def _clamp01(value: float) -> float:
  return _clip(value, 0.0, 1.0)


class FeatureAggregator:
  """
  滑动窗口特征聚合器

  - add_frame: 追加帧并丢弃超过 max_window 的旧帧
  - compute_window_features: 对最近 min_window 内的帧做统计，帧数不足返回 None
  - check_stability: 质心 / chroma / 节拍三项稳定度 + 持续时长 + 置信度

  时间全部来自注入的 clock（秒），测试时可以替换为手动时钟。
  """

  def __init__(
    self,
    config: Optional[AggregatorConfig] = None,
    clock: Optional[Callable[[], float]] = None,
  ):
    self.config = config or AggregatorConfig()
    self._clock = clock or time.monotonic
    self._thresholds: StabilityThresholds = self.config.stability
    self._frames: deque[FeatureFrame] = deque()
    self._last_tempo: Optional[float] = None
    self._stable_since: Optional[float] = None

  @property
  def thresholds(self) -> StabilityThresholds:
    """当前生效的稳定度阈值"""
    return self._thresholds

  def add_frame(self, frame: FeatureFrame) -> None:
    """追加一帧特征"""
    self._frames.append(frame)
    self._cleanup_old_frames()
    if len(self._frames) % 50 == 0:
      logger.debug("特征聚合器: 当前帧数 %d, RMS: %s", len(self._frames), frame.rms)

  def update_stability_thresholds(self, **changes) -> None:
    """
    更新稳定度阈值

    Args:
      **changes: StabilityThresholds 的字段，例如 min_confidence=0.45
    """
    self._thresholds = replace(self._thresholds, **changes)

  def reset(self) -> None:
    """清空窗口"""
    self._frames.clear()
    self._last_tempo = None
    self._stable_since = None

  def get_frame_count(self) -> int:
    """当前保留的帧数"""
    return len(self._frames)

  def _cleanup_old_frames(self) -> None:
    now = self._clock()
    while self._frames and now - self._frames[0].timestamp >= self.config.max_window:
      self._frames.popleft()

  def compute_window_features(self) -> Optional[FeatureWindow]:
    """
    计算窗口统计特征

    Returns:
      窗口摘要；窗口内帧数不足 min_frames 时返回 None
    """
    now = self._clock()
    valid = [f for f in self._frames if now - f.timestamp < self.config.min_window]
    if len(valid) < max(1, self.config.min_frames):
      logger.debug(
        "特征聚合器: 有效帧数不足 %d/%d", len(valid), self.config.min_frames,
      )
      return None

    features = self._calculate_statistics(valid)
    instrument = self._compute_instrument_stats(valid)
    features.update({
      "tempo_bpm": self._estimate_tempo(valid),
      "beat_strength": self._calculate_beat_strength(valid),
      "dynamic_range": self._calculate_dynamic_range(valid),
      "loudness_lkfs": self._calculate_loudness(valid),
      "dominantInstrument": instrument[0],
      "instrumentHistogram": instrument[1],
      "instrumentConfidence": instrument[2],
    })

    return FeatureWindow(
      window_ms=int(round(self.config.min_window * 1000)),
      features=features,
    )

  def _calculate_statistics(self, frames: list[FeatureFrame]) -> dict:
    stats: dict = {}

    for attr, name in SCALAR_FEATURES:
      values = [getattr(f, attr) for f in frames if getattr(f, attr) is not None]
      mean = variance = peak = 0.0
      if values:
        arr = np.clip(np.nan_to_num(np.asarray(values, dtype=float)), *_MEAN_RANGE)
        mean = _clip(float(arr.mean()), *_MEAN_RANGE)
        variance = _clip(float(arr.var()), *_VARIANCE_RANGE)
        peak = float(arr.max())
      stats[f"{name}_mean"] = mean
      stats[f"{name}_variance"] = variance
      if attr == "rms":
        stats["rms_peak"] = peak

    for attr, name in VECTOR_FEATURES:
      vectors = [getattr(f, attr) for f in frames if getattr(f, attr)]
      if not vectors:
        stats[f"{name}_mean"] = []
        stats[f"{name}_variance"] = []
        continue
      # 以第一帧的维度为准，维度不一致的帧不参与统计
      dim = len(vectors[0])
      matrix = np.asarray([v for v in vectors if len(v) == dim], dtype=float)
      means = np.nanmean(matrix, axis=0)
      variances = np.nanvar(matrix, axis=0)
      stats[f"{name}_mean"] = [_clip(float(v), *_MEAN_RANGE) for v in means]
      stats[f"{name}_variance"] = [_clip(float(v), *_MEAN_RANGE) for v in variances]

    return stats

  def _compute_instrument_stats(
    self, frames: list[FeatureFrame],
  ) -> tuple[str, dict[str, float], float]:
    histogram: dict[str, float] = {}
    total = 0.0

    for frame in frames:
      if frame.instrument_probabilities:
        for label, value in frame.instrument_probabilities.items():
          if not math.isfinite(value) or value <= 0:
            continue
          histogram[label] = histogram.get(label, 0.0) + value
          total += value
      if frame.dominant_instrument:
        bonus = frame.instrument_confidence if frame.instrument_confidence is not None else 0.1
        histogram[frame.dominant_instrument] = histogram.get(frame.dominant_instrument, 0.0) + bonus
        total += bonus

    dominant = "unknown"
    confidence = 0.0
    if total > 0:
      for label in histogram:
        histogram[label] /= total
        if histogram[label] > confidence:
          confidence = histogram[label]
          dominant = label

    return dominant, histogram, _clamp01(confidence)

  def _estimate_tempo(self, frames: list[FeatureFrame]) -> float:
    """基于 spectral flux 峰值间隔估计 BPM"""
    flux = np.asarray(
      [f.spectral_flux for f in frames if f.spectral_flux is not None], dtype=float,
    )
    if flux.size < 10:
      return self.config.default_tempo

    peaks = self._detect_peaks(flux)
    if peaks.size < 2:
      return self.config.default_tempo

    avg_interval = float(np.diff(peaks).mean())
    bpm = 60_000.0 / (avg_interval * self.config.frame_period_ms)
    return max(60.0, min(180.0, bpm))

  @staticmethod
  def _detect_peaks(values: np.ndarray) -> np.ndarray:
    threshold = values.mean() + values.var() * 0.5
    middle = values[1:-1]
    mask = (middle > threshold) & (middle > values[:-2]) & (middle > values[2:])
    return np.flatnonzero(mask) + 1

  @staticmethod
  def _calculate_beat_strength(frames: list[FeatureFrame]) -> float:
    flux = np.asarray(
      [f.spectral_flux for f in frames if f.spectral_flux is not None], dtype=float,
    )
    if flux.size == 0:
      return 0.0
    return min(1.0, float(flux.var() / (flux.mean() + 0.001)))

  @staticmethod
  def _calculate_dynamic_range(frames: list[FeatureFrame]) -> float:
    rms = [f.rms for f in frames if f.rms is not None]
    if not rms:
      return 0.0
    return float(max(rms) - min(rms))

  @staticmethod
  def _calculate_loudness(frames: list[FeatureFrame]) -> float:
    """近似 LKFS：平均 RMS 转 dB 后平移并截断到 [-70, -10]"""
    rms = [f.rms for f in frames if f.rms is not None]
    if not rms:
      return 0.0
    avg = float(np.mean(rms))
    db = 20 * math.log10(max(avg, 1e-10))
    return max(-70.0, min(-10.0, db - 20))

  def check_stability(self) -> StabilityMetrics:
    """检查当前窗口是否稳定"""
    window = self.compute_window_features()
    if window is None:
      return StabilityMetrics()

    features = window.features
    t = self._thresholds

    centroid_stable = features["spectralCentroid_variance"] <= t.centroid_variance

    chroma_variance = features["chroma_variance"]
    chroma_mean_var = float(np.mean(chroma_variance)) if chroma_variance else 0.0
    chroma_stable = chroma_mean_var <= t.chroma_variance

    tempo = features["tempo_bpm"] or self._last_tempo or self.config.default_tempo
    previous = self._last_tempo if self._last_tempo is not None else tempo
    tempo_change = abs(tempo - previous)
    tempo_stable = tempo_change <= t.tempo_change
    self._last_tempo = tempo

    base_stable = centroid_stable and chroma_stable and tempo_stable

    now = self._clock()
    stability_duration = 0.0
    if base_stable:
      if self._stable_since is None:
        self._stable_since = now
      stability_duration = now - self._stable_since
    else:
      self._stable_since = None

    meets_min_duration = base_stable and stability_duration >= t.min_stability_duration
    confidence = _clamp01(self._calculate_confidence(features) - tempo_change / 400)
    overall_stable = meets_min_duration and confidence >= t.min_confidence

    logger.debug(
      "特征聚合器: 稳定性 质心:%s Chroma:%s 节拍:%s 整体:%s",
      centroid_stable, chroma_stable, tempo_stable, overall_stable,
    )

    return StabilityMetrics(
      centroid_stable=centroid_stable,
      chroma_stable=chroma_stable,
      tempo_stable=tempo_stable,
      tempo_change=tempo_change,
      base_stable=base_stable,
      meets_min_duration=meets_min_duration,
      overall_stable=overall_stable,
      stability_duration=stability_duration,
      confidence=confidence,
    )

  @staticmethod
  def _calculate_confidence(features: dict) -> float:
    # 基础置信度 + 能量 + 特征完整度
    confidence = 0.5
    if features.get("rms_mean", 0) > 0.01:
      confidence += 0.2
    if len(features.get("chroma_mean", [])) == 12:
      confidence += 0.1
    if len(features.get("mfcc_mean", [])) == 13:
      confidence += 0.1
    if len(features.get("spectralContrast_mean", [])) == 6:
      confidence += 0.1
    if features.get("instrumentConfidence", 0) > 0.4:
      confidence += 0.05
    return min(1.0, confidence)
