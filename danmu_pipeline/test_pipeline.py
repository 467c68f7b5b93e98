"""
弹幕管线测试：触发门控、请求名额归还、取消、失败不补发
"""

import asyncio
import json
import random
import sys
import time
from pathlib import Path

project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
  sys.path.insert(0, str(project_root))

import httpx
import pytest

from audio_features import AggregatorConfig, FeatureAggregator, FeatureFrame
from danmu_pipeline import (
  DanmuPipeline, PacingConfig, PipelineConfig, PipelineStatus, SchedulerConfig,
)


PAYLOAD = (
  '{"type":"style","style":"Electronic","confidence":0.8}\n'
  '{"type":"comment","idx":0,"text":"节奏好稳"}\n'
  '{"type":"comment","idx":1,"text":"  前奏绝了  "}\n'
  '{"type":"comment","idx":2,"text":"   "}\n'
  '{"type":"comment","idx":3,"text":"循环了"}\n'
  '{"type":"done"}\n'
).encode("utf-8")

FAST_PACING = PacingConfig(min_gap=0.02, max_gap=0.05, min_forced_gap=0.01)


class _Clock:
  def __init__(self, now: float = 1000.0):
    self.now = now

  def __call__(self) -> float:
    return self.now


class _Renderer:
  def __init__(self):
    self.texts: list[str] = []
    self.times: list[float] = []

  def ingest_text(self, text: str) -> None:
    self.texts.append(text)
    self.times.append(time.monotonic())


def _transport(seen: list, status: int = 200, body: bytes = PAYLOAD) -> httpx.MockTransport:
  def handler(request: httpx.Request) -> httpx.Response:
    seen.append(json.loads(request.content))
    return httpx.Response(status, content=body)
  return httpx.MockTransport(handler)


def _blocking_transport() -> httpx.MockTransport:
  async def handler(request: httpx.Request) -> httpx.Response:
    await asyncio.Event().wait()
    return httpx.Response(200)
  return httpx.MockTransport(handler)


def _make_pipeline(renderer, client, clock=None, **config) -> tuple[DanmuPipeline, FeatureAggregator]:
  clock = clock or time.monotonic
  aggregator = FeatureAggregator(clock=clock)
  pipeline = DanmuPipeline(
    renderer,
    PipelineConfig(api_url="http://generator.test/api/analyze", **config),
    aggregator=aggregator,
    clock=clock,
    rng=random.Random(5),
    http_client=client,
  )
  return pipeline, aggregator


async def _wait_for(predicate, timeout: float = 2.0) -> None:
  deadline = time.monotonic() + timeout
  while not predicate() and time.monotonic() < deadline:
    await asyncio.sleep(0.01)


def test_inactive_pipeline_ignores_features() -> None:
  renderer = _Renderer()
  pipeline = DanmuPipeline(renderer)
  assert pipeline.handle_features(0.9, {"spectralCentroid": 0.5}) is False
  assert pipeline.status.frame_count == 0
  assert pipeline.pending_requests == 0


def test_low_energy_never_takes_request_slot() -> None:
  async def _go() -> list:
    seen: list = []
    async with httpx.AsyncClient(transport=_transport(seen)) as client:
      clock = _Clock()
      pipeline, _ = _make_pipeline(_Renderer(), client, clock=clock, rms_threshold=0.05)
      pipeline.start()
      for _ in range(100):
        clock.now += 0.5
        assert pipeline.handle_features(0.049) is False
        assert pipeline.pending_requests == 0
      await asyncio.sleep(0)
      pipeline.stop()
    return seen

  assert asyncio.run(_go()) == []


def test_fifty_loud_frames_trigger_at_most_once() -> None:
  async def _go() -> tuple[int, list]:
    seen: list = []
    async with httpx.AsyncClient(transport=_transport(seen)) as client:
      clock = _Clock()
      pipeline, _ = _make_pipeline(
        _Renderer(), client, clock=clock,
        rms_threshold=0.01,
        scheduler=SchedulerConfig(min_interval=2.5),
      )
      pipeline.start()
      triggers = 0
      for _ in range(50):
        if pipeline.handle_features(0.8, {"spectralCentroid": 0.3}):
          triggers += 1
        clock.now += 0.05
        await asyncio.sleep(0)
      await pipeline.wait_settled()
      assert pipeline.pending_requests == 0
      pipeline.stop()
    return triggers, seen

  triggers, seen = asyncio.run(_go())
  assert triggers == 1
  assert len(seen) == 1


def test_interval_elapsed_allows_next_trigger() -> None:
  async def _go() -> int:
    seen: list = []
    async with httpx.AsyncClient(transport=_transport(seen)) as client:
      clock = _Clock()
      pipeline, _ = _make_pipeline(_Renderer(), client, clock=clock)
      pipeline.start()
      assert pipeline.handle_features(0.5) is True
      await pipeline.wait_settled()
      clock.now += 8.0
      assert pipeline.handle_features(0.5) is True
      await pipeline.wait_settled()
      pipeline.stop()
    return len(seen)

  assert asyncio.run(_go()) == 2


def test_dynamic_concurrency_blocks_trigger() -> None:
  async def _go() -> None:
    async with httpx.AsyncClient(transport=_blocking_transport()) as client:
      clock = _Clock()
      pipeline, _ = _make_pipeline(_Renderer(), client, clock=clock, max_concurrency=3)
      pipeline.start()
      # drive 很低 → concurrency == 1
      assert pipeline.handle_features(0.02) is True
      clock.now += 10.0
      assert pipeline.handle_features(0.02) is False
      assert pipeline.pending_requests == 1
      pipeline.stop()
      await pipeline.wait_settled()
      assert pipeline.pending_requests == 0

  asyncio.run(_go())


def test_comments_released_in_arrival_order() -> None:
  async def _go() -> tuple[_Renderer, list, PipelineStatus]:
    seen: list = []
    renderer = _Renderer()
    async with httpx.AsyncClient(transport=_transport(seen)) as client:
      pipeline, aggregator = _make_pipeline(renderer, client, pacing=FAST_PACING)
      pipeline.start()
      aggregator.add_frame(FeatureFrame.from_features(time.monotonic(), 0.4, {"zcr": 0.1}))

      await pipeline.manual_trigger()
      assert pipeline.pending_requests == 0
      await _wait_for(lambda: len(renderer.texts) == 3)

      # 第二次请求带上风格确认结果
      aggregator.add_frame(FeatureFrame.from_features(time.monotonic(), 0.4))
      await pipeline.manual_trigger()
      await _wait_for(lambda: len(renderer.texts) == 6)
      status = pipeline.status
      pipeline.stop()
    return renderer, seen, status

  renderer, seen, status = asyncio.run(_go())
  assert renderer.texts[:3] == ["节奏好稳", "前奏绝了", "循环了"]
  assert renderer.texts[3:] == renderer.texts[:3]
  for earlier, later in zip(renderer.times, renderer.times[1:]):
    assert later - earlier >= 0.009

  first, second = seen
  assert set(first) == {"window_ms", "features", "need_comments", "locale"}
  assert first["window_ms"] == 2000
  assert first["need_comments"] == 4
  assert first["locale"] == "zh-CN"
  assert second["style"] == "Electronic"
  assert second["confidence"] == 0.8
  assert second["existingDanmu"] == ["节奏好稳", "前奏绝了", "循环了"]

  assert status.current_style == "Electronic"
  assert status.danmu_count == 6
  assert status.is_active is True


def test_failed_request_yields_no_fallback_comment() -> None:
  async def _go() -> tuple[_Renderer, DanmuPipeline]:
    seen: list = []
    renderer = _Renderer()
    async with httpx.AsyncClient(transport=_transport(seen, status=500, body=b"oops")) as client:
      pipeline, aggregator = _make_pipeline(renderer, client, pacing=FAST_PACING)
      pipeline.start()
      aggregator.add_frame(FeatureFrame.from_features(time.monotonic(), 0.4))
      await pipeline.manual_trigger()
      await asyncio.sleep(0.1)
      pipeline.stop()
    return renderer, pipeline

  renderer, pipeline = asyncio.run(_go())
  assert renderer.texts == []
  assert pipeline.pending_requests == 0
  assert pipeline.status.queued_comments == 0


def test_transport_exception_settles_request_slot() -> None:
  def _raise(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectTimeout("timed out", request=request)

  async def _go() -> int:
    async with httpx.AsyncClient(transport=httpx.MockTransport(_raise)) as client:
      pipeline, aggregator = _make_pipeline(_Renderer(), client)
      pipeline.start()
      aggregator.add_frame(FeatureFrame.from_features(time.monotonic(), 0.4))
      before = pipeline.pending_requests
      await pipeline.manual_trigger()
      pipeline.stop()
      return pipeline.pending_requests - before

  assert asyncio.run(_go()) == 0


def test_starved_window_aborts_silently() -> None:
  async def _go() -> None:
    seen: list = []
    async with httpx.AsyncClient(transport=_transport(seen)) as client:
      clock = _Clock()
      aggregator = FeatureAggregator(AggregatorConfig(min_frames=5), clock=clock)
      pipeline = DanmuPipeline(
        _Renderer(), PipelineConfig(), aggregator=aggregator, clock=clock, http_client=client,
      )
      pipeline.start()
      assert pipeline.handle_features(0.9) is True
      assert pipeline.pending_requests == 0
      assert pipeline.trigger() is None
      await asyncio.sleep(0)
      pipeline.stop()
    assert seen == []

  asyncio.run(_go())


def test_manual_trigger_respects_hard_ceiling() -> None:
  async def _go() -> None:
    async with httpx.AsyncClient(transport=_blocking_transport()) as client:
      pipeline, aggregator = _make_pipeline(_Renderer(), client, max_concurrency=1)
      pipeline.start()
      aggregator.add_frame(FeatureFrame.from_features(time.monotonic(), 0.4))
      first = pipeline.trigger()
      assert first is not None
      assert pipeline.trigger() is None
      assert pipeline.pending_requests == 1

      await asyncio.sleep(0.01)
      pipeline.stop()
      await pipeline.wait_settled()
      assert first.cancelled()
      assert pipeline.pending_requests == 0

  asyncio.run(_go())


def test_manual_trigger_when_stopped_is_noop() -> None:
  async def _go() -> None:
    pipeline = DanmuPipeline(_Renderer())
    assert pipeline.trigger() is None
    await pipeline.manual_trigger()
    assert pipeline.pending_requests == 0

  asyncio.run(_go())


def test_stop_does_not_zero_pending_requests_synchronously() -> None:
  async def _go() -> None:
    async with httpx.AsyncClient(transport=_blocking_transport()) as client:
      pipeline, aggregator = _make_pipeline(_Renderer(), client)
      pipeline.start()
      aggregator.add_frame(FeatureFrame.from_features(time.monotonic(), 0.4))
      pipeline.trigger()
      await asyncio.sleep(0.01)
      pipeline.stop()
      assert pipeline.pending_requests == 1
      await pipeline.wait_settled()
      assert pipeline.pending_requests == 0

  asyncio.run(_go())


def test_stability_gate_blocks_unstable_audio() -> None:
  async def _go() -> None:
    seen: list = []
    async with httpx.AsyncClient(transport=_transport(seen)) as client:
      clock = _Clock()
      pipeline, _ = _make_pipeline(_Renderer(), client, clock=clock, require_stability=True)
      pipeline.start()
      # 单帧窗口稳定时长为 0，达不到 1.5s 的稳定要求
      assert pipeline.handle_features(0.5, {"spectralCentroid": 0.3}) is False
      assert pipeline.pending_requests == 0
      pipeline.stop()
    assert seen == []

  asyncio.run(_go())


def test_status_dict() -> None:
  pipeline = DanmuPipeline(_Renderer())
  data = pipeline.status.to_dict()
  assert data["is_active"] is False
  assert data["current_style"] is None
  assert data["danmu_count"] == 0
  assert data["pending_requests"] == 0
  assert data["frame_count"] == 0


def test_activity_phase_enters_and_exits_ready() -> None:
  async def _go() -> None:
    seen: list = []
    async with httpx.AsyncClient(transport=_transport(seen)) as client:
      clock = _Clock()
      pipeline, _ = _make_pipeline(_Renderer(), client, clock=clock, require_activity=True)
      pipeline.start()

      # 0.5 * 0.45 * 0.25 = 0.056 < 0.08，仍在收集阶段
      assert pipeline.handle_features(0.5) is False
      assert pipeline.status.phase == "idle"
      assert pipeline.status.activity_score == pytest.approx(0.05625)
      assert pipeline.pending_requests == 0

      clock.now += 0.05
      assert pipeline.handle_features(0.5) is True
      assert pipeline.status.phase == "ready"
      await pipeline.wait_settled()

      # 低活动帧让平滑后的活动度逐步回落到退出阈值以下
      for _ in range(10):
        clock.now += 0.05
        pipeline.handle_features(0.02)
        if pipeline.status.phase == "idle":
          break
      assert pipeline.status.phase == "idle"
      assert pipeline.status.activity_score <= 0.035

      clock.now += 20.0
      assert pipeline.handle_features(0.02) is False
      pipeline.stop()
    assert len(seen) == 1

  asyncio.run(_go())


def test_activity_weights_voice_and_percussion() -> None:
  async def _go() -> float:
    clock = _Clock()
    pipeline, _ = _make_pipeline(
      _Renderer(), None, clock=clock, require_activity=True, energy_enter_threshold=1.0,
    )
    pipeline.start()
    assert pipeline.handle_features(0.2, {
      "voiceProb": 1.0, "percussiveRatio": 1.0, "instrumentConfidence": 1.0,
    }) is False
    score = pipeline.status.activity_score
    pipeline.stop()
    return score

  # (0.2*0.45 + 0.25 + 0.2 + 0.1) * 0.25
  assert asyncio.run(_go()) == pytest.approx(0.16)


def test_rejected_frame_still_updates_drive() -> None:
  async def _go() -> float:
    clock = _Clock()
    pipeline, _ = _make_pipeline(_Renderer(), None, clock=clock, require_stability=True)
    pipeline.start()
    assert pipeline.handle_features(0.9, {"spectralCentroid": 0.3}) is False
    drive = pipeline.status.last_drive
    pipeline.stop()
    return drive

  assert asyncio.run(_go()) == pytest.approx(0.9 ** 0.8)


def test_status_reports_instrument_and_stability_duration() -> None:
  async def _go() -> dict:
    clock = _Clock()
    pipeline, _ = _make_pipeline(_Renderer(), None, clock=clock, require_stability=True)
    pipeline.start()
    pipeline.handle_features(0.5, {"spectralCentroid": 0.3, "dominantInstrument": "guitar"})
    clock.now += 1.0
    # 不带乐器的帧不覆盖最近一次的主乐器
    pipeline.handle_features(0.5, {"spectralCentroid": 0.3})
    data = pipeline.status.to_dict()
    pipeline.stop()
    return data

  data = asyncio.run(_go())
  assert data["dominant_instrument"] == "guitar"
  assert data["stability_duration"] == pytest.approx(1.0)
  assert data["phase"] in ("idle", "ready")
