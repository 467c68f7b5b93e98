"""
流式弹幕客户端
POST 窗口特征到生成服务，逐行解析 application/x-ndjson 响应并回调
"""

import json
import logging
from collections.abc import AsyncIterable
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx

from .events import CommentEvent, DoneEvent, StreamEvent, StyleEvent, parse_event
from .ndjson import NdjsonLineBuffer

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15.0
"""单次请求的连接/读取超时（秒），避免无响应的服务永久占用并发名额"""


@dataclass
class StreamHandlers:
  """
  流式事件回调集合，全部可选

  Attributes:
    on_style: 收到风格识别结果
    on_comment: 收到一条弹幕
    on_done: 收到结束标记
    on_error: 单行解析失败（可多次）或传输失败（每次请求至多一次）
  """
  on_style: Optional[Callable[[StyleEvent], None]] = None
  on_comment: Optional[Callable[[CommentEvent], None]] = None
  on_done: Optional[Callable[[], None]] = None
  on_error: Optional[Callable[[Exception], None]] = None

  def dispatch(self, event: StreamEvent) -> None:
    """把事件分发给对应回调"""
    if isinstance(event, StyleEvent):
      if self.on_style:
        self.on_style(event)
    elif isinstance(event, CommentEvent):
      if self.on_comment:
        self.on_comment(event)
    elif isinstance(event, DoneEvent):
      if self.on_done:
        self.on_done()

  def report_error(self, error: Exception) -> None:
    """调用 on_error；错误回调自身抛出的异常只记录日志"""
    if self.on_error is None:
      return
    try:
      self.on_error(error)
    except Exception as e:
      logger.error("on_error 回调执行错误: %s", e)


def _handle_line(line: str, handlers: StreamHandlers) -> None:
  event = parse_event(json.loads(line))
  if event is not None:
    handlers.dispatch(event)


async def consume_stream(
  chunks: AsyncIterable[bytes],
  handlers: StreamHandlers,
) -> None:
  """
  消费字节块流

  - 每凑齐一行就解码并分发，解析失败的行通过 on_error 报告后继续
  - 流结束时残留的无换行片段尝试解析一次，失败静默丢弃

  Args:
    chunks: 异步字节块迭代器（块边界任意）
    handlers: 回调集合
  """
  buffer = NdjsonLineBuffer()

  async for chunk in chunks:
    for line in buffer.feed(chunk):
      try:
        _handle_line(line, handlers)
      except Exception as e:
        logger.debug("NDJSON 行解析失败: %s ← %s", e, line[:80])
        handlers.report_error(e)

  tail = buffer.finish()
  if tail:
    try:
      _handle_line(tail, handlers)
    except Exception as e:
      logger.debug("丢弃无法解析的尾部片段: %s", e)


async def _post_and_consume(
  client: httpx.AsyncClient,
  url: str,
  body: Any,
  handlers: StreamHandlers,
  timeout: float,
) -> None:
  async with client.stream(
    "POST",
    url,
    json=body if body is not None else {},
    headers={"Accept": "application/x-ndjson"},
    timeout=timeout,
  ) as response:
    if not response.is_success:
      raise RuntimeError(f"生成服务返回错误状态: {response.status_code}")
    await consume_stream(response.aiter_bytes(), handlers)


async def fetch_analyze(
  url: str,
  body: Any,
  handlers: StreamHandlers,
  client: Optional[httpx.AsyncClient] = None,
  timeout: float = DEFAULT_TIMEOUT,
) -> None:
  """
  请求生成服务并以流式方式消费响应

  传输层失败（非 2xx、连接/读取超时、其他异常）只捕获一次并通过
  on_error 报告一次；失败前已经分发的事件保持有效。取消（CancelledError）
  不会被吞掉。

  Args:
    url: 生成服务地址
    body: JSON 请求体
    handlers: 回调集合
    client: 复用的 httpx.AsyncClient（可选，不传则临时创建）
    timeout: 连接/读取超时（秒）
  """
  try:
    if client is not None:
      await _post_and_consume(client, url, body, handlers, timeout)
    else:
      async with httpx.AsyncClient(timeout=timeout) as owned:
        await _post_and_consume(owned, url, body, handlers, timeout)
  except Exception as e:
    logger.warning("弹幕流请求失败: %s", e)
    handlers.report_error(e)
