"""
danmu_stream 模块
生成服务 NDJSON 流的事件模型、行缓冲和流式客户端
"""

from .events import CommentEvent, DoneEvent, StreamEvent, StyleEvent, parse_event
from .ndjson import NdjsonLineBuffer
from .client import DEFAULT_TIMEOUT, StreamHandlers, consume_stream, fetch_analyze

__all__ = [
  "StyleEvent",
  "CommentEvent",
  "DoneEvent",
  "StreamEvent",
  "parse_event",
  "NdjsonLineBuffer",
  "StreamHandlers",
  "consume_stream",
  "fetch_analyze",
  "DEFAULT_TIMEOUT",
]
