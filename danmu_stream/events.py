"""
流式事件模型
生成服务逐行返回的三种记录：style / comment / done
"""

from dataclasses import dataclass
from typing import Any, Optional, Union


@dataclass(frozen=True)
class StyleEvent:
  """风格识别结果"""
  label: str
  confidence: float


@dataclass(frozen=True)
class CommentEvent:
  """单条弹幕"""
  index: int
  text: str


@dataclass(frozen=True)
class DoneEvent:
  """流结束标记"""


StreamEvent = Union[StyleEvent, CommentEvent, DoneEvent]


def parse_event(record: Any) -> Optional[StreamEvent]:
  """
  将一条已解码的 JSON 记录转换为事件

  Args:
    record: json.loads 的结果

  Returns:
    对应事件；未知 type 或非对象记录返回 None（向前兼容，直接忽略）

  Raises:
    ValueError: 已知 type 但字段缺失或类型错误
  """
  if not isinstance(record, dict):
    return None

  kind = record.get("type")
  if kind == "style":
    label = record.get("style")
    if not isinstance(label, str):
      raise ValueError(f"style 记录缺少 style 字段: {record!r}")
    confidence = record.get("confidence", 0)
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
      raise ValueError(f"style 记录 confidence 不是数值: {record!r}")
    return StyleEvent(label=label, confidence=float(confidence))

  if kind == "comment":
    text = record.get("text")
    if not isinstance(text, str):
      raise ValueError(f"comment 记录缺少 text 字段: {record!r}")
    idx = record.get("idx", 0)
    if isinstance(idx, bool) or not isinstance(idx, (int, float)):
      raise ValueError(f"comment 记录 idx 不是数值: {record!r}")
    return CommentEvent(index=int(idx), text=text)

  if kind == "done":
    return DoneEvent()

  return None
