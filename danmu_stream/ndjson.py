"""
NDJSON 行缓冲
把任意切分的字节块还原为完整的文本行
"""

import codecs
from typing import Optional


class NdjsonLineBuffer:
  """
  增量行缓冲

  网络分块与记录边界无关：一条记录可能跨越多个块，
  一个多字节 UTF-8 字符也可能被拆开，二者都在这里拼回。

  用法:
    buf = NdjsonLineBuffer()
    for chunk in chunks:
      for line in buf.feed(chunk):
        ...
    tail = buf.finish()
  """

  def __init__(self, encoding: str = "utf-8"):
    self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
    self._buffer = ""

  def feed(self, chunk: bytes) -> list[str]:
    """
    追加一个字节块

    Returns:
      本次凑齐的所有非空行（已去除首尾空白）
    """
    self._buffer += self._decoder.decode(chunk)
    lines: list[str] = []
    while True:
      idx = self._buffer.find("\n")
      if idx < 0:
        break
      line = self._buffer[:idx].strip()
      self._buffer = self._buffer[idx + 1:]
      if line:
        lines.append(line)
    return lines

  def finish(self) -> Optional[str]:
    """
    结束输入

    Returns:
      没有换行结尾的残余片段；为空时返回 None
    """
    self._buffer += self._decoder.decode(b"", final=True)
    tail = self._buffer.strip()
    self._buffer = ""
    return tail or None
