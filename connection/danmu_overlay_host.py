"""
弹幕 Overlay 服务
通过 WebSocket 把出屏弹幕推送给浏览器 overlay（OBS 浏览器源等）
"""

import asyncio
import json
import logging
import time
from typing import Optional

from websockets.asyncio.server import Server, ServerConnection, broadcast, serve
from websockets.exceptions import ConnectionClosed

logger = logging.getLogger(__name__)

REGISTER_TIMEOUT = 10.0


class DanmuOverlayHost:
  """
  WebSocket 弹幕显示端

  实现 DanmuRenderer 接口：ingest_text 把文本广播给所有已注册的 overlay。
  overlay 连接后需在 10 秒内发送 {"type": "register", "role": "overlay"}。
  """

  def __init__(self, host: str = "localhost", port: int = 8765):
    """
    Args:
      host: 监听地址
      port: 监听端口，0 表示由系统分配
    """
    self.host = host
    self._port = port
    self._server: Optional[Server] = None
    self._overlays: set[ServerConnection] = set()

  @property
  def is_running(self) -> bool:
    return self._server is not None

  @property
  def port(self) -> int:
    """实际监听端口（启动后可解析系统分配的端口）"""
    if self._server is not None and self._server.sockets:
      return self._server.sockets[0].getsockname()[1]
    return self._port

  @property
  def client_count(self) -> int:
    """已注册的 overlay 数量"""
    return len(self._overlays)

  async def start(self) -> None:
    """启动 WebSocket 服务"""
    if self._server is not None:
      return
    self._server = await serve(self._handle_connection, self.host, self._port)
    logger.info("弹幕 Overlay 服务已启动: ws://%s:%d", self.host, self.port)

  async def stop(self) -> None:
    """停止服务并断开所有 overlay"""
    if self._server is None:
      return
    server, self._server = self._server, None
    server.close()
    await server.wait_closed()
    self._overlays.clear()
    logger.info("弹幕 Overlay 服务已停止")

  def ingest_text(self, text: str) -> None:
    """广播一条弹幕（不等待发送完成）"""
    if not self._overlays:
      logger.debug("没有已连接的 overlay，弹幕未显示: %s", text)
      return
    message = json.dumps({
      "type": "danmu",
      "text": text,
      "timestamp": int(time.time() * 1000),
    }, ensure_ascii=False)
    broadcast(self._overlays, message)

  async def _send_error(self, websocket: ServerConnection, message: str) -> None:
    await websocket.send(json.dumps({"type": "error", "message": message}, ensure_ascii=False))

  async def _handle_connection(self, websocket: ServerConnection) -> None:
    registered = False
    try:
      try:
        raw = await asyncio.wait_for(websocket.recv(), timeout=REGISTER_TIMEOUT)
        data = json.loads(raw)
      except asyncio.TimeoutError:
        await self._send_error(websocket, "注册超时")
        return
      except json.JSONDecodeError:
        await self._send_error(websocket, "无效的 JSON 格式")
        return

      if not isinstance(data, dict) or data.get("type") != "register":
        await self._send_error(websocket, "需要先发送注册消息")
        return
      if data.get("role") != "overlay":
        await self._send_error(websocket, "无效的角色，必须是 'overlay'")
        return

      await websocket.send(json.dumps({"type": "registered", "role": "overlay"}))
      self._overlays.add(websocket)
      registered = True
      logger.info("overlay 已注册: addr=%s", websocket.remote_address)

      # overlay 只接收广播，可发送心跳
      async for message in websocket:
        try:
          data = json.loads(message)
        except json.JSONDecodeError:
          continue
        if isinstance(data, dict) and data.get("type") == "ping":
          await websocket.send(json.dumps({"type": "pong"}))

    except ConnectionClosed:
      pass
    finally:
      self._overlays.discard(websocket)
      if registered:
        logger.info("overlay 已断开: addr=%s", websocket.remote_address)
