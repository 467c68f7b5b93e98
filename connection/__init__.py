"""
connection 模块
弹幕显示端的 WebSocket 推送服务
"""

from .danmu_overlay_host import DanmuOverlayHost

__all__ = ["DanmuOverlayHost"]
