"""路由模块导出集合。"""

from . import auth, broadcasting, health

__all__ = [
    "auth",
    "broadcasting",
    "health",
]
