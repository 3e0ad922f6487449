"""FastAPI 应用入口点。"""

from fastapi import FastAPI

from chatauth_api.core.config import get_settings
from chatauth_api.exceptions import register_exception_handlers
from chatauth_api.middlewares import register_middlewares
from chatauth_api.api.router import api_router

settings = get_settings()


def create_app() -> FastAPI:
    """创建并配置 FastAPI 应用实例。"""
    app = FastAPI(
        title=settings.app_name,
        version="1.0.0",
        debug=settings.app_debug,
        description=(
            "聊天应用的凭据与会话核心接口。\n\n"
            "所有业务接口统一返回：`{request_id, data, meta}`，失败返回 `{request_id, error}`。\n"
            "认证方式：`Authorization: Bearer <access_token>`，令牌为不透明随机串，按设备名隔离。"
        ),
        openapi_tags=[
            {"name": "health", "description": "服务存活与就绪探针。"},
            {"name": "auth", "description": "注册、邮箱验证、登录、令牌轮换、登出与找回密码。"},
            {"name": "broadcasting", "description": "实时频道订阅授权。"},
        ],
    )

    register_middlewares(app)
    register_exception_handlers(app)
    app.include_router(api_router, prefix=settings.api_prefix)
    return app


app = create_app()
