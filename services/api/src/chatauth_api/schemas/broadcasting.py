"""实时频道订阅授权的请求与返回结构。"""

from datetime import datetime

from pydantic import BaseModel, Field

from chatauth_api.schemas.common import BaseSchema


class BroadcastAuthRequest(BaseModel):
    """频道订阅授权请求，由实时推送网关在建立订阅前转发。"""

    channel_name: str = Field(
        min_length=1,
        max_length=255,
        description="频道名，可带 private- 或 presence- 传输前缀。",
        examples=["private-group.6f1c2b9e-6d4b-4a8a-9d61-0c0f3b7f9a10"],
    )
    socket_id: str | None = Field(default=None, max_length=255, description="推送网关分配的连接 ID。")


class BroadcastAuthData(BaseSchema):
    """订阅授权凭证。"""

    channel: str = Field(description="去除传输前缀后的频道名。")
    token: str = Field(description="HS256 签名的订阅凭证，网关据此放行订阅。")
    expires_at: datetime = Field(description="凭证过期时间（UTC）。")
