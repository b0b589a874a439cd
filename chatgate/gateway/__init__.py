"""
网关模块 - 入站管线的编排入口。

GatewayPipeline 把消息总线、批处理器、会话管理器和下游处理器串联起来，
create_pipeline 按 Config 组装出一条可直接运行的管线。
"""

from chatgate.gateway.pipeline import (
    ERROR_REPLY,
    RESET_REPLY,
    GatewayPipeline,
    MessageHandler,
    create_pipeline,
)

__all__ = ["GatewayPipeline", "MessageHandler", "create_pipeline", "RESET_REPLY", "ERROR_REPLY"]
