"""
消息总线模块 - 实现渠道与网关核心之间的解耦通信。

消息流向：
  用户消息 → 渠道(Channel) → InboundMessage → 消息总线 → 批处理器 → 会话管理器 → 下游处理器
  下游回复 → OutboundMessage → 消息总线 → 渠道(Channel) → 用户

【Java 开发者类比】
- MessageBus 类似于 Spring 的 ApplicationEventPublisher + @EventListener
- InboundMessage / OutboundMessage 类似于入站/出站 DTO
"""

from chatgate.bus.events import InboundMessage, OutboundMessage
from chatgate.bus.queue import MessageBus

__all__ = ["MessageBus", "InboundMessage", "OutboundMessage"]
