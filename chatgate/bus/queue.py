"""
异步消息队列模块 - 网关入站/出站两条消息通道。

入站流程（用户 → 网关核心）：
  渠道适配器 → publish_inbound() → inbound 队列 → GatewayPipeline.run() → 批处理器

出站流程（网关核心 → 用户）：
  GatewayPipeline → publish_outbound() → outbound 队列 → dispatch_outbound() → 渠道回调

【Java 开发者类比】
- asyncio.Queue 类似于 Java 的 LinkedBlockingQueue
- subscribe_outbound + dispatch_outbound 类似于 Spring 的 @EventListener 机制
"""

import asyncio
from typing import Awaitable, Callable

from loguru import logger

from chatgate.bus.events import InboundMessage, OutboundMessage

OutboundCallback = Callable[[OutboundMessage], Awaitable[None]]


class MessageBus:
    """
    异步消息总线 - 解耦聊天渠道与网关核心的通信中枢。

    属性:
        inbound: 入站消息异步队列（渠道 → 网关核心）
        outbound: 出站消息异步队列（网关核心 → 渠道）
        _outbound_subscribers: 出站消息订阅者字典 {渠道名: [回调函数列表]}
        _running: 分发器运行状态标志
    """

    def __init__(self):
        self.inbound: asyncio.Queue[InboundMessage] = asyncio.Queue()    # 入站队列
        self.outbound: asyncio.Queue[OutboundMessage] = asyncio.Queue()  # 出站队列
        self._outbound_subscribers: dict[str, list[OutboundCallback]] = {}
        self._running = False

    async def publish_inbound(self, msg: InboundMessage) -> None:
        """渠道适配器收到用户消息后调用，放入入站队列。"""
        await self.inbound.put(msg)

    async def consume_inbound(self) -> InboundMessage:
        """获取下一条入站消息，队列为空时异步等待。"""
        return await self.inbound.get()

    async def publish_outbound(self, msg: OutboundMessage) -> None:
        """网关核心产出回复后调用，放入出站队列。"""
        await self.outbound.put(msg)

    async def consume_outbound(self) -> OutboundMessage:
        """获取下一条出站消息。一般由 dispatch_outbound() 自动消费。"""
        return await self.outbound.get()

    def subscribe_outbound(self, channel: str, callback: OutboundCallback) -> None:
        """
        订阅指定渠道的出站消息。

        同一渠道可以注册多个回调（如同时记录日志和发送消息）。

        参数:
            channel: 渠道名称（如 'telegram', 'discord'）
            callback: 异步回调函数，接收 OutboundMessage 参数
        """
        self._outbound_subscribers.setdefault(channel, []).append(callback)

    async def dispatch_outbound(self) -> None:
        """
        出站消息分发器（后台常驻任务）。

        每秒超时一次以检查 _running 标志；单个回调的异常只记录日志，
        不会中断分发循环，也不会影响同一消息的其他订阅者。
        发送失败的重试属于渠道适配器自己的职责，这里不做重试。
        """
        self._running = True
        while self._running:
            try:
                msg = await asyncio.wait_for(self.outbound.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            subscribers = self._outbound_subscribers.get(msg.channel, [])
            if not subscribers:
                logger.warning(f"No outbound subscriber for channel {msg.channel}, dropping reply")
            for callback in subscribers:
                try:
                    await callback(msg)
                except Exception as e:
                    logger.error(f"Error dispatching to {msg.channel}: {e}")

    def stop(self) -> None:
        """停止出站分发器，循环会在下次超时检查时退出。"""
        self._running = False

    @property
    def inbound_size(self) -> int:
        """待处理的入站消息数量。"""
        return self.inbound.qsize()

    @property
    def outbound_size(self) -> int:
        """待分发的出站消息数量。"""
        return self.outbound.qsize()
