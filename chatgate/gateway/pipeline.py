"""
网关入站管线 - 把消息总线、批处理器、会话管理器和下游处理器串起来。

处理流程：
1. 从消息总线消费入站消息，按 chat_key 交给批处理器
2. 批处理器释放一批消息后，combine_messages 合并为一条逻辑消息
3. 会话管理器定位/创建会话
4. 如果是手动重置指令（默认 /new、/reset），重置会话并回复确认，不调用下游处理器
5. 否则追加用户轮次 → 调用下游处理器 → 追加助手轮次 → 发布出站消息

下游处理器签名：async def handler(message, session) -> str | None
返回 None 或空字符串表示不需要回复。
"""

import asyncio
from typing import Awaitable, Callable

from loguru import logger

from chatgate.batching.batcher import MessageBatcher, combine_messages
from chatgate.bus.events import InboundMessage, OutboundMessage
from chatgate.bus.queue import MessageBus
from chatgate.config.schema import Config
from chatgate.session.manager import SessionManager
from chatgate.session.models import Session
from chatgate.session.store import JsonlSessionStore, SessionStore
from chatgate.utils.scheduler import AsyncioScheduler, Scheduler

MessageHandler = Callable[[InboundMessage, Session], Awaitable[str | None]]

RESET_REPLY = "New session started."
ERROR_REPLY = "Sorry, I encountered an error while handling your message."


class GatewayPipeline:
    """
    网关入站管线。

    属性:
        bus: 消息总线
        batcher: 消息批处理器（管线会注册自己的批处理回调）
        sessions: 会话管理器
        handler: 下游处理器
    """

    def __init__(
        self,
        bus: MessageBus,
        batcher: MessageBatcher,
        sessions: SessionManager,
        handler: MessageHandler,
    ):
        self.bus = bus
        self.batcher = batcher
        self.sessions = sessions
        self.handler = handler
        self._running = False
        self._stopped = False
        self.batcher.set_handler(self._on_batch)

    def start(self) -> None:
        """启动批处理器和会话管理器的后台巡检。"""
        self.batcher.start()
        self.sessions.start()

    async def run(self) -> None:
        """
        入站主循环：持续消费消息总线并交给批处理器。

        每秒超时一次以检查 _running 标志。
        """
        self._running = True
        self.start()
        logger.info("Gateway pipeline started")

        while self._running:
            try:
                msg = await asyncio.wait_for(self.bus.consume_inbound(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            try:
                await self.batcher.enqueue_message(msg)
            except Exception as e:
                logger.error(f"Failed to enqueue message from {msg.chat_key}: {e}")

    async def _on_batch(self, messages: list[InboundMessage]) -> None:
        """批处理回调：合并消息、处理并发布回复。"""
        combined = combine_messages(messages)
        if len(messages) > 1:
            logger.info(f"Processing batch of {len(messages)} messages for {combined.chat_key}")
        response = await self.process(combined)
        if response:
            await self.bus.publish_outbound(response)

    async def process(self, msg: InboundMessage) -> OutboundMessage | None:
        """
        处理一条（合并后的）逻辑消息。

        参数:
            msg: 入站消息

        返回:
            需要发送的回复；不需要回复时返回 None
        """
        session = await self.sessions.get_or_create_session(msg)

        if self.sessions.is_reset_trigger(msg.content):
            await self.sessions.reset(session.id)
            return self._reply(msg, session, RESET_REPLY)

        await self.sessions.add_to_history(session, "user", msg.content)

        try:
            reply = await self.handler(msg, session)
        except Exception as e:
            logger.error(f"Handler failed for session {session.id}: {e}")
            return self._reply(msg, session, ERROR_REPLY)

        if not reply:
            return None

        await self.sessions.add_to_history(session, "assistant", reply)
        return self._reply(msg, session, reply)

    @staticmethod
    def _reply(msg: InboundMessage, session: Session, content: str) -> OutboundMessage:
        return OutboundMessage(
            channel=msg.channel,
            chat_id=msg.chat_id,
            content=content,
            reply_to=msg.message_id,
            metadata={"session_id": session.id},
        )

    async def stop(self) -> None:
        """
        优雅停机：停止消费，处理剩余批次，释放批处理器和会话管理器。

        重复调用无副作用。
        """
        if self._stopped:
            return
        self._stopped = True
        self._running = False

        await self.batcher.flush_all()
        self.batcher.dispose()
        await self.sessions.dispose()
        self.bus.stop()
        logger.info("Gateway pipeline stopped")


def create_pipeline(
    config: Config,
    handler: MessageHandler,
    bus: MessageBus | None = None,
    store: SessionStore | None = None,
    scheduler: Scheduler | None = None,
) -> GatewayPipeline:
    """
    按配置组装一条完整的入站管线。

    批处理器和会话管理器共享同一个调度器；未提供存储时使用配置中的 JSONL 目录。
    """
    scheduler = scheduler or AsyncioScheduler()
    store = store if store is not None else JsonlSessionStore(config.sessions_path)
    return GatewayPipeline(
        bus=bus or MessageBus(),
        batcher=MessageBatcher(config.batching, scheduler=scheduler),
        sessions=SessionManager(store, config.session, scheduler=scheduler),
        handler=handler,
    )
