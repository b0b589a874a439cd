"""
消息批处理器 - 按聊天窗口缓冲入站消息，决定何时、以何种批次交给下游。

用户在聊天软件里经常把一句话拆成几条连续发送（"在吗" / "想问下" / "这个怎么退货"），
如果每条都单独触发一次下游处理，既浪费又会产生答非所问的多条回复。
批处理器按 chat_key 为每个聊天窗口维护一个队列，支持三种模式：

- immediate：不排队，收到即处理
- debounce：每条新消息都重新开始防抖计时，用户停顿 debounce_ms 后整批处理
- collect：首条消息同时启动防抖定时器和最长等待定时器，后续消息只重置防抖定时器，
  两者先到者触发；最长等待定时器从不重置，保证最坏延迟有上限

任何缓冲模式下，队列达到 max_batch_size 都会立即整批处理并取消定时器。
后台巡检定期清理长时间无活动的队列，防止消费者消失时内存无限增长。

【Java 开发者类比】
- 每个聊天的 ChatQueue 类似于一个带 ScheduledFuture 的 ArrayDeque
- 整体类似于 Reactor 的 bufferTimeout + groupBy(chatKey)
"""

from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable

from loguru import logger

from chatgate.bus.events import InboundMessage
from chatgate.config.schema import BatchingConfig
from chatgate.utils.scheduler import AsyncioScheduler, Scheduler, TimerHandle

# 批处理回调：接收按到达顺序排列的消息列表（最早的在前）
BatchHandler = Callable[[list[InboundMessage]], Awaitable[None]]

# 合并多条消息正文时使用的段落分隔符
PARAGRAPH_BREAK = "\n\n"


@dataclass
class QueuedItem:
    """队列中的一条待处理消息及其入队时间（调度器单调时间，秒）。"""
    message: InboundMessage
    queued_at: float


@dataclass
class ChatQueue:
    """单个聊天窗口的缓冲队列。队列为空时不会保留在注册表中。"""
    items: list[QueuedItem] = field(default_factory=list)
    last_activity: float = 0.0                     # 最近一次入队时间，用于过期巡检
    debounce_timer: TimerHandle | None = None      # 每条新消息都会重置
    max_wait_timer: TimerHandle | None = None      # collect 模式下首条消息时启动，不重置

    def cancel_timers(self) -> None:
        """取消该队列的全部定时器。"""
        if self.debounce_timer:
            self.debounce_timer.cancel()
            self.debounce_timer = None
        if self.max_wait_timer:
            self.max_wait_timer.cancel()
            self.max_wait_timer = None


def combine_messages(messages: list[InboundMessage]) -> InboundMessage:
    """
    把一批消息合并为一条逻辑消息。

    以最后一条消息为基础（发送者、渠道、时间戳等元数据取最新值），
    正文按到达顺序用段落分隔符拼接。只有一条消息时原样返回。

    参数:
        messages: 按到达顺序排列的消息列表

    返回:
        合并后的 InboundMessage

    异常:
        ValueError: 消息列表为空
    """
    if not messages:
        raise ValueError("Cannot combine an empty message list")
    if len(messages) == 1:
        return messages[0]

    base = messages[-1]
    return replace(
        base,
        content=PARAGRAPH_BREAK.join(m.content for m in messages),
        media=[url for m in messages for url in m.media],
        metadata={**base.metadata, "batch_size": len(messages)},
    )


class MessageBatcher:
    """
    按聊天窗口缓冲和批量释放入站消息。

    属性:
        config: 批处理配置（构造后固定不变）
        scheduler: 定时器调度器，生产环境为 AsyncioScheduler，测试可注入 VirtualScheduler
        _queues: 聊天队列注册表 {chat_key: ChatQueue}
        _handler: 批处理回调
        _sweep_timer: 过期队列巡检定时器
    """

    def __init__(
        self,
        config: BatchingConfig | None = None,
        scheduler: Scheduler | None = None,
        handler: BatchHandler | None = None,
    ):
        self.config = config or BatchingConfig()
        self.scheduler = scheduler or AsyncioScheduler()
        self._queues: dict[str, ChatQueue] = {}
        self._handler = handler
        self._sweep_timer: TimerHandle | None = None
        self._disposed = False

        logger.debug(
            f"MessageBatcher initialized: mode={self.config.mode}, "
            f"debounce_ms={self.config.debounce_ms}, max_batch_size={self.config.max_batch_size}, "
            f"max_wait_ms={self.config.max_wait_ms}"
        )

    def set_handler(self, handler: BatchHandler) -> None:
        """注册批处理回调。回调接收按到达顺序排列的消息列表。"""
        self._handler = handler

    def start(self) -> None:
        """启动过期队列巡检。重复调用无副作用。"""
        if self._disposed or self._sweep_timer is not None:
            return
        self._sweep_timer = self.scheduler.call_every(
            self.config.sweep_interval_s, self.sweep_stale, name="batcher-sweep"
        )
        logger.info(f"Message batcher started (mode={self.config.mode})")

    # ========== 入队 ==========

    async def enqueue(self, chat_key: str, message: InboundMessage) -> bool:
        """
        将消息加入指定聊天的队列。

        参数:
            chat_key: 聊天队列键（通常为 "channel:chat_id"）
            message: 入站消息

        返回:
            True 表示消息已被立即处理（immediate 模式），False 表示已进入队列

        异常:
            RuntimeError: 批处理器已被释放
        """
        if self._disposed:
            raise RuntimeError("MessageBatcher has been disposed")

        if self.config.mode == "immediate":
            await self._process(chat_key, [message])
            return True

        self.start()
        now = self.scheduler.monotonic()
        queue = self._queues.get(chat_key)
        if queue is None:
            queue = ChatQueue(last_activity=now)
            self._queues[chat_key] = queue

        queue.items.append(QueuedItem(message=message, queued_at=now))
        queue.last_activity = now

        # 达到批大小上限：立即整批处理（flush 内部会取消定时器）
        if len(queue.items) >= self.config.max_batch_size:
            logger.debug(f"Batch cap reached for {chat_key} ({len(queue.items)}), flushing")
            await self.flush(chat_key)
            return False

        if self.config.mode == "collect" and queue.max_wait_timer is None:
            queue.max_wait_timer = self.scheduler.call_later(
                self.config.max_wait_ms / 1000,
                lambda: self._on_timer(chat_key, queue, "max-wait"),
                name=f"max-wait:{chat_key}",
            )

        # debounce 和 collect 模式都在每条新消息时重置防抖定时器
        if queue.debounce_timer:
            queue.debounce_timer.cancel()
        queue.debounce_timer = self.scheduler.call_later(
            self.config.debounce_ms / 1000,
            lambda: self._on_timer(chat_key, queue, "debounce"),
            name=f"debounce:{chat_key}",
        )
        return False

    async def enqueue_message(self, message: InboundMessage) -> bool:
        """便捷方法：使用消息自身的 chat_key 入队。"""
        return await self.enqueue(message.chat_key, message)

    async def _on_timer(self, chat_key: str, queue: ChatQueue, kind: str) -> None:
        # 队列已被处理或清理后又重建时，旧定时器不能处理新队列
        if self._queues.get(chat_key) is not queue:
            logger.debug(f"Stale {kind} timer for {chat_key}, skipping")
            return
        if kind == "max-wait":
            logger.debug(f"Max wait reached for {chat_key}, flushing")
        await self.flush(chat_key)

    # ========== 释放 ==========

    async def flush(self, chat_key: str) -> list[InboundMessage]:
        """
        立即处理指定聊天的队列。

        取消该队列的全部定时器，按到达顺序取出全部消息，从注册表删除队列，
        然后恰好调用一次批处理回调。队列不存在或为空时不做任何事。

        返回:
            本次处理的消息列表（最早的在前）
        """
        queue = self._queues.pop(chat_key, None)
        if queue is None:
            return []
        queue.cancel_timers()
        if not queue.items:
            return []

        messages = [item.message for item in queue.items]
        queue.items = []
        await self._process(chat_key, messages)
        return messages

    async def flush_all(self) -> int:
        """
        处理所有待处理队列，用于优雅停机。

        返回:
            被处理的聊天数量
        """
        chat_keys = list(self._queues.keys())
        if chat_keys:
            logger.info(f"Flushing all batches: {len(chat_keys)} chat(s)")
        flushed = 0
        for chat_key in chat_keys:
            if await self.flush(chat_key):
                flushed += 1
        return flushed

    async def _process(self, chat_key: str, messages: list[InboundMessage]) -> None:
        """调用批处理回调。回调异常只记录日志，不影响其他聊天，也不重试。"""
        if not messages:
            return
        if self._handler is None:
            logger.warning(f"No batch handler set, dropping {len(messages)} message(s) for {chat_key}")
            return

        logger.debug(f"Processing {len(messages)} message(s) for {chat_key}")
        try:
            await self._handler(messages)
        except Exception as e:
            logger.error(f"Error in batch handler for {chat_key}: {e}")

    # ========== 巡检与释放 ==========

    def sweep_stale(self) -> int:
        """
        清理长时间无活动的队列（先取消定时器再删除），不触发批处理回调。

        返回:
            被清理的队列数量
        """
        now = self.scheduler.monotonic()
        stale_keys = [
            key for key, queue in self._queues.items()
            if now - queue.last_activity > self.config.stale_timeout_s
        ]
        for key in stale_keys:
            try:
                queue = self._queues.pop(key)
                queue.cancel_timers()
                logger.warning(f"Evicted stale batch for {key} ({len(queue.items)} message(s) dropped)")
            except Exception as e:
                logger.error(f"Failed to evict stale batch for {key}: {e}")

        if stale_keys:
            logger.debug(f"Cleaned up {len(stale_keys)} stale queue(s)")
        return len(stale_keys)

    def dispose(self) -> None:
        """取消所有定时器和巡检，清空队列。重复调用无副作用。"""
        if self._disposed:
            return
        self._disposed = True

        for queue in self._queues.values():
            queue.cancel_timers()
        self._queues.clear()

        if self._sweep_timer:
            self._sweep_timer.cancel()
            self._sweep_timer = None

        logger.info("Message batcher disposed")

    # ========== 状态查询 ==========

    def pending_count(self, chat_key: str) -> int:
        """指定聊天当前排队的消息数量。"""
        queue = self._queues.get(chat_key)
        return len(queue.items) if queue else 0

    def active_queue_count(self) -> int:
        """当前存在的聊天队列数量。"""
        return len(self._queues)

    @property
    def disposed(self) -> bool:
        return self._disposed

    def __repr__(self) -> str:
        return (
            f"MessageBatcher(mode={self.config.mode}, "
            f"active_queues={len(self._queues)}, disposed={self._disposed})"
        )
