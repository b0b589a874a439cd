"""
会话管理器实现模块 - 会话解析、历史压缩、检查点与重置策略。

SessionManager 把一条（可能是批处理合并后的）入站消息映射到一个持久化的 Session：
1. 按作用域推导会话键
2. 内存缓存命中则直接返回
3. 同一键的创建正在进行时，等待并返回同一个结果（防止并发重复创建）
4. 否则从存储加载；存储中没有则新建并写入存储

采用"内存缓存 + 存储写穿透"的双层架构：
- 内存层（_sessions / _sessions_by_id）：加载后即为权威数据
- 存储层（SessionStore）：冷启动时的唯一数据来源；每次修改后立即写入

存储读写失败只记录日志，内存状态保持权威，之后的写入会自然补齐。

后台巡检（通过 Scheduler 注册）：
- 重置巡检：idle / daily / both 模式下定期检查并重置会话（保留会话身份）
- 清理巡检：按最长存活天数和空闲天数删除会话（内存和存储同时删除）

【Java 开发者类比】
- Session 类似于 Java Servlet 的 HttpSession
- _pending 类似于 ConcurrentHashMap<String, CompletableFuture<Session>> 的 computeIfAbsent 去重
- 两个巡检类似于 @Scheduled(fixedRate=...) 的定时任务
"""

import asyncio
from datetime import timedelta

from loguru import logger

from chatgate.bus.events import InboundMessage
from chatgate.config.schema import SessionConfig
from chatgate.session.compaction import compact_turns
from chatgate.session.keys import build_session_key
from chatgate.session.models import Checkpoint, ConversationTurn, Role, Session
from chatgate.session.store import SessionStore
from chatgate.utils.scheduler import AsyncioScheduler, Scheduler, TimerHandle


class SessionManager:
    """
    会话管理器 - 管理所有对话会话的生命周期。

    属性:
        store: 持久化存储协作方
        config: 会话配置
        scheduler: 定时器调度器与时间源
        _sessions: 会话注册表 {session_key: Session}
        _sessions_by_id: ID 索引 {session_id: Session}
        _pending: 进行中的创建任务 {session_key: Task}
    """

    def __init__(
        self,
        store: SessionStore,
        config: SessionConfig | None = None,
        scheduler: Scheduler | None = None,
    ):
        self.store = store
        self.config = config or SessionConfig()
        self.scheduler = scheduler or AsyncioScheduler()
        self._sessions: dict[str, Session] = {}
        self._sessions_by_id: dict[str, Session] = {}
        self._pending: dict[str, asyncio.Task[Session]] = {}
        self._reset_timer: TimerHandle | None = None
        self._cleanup_timer: TimerHandle | None = None
        self._disposed = False
        self._triggers = {t.strip().lower() for t in self.config.reset_triggers}

    def start(self) -> None:
        """按配置启动重置巡检和清理巡检。重复调用无副作用。"""
        if self._disposed:
            return
        if self.config.reset.mode != "manual" and self._reset_timer is None:
            self._reset_timer = self.scheduler.call_every(
                self.config.reset_check_interval_s, self.check_scheduled_resets, name="session-reset"
            )
        if self.config.cleanup.enabled and self._cleanup_timer is None:
            self._cleanup_timer = self.scheduler.call_every(
                self.config.cleanup_interval_s, self.run_cleanup, name="session-cleanup"
            )
        logger.info(
            f"Session manager started (scope={self.config.dm_scope}, reset={self.config.reset.mode}, "
            f"cleanup={'on' if self.config.cleanup.enabled else 'off'})"
        )

    # ========== 持久化辅助 ==========

    async def _persist_new(self, session: Session) -> None:
        try:
            await self.store.create(session.to_record())
        except Exception as e:
            logger.error(f"Failed to create session {session.id} in store: {e}")

    async def _persist(self, session: Session) -> None:
        try:
            await self.store.update(session.to_record())
        except Exception as e:
            logger.error(f"Failed to update session {session.id} in store: {e}")

    async def _load(self, key: str) -> Session | None:
        try:
            record = await self.store.get(key)
            if record is None:
                return None
            if record.get("key") != key:
                logger.warning(f"Store returned record for {record.get('key')!r} when loading {key!r}, ignoring")
                return None
            return Session.from_record(record)
        except Exception as e:
            logger.error(f"Failed to load session {key} from store: {e}")
            return None

    async def _delete_from_store(self, key: str) -> None:
        try:
            await self.store.delete(key)
        except Exception as e:
            logger.error(f"Failed to delete session {key} from store: {e}")

    def _register(self, session: Session) -> None:
        self._sessions[session.key] = session
        self._sessions_by_id[session.id] = session

    def _unregister(self, key: str) -> Session | None:
        session = self._sessions.pop(key, None)
        if session:
            self._sessions_by_id.pop(session.id, None)
        return session

    # ========== 会话解析 ==========

    def session_key_for(self, message: InboundMessage) -> str:
        """按当前作用域配置推导消息所属的会话键。"""
        return build_session_key(message, self.config.dm_scope, self.config.agent_id)

    async def get_or_create_session(self, message: InboundMessage) -> Session:
        """
        获取消息所属的会话，不存在时加载或新建。

        同一个键的并发调用共享同一个创建任务，所有调用方得到同一个 Session。

        参数:
            message: 入站消息（可以是合并后的逻辑消息）

        返回:
            会话对象

        异常:
            RuntimeError: 管理器已被释放
        """
        if self._disposed:
            raise RuntimeError("SessionManager has been disposed")

        key = self.session_key_for(message)

        existing = self._sessions.get(key)
        if existing:
            existing.touch(self.scheduler.now())
            return existing

        pending = self._pending.get(key)
        if pending is None:
            pending = asyncio.get_running_loop().create_task(self._create_session(key, message))
            self._pending[key] = pending
        # shield：某个调用方被取消不影响其他调用方等待的创建任务
        return await asyncio.shield(pending)

    async def _create_session(self, key: str, message: InboundMessage) -> Session:
        try:
            now = self.scheduler.now()
            restored = await self._load(key)
            if restored:
                restored.touch(now)
                self._register(restored)
                logger.info(f"Session restored from store: {key} ({restored.id})")
                return restored

            session = Session(
                key=key,
                user_id=message.sender_id,
                channel=message.channel,
                chat_id=message.chat_id,
                chat_type=message.chat_type,
                last_activity=now,
                created_at=now,
                updated_at=now,
            )
            self._register(session)
            await self._persist_new(session)
            logger.info(f"New session created: {key} ({session.id})")
            return session
        finally:
            self._pending.pop(key, None)

    def get_session(self, key: str) -> Session | None:
        """按会话键查找内存中的会话。"""
        return self._sessions.get(key)

    def get_session_by_id(self, session_id: str) -> Session | None:
        """按会话 ID 查找内存中的会话。"""
        return self._sessions_by_id.get(session_id)

    @property
    def sessions(self) -> list[Session]:
        """当前内存中的全部会话。"""
        return list(self._sessions.values())

    async def update_session(self, session: Session) -> None:
        """重新登记会话并写入存储。"""
        session.updated_at = self.scheduler.now()
        self._register(session)
        await self._persist(session)

    async def delete_session(self, key: str) -> None:
        """从内存和存储中删除会话。"""
        self._unregister(key)
        await self._delete_from_store(key)
        logger.info(f"Session deleted: {key}")

    # ========== 历史管理 ==========

    async def add_to_history(self, session: Session, role: Role, content: str) -> None:
        """
        追加一轮对话，超过保留上限时压缩旧历史，然后写入存储。

        压缩规则：历史长度超过 max_history 时，移除最早的 (长度 - keep_recent) 轮，
        每轮抽取一句摘要追加到 context_summary 末尾，只保留最近 keep_recent 轮原文。
        已写入摘要的内容不会被重新摘要。

        参数:
            session: 目标会话
            role: 'user' 或 'assistant'
            content: 消息文本
        """
        now = self.scheduler.now()
        session.history.append(ConversationTurn(role=role, content=content, timestamp=now))
        session.message_count += 1

        if len(session.history) > self.config.max_history:
            overflow = len(session.history) - self.config.keep_recent
            removed = session.history[:overflow]
            digest = compact_turns(removed)
            if digest:
                session.context_summary = (
                    f"{session.context_summary}\n{digest}" if session.context_summary else digest
                )
            session.history = session.history[overflow:]
            logger.debug(
                f"Compacted history for {session.id}: removed={overflow}, kept={len(session.history)}"
            )

        session.touch(now)
        await self._persist(session)

    def get_history(self, session: Session) -> list[ConversationTurn]:
        """返回会话当前保留的原文历史。"""
        return session.history

    async def clear_history(self, session: Session) -> None:
        """清空历史、摘要和计数，保留检查点与会话身份。"""
        session.history = []
        session.context_summary = None
        session.message_count = 0
        session.updated_at = self.scheduler.now()
        await self._persist(session)
        logger.info(f"Session history cleared: {session.id}")

    # ========== 重置 ==========

    def is_reset_trigger(self, text: str) -> bool:
        """文本是否为配置的手动重置指令（忽略首尾空白和大小写）。"""
        return text.strip().lower() in self._triggers

    async def reset(self, session_id: str) -> bool:
        """
        重置会话上下文，保留 id、key 和 created_at。

        返回:
            True 表示已重置；会话 ID 不存在时记录警告并返回 False
        """
        session = self._sessions_by_id.get(session_id)
        if session is None:
            logger.warning(f"Cannot reset: session {session_id} not found")
            return False

        session.reset_context()
        session.updated_at = self.scheduler.now()
        await self._persist(session)
        logger.info(f"Session reset: {session_id}")
        return True

    # ========== 检查点 ==========

    async def save_checkpoint(self, session: Session, summary: str | None = None) -> None:
        """保存当前历史的快照以及调用方提供的可选摘要。"""
        now = self.scheduler.now()
        session.checkpoint = Checkpoint(history=list(session.history), saved_at=now, summary=summary)
        session.updated_at = now
        await self._persist(session)
        logger.info(f"Checkpoint saved: {session.id} ({len(session.history)} turns)")

    async def restore_checkpoint(self, session: Session) -> bool:
        """
        用检查点内容替换当前历史和摘要。

        返回:
            True 表示已恢复；没有检查点时返回 False（不是错误）
        """
        checkpoint = session.checkpoint
        if checkpoint is None:
            logger.warning(f"No checkpoint to restore for session {session.id}")
            return False

        now = self.scheduler.now()
        session.history = list(checkpoint.history)
        session.context_summary = checkpoint.summary
        session.checkpoint_restored_at = now
        session.updated_at = now
        await self._persist(session)
        logger.info(f"Checkpoint restored: {session.id}")
        return True

    # ========== 定时巡检 ==========

    async def check_scheduled_resets(self) -> int:
        """
        执行一次重置巡检。

        - idle：距 last_activity 达到 idle_minutes 的会话被重置（已是空会话的跳过）
        - daily：距 created_at 满一天且当前整点等于 at_hour 的会话被重置，
          同时把 created_at 刷新为当前时间，避免同一小时内重复触发

        单个会话失败只记录日志，不影响其余会话。

        返回:
            本次被重置的会话数量
        """
        mode = self.config.reset.mode
        if mode == "manual":
            return 0

        now = self.scheduler.now()
        idle_limit = timedelta(minutes=self.config.reset.idle_minutes)
        reset_count = 0

        for key, session in list(self._sessions.items()):
            try:
                if mode in ("idle", "both"):
                    idle = now - session.last_activity
                    if idle >= idle_limit and not session.is_fresh:
                        logger.info(
                            f"Session idle reset triggered: {key} "
                            f"(idle {int(idle.total_seconds() // 60)} min)"
                        )
                        if await self.reset(session.id):
                            reset_count += 1

                if mode in ("daily", "both"):
                    if now - session.created_at >= timedelta(days=1) and now.hour == self.config.reset.at_hour:
                        logger.info(f"Session daily reset triggered: {key}")
                        session.created_at = now
                        if await self.reset(session.id):
                            reset_count += 1
            except Exception as e:
                logger.error(f"Scheduled reset failed for {key}: {e}")

        return reset_count

    async def run_cleanup(self) -> int:
        """
        执行一次清理巡检：删除存活超过 max_age_days 或空闲超过 idle_days 的会话。

        返回:
            被删除的会话数量
        """
        if not self.config.cleanup.enabled:
            return 0

        now = self.scheduler.now()
        max_age = timedelta(days=self.config.cleanup.max_age_days)
        max_idle = timedelta(days=self.config.cleanup.idle_days)
        cleaned = 0

        for key, session in list(self._sessions.items()):
            try:
                if now - session.created_at >= max_age or now - session.last_activity >= max_idle:
                    self._unregister(key)
                    await self._delete_from_store(key)
                    cleaned += 1
            except Exception as e:
                logger.error(f"Cleanup failed for session {key}: {e}")

        if cleaned:
            logger.info(f"Stale sessions cleaned up: {cleaned}")
        return cleaned

    # ========== 释放 ==========

    async def dispose(self) -> None:
        """
        停止巡检，等待进行中的创建完成，把所有内存会话写入存储后清空注册表。

        重复调用无副作用（不会重复写入存储）。
        """
        if self._disposed:
            return
        self._disposed = True

        for timer in (self._reset_timer, self._cleanup_timer):
            if timer:
                timer.cancel()
        self._reset_timer = None
        self._cleanup_timer = None

        if self._pending:
            await asyncio.gather(*self._pending.values(), return_exceptions=True)

        for session in list(self._sessions.values()):
            await self._persist(session)

        self._sessions.clear()
        self._sessions_by_id.clear()
        self._pending.clear()
        logger.info("Session manager disposed")

    @property
    def disposed(self) -> bool:
        return self._disposed
