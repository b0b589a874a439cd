"""
定时器调度抽象 - 为消息批处理器和会话管理器提供可替换的时间源与定时器。

批处理器的防抖/最长等待定时器、会话管理器的重置巡检与清理巡检，
都通过本模块的 Scheduler 接口注册，而不是直接调用 asyncio.sleep：
- AsyncioScheduler：生产实现，基于事件循环的 call_later，协程回调作为后台任务运行
- VirtualScheduler：测试实现，虚拟时钟，调用 advance() 推进时间并同步触发到期定时器

这样测试可以"快进"虚拟时间，而不必真实等待 1.5 秒的防抖延迟。

【Java 开发者类比】
- Scheduler 类似于 java.util.concurrent.ScheduledExecutorService
- TimerHandle 类似于 ScheduledFuture（只保留 cancel 能力）
- VirtualScheduler 类似于 Reactor 的 VirtualTimeScheduler
"""

import asyncio
import heapq
import inspect
import itertools
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from loguru import logger

# 定时器回调：普通函数或返回协程的函数
TimerCallback = Callable[[], Awaitable[None] | None]


class TimerHandle:
    """已注册定时器的句柄，仅用于取消。"""

    def __init__(self, name: str = ""):
        self.name = name
        self._cancelled = False
        self._on_cancel: Callable[[], None] | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """取消定时器。重复调用无副作用。"""
        if self._cancelled:
            return
        self._cancelled = True
        if self._on_cancel:
            self._on_cancel()
            self._on_cancel = None

    def __repr__(self) -> str:
        state = "cancelled" if self._cancelled else "armed"
        return f"TimerHandle({self.name or 'anonymous'}, {state})"


class Scheduler(ABC):
    """
    定时器调度器接口。

    实现类需要提供：
    - 当前时间（墙钟 datetime，用于每日重置的小时判断）
    - 单调时间（秒，用于计算空闲/过期时长）
    - 一次性定时器和周期定时器
    """

    @abstractmethod
    def now(self) -> datetime:
        """当前墙钟时间。"""
        pass

    @abstractmethod
    def monotonic(self) -> float:
        """单调递增的秒数，仅用于计算时间差。"""
        pass

    @abstractmethod
    def call_later(self, delay_s: float, callback: TimerCallback, name: str = "") -> TimerHandle:
        """在 delay_s 秒后调用一次 callback。"""
        pass

    @abstractmethod
    def call_every(self, interval_s: float, callback: TimerCallback, name: str = "") -> TimerHandle:
        """每隔 interval_s 秒调用一次 callback，直到句柄被取消。"""
        pass


async def _run_callback(callback: TimerCallback, name: str) -> None:
    """执行定时器回调，吞掉并记录异常，保证单个回调失败不会中断调度。"""
    try:
        result = callback()
        if inspect.isawaitable(result):
            await result
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.error(f"Timer callback '{name}' failed: {e}")


class AsyncioScheduler(Scheduler):
    """
    基于 asyncio 事件循环的生产调度器。

    协程回调通过 asyncio.create_task 在后台运行，调度器持有任务引用，
    避免任务在运行中被垃圾回收。
    """

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()  # 正在运行的回调任务

    def now(self) -> datetime:
        return datetime.now()

    def monotonic(self) -> float:
        return time.monotonic()

    def _spawn(self, callback: TimerCallback, name: str) -> None:
        task = asyncio.get_running_loop().create_task(_run_callback(callback, name))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def call_later(self, delay_s: float, callback: TimerCallback, name: str = "") -> TimerHandle:
        handle = TimerHandle(name)
        loop = asyncio.get_running_loop()

        def fire() -> None:
            if not handle.cancelled:
                self._spawn(callback, name)

        timer = loop.call_later(max(0.0, delay_s), fire)
        handle._on_cancel = timer.cancel
        return handle

    def call_every(self, interval_s: float, callback: TimerCallback, name: str = "") -> TimerHandle:
        handle = TimerHandle(name)

        # 与心跳服务相同的"先等待再执行"循环
        async def loop_task() -> None:
            while not handle.cancelled:
                await asyncio.sleep(interval_s)
                if handle.cancelled:
                    break
                await _run_callback(callback, name)

        task = asyncio.get_running_loop().create_task(loop_task())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        handle._on_cancel = task.cancel
        return handle


class VirtualScheduler(Scheduler):
    """
    虚拟时钟调度器（测试用）。

    时间只在调用 advance() 时前进。advance 会按截止时间顺序触发所有到期的
    定时器并等待其协程执行完毕，周期定时器会自动重新排队。

    用法:
        clock = VirtualScheduler(start=datetime(2026, 1, 1, 9, 0))
        batcher = MessageBatcher(config, scheduler=clock)
        await batcher.enqueue("c1", msg)
        await clock.advance(1.5)  # 防抖定时器在此触发
    """

    def __init__(self, start: datetime | None = None):
        self._start = start or datetime(2026, 1, 1, 12, 0, 0)
        self._elapsed = 0.0  # 自起点以来经过的虚拟秒数
        self._seq = itertools.count()  # 同一时刻的定时器按注册顺序触发
        self._queue: list[tuple[float, int, TimerHandle, TimerCallback, float | None]] = []

    def now(self) -> datetime:
        return self._start + timedelta(seconds=self._elapsed)

    def monotonic(self) -> float:
        return self._elapsed

    @property
    def pending(self) -> int:
        """尚未触发且未取消的定时器数量。"""
        return sum(1 for _, _, handle, _, _ in self._queue if not handle.cancelled)

    def call_later(self, delay_s: float, callback: TimerCallback, name: str = "") -> TimerHandle:
        handle = TimerHandle(name)
        self._push(self._elapsed + max(0.0, delay_s), handle, callback, None)
        return handle

    def call_every(self, interval_s: float, callback: TimerCallback, name: str = "") -> TimerHandle:
        handle = TimerHandle(name)
        self._push(self._elapsed + interval_s, handle, callback, interval_s)
        return handle

    def _push(self, due: float, handle: TimerHandle, callback: TimerCallback, interval: float | None) -> None:
        heapq.heappush(self._queue, (due, next(self._seq), handle, callback, interval))

    async def advance(self, seconds: float) -> None:
        """将虚拟时间推进 seconds 秒，期间到期的定时器依次触发。"""
        target = self._elapsed + seconds
        while self._queue and self._queue[0][0] <= target:
            due, _, handle, callback, interval = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._elapsed = max(self._elapsed, due)
            if interval is not None:
                self._push(due + interval, handle, callback, interval)
            await _run_callback(callback, handle.name)
        self._elapsed = target

    async def run_pending(self) -> None:
        """立即触发所有当前时刻已到期的定时器（不推进时间）。"""
        await self.advance(0.0)

    def set_time(self, when: datetime) -> None:
        """直接把墙钟拨到指定时间（只能向后拨），不触发定时器。"""
        delta = (when - self.now()).total_seconds()
        if delta < 0:
            raise ValueError("VirtualScheduler cannot move backwards")
        self._elapsed += delta
