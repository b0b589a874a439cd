"""
工具函数模块 - 提供 chatgate 项目全局通用的辅助函数与定时器调度抽象。

本模块包含：
- ensure_dir / parse_timestamp / truncate_string / new_session_id：通用辅助函数
- Scheduler / AsyncioScheduler / VirtualScheduler：定时器与时间源
"""

from chatgate.utils.helpers import ensure_dir, new_session_id, parse_timestamp, truncate_string
from chatgate.utils.scheduler import AsyncioScheduler, Scheduler, TimerHandle, VirtualScheduler

__all__ = [
    "ensure_dir",
    "parse_timestamp",
    "truncate_string",
    "new_session_id",
    "Scheduler",
    "AsyncioScheduler",
    "VirtualScheduler",
    "TimerHandle",
]
