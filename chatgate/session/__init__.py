"""
会话管理模块 - 管理对话会话的身份、历史、检查点与重置策略。

【架构定位】
会话管理器位于批处理器和下游处理器之间：
- 批处理器释放的消息合并后，通过作用域规则推导出会话键并定位会话
- 下游处理器从会话中读取历史（含压缩摘要）构建上下文
- 用户消息和回复都追加到会话历史并立即写入存储

【Java 开发者类比】
- SessionManager 类似于 Spring Session 的 SessionRepository
- SessionStore 类似于 Spring Data 的 Repository 接口
"""

from chatgate.session.keys import build_session_key
from chatgate.session.manager import SessionManager
from chatgate.session.models import Checkpoint, ConversationTurn, Session
from chatgate.session.store import JsonlSessionStore, MemorySessionStore, SessionStore

__all__ = [
    "SessionManager",
    "Session",
    "ConversationTurn",
    "Checkpoint",
    "SessionStore",
    "JsonlSessionStore",
    "MemorySessionStore",
    "build_session_key",
]
