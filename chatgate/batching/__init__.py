"""
消息批处理模块 - 按聊天窗口对入站消息做防抖/收集，再整批交给会话层处理。

【架构定位】
批处理器位于消息总线和会话管理器之间：
- 入站消息按 chat_key 进入各自队列
- 队列被释放时，整批消息经 combine_messages 合并为一条逻辑消息
- 合并后的消息交给会话管理器定位会话，再交给下游处理器
"""

from chatgate.batching.batcher import BatchHandler, ChatQueue, MessageBatcher, combine_messages

__all__ = ["MessageBatcher", "ChatQueue", "BatchHandler", "combine_messages"]
