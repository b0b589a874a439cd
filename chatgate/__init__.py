"""
chatgate - 多渠道聊天网关的会话与消息批处理核心

模块概述：
    本文件是 chatgate 包的入口文件（__init__.py），定义了包的元信息。

    核心功能包括：
    - 按聊天窗口对入站消息做即时 / 防抖 / 收集三种批处理
    - 按作用域推导会话键，保证同一键在并发下只创建一个会话
    - 对话历史的抽取式压缩、检查点保存与恢复
    - 空闲 / 每日 / 手动三种重置策略，以及过期会话清理
"""

__version__ = "0.1.0"

# 项目 logo，用于 CLI 输出
__logo__ = "📨"
