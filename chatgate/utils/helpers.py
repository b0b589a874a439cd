"""
工具函数集合 - chatgate 项目全局通用的辅助函数。

本模块提供路径管理、字符串处理、ID 生成等基础工具函数，
被会话存储、历史压缩和 CLI 等多个模块引用。

函数分类：
- 路径管理：ensure_dir
- 字符串工具：truncate_string
- 时间工具：parse_timestamp
- 标识工具：new_session_id
"""

import uuid
from pathlib import Path
from datetime import datetime


def ensure_dir(path: Path) -> Path:
    """
    确保目录存在，不存在则递归创建。

    参数:
        path: 目标目录路径

    返回:
        创建后的目录路径（原样返回）
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """
    将持久化层返回的时间字段还原为 datetime。

    存储层统一以 ISO 8601 字符串保存时间，加载时需要重新"水合"（rehydrate）。
    会话内部统一使用本地时间的 naive datetime（与 datetime.now() 可比较），
    带时区偏移的值先换算到本地时间再去掉 tzinfo。None 或空字符串返回 None。
    """
    if value is None or value == "":
        return None
    parsed = value if isinstance(value, datetime) else datetime.fromisoformat(value)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def truncate_string(s: str, max_len: int = 100, suffix: str = "...") -> str:
    """
    截断字符串到指定最大长度，超出时添加后缀。

    参数:
        s: 原始字符串
        max_len: 最大长度（包含后缀），默认 100
        suffix: 截断后缀，默认 "..."

    返回:
        截断后的字符串
    """
    if len(s) <= max_len:
        return s
    return s[: max_len - len(suffix)] + suffix


def new_session_id() -> str:
    """生成全局唯一的会话 ID，格式为 session_<32位十六进制>。"""
    return f"session_{uuid.uuid4().hex}"
