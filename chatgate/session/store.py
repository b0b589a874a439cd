"""
会话持久化存储 - 会话管理器的存储协作方接口及两种实现。

会话管理器只通过 SessionStore 接口读写持久化载荷（Session.to_record() 的字典），
从不关心底层介质：
- JsonlSessionStore：每个会话一个 .jsonl 文件（默认 ~/.chatgate/sessions/）
- MemorySessionStore：进程内字典，保存 JSON 文本以走完整的序列化/还原路径

【存储格式 - JSONL】
- 第一行：元数据行（_type="metadata"），包含版本、身份字段、摘要、检查点和时间戳
- 后续行：每行一条历史轮次 {"role", "content", "timestamp"}

JSONL 格式的优点：逐行解析、人类可读、方便调试。
每次写入都是全量覆盖，保证文件内容与内存一致。

【Java 开发者类比】
- SessionStore 类似于 Spring Data 的 Repository 接口
- JsonlSessionStore 类似于一个以文件为后端的 Repository 实现
"""

import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any
from urllib.parse import quote

from loguru import logger

from chatgate.utils.helpers import ensure_dir


class SessionStore(ABC):
    """
    会话存储接口。所有方法按会话键（record["key"]）寻址。

    实现类的异常直接向上抛出，由会话管理器负责记录日志并降级为纯内存运行。
    """

    @abstractmethod
    async def get(self, key: str) -> dict[str, Any] | None:
        """按键读取会话载荷，不存在时返回 None。"""
        pass

    @abstractmethod
    async def create(self, record: dict[str, Any]) -> None:
        """写入新会话。"""
        pass

    @abstractmethod
    async def update(self, record: dict[str, Any]) -> None:
        """覆盖已有会话。"""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """删除会话，返回是否真的删除了记录。"""
        pass

    @abstractmethod
    async def list_all(self) -> list[dict[str, Any]]:
        """列出全部会话载荷，按 updatedAt 倒序。"""
        pass


def _sort_recent_first(records: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return sorted(records, key=lambda r: r.get("updatedAt") or "", reverse=True)


class JsonlSessionStore(SessionStore):
    """
    JSONL 文件会话存储。

    文件名是会话键的百分号编码（冒号等字符编码为 %3A 这类形式），
    不同的键一定对应不同的文件。读取时仍以元数据行里的 key 为准，
    key 与请求的键不一致的文件视为不存在。
    """

    def __init__(self, sessions_dir: Path):
        self.sessions_dir = ensure_dir(Path(sessions_dir).expanduser())

    def _get_session_path(self, key: str) -> Path:
        return self.sessions_dir / f"{quote(key, safe='')}.jsonl"

    def _read(self, path: Path) -> dict[str, Any] | None:
        """解析一个会话文件。没有元数据行的文件视为无效，返回 None。"""
        metadata: dict[str, Any] | None = None
        history: list[dict[str, Any]] = []

        with open(path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                data = json.loads(line)
                if data.get("_type") == "metadata":
                    metadata = data
                else:
                    history.append(data)

        if metadata is None:
            return None
        record = {k: v for k, v in metadata.items() if k != "_type"}
        record["history"] = history
        return record

    def _write(self, record: dict[str, Any]) -> None:
        path = self._get_session_path(record["key"])
        metadata_line = {"_type": "metadata", **{k: v for k, v in record.items() if k != "history"}}
        # 写完临时文件后原子替换
        tmp_path = path.with_suffix(".jsonl.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(json.dumps(metadata_line, ensure_ascii=False) + "\n")
            for turn in record.get("history", []):
                f.write(json.dumps(turn, ensure_ascii=False) + "\n")
        tmp_path.replace(path)

    async def get(self, key: str) -> dict[str, Any] | None:
        path = self._get_session_path(key)
        if not path.exists():
            return None
        record = self._read(path)
        if record is not None and record.get("key") != key:
            logger.warning(f"Session file {path.name} holds key {record.get('key')!r}, expected {key!r}; ignoring")
            return None
        return record

    async def create(self, record: dict[str, Any]) -> None:
        self._write(record)

    async def update(self, record: dict[str, Any]) -> None:
        self._write(record)

    async def delete(self, key: str) -> bool:
        path = self._get_session_path(key)
        if path.exists():
            path.unlink()
            return True
        return False

    async def list_all(self) -> list[dict[str, Any]]:
        records = []
        for path in self.sessions_dir.glob("*.jsonl"):
            try:
                record = self._read(path)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Skipping unreadable session file {path.name}: {e}")
                continue
            if record:
                records.append(record)
        return _sort_recent_first(records)


class MemorySessionStore(SessionStore):
    """
    进程内会话存储，适合测试和不需要持久化的部署。

    载荷以 JSON 文本保存，读取时重新解析，
    因此会话管理器拿到的时间字段和文件存储一样都是字符串。
    """

    def __init__(self):
        self._records: dict[str, str] = {}

    async def get(self, key: str) -> dict[str, Any] | None:
        raw = self._records.get(key)
        return json.loads(raw) if raw is not None else None

    async def create(self, record: dict[str, Any]) -> None:
        self._records[record["key"]] = json.dumps(record)

    async def update(self, record: dict[str, Any]) -> None:
        self._records[record["key"]] = json.dumps(record)

    async def delete(self, key: str) -> bool:
        return self._records.pop(key, None) is not None

    async def list_all(self) -> list[dict[str, Any]]:
        return _sort_recent_first([json.loads(raw) for raw in self._records.values()])

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, key: str) -> bool:
        return key in self._records
