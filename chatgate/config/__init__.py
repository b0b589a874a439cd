"""
配置模块 (config)
================
chatgate 的配置入口：
- schema.py：批处理、会话、存储三组配置的 Pydantic 模型，均带默认值
- loader.py：读写 ~/.chatgate/config.json（camelCase 键名），并迁移旧版写法

环境变量 CHATGATE_<SECTION>__<FIELD> 可以覆盖默认值，例如 CHATGATE_BATCHING__MODE=collect。
"""

from chatgate.config.loader import get_config_path, load_config
from chatgate.config.schema import BatchingConfig, Config, SessionConfig

__all__ = ["Config", "BatchingConfig", "SessionConfig", "load_config", "get_config_path"]
