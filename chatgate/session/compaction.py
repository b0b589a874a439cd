"""
历史压缩 - 用抽取式摘要替换超出保留上限的旧对话轮次。

不调用任何语言模型：每个被移除的轮次只抽取第一句话
（或第一行，截断到 120 个字符），形成 "User: ..." / "Assistant: ..." 摘要行。
"""

import re

from chatgate.session.models import ConversationTurn
from chatgate.utils.helpers import truncate_string

# 第一行内到第一个 . ! ? 为止（其后须是空白或文本结尾）
_FIRST_SENTENCE = re.compile(r"[^\n]*?[.!?](?:\s|$)")

MIN_SENTENCE_LEN = 10
MAX_LINE_LEN = 120

_ROLE_PREFIX = {"user": "User", "assistant": "Assistant"}


def extract_first_sentence(text: str) -> str:
    """
    抽取文本中第一个有意义的句子。

    句子过短（不超过 10 个字符，如 "Hi." "OK!"）时退回到第一行，
    第一行超过 120 个字符时截断并加 "..."。
    """
    trimmed = text.strip()
    if not trimmed:
        return ""

    match = _FIRST_SENTENCE.match(trimmed)
    if match:
        sentence = match.group(0).strip()
        if len(sentence) > MIN_SENTENCE_LEN:
            return sentence

    first_line = trimmed.split("\n", 1)[0]
    return truncate_string(first_line, MAX_LINE_LEN)


def compact_turns(turns: list[ConversationTurn]) -> str:
    """把一组轮次压缩为换行分隔的摘要，空内容的轮次不产生摘要行。"""
    lines = []
    for turn in turns:
        sentence = extract_first_sentence(turn.content)
        if sentence:
            lines.append(f"{_ROLE_PREFIX.get(turn.role, turn.role.title())}: {sentence}")
    return "\n".join(lines)
