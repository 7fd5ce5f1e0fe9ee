"""
chatroom.core.text_filters
~~~~~~~~~~~~~~~~~~~~~~~~~~

文本清洗与敏感词过滤。

- ``sanitize()``：去除 HTML 标签并转义，所有自由文本字段入库 / 转发前都要经过它
- ``ProfanityFilter``：基于静态词表的敏感词检查

服务端使用大小写不敏感的 **子串** 匹配（更严格，作为权威判断）；
``contains_offensive_whole_word`` 为前端同款的整词匹配，仅供对照使用。
"""
from __future__ import annotations

import html
import re
from collections.abc import Iterable
from functools import lru_cache
from pathlib import Path

from chatroom.core.logging import get_logger
from chatroom.core.settings import settings

logger = get_logger(__name__)

_TAG_PATTERN = re.compile(r"<[^>]*>")
_WHITESPACE_PATTERN = re.compile(r"\s+")

# 词表文件缺失时的兜底列表
DEFAULT_OFFENSIVE_WORDS: tuple[str, ...] = ("badword",)


def sanitize(text: str) -> str:
    """去除 HTML 标签、转义特殊字符并规整空白。

    Args:
        text: 客户端提交的原始文本。

    Returns:
        可安全展示的文本。
    """
    if not text:
        return ""
    # 先还原实体，避免 ``&lt;script&gt;`` 绕过标签剥离
    stripped = _TAG_PATTERN.sub("", html.unescape(text))
    stripped = _TAG_PATTERN.sub("", stripped)
    stripped = _WHITESPACE_PATTERN.sub(" ", stripped).strip()
    return html.escape(stripped, quote=True)


class ProfanityFilter:
    """静态敏感词过滤器。

    Attributes:
        words: 小写化后的敏感词元组。
    """

    def __init__(self, words: Iterable[str]) -> None:
        self.words: tuple[str, ...] = tuple(
            w.strip().lower() for w in words if w and w.strip()
        )
        self._whole_word_patterns = [
            re.compile(rf"\b{re.escape(w)}\b", re.IGNORECASE) for w in self.words
        ]

    @classmethod
    def from_file(cls, path: Path) -> ProfanityFilter:
        """从词表文件加载（每行一个词，``#`` 开头为注释）。

        文件不存在时回退到 ``DEFAULT_OFFENSIVE_WORDS``。
        """
        if not path.exists():
            logger.warning("敏感词表不存在，使用内置词表 | path=%s", path)
            return cls(DEFAULT_OFFENSIVE_WORDS)

        lines = path.read_text(encoding="utf-8").splitlines()
        words = [line for line in lines if line.strip() and not line.lstrip().startswith("#")]
        logger.info("敏感词表已加载 | path=%s | 词数=%d", path, len(words))
        return cls(words)

    def contains_offensive_word(self, text: str) -> bool:
        """服务端权威检查：大小写不敏感的子串匹配。"""
        lowered = text.lower()
        return any(word in lowered for word in self.words)

    def contains_offensive_whole_word(self, text: str) -> bool:
        """客户端同款检查：大小写不敏感的整词匹配。"""
        return any(p.search(text) for p in self._whole_word_patterns)


@lru_cache
def get_profanity_filter() -> ProfanityFilter:
    """获取全局敏感词过滤器（首次调用时加载词表）。"""
    return ProfanityFilter.from_file(settings.offensive_words_path)
