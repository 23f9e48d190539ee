"""内容过滤

路由的第一阶段：拒绝域外查询和不当内容，命中时不调用任何专家。
"""

import re
from collections.abc import Iterable
from dataclasses import dataclass

from tubeguide.specialists.config import SpecialistConfig

OFF_TOPIC = "off_topic"
INAPPROPRIATE = "inappropriate"

TRANSPORT_TERMS = (
    "tube", "train", "line", "station", "underground", "tfl", "platform",
    "journey", "route", "travel", "service", "delay", "disruption", "status",
    "arrival", "departure", "interchange", "oyster", "step free", "ticket",
)

OFF_TOPIC_PATTERNS = (
    r"\b(recipe|cook|bake|cooking)\b",
    r"\b(weather|forecast)\b",
    r"\b(football|cricket|premier league|score)\b",
    r"\b(python|javascript|code|programming)\b",
    r"\b(stock|bitcoin|crypto|invest)\b",
    r"\b(joke|poem|song|lyrics)\b",
    r"\b(homework|essay|math problem)\b",
    r"\b(movie|film|tv show|netflix)\b",
)

ABUSIVE_PATTERNS = (
    r"\b(fuck\w*|shit\w*|bastard\w*|bitch\w*|cunt\w*|wank\w*|twat\w*)\b",
    r"\b(idiot|stupid|moron)\s+(bot|assistant|ai)\b",
    r"\b(kill|hurt|attack)\s+(you|someone|people|them)\b",
    r"\b(bomb|terror\w*)\b",
)

OFF_TOPIC_MESSAGE = (
    "I can only help with London Underground travel: line status, arrivals, "
    "stations and journeys. Try asking something like \"Is the Central line running?\""
)

INAPPROPRIATE_MESSAGE = (
    "I'm here to help with London Underground travel. Please keep the conversation "
    "respectful, and ask me about lines, stations or journeys."
)


@dataclass(frozen=True)
class FilterVerdict:
    """过滤结果"""

    filter_type: str
    """off_topic / inappropriate"""

    message: str
    """给用户的固定回复"""


class ContentFilter:
    """内容过滤器

    规则：
    1. 命中不当内容模式 → inappropriate（优先）
    2. 不含任何交通词汇且命中域外模式 → off_topic
    """

    def __init__(self, configs: Iterable[SpecialistConfig]):
        vocabulary = set(TRANSPORT_TERMS)
        for config in configs:
            vocabulary.update(config.keywords)
        self._vocabulary = tuple(sorted(vocabulary))
        self._off_topic = [re.compile(p, re.IGNORECASE) for p in OFF_TOPIC_PATTERNS]
        self._abusive = [re.compile(p, re.IGNORECASE) for p in ABUSIVE_PATTERNS]

    def has_transport_vocabulary(self, query: str) -> bool:
        lowered = query.lower()
        return any(term in lowered for term in self._vocabulary)

    def check(self, query: str) -> FilterVerdict | None:
        """检查查询

        Returns:
            命中时返回 FilterVerdict，否则 None
        """
        if any(p.search(query) for p in self._abusive):
            return FilterVerdict(INAPPROPRIATE, INAPPROPRIATE_MESSAGE)
        if not self.has_transport_vocabulary(query) and any(
            p.search(query) for p in self._off_topic
        ):
            return FilterVerdict(OFF_TOPIC, OFF_TOPIC_MESSAGE)
        return None
