"""查询路由：内容过滤、主题分类与置信度评分"""

from tubeguide.router.classifier import QueryClassifier, RoutingDecision
from tubeguide.router.confidence import match_rules, score_confidence
from tubeguide.router.content_filter import INAPPROPRIATE, OFF_TOPIC, ContentFilter
from tubeguide.router.tables import RoutingTables, load_routing_tables

__all__ = [
    "QueryClassifier",
    "RoutingDecision",
    "ContentFilter",
    "OFF_TOPIC",
    "INAPPROPRIATE",
    "RoutingTables",
    "load_routing_tables",
    "match_rules",
    "score_confidence",
]
