"""确定性置信度评分

与推理调用完全独立的纯函数，只依赖专家配置和路由数据表，
可以不调用推理服务直接单元测试。

评分规则（按优先级）：
1. 查询明确且唯一地提及所选专家 → 0.95
2. 查询提及共享车站且为到站类查询：
   所选即首选专家 → 0.9；所选服务该站但非首选 → 0.6；否则继续
3. 所选专家关键词命中数：≥2 → 0.9；1 → 0.7；0 → 0.5
"""

from collections.abc import Iterable
from dataclasses import dataclass

from tubeguide.router.tables import RoutingTables
from tubeguide.specialists.config import SpecialistConfig

EXPLICIT_MENTION_CONFIDENCE = 0.95
PREFERRED_CONFIDENCE = 0.9
NON_PREFERRED_CONFIDENCE = 0.6
MULTI_KEYWORD_CONFIDENCE = 0.9
SINGLE_KEYWORD_CONFIDENCE = 0.7
DEFAULT_CONFIDENCE = 0.5


@dataclass(frozen=True)
class RuleMatch:
    """确定性路由规则命中结果"""

    handler_id: str
    rule: str
    """命中的规则：explicit_mention / station_preference"""

    station: str | None = None


def explicit_mentions(query: str, configs: Iterable[SpecialistConfig]) -> list[str]:
    """返回查询明确提及的全部专家标识"""
    return [c.specialist_id.value for c in configs if c.is_mentioned(query)]


def preferred_station(query: str, tables: RoutingTables) -> str | None:
    """返回查询中第一个有首选专家的共享车站（仅限到站类查询）"""
    if not tables.is_urgent(query):
        return None
    for station in tables.stations_in(query):
        if station in tables.arrival_preferences:
            return station
    return None


def match_rules(
    query: str,
    configs: Iterable[SpecialistConfig],
    tables: RoutingTables,
) -> RuleMatch | None:
    """确定性路由规则

    明确提及唯一专家时直接选定；否则共享车站 + 到站查询按偏好表选定。
    两者都不满足时返回 None，由推理调用决定。
    """
    mentioned = explicit_mentions(query, configs)
    if len(mentioned) == 1:
        return RuleMatch(handler_id=mentioned[0], rule="explicit_mention")
    if mentioned:
        # 多个专家被提及，交给推理调用消歧
        return None

    station = preferred_station(query, tables)
    if station is not None:
        return RuleMatch(
            handler_id=tables.arrival_preferences[station],
            rule="station_preference",
            station=station,
        )
    return None


def score_confidence(
    query: str,
    handler_id: str,
    configs: dict[str, SpecialistConfig],
    tables: RoutingTables,
) -> float:
    """计算所选专家的置信度

    Args:
        query: 用户查询
        handler_id: 所选专家标识
        configs: 专家标识 → 配置
        tables: 路由数据表

    Returns:
        置信度（0.5 ~ 0.95）
    """
    mentioned = explicit_mentions(query, configs.values())
    if mentioned == [handler_id]:
        return EXPLICIT_MENTION_CONFIDENCE

    if tables.is_urgent(query):
        for station in tables.stations_in(query):
            preferred = tables.arrival_preferences.get(station)
            if preferred is None:
                continue
            if handler_id == preferred:
                return PREFERRED_CONFIDENCE
            if handler_id in tables.shared_stations[station]:
                return NON_PREFERRED_CONFIDENCE
            break

    config = configs.get(handler_id)
    matches = config.keyword_matches(query) if config else 0
    if matches >= 2:
        return MULTI_KEYWORD_CONFIDENCE
    if matches == 1:
        return SINGLE_KEYWORD_CONFIDENCE
    return DEFAULT_CONFIDENCE
