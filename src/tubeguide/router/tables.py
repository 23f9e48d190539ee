"""路由数据表

共享车站表、到站偏好表等人工维护的产品数据。数据以 JSON 形式随包发布，
可通过配置指定外部文件覆盖；加载后只读。
"""

import json
import re
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from tubeguide.core.exceptions import ConfigurationError

DEFAULT_TABLES_PATH = Path(__file__).resolve().parent.parent / "data" / "routing_tables.json"


@dataclass(frozen=True)
class RoutingTables:
    """路由数据表

    Attributes:
        urgency_pattern: 到站/紧急查询模式
        shared_stations: 车站 → 服务该站的专家标识
        arrival_preferences: 车站 → 到站查询首选专家
        network_collaborators: 全网查询的协作专家
        journey_default_collaborators: 行程查询无法识别车站时的协作专家
    """

    urgency_pattern: re.Pattern
    shared_stations: dict[str, tuple[str, ...]]
    arrival_preferences: dict[str, str]
    network_collaborators: tuple[str, ...]
    journey_default_collaborators: tuple[str, ...]

    def stations_in(self, query: str) -> list[str]:
        """按在查询中出现的顺序返回提及的共享车站

        使用单词边界匹配，避免 'bank' 命中 'embankment'。
        """
        lowered = query.lower()
        found: list[tuple[int, str]] = []
        # 长名优先，已被长名覆盖的位置不再匹配短名
        covered: list[tuple[int, int]] = []
        for station in sorted(self.shared_stations, key=len, reverse=True):
            match = re.search(rf"\b{re.escape(station)}\b", lowered)
            if match is None:
                continue
            start, end = match.span()
            if any(s <= start < e for s, e in covered):
                continue
            covered.append((start, end))
            found.append((start, station))
        return [station for _, station in sorted(found)]

    def is_urgent(self, query: str) -> bool:
        """是否为到站/紧急类查询"""
        return bool(self.urgency_pattern.search(query))


def load_routing_tables(path: Path | None = None) -> RoutingTables:
    """加载并校验路由数据表

    Args:
        path: JSON 文件路径（默认内置数据）

    Returns:
        RoutingTables

    Raises:
        ConfigurationError: 文件缺失或数据不一致
    """
    source = path or DEFAULT_TABLES_PATH
    try:
        raw = json.loads(source.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"无法加载路由数据表 {source}: {e}") from e

    if "urgency_pattern" not in raw:
        raise ConfigurationError(f"路由数据表 {source} 缺少 urgency_pattern")

    shared = {
        station.lower(): tuple(ids)
        for station, ids in raw.get("shared_stations", {}).items()
    }
    preferences = {
        station.lower(): handler_id
        for station, handler_id in raw.get("arrival_preferences", {}).items()
    }

    for station, preferred in preferences.items():
        if station not in shared:
            raise ConfigurationError(f"偏好表中的车站 '{station}' 不在共享车站表中")
        if preferred not in shared[station]:
            raise ConfigurationError(
                f"车站 '{station}' 的首选专家 '{preferred}' 不服务该站"
            )

    tables = RoutingTables(
        urgency_pattern=re.compile(raw["urgency_pattern"], re.IGNORECASE),
        shared_stations=shared,
        arrival_preferences=preferences,
        network_collaborators=tuple(raw.get("network_collaborators", [])),
        journey_default_collaborators=tuple(raw.get("journey_default_collaborators", [])),
    )
    logger.debug(f"路由数据表已加载: {source}（{len(shared)} 个共享车站）")
    return tables
