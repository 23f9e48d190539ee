"""专家配置定义

定义 SpecialistId、SpecialistConfig 及各线路专家的预定义配置。
所有线路专家共用同一个实现类，差异完全由配置数据表达。
"""

import re
from dataclasses import dataclass, field
from enum import Enum


class SpecialistId(str, Enum):
    """专家标识枚举"""

    CIRCLE = "circle"
    BAKERLOO = "bakerloo"
    DISTRICT = "district"
    CENTRAL = "central"
    NORTHERN = "northern"
    PICCADILLY = "piccadilly"
    VICTORIA = "victoria"
    JUBILEE = "jubilee"
    METROPOLITAN = "metropolitan"
    HAMMERSMITH_CITY = "hammersmith_city"
    WATERLOO_CITY = "waterloo_city"
    ELIZABETH = "elizabeth"

    STATUS = "status"
    """全网运营状态专家"""

    @property
    def token(self) -> str:
        """受约束分类输出使用的词（如 'CIRCLE'）"""
        return self.name

    @classmethod
    def from_token(cls, token: str) -> "SpecialistId | None":
        """从分类输出词解析专家标识，非法词返回 None"""
        return cls.__members__.get(token.strip().upper())


FALLBACK_HANDLER = "fallback"
"""回退路径使用的伪专家标识"""

FILTER_HANDLER = "filter"
"""内容过滤使用的伪专家标识"""


@dataclass(frozen=True)
class SpecialistConfig:
    """专家配置（纯数据配置，无执行逻辑）

    Attributes:
        specialist_id: 专家标识
        name: 显示名称
        description: 能力描述（写入提示词）
        tfl_line_id: TfL API 中的线路标识（状态专家为 None）
        keywords: 路由关键词（小写子串匹配）
        mention_pattern: 明确提及该专家的正则（单词边界）
        color: 线路颜色
        enabled: 是否启用
    """

    specialist_id: SpecialistId
    """专家标识"""

    name: str
    """显示名称（如 'Circle line'）"""

    description: str
    """能力描述"""

    tfl_line_id: str | None
    """TfL 线路标识"""

    keywords: tuple[str, ...] = ()
    """路由关键词

    包括线路名和该线路的代表车站，用于置信度评分和协作专家选择。
    """

    mention_pattern: str | None = None
    """明确提及的正则模式

    车站与线路同名时（Victoria、Piccadilly Circus、Waterloo）模式需要
    排除车站用法，否则会把车站提及误判为线路提及。
    """

    color: str = "#666666"
    """线路颜色"""

    enabled: bool = True
    """是否启用"""

    _compiled: re.Pattern | None = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self):
        """验证配置并预编译提及模式"""
        if not self.name:
            raise ValueError(f"Specialist {self.specialist_id} must have a name")
        if any(kw != kw.lower() for kw in self.keywords):
            raise ValueError(f"Specialist {self.name} keywords must be lowercase")
        if self.mention_pattern:
            object.__setattr__(
                self, "_compiled", re.compile(self.mention_pattern, re.IGNORECASE)
            )

    def is_mentioned(self, query: str) -> bool:
        """查询是否明确提及该专家"""
        return bool(self._compiled and self._compiled.search(query))

    def keyword_matches(self, query: str) -> int:
        """统计关键词子串命中数"""
        lowered = query.lower()
        return sum(1 for kw in self.keywords if kw in lowered)


def _line(
    specialist_id: SpecialistId,
    name: str,
    tfl_line_id: str,
    color: str,
    keywords: tuple[str, ...],
    mention_pattern: str,
) -> SpecialistConfig:
    return SpecialistConfig(
        specialist_id=specialist_id,
        name=name,
        description=(
            f"{name} specialist: live service status, arrivals, stations, "
            f"interchanges and journey advice for the {name}."
        ),
        tfl_line_id=tfl_line_id,
        keywords=keywords,
        mention_pattern=mention_pattern,
        color=color,
    )


# ==================== 预定义配置 ====================

CIRCLE_CONFIG = _line(
    SpecialistId.CIRCLE,
    "Circle line",
    "circle",
    "#FFD329",
    (
        "circle", "baker street", "king's cross", "victoria", "embankment",
        "monument", "westminster", "aldgate",
    ),
    r"\b(circle\s*line|circle)\b",
)

BAKERLOO_CONFIG = _line(
    SpecialistId.BAKERLOO,
    "Bakerloo line",
    "bakerloo",
    "#B36305",
    (
        "bakerloo", "paddington", "waterloo", "elephant & castle",
        "elephant and castle", "harrow", "wealdstone", "piccadilly circus",
    ),
    r"\b(bakerloo\s*line|bakerloo)\b",
)

DISTRICT_CONFIG = _line(
    SpecialistId.DISTRICT,
    "District line",
    "district",
    "#00782A",
    (
        "district", "earl's court", "wimbledon", "richmond", "upminster",
        "ealing broadway", "south kensington", "gloucester road",
        "high street kensington", "sloane square", "fulham broadway",
        "parsons green", "putney bridge", "east putney", "southfields",
        "barking", "dagenham", "hornchurch", "elm park", "upney", "becontree",
    ),
    r"\b(district\s*line|district)\b",
)

CENTRAL_CONFIG = _line(
    SpecialistId.CENTRAL,
    "Central line",
    "central",
    "#E32017",
    (
        "central", "oxford circus", "bond street", "tottenham court road",
        "bank", "liverpool street", "stratford", "notting hill gate",
        "mile end", "bethnal green", "epping", "west ruislip",
    ),
    r"\b(central\s*line|central)\b",
)

NORTHERN_CONFIG = _line(
    SpecialistId.NORTHERN,
    "Northern line",
    "northern",
    "#000000",
    (
        "northern", "camden town", "euston", "edgware", "high barnet",
        "morden", "clapham", "battersea", "leicester square", "kennington",
    ),
    r"\b(northern\s*line|northern)\b",
)

PICCADILLY_CONFIG = _line(
    SpecialistId.PICCADILLY,
    "Piccadilly line",
    "piccadilly",
    "#003688",
    (
        "piccadilly line", "heathrow", "cockfosters", "covent garden",
        "holborn", "knightsbridge", "hammersmith", "russell square",
    ),
    r"\bpiccadilly\b(?!\s+circus)",
)

VICTORIA_CONFIG = _line(
    SpecialistId.VICTORIA,
    "Victoria line",
    "victoria",
    "#0098D4",
    (
        "victoria line", "brixton", "walthamstow", "seven sisters",
        "finsbury park", "highbury", "pimlico", "stockwell", "vauxhall",
    ),
    r"\bvictoria\s+line\b",
)

JUBILEE_CONFIG = _line(
    SpecialistId.JUBILEE,
    "Jubilee line",
    "jubilee",
    "#A0A5A9",
    (
        "jubilee", "stanmore", "canary wharf", "london bridge",
        "north greenwich", "west ham", "canada water", "swiss cottage",
    ),
    r"\b(jubilee\s*line|jubilee)\b",
)

METROPOLITAN_CONFIG = _line(
    SpecialistId.METROPOLITAN,
    "Metropolitan line",
    "metropolitan",
    "#9B0056",
    (
        "metropolitan", "amersham", "chesham", "uxbridge", "watford",
        "wembley park", "finchley road",
    ),
    r"\b(metropolitan\s*line|metropolitan)\b",
)

HAMMERSMITH_CITY_CONFIG = _line(
    SpecialistId.HAMMERSMITH_CITY,
    "Hammersmith & City line",
    "hammersmith-city",
    "#F3A9BB",
    (
        "hammersmith & city", "hammersmith and city", "ladbroke grove",
        "westbourne park", "shepherd's bush market", "whitechapel",
    ),
    r"\bhammersmith\s*(&|and)\s*city\b",
)

WATERLOO_CITY_CONFIG = _line(
    SpecialistId.WATERLOO_CITY,
    "Waterloo & City line",
    "waterloo-city",
    "#95CDBA",
    ("waterloo & city", "waterloo and city", "drain"),
    r"\bwaterloo\s*(&|and)\s*city\b",
)

ELIZABETH_CONFIG = _line(
    SpecialistId.ELIZABETH,
    "Elizabeth line",
    "elizabeth",
    "#6950A1",
    (
        "elizabeth", "crossrail", "abbey wood", "reading", "shenfield",
        "farringdon", "whitechapel", "canary wharf",
    ),
    r"\b(elizabeth\s*line|elizabeth|crossrail)\b",
)

STATUS_CONFIG = SpecialistConfig(
    specialist_id=SpecialistId.STATUS,
    name="Network status",
    description=(
        "Network status specialist: service status across every Underground "
        "line, disruptions, planned closures and overall network health."
    ),
    tfl_line_id=None,
    keywords=(
        "status", "disruption", "delay", "delays", "suspended", "closure",
        "all lines", "network", "good service", "strike",
    ),
    mention_pattern=r"\bnetwork\s+status\b",
    color="#0098D4",
)


SPECIALIST_CONFIGS: dict[SpecialistId, SpecialistConfig] = {
    config.specialist_id: config
    for config in (
        CIRCLE_CONFIG,
        BAKERLOO_CONFIG,
        DISTRICT_CONFIG,
        CENTRAL_CONFIG,
        NORTHERN_CONFIG,
        PICCADILLY_CONFIG,
        VICTORIA_CONFIG,
        JUBILEE_CONFIG,
        METROPOLITAN_CONFIG,
        HAMMERSMITH_CITY_CONFIG,
        WATERLOO_CITY_CONFIG,
        ELIZABETH_CONFIG,
        STATUS_CONFIG,
    )
}
"""所有专家的预定义配置"""


def get_enabled_configs() -> list[SpecialistConfig]:
    """获取所有启用的专家配置"""
    return [c for c in SPECIALIST_CONFIGS.values() if c.enabled]


def line_color(handler_id: str | None) -> str:
    """获取专家（或伪专家）的显示颜色"""
    special = {FILTER_HANDLER: "#FFA500", FALLBACK_HANDLER: "#DC143C"}
    if handler_id in special:
        return special[handler_id]
    try:
        return SPECIALIST_CONFIGS[SpecialistId(handler_id)].color
    except (ValueError, KeyError):
        return "#666666"
