"""专家注册表

按标识管理专家实例。注册表在启动时构建，之后只读，
可在并发请求间无锁共享。
"""

from collections.abc import Iterable, Iterator
from typing import TYPE_CHECKING

from tubeguide.core.exceptions import SpecialistNotFoundError
from tubeguide.router.tables import load_routing_tables
from tubeguide.specialists.config import SpecialistId, get_enabled_configs
from tubeguide.specialists.line import LineSpecialist, StatusSpecialist

if TYPE_CHECKING:
    from tubeguide.router.tables import RoutingTables
    from tubeguide.specialists.base import BaseSpecialist
    from tubeguide.specialists.config import SpecialistConfig
    from tubeguide.tfl.client import LineDataProvider


def _key(handler_id: object) -> str:
    """SpecialistId 成员取其值，其他按字符串处理"""
    if isinstance(handler_id, SpecialistId):
        return handler_id.value
    return str(handler_id)


class SpecialistRegistry:
    """专家注册表

    Usage:
        registry = SpecialistRegistry.create_default(data_provider=TflClient())
        specialist = registry.get("circle")
    """

    def __init__(self, specialists: Iterable["BaseSpecialist"] = ()):
        """初始化注册表

        Args:
            specialists: 专家实例
        """
        self._specialists: dict[str, "BaseSpecialist"] = {}
        for specialist in specialists:
            self.register(specialist)

    @classmethod
    def create_default(
        cls,
        data_provider: "LineDataProvider | None" = None,
        configs: Iterable["SpecialistConfig"] | None = None,
        tables: "RoutingTables | None" = None,
    ) -> "SpecialistRegistry":
        """根据预定义配置创建全部启用的专家

        Args:
            data_provider: 线路数据提供者
            configs: 专家配置（默认全部启用配置）
            tables: 路由数据表（默认内置数据）

        Returns:
            注册表实例
        """
        tables = tables or load_routing_tables()
        specialists: list["BaseSpecialist"] = []
        for config in configs if configs is not None else get_enabled_configs():
            if config.specialist_id == SpecialistId.STATUS:
                specialists.append(StatusSpecialist(config, data_provider, tables))
            else:
                specialists.append(LineSpecialist(config, data_provider, tables))
        return cls(specialists)

    def register(self, specialist: "BaseSpecialist") -> None:
        """注册专家（同标识覆盖）"""
        self._specialists[specialist.specialist_id] = specialist

    def get(self, handler_id: str) -> "BaseSpecialist":
        """获取专家

        Raises:
            SpecialistNotFoundError: 标识未注册
        """
        try:
            return self._specialists[_key(handler_id)]
        except KeyError:
            raise SpecialistNotFoundError(_key(handler_id)) from None

    def ids(self) -> list[str]:
        """已注册的专家标识（注册顺序）"""
        return list(self._specialists.keys())

    def configs(self) -> list["SpecialistConfig"]:
        """已注册专家的配置"""
        return [s.config for s in self._specialists.values()]

    def __contains__(self, handler_id: object) -> bool:
        return _key(handler_id) in self._specialists

    def __iter__(self) -> Iterator["BaseSpecialist"]:
        return iter(self._specialists.values())

    def __len__(self) -> int:
        return len(self._specialists)
