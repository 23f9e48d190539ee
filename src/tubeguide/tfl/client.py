"""TfL Unified API 客户端

为专家提供线路状态、车站搜索和到站数据。核心流程从不直接调用它，
只接收专家整理好的结构化数据。
"""

from typing import Any, Protocol

import httpx
from loguru import logger

from tubeguide.config import TubeGuideSettings, get_settings


class LineDataProvider(Protocol):
    """线路数据提供者契约"""

    async def line_status(self, line_id: str) -> dict[str, Any]: ...

    async def all_line_status(self) -> list[dict[str, Any]]: ...

    async def arrivals(self, line_id: str, station: str) -> dict[str, Any] | None: ...


class TflClient:
    """TfL Unified API 异步客户端

    Attributes:
        base_url: API 地址
        app_key: API app_key（可选）
    """

    def __init__(
        self,
        settings: TubeGuideSettings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        """初始化客户端

        Args:
            settings: 配置（默认全局配置）
            http_client: 预先构造的 httpx 客户端（可选，便于测试注入 MockTransport）
        """
        settings = settings or get_settings()
        self.base_url = settings.tfl_base_url.rstrip("/")
        self.app_key = settings.tfl_app_key
        self._client = http_client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=settings.tfl_timeout,
        )

    async def close(self) -> None:
        """关闭底层连接"""
        await self._client.aclose()

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        query = dict(params or {})
        if self.app_key:
            query["app_key"] = self.app_key
        response = await self._client.get(path, params=query)
        response.raise_for_status()
        return response.json()

    async def line_status(self, line_id: str) -> dict[str, Any]:
        """获取单条线路状态

        Returns:
            {"line": ..., "name": ..., "statuses": [...]}
        """
        data = await self._get(f"/Line/{line_id}/Status")
        entry = data[0] if data else {}
        return {
            "line": line_id,
            "name": entry.get("name", line_id),
            "statuses": [
                {
                    "severity": s.get("statusSeverityDescription", "Unknown"),
                    "reason": s.get("reason"),
                }
                for s in entry.get("lineStatuses", [])[:3]
            ],
        }

    async def all_line_status(self) -> list[dict[str, Any]]:
        """获取全部地铁线路状态"""
        data = await self._get("/Line/Mode/tube/Status")
        return [
            {
                "line": entry.get("id"),
                "name": entry.get("name"),
                "severity": (entry.get("lineStatuses") or [{}])[0].get(
                    "statusSeverityDescription", "Unknown"
                ),
                "reason": (entry.get("lineStatuses") or [{}])[0].get("reason"),
            }
            for entry in data
        ]

    async def search_station(self, name: str) -> dict[str, Any] | None:
        """按名称搜索地铁站，返回第一个匹配"""
        data = await self._get(f"/StopPoint/Search/{name}", {"modes": "tube"})
        matches = data.get("matches", []) if isinstance(data, dict) else []
        if not matches:
            return None
        return {"id": matches[0].get("id"), "name": matches[0].get("name")}

    async def arrivals(self, line_id: str, station: str) -> dict[str, Any] | None:
        """获取某线路在某站的到站预测（最多 5 条）

        Returns:
            到站数据，车站不存在时返回 None
        """
        stop = await self.search_station(station)
        if stop is None:
            logger.debug(f"未找到车站: {station}")
            return None
        data = await self._get(f"/Line/{line_id}/Arrivals/{stop['id']}")
        predictions = sorted(data, key=lambda a: a.get("timeToStation", 0))[:5]
        return {
            "station": stop["name"],
            "station_id": stop["id"],
            "line": line_id,
            "arrivals": [
                {
                    "destination": a.get("destinationName") or a.get("towards"),
                    "platform": a.get("platformName"),
                    "minutes": round(a.get("timeToStation", 0) / 60),
                }
                for a in predictions
            ],
        }
