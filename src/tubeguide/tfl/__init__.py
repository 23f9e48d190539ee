"""TfL 数据访问"""

from tubeguide.tfl.client import LineDataProvider, TflClient

__all__ = ["LineDataProvider", "TflClient"]
