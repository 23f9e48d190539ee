"""TubeGuide 配置管理

使用 Pydantic Settings 管理配置，支持环境变量和 .env 文件。
"""

from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class TubeGuideSettings(BaseSettings):
    """TubeGuide 全局配置"""

    model_config = SettingsConfigDict(
        env_prefix="TUBEGUIDE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # 存储配置
    db_path: Path = Field(
        default=Path("./data/conversations.sqlite"),
        description="会话数据库文件路径",
    )

    # LLM 配置
    llm_model_name: str = Field(
        default="gpt-4o",
        description="推理调用使用的模型",
    )
    llm_api_key: str | None = Field(
        default=None,
        description="OpenAI 兼容接口的 API Key",
        validation_alias=AliasChoices("OPENAI_API_KEY", "TUBEGUIDE_LLM_API_KEY"),
    )
    llm_base_url: str | None = Field(
        default=None,
        description="OpenAI 兼容接口地址（为空时使用官方地址）",
    )
    llm_temperature: float = Field(
        default=0.0,
        description="推理温度",
    )
    reasoning_timeout: float = Field(
        default=10.0,
        description="单次推理调用超时（秒）",
    )

    # 路由配置
    default_handler: str = Field(
        default="central",
        description="分类失败或输出非法时使用的默认专家",
    )
    routing_tables_path: Path | None = Field(
        default=None,
        description="路由数据表 JSON 路径（为空时使用内置数据）",
    )

    # 流程配置
    enable_confirmation: bool = Field(
        default=True,
        description="是否对多步骤行程启用确认环节",
    )
    max_query_length: int = Field(
        default=1000,
        description="查询最大长度（超出截断）",
    )
    history_window: int = Field(
        default=10,
        description="传递给专家的最近消息条数",
    )

    # 协作配置
    max_collaborators: int = Field(
        default=3,
        description="单次协作的最大协作专家数",
    )
    collaborator_snippet_length: int = Field(
        default=200,
        description="附加信息中每个协作专家回答的最大长度",
    )

    # 摘要配置
    enable_summarization: bool = Field(
        default=True,
        description="是否启用会话自动摘要",
    )
    summary_threshold: int = Field(
        default=20,
        description="触发摘要的未摘要消息数",
    )

    # TfL API 配置
    tfl_base_url: str = Field(
        default="https://api.tfl.gov.uk",
        description="TfL Unified API 地址",
    )
    tfl_app_key: str | None = Field(
        default=None,
        description="TfL API app_key（可选）",
        validation_alias=AliasChoices("TFL_APP_KEY", "TUBEGUIDE_TFL_APP_KEY"),
    )
    tfl_timeout: float = Field(
        default=8.0,
        description="TfL API 请求超时（秒）",
    )


# 全局配置实例（延迟初始化）
_settings: TubeGuideSettings | None = None


def get_settings() -> TubeGuideSettings:
    """获取全局配置实例"""
    global _settings
    if _settings is None:
        _settings = TubeGuideSettings()
    return _settings


def reset_settings():
    """重置全局配置（主要用于测试）"""
    global _settings
    _settings = None
