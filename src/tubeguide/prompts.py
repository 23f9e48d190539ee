"""系统提示词

路由、专家回答和会话摘要使用的提示词模板。
"""

import json
from typing import Any

# ==================== 路由提示词 ====================

ROUTER_PROMPT = """# Role
You route London Underground questions to exactly one specialist.

# Specialists
{specialists}

# Rules
- A line named explicitly in the question always wins.
- Questions about the whole network, disruptions on several lines or general
  service status go to STATUS.
- If unsure, answer {default}."""

# ==================== 专家提示词 ====================

SPECIALIST_PROMPT = """# Role
You are the {name} specialist of a London Underground assistant.
{description}

# Live data
{data}

# Conversation so far
{history}

# Output
- Answer conversationally and concisely in English.
- Use only the live data above for times and statuses; say so when data is missing.
- Never include raw JSON or error traces."""

COLLABORATION_NOTE = """
# Collaboration
You are contributing to a combined answer led by the {primary} specialist.
Focus only on what the {name} adds."""

# ==================== 摘要提示词 ====================

SUMMARY_PROMPT = """You summarise conversations of a London Underground assistant.

Focus on lines, stations, journeys, service status and any problems raised.

Respond with JSON only:
{{
  "summary": "2-3 sentence overview",
  "topics": ["topic1", "topic2"],
  "sentiment": "positive|neutral|negative",
  "insights": ["insight1", "insight2"]
}}

Conversation:
{transcript}"""


def build_router_prompt(specialists: list[tuple[str, str]], default: str) -> str:
    """构建路由提示词

    Args:
        specialists: (token, description) 列表
        default: 默认专家词
    """
    lines = "\n".join(f"- {token}: {description}" for token, description in specialists)
    return ROUTER_PROMPT.format(specialists=lines, default=default)


def build_specialist_prompt(
    name: str,
    description: str,
    data: dict[str, Any] | None,
    history: list[dict[str, str]],
    primary: str | None = None,
) -> str:
    """构建专家系统提示词"""
    data_text = json.dumps(data, ensure_ascii=False, indent=2) if data else "(unavailable)"
    history_text = (
        "\n".join(f"{m['role']}: {m['content']}" for m in history[-6:]) or "(new conversation)"
    )
    prompt = SPECIALIST_PROMPT.format(
        name=name,
        description=description,
        data=data_text,
        history=history_text,
    )
    if primary:
        prompt += COLLABORATION_NOTE.format(primary=primary, name=name)
    return prompt


def build_summary_prompt(transcript: str) -> str:
    """构建摘要提示词"""
    return SUMMARY_PROMPT.format(transcript=transcript)
