"""SQLite 会话存储

只追加的消息日志 + 阈值触发的后台摘要。

并发模型：
- 每个线程一把 asyncio.Lock，串行化该线程的追加写入和水位计算
- SQLite 阻塞调用通过 asyncio.to_thread 执行，连接由 threading.Lock 保护
- 摘要在后台任务中生成，推理调用期间不持有线程锁；写入摘要前
  重新校验水位，保证摘要区间首尾相接且互不重叠
"""

import asyncio
import json
import sqlite3
import threading
import weakref
from collections import Counter
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

from loguru import logger

from tubeguide.core.exceptions import PersistenceError, ValidationError
from tubeguide.memory.models import (
    ConversationInsights,
    ConversationSummary,
    ConversationThread,
    EnrichedHistory,
    Message,
    TopicCount,
)

if TYPE_CHECKING:
    from tubeguide.memory.summarizer import ConversationSummarizer

T = TypeVar("T")

ROLES = ("user", "assistant", "system")
ONE_MICROSECOND = timedelta(microseconds=1)

SCHEMA = """
CREATE TABLE IF NOT EXISTS threads (
    thread_id TEXT PRIMARY KEY,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    thread_id TEXT NOT NULL REFERENCES threads (thread_id),
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    handler_id TEXT,
    confidence REAL,
    structured_data TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS summaries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    thread_id TEXT NOT NULL REFERENCES threads (thread_id),
    summary TEXT NOT NULL,
    topics TEXT NOT NULL DEFAULT '[]',
    sentiment TEXT NOT NULL DEFAULT 'neutral',
    insights TEXT NOT NULL DEFAULT '[]',
    message_count INTEGER NOT NULL,
    start_ts TEXT NOT NULL,
    end_ts TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_thread ON messages (thread_id, created_at);
CREATE INDEX IF NOT EXISTS idx_summaries_thread ON summaries (thread_id, end_ts);

CREATE TRIGGER IF NOT EXISTS messages_no_update BEFORE UPDATE ON messages
BEGIN SELECT RAISE(ABORT, 'messages are append-only'); END;
CREATE TRIGGER IF NOT EXISTS messages_no_delete BEFORE DELETE ON messages
BEGIN SELECT RAISE(ABORT, 'messages are append-only'); END;
CREATE TRIGGER IF NOT EXISTS summaries_no_update BEFORE UPDATE ON summaries
BEGIN SELECT RAISE(ABORT, 'summaries are append-only'); END;
CREATE TRIGGER IF NOT EXISTS summaries_no_delete BEFORE DELETE ON summaries
BEGIN SELECT RAISE(ABORT, 'summaries are append-only'); END;
"""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: datetime) -> str:
    """固定格式时间戳（保证字典序即时间序）"""
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(value)


class ConversationStore:
    """会话存储

    Attributes:
        db_path: 数据库路径（':memory:' 表示内存库）
        summary_threshold: 触发摘要的未摘要消息数
        enable_summarization: 是否启用自动摘要
    """

    def __init__(
        self,
        db_path: Path | str,
        summarizer: "ConversationSummarizer | None" = None,
        summary_threshold: int = 20,
        enable_summarization: bool = True,
    ):
        """初始化存储

        Args:
            db_path: 数据库文件路径
            summarizer: 摘要生成器（为 None 时不自动摘要）
            summary_threshold: 摘要阈值
            enable_summarization: 是否启用自动摘要
        """
        if summary_threshold < 1:
            raise ValueError(f"summary_threshold must be positive, got {summary_threshold}")

        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.summarizer = summarizer
        self.summary_threshold = summary_threshold
        self.enable_summarization = enable_summarization

        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.executescript(SCHEMA)
        self._conn.commit()

        self._db_lock = threading.Lock()
        # 锁只被持有者和等待者引用，空闲后自动移除
        self._thread_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._summary_tasks: dict[str, asyncio.Task] = {}
        self._closed = False
        logger.debug(f"会话数据库初始化完成: {self.db_path}")

    # ==================== 基础设施 ====================

    def _lock_for(self, thread_id: str) -> asyncio.Lock:
        lock = self._thread_locks.get(thread_id)
        if lock is None:
            lock = self._thread_locks[thread_id] = asyncio.Lock()
        return lock

    def _locked(self, fn: Callable[..., T], *args: Any) -> T:
        with self._db_lock:
            return fn(*args)

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        """在线程池中执行数据库操作，统一包装 sqlite3 异常"""
        if self._closed:
            raise PersistenceError("会话存储已关闭")
        try:
            return await asyncio.to_thread(self._locked, fn, *args)
        except sqlite3.Error as e:
            raise PersistenceError(f"数据库操作失败: {e}") from e

    # ==================== 同步 SQL（在 _db_lock 内执行） ====================

    def _thread_created_at(self, thread_id: str) -> str | None:
        row = self._conn.execute(
            "SELECT created_at FROM threads WHERE thread_id = ?", (thread_id,)
        ).fetchone()
        return row["created_at"] if row else None

    def _watermark(self, thread_id: str) -> str | None:
        """最新摘要的 end_ts；没有摘要时为线程创建时间"""
        row = self._conn.execute(
            "SELECT end_ts FROM summaries WHERE thread_id = ? ORDER BY end_ts DESC LIMIT 1",
            (thread_id,),
        ).fetchone()
        if row:
            return row["end_ts"]
        return self._thread_created_at(thread_id)

    def _count_after(self, thread_id: str, since: str, until: str | None = None) -> int:
        sql = "SELECT COUNT(*) FROM messages WHERE thread_id = ? AND created_at > ?"
        params: list[Any] = [thread_id, since]
        if until is not None:
            sql += " AND created_at <= ?"
            params.append(until)
        return self._conn.execute(sql, params).fetchone()[0]

    def _insert_message(
        self,
        thread_id: str,
        role: str,
        content: str,
        handler_id: str | None,
        confidence: float | None,
        structured_data: str | None,
    ) -> tuple[int, str, int]:
        """插入消息，返回 (消息 ID, created_at, 未摘要消息数)"""
        now = _utcnow()
        try:
            thread_created = self._thread_created_at(thread_id)
            if thread_created is None:
                thread_created = _ts(now)
                self._conn.execute(
                    "INSERT INTO threads (thread_id, created_at) VALUES (?, ?)",
                    (thread_id, thread_created),
                )

            # 线程内 created_at 严格递增，时间戳水位才能精确划分区间
            row = self._conn.execute(
                "SELECT MAX(created_at) FROM messages WHERE thread_id = ?", (thread_id,)
            ).fetchone()
            floor = _parse_ts(row[0] or thread_created)
            created = max(now, floor + ONE_MICROSECOND)
            created_at = _ts(created)

            cursor = self._conn.execute(
                """
                INSERT INTO messages
                (thread_id, role, content, handler_id, confidence, structured_data, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (thread_id, role, content, handler_id, confidence, structured_data, created_at),
            )
            self._conn.commit()
        except sqlite3.Error:
            self._conn.rollback()
            raise

        pending = self._count_after(thread_id, self._watermark(thread_id) or thread_created)
        return cursor.lastrowid, created_at, pending

    def _select_range(self, thread_id: str, since: str, until: str) -> list[sqlite3.Row]:
        return self._conn.execute(
            """
            SELECT * FROM messages
            WHERE thread_id = ? AND created_at > ? AND created_at <= ?
            ORDER BY created_at ASC
            """,
            (thread_id, since, until),
        ).fetchall()

    def _snapshot_unsummarized(
        self, thread_id: str, until: str | None
    ) -> tuple[str | None, list[sqlite3.Row]]:
        watermark = self._watermark(thread_id)
        if watermark is None:
            return None, []
        if until is None:
            row = self._conn.execute(
                "SELECT MAX(created_at) FROM messages WHERE thread_id = ?", (thread_id,)
            ).fetchone()
            until = row[0]
            if until is None:
                return watermark, []
        return watermark, self._select_range(thread_id, watermark, until)

    def _insert_summary(
        self,
        thread_id: str,
        expected_start: str,
        values: tuple[Any, ...],
    ) -> int | None:
        """写入摘要；水位已变化（并发摘要）时放弃并返回 None"""
        if self._watermark(thread_id) != expected_start:
            return None
        try:
            cursor = self._conn.execute(
                """
                INSERT INTO summaries
                (thread_id, summary, topics, sentiment, insights, message_count,
                 start_ts, end_ts, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (thread_id, *values),
            )
            self._conn.commit()
        except sqlite3.Error:
            self._conn.rollback()
            raise
        return cursor.lastrowid

    def _select_messages(self, thread_id: str, limit: int) -> list[sqlite3.Row]:
        rows = self._conn.execute(
            """
            SELECT * FROM messages WHERE thread_id = ?
            ORDER BY created_at DESC LIMIT ?
            """,
            (thread_id, max(limit, 0)),
        ).fetchall()
        return list(reversed(rows))

    def _select_summaries(self, thread_id: str) -> list[sqlite3.Row]:
        return self._conn.execute(
            "SELECT * FROM summaries WHERE thread_id = ? ORDER BY end_ts ASC, id ASC",
            (thread_id,),
        ).fetchall()

    def _count_messages(self, thread_id: str) -> int:
        return self._conn.execute(
            "SELECT COUNT(*) FROM messages WHERE thread_id = ?", (thread_id,)
        ).fetchone()[0]

    # ==================== 行转换 ====================

    @staticmethod
    def _to_message(row: sqlite3.Row) -> Message:
        return Message(
            id=row["id"],
            thread_id=row["thread_id"],
            role=row["role"],
            content=row["content"],
            handler_id=row["handler_id"],
            confidence=row["confidence"],
            structured_data=json.loads(row["structured_data"]) if row["structured_data"] else None,
            created_at=_parse_ts(row["created_at"]),
        )

    @staticmethod
    def _to_summary(row: sqlite3.Row) -> ConversationSummary:
        return ConversationSummary(
            id=row["id"],
            thread_id=row["thread_id"],
            summary=row["summary"],
            topics=json.loads(row["topics"]),
            sentiment=row["sentiment"],
            insights=json.loads(row["insights"]),
            message_count=row["message_count"],
            start_ts=_parse_ts(row["start_ts"]),
            end_ts=_parse_ts(row["end_ts"]),
            created_at=_parse_ts(row["created_at"]),
        )

    # ==================== 写入 ====================

    async def append(
        self,
        thread_id: str,
        role: str,
        content: str,
        *,
        handler_id: str | None = None,
        confidence: float | None = None,
        structured_data: dict[str, Any] | None = None,
    ) -> int:
        """追加一条消息

        线程不存在时自动创建。追加后检查摘要水位，达到阈值时调度后台摘要。

        Args:
            thread_id: 线程标识
            role: 角色（user / assistant / system）
            content: 消息内容
            handler_id: 回答的专家标识
            confidence: 置信度
            structured_data: 结构化数据（JSON 可序列化）

        Returns:
            消息 ID

        Raises:
            ValidationError: 角色非法或线程标识为空
            PersistenceError: 数据库写入失败
        """
        if role not in ROLES:
            raise ValidationError(f"非法角色: {role}")
        if not thread_id:
            raise ValidationError("线程标识不能为空")

        payload = json.dumps(structured_data, ensure_ascii=False, default=str) if structured_data else None
        async with self._lock_for(thread_id):
            message_id, created_at, pending = await self._run(
                self._insert_message, thread_id, role, content, handler_id, confidence, payload
            )

        if pending >= self.summary_threshold:
            self._schedule_summary(thread_id, created_at)
        return message_id

    def _schedule_summary(self, thread_id: str, until: str) -> None:
        """调度后台摘要（同一线程同时只有一个摘要任务）"""
        if not self.enable_summarization or self.summarizer is None:
            return
        running = self._summary_tasks.get(thread_id)
        if running is not None and not running.done():
            return

        logger.info(f"线程 {thread_id} 达到摘要阈值，调度后台摘要")
        task = asyncio.create_task(self._summarize_in_background(thread_id, until))
        self._summary_tasks[thread_id] = task
        task.add_done_callback(lambda t, tid=thread_id: self._forget_task(tid, t))

    def _forget_task(self, thread_id: str, task: asyncio.Task) -> None:
        if self._summary_tasks.get(thread_id) is task:
            del self._summary_tasks[thread_id]

    async def _summarize_in_background(self, thread_id: str, until: str) -> None:
        try:
            await self.create_summary(thread_id, until=until)
        except Exception:
            logger.exception(f"线程 {thread_id} 后台摘要失败")

    async def create_summary(self, thread_id: str, until: str | datetime | None = None) -> int | None:
        """为未摘要区间生成并写入摘要

        Args:
            thread_id: 线程标识
            until: 区间上界（含），默认为最新消息

        Returns:
            摘要 ID；没有未摘要消息或水位已被并发摘要推进时返回 None

        Raises:
            PersistenceError: 数据库操作失败
        """
        if self.summarizer is None:
            return None
        upper = _ts(until) if isinstance(until, datetime) else until

        async with self._lock_for(thread_id):
            start_ts, rows = await self._run(self._snapshot_unsummarized, thread_id, upper)
        if not rows:
            return None

        messages = [self._to_message(row) for row in rows]
        draft = await self.summarizer.summarize(messages)

        values = (
            draft.summary,
            json.dumps(draft.topics, ensure_ascii=False),
            draft.sentiment,
            json.dumps(draft.insights, ensure_ascii=False),
            len(messages),
            start_ts,
            rows[-1]["created_at"],
            _ts(_utcnow()),
        )
        async with self._lock_for(thread_id):
            summary_id = await self._run(self._insert_summary, thread_id, start_ts, values)

        if summary_id is None:
            logger.warning(f"线程 {thread_id} 的摘要水位已变化，放弃本次摘要")
        else:
            logger.info(f"线程 {thread_id} 创建摘要 {summary_id}（{len(messages)} 条消息）")
        return summary_id

    async def trigger_summary(self, thread_id: str) -> int | None:
        """手动触发摘要（覆盖到最新消息）"""
        return await self.create_summary(thread_id)

    async def wait_for_background_tasks(self) -> None:
        """等待所有后台摘要任务完成"""
        tasks = list(self._summary_tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ==================== 读取 ====================

    async def get_thread(self, thread_id: str) -> ConversationThread | None:
        created_at = await self._run(self._thread_created_at, thread_id)
        if created_at is None:
            return None
        return ConversationThread(thread_id=thread_id, created_at=_parse_ts(created_at))

    async def history(
        self,
        thread_id: str,
        limit: int = 50,
        enrich: bool = False,
    ) -> list[Message] | EnrichedHistory:
        """获取会话历史

        Args:
            thread_id: 线程标识
            limit: 最近消息条数（负数按 0 处理）
            enrich: 是否合并摘要（长程上下文）

        Returns:
            最近消息列表（旧 → 新），或 EnrichedHistory
        """
        rows = await self._run(self._select_messages, thread_id, limit)
        messages = [self._to_message(row) for row in rows]
        if not enrich:
            return messages

        summaries = await self.summaries(thread_id)
        thread = await self.get_thread(thread_id)
        return EnrichedHistory(
            thread_id=thread_id,
            summaries=summaries,
            recent_messages=messages,
            total_messages=await self.message_count(thread_id),
            conversation_started=thread.created_at if thread else None,
        )

    async def summaries(self, thread_id: str) -> list[ConversationSummary]:
        """获取全部摘要（旧 → 新）"""
        rows = await self._run(self._select_summaries, thread_id)
        return [self._to_summary(row) for row in rows]

    async def message_count(self, thread_id: str) -> int:
        return await self._run(self._count_messages, thread_id)

    async def unsummarized_count(self, thread_id: str) -> int:
        """水位之后的消息数"""

        def count() -> int:
            watermark = self._watermark(thread_id)
            return 0 if watermark is None else self._count_after(thread_id, watermark)

        return await self._run(count)

    async def insights(self, thread_id: str) -> ConversationInsights | None:
        """由摘要聚合会话洞察；没有摘要时返回 None"""
        summaries = await self.summaries(thread_id)
        if not summaries:
            return None

        topic_counts = Counter(topic for s in summaries for topic in s.topics)
        sentiment_counts = Counter({"positive": 0, "neutral": 0, "negative": 0})
        sentiment_counts.update(s.sentiment for s in summaries)
        overall = max(sentiment_counts, key=lambda k: sentiment_counts[k])

        return ConversationInsights(
            thread_id=thread_id,
            top_topics=[
                TopicCount(topic=topic, count=count)
                for topic, count in topic_counts.most_common(5)
            ],
            overall_sentiment=overall,
            summary_count=len(summaries),
            conversation_start=summaries[0].start_ts,
            conversation_end=summaries[-1].end_ts,
            messages_summarized=sum(s.message_count for s in summaries),
        )

    async def health_check(self) -> bool:
        """检查数据库可用"""

        def ping() -> bool:
            for table in ("threads", "messages", "summaries"):
                self._conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()
            return True

        try:
            return await self._run(ping)
        except PersistenceError as e:
            logger.error(f"会话存储健康检查失败: {e}")
            return False

    async def close(self) -> None:
        """等待后台任务并关闭连接"""
        if self._closed:
            return
        await self.wait_for_background_tasks()
        self._closed = True
        with self._db_lock:
            self._conn.close()
