"""
Ledger 模組
================
內容紀錄（curated_content）與搜尋策略（search_strategies）的存取層。

  - ContentStatus / RecordTracker   狀態機與合法轉移檢查
  - Strategy                        搜尋策略（keywords + target_sites）
  - SupabaseLedger                  正式環境：Supabase（source_url 唯一）
  - JsonFileLedger                  本地執行：state_dir 下的 JSON 檔
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

import httpx
from postgrest.exceptions import APIError
from supabase import create_client

logger = logging.getLogger("curator.ledger")

UNIQUE_VIOLATION = "23505"


# ============================================================
# 錯誤類型
# ============================================================

class LedgerError(Exception):
    """Ledger 讀寫失敗"""


class DuplicateRecordError(LedgerError):
    """source_url 已存在（唯一鍵衝突）"""


class RecordNotFoundError(LedgerError):
    """update 找不到對應的 source_url"""


class LedgerConnectionError(LedgerError):
    """Ledger 無法連線；不會被單一網站的錯誤邊界吞掉"""


class InvalidTransitionError(ValueError):
    """不合法的狀態轉移"""


# ============================================================
# 狀態機
# ============================================================

class ContentStatus(str, Enum):
    """內容紀錄的處理狀態"""
    PROCESSING_STARTED = "processing_started"
    SKIPPED_ROBOTS = "skipped_robots"
    ERROR_FETCHING = "error_fetching"
    CONTENT_FETCHED = "content_fetched"
    CONTENT_EXTRACTED = "content_extracted"
    ERROR_EXTRACTION = "error_extraction"
    AI_PROCESSING_INITIATED = "ai_processing_initiated"
    AI_PROCESSING_SUCCESSFUL = "ai_processing_successful"
    AI_PROCESSING_FAILED = "ai_processing_failed"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return not TRANSITIONS[self]

    def can_transition_to(self, target: "ContentStatus") -> bool:
        return target in TRANSITIONS[self]


_S = ContentStatus

TRANSITIONS = {
    _S.PROCESSING_STARTED: {_S.SKIPPED_ROBOTS, _S.ERROR_FETCHING, _S.CONTENT_FETCHED, _S.ERROR},
    _S.CONTENT_FETCHED: {_S.CONTENT_EXTRACTED, _S.ERROR_EXTRACTION, _S.ERROR},
    _S.CONTENT_EXTRACTED: {_S.ERROR_EXTRACTION, _S.AI_PROCESSING_INITIATED, _S.ERROR},
    _S.AI_PROCESSING_INITIATED: {_S.AI_PROCESSING_SUCCESSFUL, _S.COMPLETED,
                                 _S.AI_PROCESSING_FAILED, _S.ERROR},
    _S.AI_PROCESSING_SUCCESSFUL: {_S.COMPLETED, _S.ERROR},
    _S.SKIPPED_ROBOTS: set(),
    _S.ERROR_FETCHING: set(),
    _S.ERROR_EXTRACTION: set(),
    _S.AI_PROCESSING_FAILED: set(),
    _S.COMPLETED: set(),
    _S.ERROR: set(),
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_content_record(source_url: str, tags: list[str], agent_run_id: str = "",
                       progress_message: str = "") -> dict:
    """建立初始紀錄（status=processing_started）"""
    now = _now()
    return {
        "source_url": source_url,
        "status": ContentStatus.PROCESSING_STARTED.value,
        "title": "",
        "summary": "",
        "tags": list(tags),
        "progress_message": progress_message or "Processing started by agent.",
        "error_message": None,
        "agent_run_id": agent_run_id,
        "image_url": None,
        "image_status": "none",
        "image_error_message": None,
        "created_at": now,
        "updated_at": now,
    }


class RecordTracker:
    """追蹤單一紀錄目前的狀態；每次轉移先檢查合法性再寫入 ledger"""

    def __init__(self, ledger, source_url: str,
                 status: ContentStatus = ContentStatus.PROCESSING_STARTED):
        self.ledger = ledger
        self.source_url = source_url
        self.status = status
        self.history = [status]

    def advance(self, status: ContentStatus, **fields) -> bool:
        """轉移到新狀態並寫入 ledger。

        Returns:
            寫入成功為 True；ledger 寫入失敗（紀錄不存在等）為 False

        Raises:
            InvalidTransitionError: 轉移不合法
            LedgerConnectionError: ledger 無法連線
        """
        if not self.status.can_transition_to(status):
            raise InvalidTransitionError(
                f"{self.source_url}: {self.status.value} → {status.value} 不是合法的轉移"
            )
        update = {k: v for k, v in fields.items() if v is not None}
        update["status"] = status.value
        update["updated_at"] = _now()
        try:
            self.ledger.update(self.source_url, update)
        except LedgerConnectionError:
            raise
        except LedgerError as e:
            logger.error(f"狀態更新失敗 {self.source_url} → {status.value}：{e}")
            return False
        self.status = status
        self.history.append(status)
        return True


# ============================================================
# 搜尋策略
# ============================================================

def _as_list(value) -> list[str]:
    if isinstance(value, list):
        return [str(v).strip() for v in value if str(v).strip()]
    if isinstance(value, str) and value.strip():
        return [value.strip()]
    return []


@dataclass
class Strategy:
    """一組搜尋策略：關鍵字＋目標網站"""

    keywords: list[str]
    target_sites: list[str]
    content_types_to_monitor: list[str] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: dict) -> "Strategy":
        """從資料列建立，欄位可為字串或列表，也接受 camelCase 鍵名"""
        return cls(
            keywords=_as_list(row.get("keywords")),
            target_sites=_as_list(row.get("target_sites", row.get("targetSites"))),
            content_types_to_monitor=_as_list(
                row.get("content_types_to_monitor", row.get("contentTypesToMonitor"))
            ),
        )

    @property
    def topic(self) -> str:
        return ", ".join(self.keywords) if self.keywords else "General"


def strategies_from_rows(rows: list[dict]) -> list[Strategy]:
    strategies = []
    for row in rows or []:
        strategy = Strategy.from_row(row)
        if not strategy.target_sites:
            logger.warning(f"策略沒有 target_sites，略過：{row}")
            continue
        strategies.append(strategy)
    return strategies


# ============================================================
# Supabase
# ============================================================

# 紀錄欄位 → curated_content 欄位
_COLUMN_MAP = {
    "progress_message": "agent_progress_message",
    "error_message": "agent_error_message",
}


def _to_row(fields: dict) -> dict:
    return {_COLUMN_MAP.get(k, k): v for k, v in fields.items()}


class SupabaseLedger:
    """以 Supabase 為後端的 ledger；curated_content.source_url 需設唯一鍵"""

    def __init__(self, url: str, key: str, content_table: str = "curated_content",
                 strategy_table: str = "search_strategies", client=None):
        self.url = url
        self.key = key
        self.content_table = content_table
        self.strategy_table = strategy_table
        self._client = client

    def connect(self):
        if self._client is not None:
            return
        if not self.url or not self.key:
            raise LedgerError(
                "Supabase environment variables not set (SUPABASE_URL, SUPABASE_ANON_KEY)."
            )
        logger.info("初始化 Supabase client...")
        try:
            self._client = create_client(self.url, self.key)
        except Exception as e:
            raise LedgerError(f"Supabase client 初始化失敗：{e}") from e

    def _table(self, name: str):
        if self._client is None:
            raise LedgerError("Ledger 尚未連線")
        return self._client.table(name)

    def load_strategies(self) -> list[Strategy]:
        try:
            resp = self._table(self.strategy_table).select("*").execute()
        except httpx.TransportError as e:
            raise LedgerConnectionError(f"無法連線 Supabase：{e}") from e
        except APIError as e:
            raise LedgerError(f"讀取策略失敗：{e.message}") from e
        return strategies_from_rows(resp.data)

    def check_duplicate(self, source_url: str) -> bool:
        """source_url 是否已存在；查詢錯誤時視為不重複（插入時的唯一鍵仍會擋下）"""
        try:
            resp = (self._table(self.content_table)
                    .select("id", count="exact")
                    .eq("source_url", source_url)
                    .limit(1)
                    .execute())
        except httpx.TransportError as e:
            raise LedgerConnectionError(f"無法連線 Supabase：{e}") from e
        except APIError as e:
            logger.error(f"重複檢查失敗，視為不重複：{source_url}（{e.message}）")
            return False
        return bool(resp.count)

    def insert_initial(self, record: dict) -> str:
        try:
            resp = self._table(self.content_table).insert(_to_row(record)).execute()
        except httpx.TransportError as e:
            raise LedgerConnectionError(f"無法連線 Supabase：{e}") from e
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                raise DuplicateRecordError(
                    f"source_url 已存在：{record.get('source_url')}"
                ) from e
            raise LedgerError(f"新增紀錄失敗：{e.message}") from e
        if resp.data:
            return str(resp.data[0].get("id", ""))
        return ""

    def update(self, source_url: str, fields: dict):
        try:
            resp = (self._table(self.content_table)
                    .update(_to_row(fields))
                    .eq("source_url", source_url)
                    .execute())
        except httpx.TransportError as e:
            raise LedgerConnectionError(f"無法連線 Supabase：{e}") from e
        except APIError as e:
            raise LedgerError(f"更新紀錄失敗：{e.message}") from e
        if not resp.data:
            raise RecordNotFoundError(f"找不到紀錄：{source_url}")


# ============================================================
# 本地 JSON 檔
# ============================================================

CONTENT_FILE = "content_ledger.json"
STRATEGY_FILE = "strategies.json"


class JsonFileLedger:
    """本地 ledger：紀錄存在 content_ledger.json（以 source_url 為鍵）"""

    def __init__(self, state_dir):
        self.state_dir = Path(state_dir)
        self.content_path = self.state_dir / CONTENT_FILE
        self.strategy_path = self.state_dir / STRATEGY_FILE
        self._records: dict[str, dict] = {}

    def connect(self):
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise LedgerError(f"無法建立狀態目錄 {self.state_dir}：{e}") from e
        self._records = self._load_json(self.content_path, {})

    @staticmethod
    def _load_json(path: Path, default):
        if not path.exists():
            return default
        try:
            return json.loads(path.read_text(encoding='utf-8'))
        except (json.JSONDecodeError, TypeError):
            logger.warning(f"{path} 損壞，改用空白內容")
            return default

    def _save(self):
        self.content_path.write_text(
            json.dumps(self._records, ensure_ascii=False, indent=2),
            encoding='utf-8'
        )

    @property
    def records(self) -> dict[str, dict]:
        return self._records

    def load_strategies(self) -> list[Strategy]:
        return strategies_from_rows(self._load_json(self.strategy_path, []))

    def check_duplicate(self, source_url: str) -> bool:
        return source_url in self._records

    def insert_initial(self, record: dict) -> str:
        source_url = record["source_url"]
        if source_url in self._records:
            raise DuplicateRecordError(f"source_url 已存在：{source_url}")
        record_id = str(uuid.uuid4())
        self._records[source_url] = {"id": record_id, **record}
        self._save()
        return record_id

    def update(self, source_url: str, fields: dict):
        if source_url not in self._records:
            raise RecordNotFoundError(f"找不到紀錄：{source_url}")
        self._records[source_url].update(fields)
        self._save()
