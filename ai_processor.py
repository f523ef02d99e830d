"""
AI 處理觸發模組
================
把文章 URL＋主題送到遠端摘要服務（POST {APP_URL}/api/agent/process-content），
取回標題、摘要、標籤與插圖資訊。

請求：{"articleId", "articleUrl", "topic"}
回應：{"processedContent"?, "message"?, "error"?}

重試規則與 scraper.fetch_with_retry 相同（5xx / 逾時重試，4xx 不重試），
但使用獨立的重試預算：3 次、間隔 2 秒、每次逾時 20 秒。
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass, field

import scraper

logger = logging.getLogger("curator.ai")

PROCESS_CONTENT_PATH = "/api/agent/process-content"
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 2
DEFAULT_TIMEOUT = 20

# 失敗種類
FAILURE_CONFIG = "config"
FAILURE_NETWORK = "network"
FAILURE_APPLICATION = "application"


@dataclass
class AIProcessingResult:
    """AI 處理結果；ok=False 時 failure_kind 說明失敗來源"""

    ok: bool
    title: str = ""
    summary: str = ""
    tags: list[str] = field(default_factory=list)
    image_url: str | None = None
    image_status: str | None = None
    image_error_message: str | None = None
    message: str = ""
    error: str | None = None
    failure_kind: str | None = None

    def record_fields(self) -> dict:
        """轉成 ledger 更新欄位"""
        fields = {
            "title": self.title or None,
            "summary": self.summary or None,
            "tags": self.tags or None,
            "image_url": self.image_url,
            "image_status": self.image_status,
            "image_error_message": self.image_error_message,
            "progress_message": self.message or None,
        }
        if not self.ok:
            fields["error_message"] = self.error or self.message or "AI processing failed."
        return fields


def make_article_id() -> str:
    """產生本次處理用的 articleId：agent-{毫秒}-{7 碼亂數}"""
    return f"agent-{int(time.time() * 1000)}-{uuid.uuid4().hex[:7]}"


def build_endpoint(app_url: str) -> str:
    return f"{app_url.rstrip('/')}{PROCESS_CONTENT_PATH}"


def _failure(kind: str, error: str, message: str = "") -> AIProcessingResult:
    return AIProcessingResult(ok=False, error=error, message=message, failure_kind=kind)


def parse_response(body: str) -> AIProcessingResult:
    """解析 2xx 回應內容。

    error 欄位有值、沒有 processedContent、或 processedContent.status == "error"
    都視為應用層失敗。

    Raises:
        ValueError: 回應不是 JSON 物件
    """
    data = json.loads(body)
    if not isinstance(data, dict):
        raise ValueError("response is not a JSON object")

    content = data.get("processedContent") or None
    message = data.get("message") or ""

    if data.get("error") or not content:
        error = data.get("error") or message or "API reported AI failure."
        return _failure(FAILURE_APPLICATION, error, message or "AI processing via API failed.")

    if content.get("status") == "error":
        error = content.get("errorMessage") or content.get("summary") or "API reported AI failure."
        return _failure(FAILURE_APPLICATION, error,
                        content.get("progressMessage") or "AI processing via API failed.")

    tags = content.get("tags") or []
    if isinstance(tags, str):
        tags = [t.strip() for t in tags.split(",") if t.strip()]

    return AIProcessingResult(
        ok=True,
        title=content.get("title") or "",
        summary=content.get("summary") or "",
        tags=tags,
        image_url=content.get("imageUrl"),
        image_status=content.get("imageStatus"),
        image_error_message=content.get("imageErrorMessage"),
        message=content.get("progressMessage") or message or "AI processing completed.",
    )


def trigger_ai_processing(
    article_id: str,
    article_url: str,
    topic: str,
    app_url: str,
    max_retries: int = DEFAULT_MAX_RETRIES,
    retry_delay: float = DEFAULT_RETRY_DELAY,
    timeout: float = DEFAULT_TIMEOUT,
    user_agent: str = scraper.USER_AGENT,
) -> AIProcessingResult:
    """呼叫遠端 AI 處理服務。

    Args:
        article_id: 本次處理的識別碼（make_article_id）
        article_url: 文章 URL
        topic: 主題（策略關鍵字）
        app_url: 服務根網址；未設定時直接回傳設定錯誤，不發送請求

    Returns:
        AIProcessingResult；此函式不拋出例外
    """
    if not app_url:
        logger.error("APP_URL 未設定，無法呼叫 AI 處理 API")
        return _failure(
            FAILURE_CONFIG,
            "APP_URL not configured for agent API calls.",
            "AI processing skipped due to missing APP_URL.",
        )

    endpoint = build_endpoint(app_url)
    payload = {"articleId": article_id, "articleUrl": article_url, "topic": topic}
    headers = {
        "User-Agent": user_agent,
        "Content-Type": "application/json",
    }

    logger.info(f"[AI] 送出處理請求：{article_url}（主題：{topic}）")
    try:
        resp = scraper.fetch_with_retry(
            endpoint, method="POST", json_body=payload, headers=headers,
            max_retries=max_retries, retry_delay=retry_delay, timeout=timeout,
        )
    except scraper.FetchError as e:
        logger.error(f"[AI] ❌ 呼叫 API 失敗：{e}")
        return _failure(
            FAILURE_NETWORK,
            f"Network error calling API: {e}",
            "Failed to connect to AI processing API.",
        )

    try:
        result = parse_response(resp.body)
    except ValueError as e:
        logger.error(f"[AI] ❌ 回應格式錯誤：{e}")
        return _failure(
            FAILURE_APPLICATION,
            f"Malformed response from AI processing API: {e}",
            "AI processing API returned an unreadable response.",
        )

    if result.ok:
        logger.info(f"[AI] ✅ {result.title or article_url}")
    else:
        logger.warning(f"[AI] 處理失敗：{article_url}（{result.error}）")
    return result
