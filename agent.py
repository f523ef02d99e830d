#!/usr/bin/env python3
"""
Content Curator Agent
===========================
排程執行的內容探索代理：讀取搜尋策略 → 探索並抓取文章 → 送 AI 摘要 → 寫入 ledger。

用法：
  # 執行一次（Supabase ledger，需設定 SUPABASE_URL / SUPABASE_ANON_KEY / APP_URL）
  python agent.py

  # 使用本地 JSON ledger（策略放在 state_dir/strategies.json）
  python agent.py --local --state-dir ./state

  # 排程模式（每 60 分鐘執行一次）
  python agent.py --schedule 60
"""

import os
import sys
import time
import uuid
import argparse
import logging
from datetime import datetime, timezone

import requests
import schedule
from dotenv import load_dotenv

import crawler
import paths
import scraper
from ledger import JsonFileLedger, LedgerError, SupabaseLedger

logger = logging.getLogger("curator.agent")

# 環境變數 → 設定鍵（第一個有值的優先）
ENV_OVERRIDES = {
    "supabase_url": ("SUPABASE_URL",),
    "supabase_key": ("SUPABASE_ANON_KEY", "SUPABASE_KEY"),
    "app_url": ("APP_URL", "NEXT_PUBLIC_APP_URL"),
    "heartbeat_url": ("HEARTBEAT_URL",),
    "notify_webhook_url": ("NOTIFY_WEBHOOK_URL",),
}


def apply_env_overrides(config: dict, environ=None) -> dict:
    environ = os.environ if environ is None else environ
    for key, names in ENV_OVERRIDES.items():
        for name in names:
            value = environ.get(name, "").strip()
            if value:
                config[key] = value
                break
    return config


# ============================================================
# 通知與心跳
# ============================================================

class Notifier:
    """通知：一律寫 log，設定 webhook 時另外 POST；送出失敗只記錄，不拋出"""

    def __init__(self, webhook_url: str = "", timeout: float = 10):
        self.webhook_url = webhook_url
        self.timeout = timeout

    def notify(self, subject: str, body: str, is_critical: bool = False):
        level = logging.CRITICAL if is_critical else logging.WARNING
        logger.log(level, f"[通知] {subject}：{body}")
        if not self.webhook_url:
            return
        payload = {
            "subject": subject,
            "body": body,
            "critical": is_critical,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        try:
            resp = requests.post(self.webhook_url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.warning(f"通知送出失敗：{e}")


def ping_heartbeat(url: str, timeout: float = 5) -> bool:
    """GET 心跳網址，2xx 視為正常"""
    try:
        resp = requests.get(url, timeout=timeout)
    except requests.exceptions.RequestException as e:
        logger.warning(f"心跳失敗：{e}")
        return False
    if 200 <= resp.status_code < 300:
        logger.info("💓 心跳已送出")
        return True
    logger.warning(f"心跳回應異常：HTTP {resp.status_code}")
    return False


# ============================================================
# 單次執行
# ============================================================

def make_run_id() -> str:
    return f"run-{datetime.now().strftime('%Y%m%dT%H%M%S')}-{uuid.uuid4().hex[:6]}"


def build_ledger(config: dict):
    if config.get("ledger") == "local":
        return JsonFileLedger(paths.get_state_dir(config))
    return SupabaseLedger(config.get("supabase_url", ""), config.get("supabase_key", ""))


def _summary(stats) -> str:
    return (
        f"started={stats['records_started']} completed={stats['completed']} "
        f"ai_failed={stats['ai_failed']} fetch_errors={stats['fetch_errors']} "
        f"robots_skipped={stats['robots_skipped']} duplicates={stats['duplicates_skipped']} "
        f"sites_failed={stats['sites_failed']}"
    )


def run_agent(config: dict, ledger=None, notifier: Notifier = None) -> int:
    """執行一次完整流程。

    Returns:
        結束代碼：ledger 無法初始化為 1，其餘（含已處理的錯誤）為 0
    """
    run_id = make_run_id()
    logger.info(f"Content Curator Agent 開始執行（{run_id}）")
    notifier = notifier or Notifier(config.get("notify_webhook_url", ""),
                                    timeout=config.get("notify_timeout", 10))
    ledger = ledger if ledger is not None else build_ledger(config)

    try:
        ledger.connect()
    except LedgerError as e:
        logger.critical(f"Ledger 初始化失敗，無法繼續：{e}")
        notifier.notify("Agent critical error", f"Failed to initialize ledger: {e}", is_critical=True)
        return 1

    clean = True
    try:
        strategies = ledger.load_strategies()
    except LedgerError as e:
        logger.critical(f"讀取搜尋策略失敗：{e}")
        notifier.notify("Agent critical error", f"Failed to load strategies: {e}", is_critical=True)
        strategies = None
        clean = False

    if clean and not strategies:
        logger.warning("沒有搜尋策略，本次不處理任何內容")
        notifier.notify("No strategies", "No search strategies found; nothing to process.")
    elif strategies:
        ctx = crawler.CrawlContext(
            ledger=ledger,
            settings=crawler.CrawlSettings.from_config(config),
            run_id=run_id,
        )
        try:
            crawler.run_strategies(ctx, strategies)
        except Exception as e:
            logger.critical(f"策略處理中斷：{e}", exc_info=True)
            notifier.notify("Agent run aborted", f"Unhandled error during strategy processing: {e}",
                            is_critical=True)
            clean = False

        logger.info(f"執行結果：{_summary(ctx.stats)}")
        if ctx.site_errors:
            failed = "\n".join(f"{site}: {err}" for site, err in ctx.site_errors)
            notifier.notify(f"{len(ctx.site_errors)} site(s) failed", failed)

    heartbeat_url = config.get("heartbeat_url")
    if clean and heartbeat_url:
        if not ping_heartbeat(heartbeat_url, timeout=config.get("heartbeat_timeout", 5)):
            notifier.notify("Heartbeat failed", f"Could not reach heartbeat URL {heartbeat_url}")

    logger.info(f"Content Curator Agent 執行結束（{run_id}）")
    return 0


# ============================================================
# 排程自動執行
# ============================================================

def run_scheduled(config: dict, interval: int):
    """排程模式：每 interval 分鐘執行一次，直到 Ctrl+C"""
    def job():
        logger.info("[排程] 開始執行定時任務...")
        code = run_agent(config)
        logger.info(f"[排程] 任務完成（代碼 {code}），等待下次執行...")

    schedule.every(interval).minutes.do(job)

    logger.info(f"[排程] 已啟動，每 {interval} 分鐘執行一次（Ctrl+C 停止）")
    job()  # 立即執行第一次

    try:
        while True:
            schedule.run_pending()
            time.sleep(10)
    except KeyboardInterrupt:
        logger.info("[排程] 已停止")


# ============================================================
# CLI 入口
# ============================================================

def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Content Curator Agent：探索、抓取並送 AI 摘要",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", "-c", default=None,
                        help="設定檔路徑（預設：應用程式目錄下的 config.json）")
    parser.add_argument("--local", action="store_true",
                        help="使用本地 JSON ledger（state_dir 下的檔案）")
    parser.add_argument("--state-dir", help="本地 ledger 目錄")
    parser.add_argument("--log-dir", help="日誌目錄")
    parser.add_argument("--schedule", type=int, metavar="MINUTES",
                        help="排程模式：每隔 N 分鐘自動執行")
    parser.add_argument("--verbose", "-v", action="store_true", help="顯示 DEBUG 日誌")
    args = parser.parse_args(argv)

    load_dotenv()
    config = apply_env_overrides(scraper.load_config(args.config))
    if args.local:
        config["ledger"] = "local"
    if args.state_dir:
        config["state_dir"] = args.state_dir
    if args.log_dir:
        config["log_dir"] = args.log_dir

    log_dir = paths.get_log_dir(config)
    scraper.setup_logging(log_dir=str(log_dir) if log_dir else None,
                          level="DEBUG" if args.verbose else config.get("log_level", "INFO"))

    if args.schedule:
        run_scheduled(config, args.schedule)
        return

    try:
        code = run_agent(config)
    except Exception as e:
        logger.critical(f"未處理的錯誤：{e}", exc_info=True)
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
