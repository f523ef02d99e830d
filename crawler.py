"""
探索與爬取流程
================
對每個策略 × 目標網站：

  1. 根網址 → 先查 sitemap，以 sitemap 內的 URL 作為起點（查無則用根網址本身）
     非根網址 → 直接以該 URL 作為起點
  2. 以 FIFO 佇列（廣度優先）處理，每個網站最多出列 max_pages_per_site 次
  3. 每個 URL：插入紀錄 → robots → 抓取 → 擷取 → 連結收錄 → AI 處理 → 寫回結果
  4. 新連結需同時滿足：深度 ≤ max_crawl_depth、未超過每站探索額度、
     同網域（可關閉）、本次執行未見過、ledger 中不存在

本次執行的已見集合、各站計數等狀態都放在 CrawlContext，隨執行結束丟棄。
"""

import logging
from collections import Counter, deque
from dataclasses import dataclass, field
from urllib.parse import urlparse

import ai_processor
import scraper
from ledger import (
    ContentStatus,
    DuplicateRecordError,
    LedgerConnectionError,
    LedgerError,
    RecordTracker,
    Strategy,
    new_content_record,
)

logger = logging.getLogger("curator.crawler")

DISCOVERED_TAG = "discovered"


# ============================================================
# 資料結構
# ============================================================

@dataclass
class CrawlQueueItem:
    """佇列中的一個待處理 URL"""

    url: str
    is_discovered: bool
    origin_keywords: list[str]
    depth: int = 0


@dataclass
class CrawlSettings:
    max_crawl_depth: int = 2
    max_discovered_links: int = 10
    max_pages_per_site: int = 100
    stay_on_same_domain: bool = True
    max_sitemaps: int = 20
    user_agent: str = scraper.USER_AGENT
    request_timeout: float = scraper.REQUEST_TIMEOUT
    max_retries: int = scraper.MAX_RETRIES
    retry_delay: float = scraper.RETRY_DELAY
    app_url: str = ""
    ai_request_timeout: float = ai_processor.DEFAULT_TIMEOUT
    ai_max_retries: int = ai_processor.DEFAULT_MAX_RETRIES
    ai_retry_delay: float = ai_processor.DEFAULT_RETRY_DELAY

    @classmethod
    def from_config(cls, config: dict) -> "CrawlSettings":
        return cls(
            max_crawl_depth=config.get("max_crawl_depth", 2),
            max_discovered_links=config.get("max_discovered_links_per_site", 10),
            max_pages_per_site=config.get("max_pages_per_site", 100),
            stay_on_same_domain=config.get("stay_on_same_domain", True),
            max_sitemaps=config.get("max_sitemaps", 20),
            user_agent=config.get("user_agent", scraper.USER_AGENT),
            request_timeout=config.get("request_timeout", scraper.REQUEST_TIMEOUT),
            max_retries=config.get("max_retries", scraper.MAX_RETRIES),
            retry_delay=config.get("retry_delay", scraper.RETRY_DELAY),
            app_url=config.get("app_url") or "",
            ai_request_timeout=config.get("ai_request_timeout", ai_processor.DEFAULT_TIMEOUT),
            ai_max_retries=config.get("ai_max_retries", ai_processor.DEFAULT_MAX_RETRIES),
            ai_retry_delay=config.get("ai_retry_delay", ai_processor.DEFAULT_RETRY_DELAY),
        )


@dataclass
class CrawlContext:
    """單次執行的狀態：已見集合、robots 快取、統計"""

    ledger: object
    settings: CrawlSettings = field(default_factory=CrawlSettings)
    run_id: str = ""
    # 已進入佇列或已處理完成的 URL
    visited: set = field(default_factory=set)
    # 已出列並開始處理的 URL
    processed: set = field(default_factory=set)
    robots: dict = field(default_factory=dict)
    stats: Counter = field(default_factory=Counter)
    site_errors: list = field(default_factory=list)


@dataclass
class SiteState:
    """單一目標網站的佇列與額度"""

    target_site: str
    hostname: str
    queue: deque = field(default_factory=deque)
    discovered_count: int = 0
    dequeued: int = 0


def is_base_url(url: str) -> bool:
    """根網址：路徑為空或 /，且沒有 query"""
    parsed = urlparse(url)
    return parsed.path in ("", "/") and not parsed.query


def _hostname(url: str) -> str:
    return (urlparse(url).hostname or "").lower()


# ============================================================
# 起點
# ============================================================

def _seed(ctx: CrawlContext, site: SiteState, url: str, strategy: Strategy) -> bool:
    """把起點 URL 放入佇列（已見過或已在 ledger 中則略過）"""
    if url in ctx.visited:
        return False
    if ctx.ledger.check_duplicate(url):
        logger.info(f"已處理過，跳過：{url}")
        ctx.visited.add(url)
        ctx.stats["duplicates_skipped"] += 1
        return False
    ctx.visited.add(url)
    site.queue.append(CrawlQueueItem(url=url, is_discovered=False,
                                     origin_keywords=list(strategy.keywords), depth=0))
    return True


def seed_site(ctx: CrawlContext, strategy: Strategy, target_site: str) -> SiteState:
    site = SiteState(target_site=target_site, hostname=_hostname(target_site))
    settings = ctx.settings

    if not is_base_url(target_site):
        _seed(ctx, site, target_site, strategy)
        return site

    sitemap_urls = scraper.resolve_sitemap_urls(
        target_site, user_agent=settings.user_agent,
        timeout=settings.request_timeout, max_sitemaps=settings.max_sitemaps,
    )

    # 先過濾已見／ledger 重複，再以實際放入佇列的數量計算上限
    for url in sitemap_urls:
        if len(site.queue) >= settings.max_pages_per_site:
            logger.info(
                f"Sitemap 起點已達 {settings.max_pages_per_site} 個，其餘 URL 留待下次執行"
            )
            break
        if settings.stay_on_same_domain and _hostname(url) != site.hostname:
            logger.debug(f"Sitemap URL 不在同網域，略過：{url}")
            continue
        _seed(ctx, site, url, strategy)

    if not site.queue:
        logger.info(f"Sitemap 沒有可用的 URL，改用根網址：{target_site}")
        _seed(ctx, site, target_site, strategy)
    return site


# ============================================================
# 連結收錄
# ============================================================

def admit_links(ctx: CrawlContext, site: SiteState, item: CrawlQueueItem,
                links: list[str]) -> int:
    """依深度、額度、網域、已見、ledger 重複 篩選新連結並放入佇列"""
    settings = ctx.settings
    next_depth = item.depth + 1
    if next_depth > settings.max_crawl_depth:
        return 0

    admitted = 0
    for link in links:
        if site.discovered_count >= settings.max_discovered_links:
            logger.debug(f"{site.hostname} 探索額度已用完（{settings.max_discovered_links}）")
            break
        if settings.stay_on_same_domain and _hostname(link) != site.hostname:
            continue
        if link in ctx.visited:
            continue
        if ctx.ledger.check_duplicate(link):
            logger.info(f"已處理過，跳過：{link}")
            ctx.visited.add(link)
            ctx.stats["duplicates_skipped"] += 1
            continue
        ctx.visited.add(link)
        site.queue.append(CrawlQueueItem(url=link, is_discovered=True,
                                         origin_keywords=item.origin_keywords,
                                         depth=next_depth))
        site.discovered_count += 1
        admitted += 1

    if admitted:
        logger.info(f"  新增 {admitted} 個連結（深度 {next_depth}）")
    return admitted


# ============================================================
# 單一 URL 的處理
# ============================================================

def _robots_for(ctx: CrawlContext, url: str):
    origin = scraper.get_origin(url)
    if origin not in ctx.robots:
        ctx.robots[origin] = scraper.fetch_robots(
            origin, user_agent=ctx.settings.user_agent, timeout=ctx.settings.request_timeout,
        )
    return ctx.robots[origin]


def has_usable_content(result: scraper.WebContentFetchResult) -> bool:
    """是否有可送 AI 處理的內容；只有佔位標題但有內文仍算可用"""
    if not result.raw_html or result.article is None:
        return False
    article = result.article
    if article.body_text.strip():
        return True
    return bool(article.title) and article.title != scraper.TITLE_NOT_FOUND


def _start_record(ctx: CrawlContext, item: CrawlQueueItem) -> RecordTracker | None:
    tags = list(item.origin_keywords)
    if item.is_discovered:
        tags.append(DISCOVERED_TAG)
    record = new_content_record(item.url, tags, agent_run_id=ctx.run_id)
    try:
        ctx.ledger.insert_initial(record)
    except DuplicateRecordError as e:
        logger.info(f"紀錄已存在，放棄處理：{item.url}（{e}）")
        return None
    except LedgerConnectionError:
        raise
    except LedgerError as e:
        logger.error(f"新增紀錄失敗，放棄處理：{item.url}（{e}）")
        return None
    ctx.stats["records_started"] += 1
    return RecordTracker(ctx.ledger, item.url)


def _run_pipeline(ctx: CrawlContext, strategy: Strategy, site: SiteState,
                  item: CrawlQueueItem, tracker: RecordTracker):
    settings = ctx.settings
    url = item.url
    result = scraper.WebContentFetchResult(url=url)

    # robots.txt
    rules = _robots_for(ctx, url)
    if not scraper.is_allowed(rules, url, settings.user_agent):
        logger.info(f"🚫 robots.txt 不允許擷取：{url}")
        result.robots_disallowed = True
        ctx.stats["robots_skipped"] += 1
        tracker.advance(ContentStatus.SKIPPED_ROBOTS,
                        progress_message="Skipped: disallowed by robots.txt.")
        return

    # 抓取
    try:
        resp = scraper.fetch_with_retry(
            url, headers={'User-Agent': settings.user_agent},
            max_retries=settings.max_retries, retry_delay=settings.retry_delay,
            timeout=settings.request_timeout,
        )
        result.raw_html = resp.body
    except scraper.FetchError as e:
        result.error = str(e)

    if result.error or not (result.raw_html or "").strip():
        error = result.error or "Empty response body."
        logger.warning(f"抓取失敗：{url}（{error}）")
        ctx.stats["fetch_errors"] += 1
        tracker.advance(ContentStatus.ERROR_FETCHING,
                        progress_message="Failed to fetch content.", error_message=error)
        return

    if not tracker.advance(ContentStatus.CONTENT_FETCHED,
                           progress_message=f"Content fetched ({len(result.raw_html)} chars)."):
        return

    # 擷取
    result.article = scraper.extract_article(result.raw_html, url)
    if result.article is None:
        tracker.advance(ContentStatus.ERROR_EXTRACTION,
                        progress_message="Failed to parse page content.",
                        error_message="HTML could not be parsed.")
        return
    if not tracker.advance(ContentStatus.CONTENT_EXTRACTED, title=result.article.title,
                           progress_message="Content extracted."):
        return

    admit_links(ctx, site, item, result.article.discovered_links)

    if not has_usable_content(result):
        tracker.advance(ContentStatus.ERROR_EXTRACTION,
                        progress_message="No usable article content found; AI processing skipped.",
                        error_message="No usable textual content.")
        return

    # AI 處理（主題使用策略原始關鍵字）
    if not tracker.advance(ContentStatus.AI_PROCESSING_INITIATED,
                           progress_message="AI processing initiated."):
        return
    ai_result = ai_processor.trigger_ai_processing(
        ai_processor.make_article_id(), url, strategy.topic,
        app_url=settings.app_url,
        max_retries=settings.ai_max_retries,
        retry_delay=settings.ai_retry_delay,
        timeout=settings.ai_request_timeout,
        user_agent=settings.user_agent,
    )

    if not ai_result.ok:
        ctx.stats["ai_failed"] += 1
        tracker.advance(ContentStatus.AI_PROCESSING_FAILED, **ai_result.record_fields())
        return

    if tracker.advance(ContentStatus.AI_PROCESSING_SUCCESSFUL, **ai_result.record_fields()):
        tracker.advance(ContentStatus.COMPLETED)
        ctx.stats["completed"] += 1


def process_item(ctx: CrawlContext, strategy: Strategy, site: SiteState,
                 item: CrawlQueueItem) -> RecordTracker | None:
    """處理單一 URL；任何非連線層級的錯誤都在此收斂，不影響下一個 URL"""
    tracker = _start_record(ctx, item)
    if tracker is None:
        ctx.visited.discard(item.url)
        ctx.processed.discard(item.url)
        return None

    try:
        _run_pipeline(ctx, strategy, site, item, tracker)
    except LedgerConnectionError:
        raise
    except Exception as e:
        logger.error(f"❌ 處理 {item.url} 時發生未預期錯誤：{e}", exc_info=True)
        ctx.stats["errors"] += 1
        if not tracker.status.is_terminal:
            tracker.advance(ContentStatus.ERROR,
                            progress_message="Unexpected error during processing.",
                            error_message=str(e))
    return tracker


# ============================================================
# 網站與策略
# ============================================================

def crawl_site(ctx: CrawlContext, strategy: Strategy, target_site: str) -> SiteState:
    """處理單一目標網站：建立起點後以廣度優先清空佇列"""
    logger.info(f"\n--- 目標網站：{target_site} ---")
    site = seed_site(ctx, strategy, target_site)
    limit = ctx.settings.max_pages_per_site

    while site.queue:
        if site.dequeued >= limit:
            logger.warning(
                f"{target_site} 已達單站處理上限 {limit}，剩餘 {len(site.queue)} 個 URL 略過"
            )
            break
        item = site.queue.popleft()
        site.dequeued += 1

        if item.url in ctx.processed:
            continue
        ctx.processed.add(item.url)
        ctx.visited.add(item.url)

        logger.info(f"[{site.dequeued}] {item.url}（深度 {item.depth}）")
        process_item(ctx, strategy, site, item)

    return site


def run_strategies(ctx: CrawlContext, strategies: list[Strategy]) -> Counter:
    """依序處理所有策略；單一網站失敗只記錄，繼續下一個網站"""
    for i, strategy in enumerate(strategies, 1):
        logger.info(
            f"\n=== 策略 {i}/{len(strategies)}：{strategy.topic}"
            f"（{len(strategy.target_sites)} 個網站）==="
        )
        for target_site in strategy.target_sites:
            try:
                crawl_site(ctx, strategy, target_site)
            except LedgerConnectionError:
                raise
            except Exception as e:
                logger.error(f"❌ 網站 {target_site} 處理失敗：{e}", exc_info=True)
                ctx.stats["sites_failed"] += 1
                ctx.site_errors.append((target_site, str(e)))
    return ctx.stats
