#!/usr/bin/env python3
"""
網頁擷取與探索工具
===========================
Content Curator Agent 的底層 I/O：robots.txt 檢查、帶重試的 HTTP 抓取、
可讀內文擷取（readability）＋連結探索、sitemap 解析。

  - fetch_robots / is_allowed       robots.txt（fail-open）
  - fetch_with_retry                固定間隔重試、逐次逾時、5xx 才重試
  - extract_article                 內文＋連結（soft-fail：無內文仍回傳連結）
  - resolve_sitemap_urls            robots.txt Sitemap 指令 + /sitemap.xml
"""

import os
import re
import json
import time
import logging
import urllib.robotparser
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from urllib.parse import urlparse, urljoin, urldefrag

import requests
from bs4 import BeautifulSoup
from bs4.exceptions import ParserRejectedMarkup
from markdownify import markdownify as md
from readability import Document
from readability.readability import Unparseable

import paths

# ============================================================
# 設定
# ============================================================

# 預設值（可被 config.json 覆蓋）
_DEFAULTS = {
    "user_agent": "ContentCuratorBot/1.0 (+https://github.com/content-curator/agent)",
    "request_timeout": 15,
    "max_retries": 3,
    "retry_delay": 1,
    "ai_request_timeout": 20,
    "ai_max_retries": 3,
    "ai_retry_delay": 2,
    "heartbeat_timeout": 5,
    "notify_timeout": 10,
    "max_crawl_depth": 2,
    "max_discovered_links_per_site": 10,
    "max_pages_per_site": 100,
    "stay_on_same_domain": True,
    "max_sitemaps": 20,
    "ledger": "supabase",
    "state_dir": "~/.content-curator",
    "log_dir": "",
    "log_level": "INFO",
}


def load_config(config_path: str = None) -> dict:
    """載入設定檔，未找到則用預設值"""
    config = dict(_DEFAULTS)
    if config_path is None:
        config_path = paths.get_config_path()
    else:
        config_path = Path(config_path)

    if config_path.exists():
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                user_config = json.load(f)
            config.update(user_config)
        except (json.JSONDecodeError, TypeError, ValueError):
            pass  # 設定檔損壞時使用預設值

    # 展開 ~ 路徑
    for key in ("state_dir", "log_dir"):
        if config.get(key):
            config[key] = os.path.expanduser(config[key])

    return config


USER_AGENT = _DEFAULTS["user_agent"]
REQUEST_TIMEOUT = _DEFAULTS["request_timeout"]
MAX_RETRIES = _DEFAULTS["max_retries"]
RETRY_DELAY = _DEFAULTS["retry_delay"]
MIN_ARTICLE_CHARS = 50
EXCERPT_CHARS = 200
TITLE_NOT_FOUND = "Title not found"

# 不值得抓取的靜態資源副檔名
ASSET_EXTENSIONS = (
    '.css', '.js', '.png', '.jpg', '.jpeg', '.gif', '.svg',
    '.zip', '.pdf', '.xml', '.json',
)

logger = logging.getLogger("curator.scraper")


def setup_logging(log_dir: str = None, level: str = "INFO"):
    """設定 console + file 雙輸出日誌（掛在 curator 根 logger，各模組共用）"""
    root = logging.getLogger("curator")
    root.setLevel(logging.DEBUG)

    # 避免重複添加 handler
    if root.handlers:
        return root

    console = logging.StreamHandler()
    console.setLevel(getattr(logging, level.upper(), logging.INFO))
    console.setFormatter(logging.Formatter('%(asctime)s [%(levelname)s] %(message)s', '%H:%M:%S'))
    root.addHandler(console)

    # File handler（DEBUG 等級，按日期分檔）
    if log_dir:
        log_path = Path(log_dir) / "logs"
        log_path.mkdir(parents=True, exist_ok=True)
        log_file = log_path / f"agent_{datetime.now().strftime('%Y%m%d')}.log"

        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s - %(message)s'
        ))
        root.addHandler(file_handler)

    return root


def _headers(user_agent: str = USER_AGENT) -> dict:
    return {
        'User-Agent': user_agent,
        'Accept-Language': 'en-US,en;q=0.9',
    }


def get_origin(url: str) -> str:
    """https://x.com/a/b?c → https://x.com"""
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


# ============================================================
# 資料結構
# ============================================================

@dataclass
class HttpResponse:
    """單次成功（2xx）的 HTTP 回應"""

    url: str
    status: int
    body: str


@dataclass
class ExtractedArticle:
    """extract_article 的結果；discovered_links 即使內文擷取失敗也會填入"""

    title: str
    body_text: str = ""
    body_html: str = ""
    excerpt: str | None = None
    byline: str | None = None
    length: int | None = None
    discovered_links: list[str] = field(default_factory=list)


@dataclass
class WebContentFetchResult:
    """單一 URL 抓取＋擷取階段的最終結果"""

    url: str
    raw_html: str | None = None
    article: ExtractedArticle | None = None
    error: str | None = None
    robots_disallowed: bool = False


class FetchError(Exception):
    """抓取失敗（重試用盡或不可重試的狀態碼）"""

    def __init__(self, message: str, status: int = None, retryable: bool = False,
                 attempts: int = 0):
        super().__init__(message)
        self.status = status
        self.retryable = retryable
        self.attempts = attempts


# ============================================================
# 重試機制（固定間隔）
# ============================================================

def _status_message(resp, url: str) -> str:
    reason = resp.reason if isinstance(resp.reason, str) and resp.reason else ""
    return f"HTTP {resp.status_code}{' ' + reason if reason else ''} for {url}"


def _send(method: str, url: str, headers: dict, timeout: float, json_body=None):
    if method == "POST":
        return requests.post(url, headers=headers, json=json_body, timeout=timeout)
    return requests.get(url, headers=headers, timeout=timeout)


def fetch_with_retry(
    url: str,
    method: str = "GET",
    json_body: dict = None,
    headers: dict = None,
    max_retries: int = MAX_RETRIES,
    retry_delay: float = RETRY_DELAY,
    timeout: float = REQUEST_TIMEOUT,
) -> HttpResponse:
    """帶固定間隔重試的 HTTP 請求。

    2xx 立即回傳；5xx / 逾時 / 連線錯誤 會在間隔 retry_delay 秒後重試；
    4xx 等其他狀態碼視為終止錯誤，不消耗剩餘重試次數。

    Raises:
        FetchError: 不可重試的失敗，或重試次數用盡
    """
    headers = headers if headers is not None else _headers()
    max_retries = max(1, max_retries)
    last_error = None

    for attempt in range(1, max_retries + 1):
        try:
            resp = _send(method, url, headers, timeout, json_body)
        except requests.exceptions.Timeout:
            last_error = FetchError(
                f"Request to {url} timed out after {int(timeout * 1000)}ms",
                retryable=True, attempts=attempt,
            )
        except requests.exceptions.RequestException as e:
            last_error = FetchError(
                f"Network error fetching {url}: {e}",
                retryable=True, attempts=attempt,
            )
        else:
            status = resp.status_code
            if 200 <= status < 300:
                if method == "GET":
                    resp.encoding = resp.apparent_encoding or 'utf-8'
                return HttpResponse(url=url, status=status, body=resp.text)
            if status < 500:
                raise FetchError(
                    _status_message(resp, url),
                    status=status, retryable=False, attempts=attempt,
                )
            last_error = FetchError(
                _status_message(resp, url),
                status=status, retryable=True, attempts=attempt,
            )

        if attempt < max_retries:
            logger.info(f"  第 {attempt} 次失敗（{last_error}），{retry_delay} 秒後重試...")
            time.sleep(retry_delay)

    if max_retries <= 1:
        raise FetchError(str(last_error), status=last_error.status,
                         retryable=False, attempts=last_error.attempts)
    raise FetchError(
        f"Failed after {max_retries} attempts: {last_error}",
        status=last_error.status, retryable=False, attempts=max_retries,
    )


# ============================================================
# robots.txt 檢查
# ============================================================

_RULE_RE = re.compile(r'^(\s*(?:dis)?allow\s*:\s*)(\S*?)\*+\s*$', re.I)


def _normalize_robots_lines(lines: list[str]) -> list[str]:
    """urllib.robotparser 只做前綴比對：把結尾的 `*` 去掉（/private/* → /private/）。

    單獨的 `*` 改寫為 `/`；空白的 Disallow 在 robotparser 中代表全部允許。
    """
    return [_RULE_RE.sub(lambda m: m.group(1) + (m.group(2) or "/"), line) for line in lines]


def fetch_robots(origin: str, user_agent: str = USER_AGENT,
                 timeout: float = REQUEST_TIMEOUT) -> urllib.robotparser.RobotFileParser | None:
    """取得並解析 {origin}/robots.txt（單次嘗試，不重試）。

    無法取得時回傳 None（fail-open：後續視為全部允許）。
    """
    robots_url = f"{origin.rstrip('/')}/robots.txt"
    try:
        resp = fetch_with_retry(robots_url, headers=_headers(user_agent),
                                max_retries=1, timeout=timeout)
    except FetchError as e:
        logger.warning(f"無法取得 robots.txt，視為全部允許：{robots_url}（{e}）")
        return None

    parser = urllib.robotparser.RobotFileParser()
    parser.set_url(robots_url)
    parser.parse(_normalize_robots_lines(resp.body.splitlines()))
    return parser


def is_allowed(rules, url: str, user_agent: str = USER_AGENT) -> bool:
    """檢查 robots 規則是否允許擷取此 URL（沒有規則時允許）"""
    if rules is None:
        return True
    return rules.can_fetch(user_agent, url)


# ============================================================
# 內文擷取＋連結探索
# ============================================================

def _join_plain_text(soup) -> str:
    return "\n".join(s for s in soup.stripped_strings)


def _meta_content(soup, name: str) -> str | None:
    tag = soup.find('meta', attrs={'name': name})
    if tag and tag.get('content'):
        return tag['content'].strip()
    return None


def _page_title(soup) -> str:
    title_tag = soup.find('title')
    if title_tag:
        title = title_tag.get_text(strip=True)
        if title:
            return title
    return TITLE_NOT_FOUND


def extract_links(soup, base_url: str) -> list[str]:
    """收集所有 <a href>，轉為絕對 URL，只保留 http/https 且非靜態資源"""
    links = {}
    for a in soup.find_all('a', href=True):
        href = a['href'].strip()
        if not href:
            continue
        try:
            absolute, _ = urldefrag(urljoin(base_url, href))
            parsed = urlparse(absolute)
        except ValueError:
            continue
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            continue
        if parsed.path.lower().endswith(ASSET_EXTENSIONS):
            continue
        links[absolute] = None
    return list(links)


def extract_article(html: str, base_url: str) -> ExtractedArticle | None:
    """擷取可讀內文與頁面連結。

    找不到內文時退回 <title>（或 "Title not found"）與空內文，連結照常回傳；
    只有 HTML 完全無法解析時才回傳 None。
    """
    try:
        soup = BeautifulSoup(html, 'html.parser')
    except (ParserRejectedMarkup, TypeError) as e:
        logger.warning(f"HTML 無法解析：{base_url}（{e}）")
        return None

    discovered = extract_links(soup, base_url)

    try:
        document = Document(html)
        summary_html = document.summary(html_partial=True)
        title = document.short_title()
    except Unparseable as e:
        logger.info(f"readability 擷取失敗，改用 <title>：{base_url}（{e}）")
        summary_html, title = "", ""

    summary = BeautifulSoup(summary_html, 'html.parser')
    for tag in summary(['script', 'style', 'noscript', 'form']):
        tag.decompose()
    plain_text = _join_plain_text(summary)

    if len(plain_text) < MIN_ARTICLE_CHARS:
        logger.debug(f"找不到主要內容：{base_url}")
        return ExtractedArticle(title=_page_title(soup), discovered_links=discovered)

    body_html = summary.decode()
    body_text = md(body_html, heading_style="ATX", strip=['img']).strip()

    return ExtractedArticle(
        title=title.strip() if title and title.strip() else _page_title(soup),
        body_text=body_text,
        body_html=body_html,
        excerpt=_meta_content(soup, 'description') or plain_text[:EXCERPT_CHARS],
        byline=_meta_content(soup, 'author'),
        length=len(plain_text),
        discovered_links=discovered,
    )


# ============================================================
# Sitemap 解析
# ============================================================

SITEMAP_DIRECTIVE_RE = re.compile(r'^\s*sitemap\s*:\s*(\S+)', re.I)


def find_sitemap_directives(robots_text: str, base_url: str) -> list[str]:
    """從 robots.txt 文字找出 Sitemap: 指令，轉為絕對 URL"""
    found = {}
    for line in robots_text.splitlines():
        m = SITEMAP_DIRECTIVE_RE.match(line)
        if m:
            found[urljoin(base_url, m.group(1))] = None
    return list(found)


def parse_sitemap(xml_text: str) -> tuple[list[str], list[str]]:
    """解析 sitemap XML。

    Returns:
        (頁面 URL 列表, 子 sitemap URL 列表)；只保留 http/https
    """
    soup = BeautifulSoup(xml_text, 'xml')

    def _locs(tag_name):
        locs = []
        for entry in soup.find_all(tag_name):
            loc = entry.find('loc')
            if loc is None:
                continue
            value = loc.get_text(strip=True)
            if urlparse(value).scheme in ('http', 'https'):
                locs.append(value)
        return locs

    return _locs('url'), _locs('sitemap')


def resolve_sitemap_urls(base_url: str, user_agent: str = USER_AGENT,
                         timeout: float = REQUEST_TIMEOUT, max_sitemaps: int = 20) -> list[str]:
    """找出網站所有 sitemap 並展平成不重複的 URL 列表（可能為空）"""
    origin = get_origin(base_url)
    headers = _headers(user_agent)
    candidates = {}

    # 1. robots.txt 的 Sitemap: 指令
    try:
        robots = fetch_with_retry(f"{origin}/robots.txt", headers=headers,
                                  max_retries=1, timeout=timeout)
        for sm_url in find_sitemap_directives(robots.body, base_url):
            candidates[sm_url] = None
    except FetchError as e:
        logger.info(f"robots.txt 無法取得，不使用 Sitemap 指令：{origin}（{e}）")

    # 2. 慣例位置
    candidates[f"{origin}/sitemap.xml"] = None

    # 3. 逐一抓取與解析
    pending = list(candidates)
    seen = set()
    urls = {}
    while pending and len(seen) < max_sitemaps:
        sm_url = pending.pop(0)
        if sm_url in seen:
            continue
        seen.add(sm_url)
        try:
            resp = fetch_with_retry(sm_url, headers=headers, max_retries=1, timeout=timeout)
            page_urls, nested = parse_sitemap(resp.body)
        except FetchError as e:
            logger.warning(f"Sitemap 抓取失敗：{sm_url}（{e}）")
            continue
        except Exception as e:
            logger.warning(f"Sitemap 解析失敗：{sm_url}（{e}）")
            continue
        for url in page_urls:
            urls[url] = None
        pending.extend(u for u in nested if u not in seen)

    logger.info(f"Sitemap 共找到 {len(urls)} 個 URL（{origin}）")
    return list(urls)
