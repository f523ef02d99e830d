"""
路徑解析模組
==============
統一處理設定檔、本地狀態（JSON ledger）與日誌的存放位置。

  - 設定檔（config.json）→ 應用程式目錄（可用 CURATOR_HOME 覆寫）
  - 本地 ledger / strategies → config["state_dir"]
  - 日誌 → config["log_dir"]（未設定則只輸出到 console）
"""

import os
from pathlib import Path


def get_app_dir() -> Path:
    """取得應用程式目錄（config.json 所在位置）。

    設定 CURATOR_HOME 時使用該目錄，否則為原始碼目錄。
    """
    home = os.environ.get("CURATOR_HOME", "")
    if home:
        return Path(os.path.expanduser(home))
    return Path(__file__).parent


def get_config_path() -> Path:
    """取得預設 config.json 路徑"""
    return get_app_dir() / "config.json"


def get_state_dir(config: dict) -> Path:
    """取得本地狀態目錄，不存在時建立"""
    state_dir = Path(os.path.expanduser(config.get("state_dir") or "~/.content-curator"))
    state_dir.mkdir(parents=True, exist_ok=True)
    return state_dir


def get_log_dir(config: dict) -> Path | None:
    """取得日誌目錄；未設定時回傳 None"""
    log_dir = config.get("log_dir")
    if not log_dir:
        return None
    return Path(os.path.expanduser(log_dir))
