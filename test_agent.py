"""
agent.py 單元測試
================
測試單次執行流程的結束代碼、通知、心跳與 CLI 參數。
"""

import pytest
from unittest.mock import patch, MagicMock

import requests

import agent
from ledger import JsonFileLedger, LedgerError, Strategy, SupabaseLedger

STRATEGY = Strategy(keywords=["garden"], target_sites=["https://x.com/"])


def _ledger(strategies=None):
    ledger = MagicMock()
    ledger.load_strategies.return_value = [STRATEGY] if strategies is None else strategies
    return ledger


def _criticals(notifier):
    return [c for c in notifier.notify.call_args_list if c.kwargs.get("is_critical")]


# ============================================================
# run_agent
# ============================================================

class TestRunAgent:
    def test_ledger_init_failure_exits_1(self):
        ledger = _ledger()
        ledger.connect.side_effect = LedgerError("Supabase environment variables not set")
        notifier = MagicMock()
        with patch("agent.ping_heartbeat") as mock_ping:
            code = agent.run_agent({"heartbeat_url": "https://hb.example"}, ledger, notifier)
        assert code == 1
        assert len(_criticals(notifier)) == 1
        mock_ping.assert_not_called()

    def test_no_strategies_warns_and_pings(self):
        notifier = MagicMock()
        with patch("agent.ping_heartbeat", return_value=True) as mock_ping, \
             patch("crawler.run_strategies") as mock_run:
            code = agent.run_agent({"heartbeat_url": "https://hb.example"},
                                   _ledger([]), notifier)
        assert code == 0
        mock_run.assert_not_called()
        assert notifier.notify.call_args[0][0] == "No strategies"
        assert _criticals(notifier) == []
        mock_ping.assert_called_once()

    def test_strategy_load_failure_is_critical(self):
        ledger = _ledger()
        ledger.load_strategies.side_effect = LedgerError("permission denied")
        notifier = MagicMock()
        with patch("agent.ping_heartbeat") as mock_ping:
            code = agent.run_agent({"heartbeat_url": "https://hb.example"}, ledger, notifier)
        assert code == 0
        assert len(_criticals(notifier)) == 1
        mock_ping.assert_not_called()

    def test_clean_run_pings_heartbeat(self):
        notifier = MagicMock()
        with patch("agent.ping_heartbeat", return_value=True) as mock_ping, \
             patch("crawler.run_strategies") as mock_run:
            code = agent.run_agent({"heartbeat_url": "https://hb.example"}, _ledger(), notifier)
        assert code == 0
        ctx, strategies = mock_run.call_args[0]
        assert strategies == [STRATEGY]
        assert ctx.run_id.startswith("run-")
        mock_ping.assert_called_once_with("https://hb.example", timeout=5)
        notifier.notify.assert_not_called()

    def test_no_heartbeat_url(self):
        with patch("agent.ping_heartbeat") as mock_ping, patch("crawler.run_strategies"):
            agent.run_agent({}, _ledger(), MagicMock())
        mock_ping.assert_not_called()

    def test_strategy_loop_abort_skips_heartbeat(self):
        notifier = MagicMock()
        with patch("agent.ping_heartbeat") as mock_ping, \
             patch("crawler.run_strategies", side_effect=RuntimeError("boom")):
            code = agent.run_agent({"heartbeat_url": "https://hb.example"}, _ledger(), notifier)
        assert code == 0
        assert len(_criticals(notifier)) == 1
        mock_ping.assert_not_called()

    def test_heartbeat_failure_notifies(self):
        notifier = MagicMock()
        with patch("agent.ping_heartbeat", return_value=False), \
             patch("crawler.run_strategies"):
            agent.run_agent({"heartbeat_url": "https://hb.example"}, _ledger(), notifier)
        assert notifier.notify.call_args[0][0] == "Heartbeat failed"
        assert _criticals(notifier) == []

    def test_site_failures_reported(self):
        def fake_run(ctx, strategies):
            ctx.site_errors.append(("https://x.com/", "sitemap exploded"))
            ctx.stats["sites_failed"] += 1
            return ctx.stats

        notifier = MagicMock()
        with patch("agent.ping_heartbeat", return_value=True) as mock_ping, \
             patch("crawler.run_strategies", side_effect=fake_run):
            agent.run_agent({"heartbeat_url": "https://hb.example"}, _ledger(), notifier)
        subject, body = notifier.notify.call_args[0]
        assert subject == "1 site(s) failed"
        assert "sitemap exploded" in body
        mock_ping.assert_called_once()


# ============================================================
# 通知與心跳
# ============================================================

class TestNotifier:
    def test_log_only_without_webhook(self):
        with patch("requests.post") as mock_post:
            agent.Notifier().notify("subject", "body")
        mock_post.assert_not_called()

    def test_webhook_payload(self):
        with patch("requests.post") as mock_post:
            agent.Notifier("https://hooks.example/x").notify("Down", "details", is_critical=True)
        payload = mock_post.call_args[1]["json"]
        assert payload["subject"] == "Down"
        assert payload["body"] == "details"
        assert payload["critical"] is True

    def test_webhook_failure_swallowed(self):
        with patch("requests.post", side_effect=requests.exceptions.ConnectionError("down")):
            agent.Notifier("https://hooks.example/x").notify("s", "b")


class TestPingHeartbeat:
    def test_ok(self):
        with patch("requests.get", return_value=MagicMock(status_code=200)):
            assert agent.ping_heartbeat("https://hb.example") is True

    def test_bad_status(self):
        with patch("requests.get", return_value=MagicMock(status_code=500)):
            assert agent.ping_heartbeat("https://hb.example") is False

    def test_network_error(self):
        with patch("requests.get", side_effect=requests.exceptions.Timeout("slow")):
            assert agent.ping_heartbeat("https://hb.example") is False


# ============================================================
# 設定與 CLI
# ============================================================

class TestConfig:
    def test_env_overrides(self):
        environ = {
            "SUPABASE_URL": "https://db.example",
            "SUPABASE_KEY": "secret",
            "NEXT_PUBLIC_APP_URL": "https://app.example",
            "HEARTBEAT_URL": "  ",
        }
        config = agent.apply_env_overrides({"heartbeat_url": "https://hb.example"}, environ)
        assert config["supabase_url"] == "https://db.example"
        assert config["supabase_key"] == "secret"
        assert config["app_url"] == "https://app.example"
        assert config["heartbeat_url"] == "https://hb.example"

    def test_env_first_name_wins(self):
        environ = {"APP_URL": "https://a.example", "NEXT_PUBLIC_APP_URL": "https://b.example"}
        assert agent.apply_env_overrides({}, environ)["app_url"] == "https://a.example"

    def test_build_ledger(self, tmp_path):
        assert isinstance(agent.build_ledger({"ledger": "local", "state_dir": str(tmp_path)}),
                          JsonFileLedger)
        assert isinstance(agent.build_ledger({"ledger": "supabase"}), SupabaseLedger)


class TestMain:
    def test_local_flags(self, tmp_path):
        with patch("agent.run_agent", return_value=0) as mock_run, \
             patch("scraper.setup_logging"), \
             patch("agent.load_dotenv"):
            with pytest.raises(SystemExit) as exc:
                agent.main(["--config", str(tmp_path / "none.json"),
                            "--local", "--state-dir", str(tmp_path)])
        assert exc.value.code == 0
        config = mock_run.call_args[0][0]
        assert config["ledger"] == "local"
        assert config["state_dir"] == str(tmp_path)

    def test_exit_code_propagates(self, tmp_path):
        with patch("agent.run_agent", return_value=1), \
             patch("scraper.setup_logging"), \
             patch("agent.load_dotenv"):
            with pytest.raises(SystemExit) as exc:
                agent.main(["--config", str(tmp_path / "none.json")])
        assert exc.value.code == 1

    def test_unhandled_error_exits_1(self, tmp_path):
        with patch("agent.run_agent", side_effect=RuntimeError("boom")), \
             patch("scraper.setup_logging"), \
             patch("agent.load_dotenv"):
            with pytest.raises(SystemExit) as exc:
                agent.main(["--config", str(tmp_path / "none.json")])
        assert exc.value.code == 1

    def test_schedule_mode(self, tmp_path):
        with patch("agent.run_scheduled") as mock_scheduled, \
             patch("scraper.setup_logging"), \
             patch("agent.load_dotenv"):
            agent.main(["--config", str(tmp_path / "none.json"), "--schedule", "30"])
        assert mock_scheduled.call_args[0][1] == 30
