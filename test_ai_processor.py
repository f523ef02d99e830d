"""
ai_processor.py 單元測試
========================
以 mock 取代 requests.post，測試 API 呼叫、重試與回應解析。
"""

import json
import re
import pytest
from unittest.mock import patch, MagicMock

import requests

import ai_processor

APP_URL = "https://app.example/"
ARTICLE_URL = "https://x.com/posts/winter"

SUCCESS_BODY = {
    "message": "Content processed.",
    "processedContent": {
        "title": "Winter Gardening",
        "summary": "How to protect plants from frost.",
        "tags": ["garden", "winter"],
        "imageUrl": "https://img.example/1.png",
        "imageStatus": "generated",
        "progressMessage": "AI processing completed.",
    },
}


def _resp(status=200, body=None, text=None, reason="OK"):
    mock_resp = MagicMock()
    mock_resp.status_code = status
    mock_resp.reason = reason
    mock_resp.text = text if text is not None else json.dumps(body or {})
    return mock_resp


def _trigger(**kwargs):
    params = {"app_url": APP_URL, "retry_delay": 0}
    params.update(kwargs)
    return ai_processor.trigger_ai_processing("agent-1-abcdef0", ARTICLE_URL, "gardening", **params)


# ============================================================
# 成功路徑
# ============================================================

class TestTriggerSuccess:
    def test_success_fields(self):
        with patch("requests.post", return_value=_resp(200, SUCCESS_BODY)):
            result = _trigger()
        assert result.ok is True
        assert result.title == "Winter Gardening"
        assert result.summary == "How to protect plants from frost."
        assert result.tags == ["garden", "winter"]
        assert result.image_url == "https://img.example/1.png"
        assert result.image_status == "generated"
        assert result.failure_kind is None

    def test_request_payload_and_endpoint(self):
        with patch("requests.post", return_value=_resp(200, SUCCESS_BODY)) as mock_post:
            _trigger()
        args, kwargs = mock_post.call_args
        assert args[0] == "https://app.example/api/agent/process-content"
        assert kwargs["json"] == {
            "articleId": "agent-1-abcdef0",
            "articleUrl": ARTICLE_URL,
            "topic": "gardening",
        }
        assert kwargs["headers"]["Content-Type"] == "application/json"
        assert kwargs["timeout"] == ai_processor.DEFAULT_TIMEOUT

    def test_retry_on_5xx_then_success(self):
        responses = [_resp(500), _resp(502), _resp(200, SUCCESS_BODY)]
        with patch("requests.post", side_effect=responses) as mock_post, \
             patch("time.sleep") as mock_sleep:
            result = _trigger(retry_delay=2)
        assert result.ok is True
        assert mock_post.call_count == 3
        assert mock_sleep.call_count == 2
        mock_sleep.assert_called_with(2)


# ============================================================
# 失敗路徑
# ============================================================

class TestTriggerFailure:
    def test_missing_app_url_makes_no_request(self):
        with patch("requests.post") as mock_post:
            result = _trigger(app_url="")
        mock_post.assert_not_called()
        assert result.ok is False
        assert result.failure_kind == ai_processor.FAILURE_CONFIG
        assert "APP_URL" in result.error

    def test_error_field_is_application_failure(self):
        body = {"error": "quota exceeded", "message": "AI processing via API failed."}
        with patch("requests.post", return_value=_resp(200, body)):
            result = _trigger()
        assert result.ok is False
        assert result.failure_kind == ai_processor.FAILURE_APPLICATION
        assert result.error == "quota exceeded"

    def test_processed_content_error_status(self):
        body = {"processedContent": {"status": "error", "errorMessage": "model refused"}}
        with patch("requests.post", return_value=_resp(200, body)):
            result = _trigger()
        assert result.ok is False
        assert result.error == "model refused"

    def test_missing_processed_content(self):
        with patch("requests.post", return_value=_resp(200, {"message": "nothing"})):
            result = _trigger()
        assert result.ok is False
        assert result.failure_kind == ai_processor.FAILURE_APPLICATION

    def test_malformed_json(self):
        with patch("requests.post", return_value=_resp(200, text="<html>oops</html>")):
            result = _trigger()
        assert result.ok is False
        assert result.failure_kind == ai_processor.FAILURE_APPLICATION
        assert result.error.startswith("Malformed response")

    def test_4xx_not_retried(self):
        with patch("requests.post", return_value=_resp(400, reason="Bad Request")) as mock_post, \
             patch("time.sleep") as mock_sleep:
            result = _trigger()
        assert mock_post.call_count == 1
        assert mock_sleep.call_count == 0
        assert result.ok is False
        assert result.failure_kind == ai_processor.FAILURE_NETWORK
        assert "400" in result.error

    def test_timeouts_exhaust_retries(self):
        with patch("requests.post", side_effect=requests.exceptions.Timeout("slow")) as mock_post, \
             patch("time.sleep"):
            result = _trigger()
        assert mock_post.call_count == ai_processor.DEFAULT_MAX_RETRIES
        assert result.ok is False
        assert result.error.startswith("Network error calling API")
        assert "timed out after 20000ms" in result.error


# ============================================================
# 解析與輔助函式
# ============================================================

class TestParseResponse:
    def test_tags_string_split(self):
        body = {"processedContent": {"title": "T", "summary": "S", "tags": "a, b ,,c"}}
        result = ai_processor.parse_response(json.dumps(body))
        assert result.tags == ["a", "b", "c"]

    def test_non_object_raises(self):
        with pytest.raises(ValueError):
            ai_processor.parse_response("[]")

    def test_invalid_json_raises(self):
        with pytest.raises(ValueError):
            ai_processor.parse_response("not json")


class TestRecordFields:
    def test_success_has_no_error_message(self):
        result = ai_processor.AIProcessingResult(ok=True, title="T", summary="S", tags=["a"])
        fields = result.record_fields()
        assert "error_message" not in fields
        assert fields["title"] == "T"
        assert fields["tags"] == ["a"]

    def test_failure_has_error_message(self):
        result = ai_processor.AIProcessingResult(ok=False, error="boom")
        fields = result.record_fields()
        assert fields["error_message"] == "boom"
        assert fields["title"] is None


class TestHelpers:
    def test_article_id_format(self):
        article_id = ai_processor.make_article_id()
        assert re.fullmatch(r"agent-\d{13}-[0-9a-f]{7}", article_id)

    def test_article_ids_unique(self):
        assert ai_processor.make_article_id() != ai_processor.make_article_id()

    @pytest.mark.parametrize("app_url", ["https://app.example", "https://app.example/"])
    def test_build_endpoint(self, app_url):
        assert ai_processor.build_endpoint(app_url) == "https://app.example/api/agent/process-content"
