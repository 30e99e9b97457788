import json
from datetime import datetime, timezone

import httpx
import pytest

from clinic_relay.core.exceptions import ConfigError, GenerationError, SchemaParseError
from clinic_relay.services.llm_service import LLMService
from tests.conftest import make_settings

FULL_REPORT = {
    "diagnosis": {"condition": "High blood pressure. Your heart works too hard.", "reason": "Too much salt"},
    "prohibitions": ["Absolutely do not skip your pills"],
    "danger_signs": ["Chest pain: go to the emergency room"],
    "diet_advice": {"good_to_eat": ["Vegetables"], "avoid_eating": ["Pickles"]},
    "follow_up": {"date_time": "2024-05-14 09:30", "day_of_week": "Tuesday", "tasks": ["Fast before the blood test"]},
    "audio_summary": "Hello Grandpa, today the doctor said your blood pressure is a little high.",
}


def completion(content, status=200):
    body = {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 1700000000,
        "model": "gemini-1.5-flash-latest",
        "choices": [
            {"index": 0, "message": {"role": "assistant", "content": content}, "finish_reason": "stop"}
        ],
    }
    return httpx.Response(status, json=body)


class FakeGenerationApi:
    def __init__(self, response):
        self.response = response
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.response

    def sent(self):
        return json.loads(self.requests[-1].content)


def build_service(api, **settings_overrides):
    return LLMService(
        make_settings(**settings_overrides),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(api.handler)),
    )


def test_missing_credentials_is_config_error():
    with pytest.raises(ConfigError):
        LLMService(make_settings(google_api_key=None, gemini_api_key=None))


def test_generation_key_falls_back_to_recognition_key():
    service = LLMService(make_settings(google_api_key="speech-key", gemini_api_key=None))
    assert service.client.api_key == "speech-key"


def test_current_date_uses_anchor_timezone():
    service = LLMService(make_settings())
    late_evening_utc = datetime(2024, 1, 1, 20, 0, tzinfo=timezone.utc)
    assert service.current_date(late_evening_utc) == "2024-01-02"


@pytest.mark.asyncio
async def test_full_report_parsed():
    api = FakeGenerationApi(completion(json.dumps(FULL_REPORT)))
    service = build_service(api)

    report = await service.summarize("Doctor: your pressure is high.", elder_title="Grandpa", current_date="2024-05-07")

    assert report.diagnosis.reason == "Too much salt"
    assert report.follow_up.day_of_week == "Tuesday"
    assert report.diet_advice.avoid_eating == ["Pickles"]

    sent = api.sent()
    assert sent["model"] == "gemini-1.5-flash-latest"
    assert sent["response_format"]["type"] == "json_schema"
    assert set(sent["response_format"]["json_schema"]["schema"]["required"]) == set(FULL_REPORT)
    system_prompt = sent["messages"][0]["content"]
    assert "2024-05-07" in system_prompt
    assert "Hello Grandpa" in system_prompt
    assert "English" in system_prompt
    assert sent["messages"][1] == {"role": "user", "content": "Doctor: your pressure is high."}


@pytest.mark.asyncio
async def test_default_elder_title_used():
    api = FakeGenerationApi(completion(json.dumps(FULL_REPORT)))
    await build_service(api).summarize("Doctor: rest well.")
    assert "Hello Grandpa/Grandma" in api.sent()["messages"][0]["content"]


@pytest.mark.asyncio
async def test_missing_follow_up_is_never_fabricated():
    report_without_follow_up = {k: v for k, v in FULL_REPORT.items() if k != "follow_up"}
    api = FakeGenerationApi(completion(json.dumps(report_without_follow_up)))

    report = await build_service(api).summarize("Doctor: drink more water.")

    assert report.follow_up.date_time is None
    assert report.follow_up.day_of_week is None
    assert report.follow_up.tasks == []


@pytest.mark.asyncio
async def test_nulls_become_empty_defaults():
    api = FakeGenerationApi(completion(json.dumps({
        "diagnosis": None,
        "prohibitions": None,
        "diet_advice": {"good_to_eat": None},
        "audio_summary": None,
    })))

    report = await build_service(api).summarize("...")

    assert report.diagnosis.condition is None
    assert report.prohibitions == []
    assert report.danger_signs == []
    assert report.diet_advice.good_to_eat == []
    assert report.diet_advice.avoid_eating == []
    assert report.audio_summary is None


@pytest.mark.asyncio
async def test_non_json_output_is_schema_parse_error():
    raw = "Sure! Here is the summary: " + "x" * 5000
    api = FakeGenerationApi(completion(raw))

    with pytest.raises(SchemaParseError) as exc_info:
        await build_service(api).summarize("...")

    error = exc_info.value
    assert error.status_code == 502
    assert error.raw_excerpt == raw[:2000]
    assert error.to_response_body()["rawText"] == raw[:2000]


@pytest.mark.parametrize("raw", ['["not", "an", "object"]', '{"prohibitions": 5}', '{"follow_up": {"tasks": "soon"}}'])
def test_schema_violations_are_schema_parse_errors(raw):
    with pytest.raises(SchemaParseError):
        LLMService.parse_report(raw)


@pytest.mark.asyncio
async def test_service_failure_is_generation_error():
    api = FakeGenerationApi(httpx.Response(500, json={"error": {"message": "internal"}}))

    with pytest.raises(GenerationError):
        await build_service(api).summarize("...")
    assert len(api.requests) == 1
