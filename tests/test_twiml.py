"""
Tests for TwiML rendering and the webhook endpoints.
"""

import xml.etree.ElementTree as ET
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from src.partfinder.config import get_config
from src.partfinder.flow import CallFlowController
from src.partfinder.sessions import InMemorySessionStore
from src.partfinder.twiml import (
    GatherDigits,
    GatherSpeech,
    Hangup,
    Prompt,
    Redirect,
    render_prompt,
)


def _says(element):
    return [say.text for say in element.iter("Say")]


class TestRenderPrompt:
    """Tests for Prompt -> TwiML rendering."""

    def test_speech_gather_nests_says_and_falls_back_to_voice(self):
        xml = render_prompt(Prompt(says=["Hello.", "Say a part."], terminal=GatherSpeech()))
        root = ET.fromstring(xml)

        assert root.tag == "Response"
        gather = root.find("Gather")
        assert gather.get("input") == "speech"
        assert gather.get("action") == "/process-speech"
        assert gather.get("method") == "POST"
        assert gather.get("speechTimeout") == "auto"
        assert gather.get("language") == "en-US"
        assert "Camry" in gather.get("hints")
        assert _says(gather) == ["Hello.", "Say a part."]

        children = list(root)
        assert [child.tag for child in children] == ["Gather", "Redirect"]
        assert children[1].text == "/voice"

    def test_digit_gather_uses_configured_timeout(self):
        xml = render_prompt(Prompt(says=["Press 1."], terminal=GatherDigits()))
        gather = ET.fromstring(xml).find("Gather")

        assert gather.get("numDigits") == "1"
        assert gather.get("action") == "/handle-choice"
        assert gather.get("timeout") == "12"
        assert gather.get("input") is None

    def test_redirect(self):
        root = ET.fromstring(render_prompt(Prompt(says=["Try again."], terminal=Redirect("/voice"))))

        assert [child.tag for child in root] == ["Say", "Redirect"]
        assert root.find("Redirect").text == "/voice"

    def test_hangup(self):
        root = ET.fromstring(render_prompt(Prompt(says=["Goodbye."], terminal=Hangup())))

        assert [child.tag for child in root] == ["Say", "Hangup"]
        assert root.find("Gather") is None
        assert root.find("Redirect") is None


@pytest.fixture
def client(sample_catalog, camry_extractor):
    from server.app import app, get_controller

    controller = CallFlowController(
        catalog=sample_catalog,
        extractor=camry_extractor,
        sessions=InMemorySessionStore(),
        config=get_config(),
    )
    app.dependency_overrides[get_controller] = lambda: controller
    try:
        yield TestClient(app, raise_server_exceptions=False)
    finally:
        app.dependency_overrides.clear()


class TestWebhooks:
    """Tests for the Twilio webhook endpoints."""

    def test_voice_returns_speech_gather(self, client):
        response = client.post("/voice", data={"CallSid": "CA1"})

        assert response.status_code == 200
        assert "application/xml" in response.headers.get("content-type", "")
        root = ET.fromstring(response.text)
        assert root.find("Gather").get("input") == "speech"
        assert "Welcome to Auto Parts Finder" in _says(root)[0]

    def test_voice_accepts_get(self, client):
        response = client.get("/voice", params={"CallSid": "CA1"})
        assert response.status_code == 200

    def test_call_flow_over_http(self, client):
        client.post("/voice", data={"CallSid": "CA1"})

        speech = client.post(
            "/process-speech",
            data={"CallSid": "CA1", "SpeechResult": "2018 Toyota Camry brake pads"},
        )
        root = ET.fromstring(speech.text)
        gather = root.find("Gather")
        assert gather.get("numDigits") == "1"
        assert _says(root)[0] == "I found 1 item for 2018 Toyota Camry."

        add = client.post("/handle-choice", data={"CallSid": "CA1", "Digits": "1"})
        assert _says(ET.fromstring(add.text))[0] == "Brake Pad Set added to cart."

        quote = client.post("/handle-choice", data={"CallSid": "CA1", "Digits": "9"})
        root = ET.fromstring(quote.text)
        assert root.find("Hangup") is not None
        assert "Total is 49.99 dollars" in _says(root)[0]

        again = client.post("/handle-choice", data={"CallSid": "CA1", "Digits": "1"})
        assert _says(ET.fromstring(again.text)) == ["Session expired. Let us start over."]

    def test_speech_without_result_redirects(self, client):
        response = client.post("/process-speech", data={"CallSid": "CA1"})

        root = ET.fromstring(response.text)
        assert root.find("Redirect").text == "/voice"

    def test_unexpected_error_still_speaks(self, client):
        from server.app import app, get_controller

        broken = MagicMock()
        broken.handle_choice.side_effect = RuntimeError("boom")
        app.dependency_overrides[get_controller] = lambda: broken

        response = client.post("/handle-choice", data={"CallSid": "CA1", "Digits": "1"})

        assert response.status_code == 200
        root = ET.fromstring(response.text)
        assert root.find("Redirect").text == "/voice"
        assert "something went wrong" in _says(root)[0]


class TestParseAndSearchEndpoint:
    """Tests for the local JSON API."""

    def test_missing_transcript_is_a_client_error(self, client):
        response = client.post("/api/parse-and-search", json={})

        assert response.status_code == 400
        assert response.json() == {"error": "transcript required"}

    def test_missing_body_is_a_client_error(self, client):
        response = client.post("/api/parse-and-search")
        assert response.status_code == 400

    @pytest.mark.parametrize("transcript", [123, ["brake pads"], "   "])
    def test_non_text_or_blank_transcript_is_a_client_error(self, client, transcript):
        response = client.post("/api/parse-and-search", json={"transcript": transcript})

        assert response.status_code == 400
        assert response.json() == {"error": "transcript required"}

    def test_returns_parsed_and_results(self, client):
        response = client.post(
            "/api/parse-and-search",
            json={"transcript": "2018 Toyota Camry brake pads"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["parsed"] == {
            "year": "2018",
            "make": "Toyota",
            "model": "Camry",
            "item": "brake pads",
            "extras": [],
        }
        assert data["results"] == [
            {
                "title": "Brake Pad Set",
                "partType": "Brake Pads",
                "price": 49.99,
                "fits": [{"year": "2018", "make": "Toyota", "model": "Camry"}],
            }
        ]


class TestHealthAndMetrics:
    """Tests for operational endpoints."""

    def test_health_returns_ok(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "timestamp" in data

    def test_metrics_returns_json(self, client):
        client.post("/voice", data={"CallSid": "CA1"})

        response = client.get("/metrics")

        assert response.status_code == 200
        data = response.json()
        assert "uptime_seconds" in data
        assert "total_calls" in data
        assert "total_turns" in data
        assert "errors" in data
        assert data["active_sessions"] == 1
        assert data["extraction_failures"] == 0
