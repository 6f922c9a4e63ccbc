from types import SimpleNamespace

import httpx
from openai import APIConnectionError, OpenAIError

from conftest import make_survey
from main import app, get_judge
from llm_followup import FollowUpJudge, parse_judgment
from schemas import FollowUpResult

class FakeCompletions:
    def __init__(self, content=None, error=None):
        self.content = content
        self.error = error
        self.kwargs = None

    def create(self, **kwargs):
        self.kwargs = kwargs
        if self.error:
            raise self.error
        msg = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=msg)])

def fake_client(content=None, error=None):
    completions = FakeCompletions(content, error)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions

def test_parse_plain_and_fenced_json():
    raw = '{"should_follow_up": true, "follow_up_question": "What made it good?", "reason": "vague"}'
    r = parse_judgment(raw)
    assert r.should_follow_up is True and r.follow_up_question == "What made it good?"
    fenced = "```json\n" + raw + "\n```"
    assert parse_judgment(fenced) == r
    chatty = "Sure! Here you go: " + raw + " Hope that helps."
    assert parse_judgment(chatty) == r

def test_parse_fails_closed():
    for raw in ("", "not json", "[1, 2]", '{"should_follow_up": "yes", "follow_up_question": "Why?"}',
                '{"should_follow_up": true}', '{"should_follow_up": true, "follow_up_question": "   "}'):
        assert parse_judgment(raw).should_follow_up is False, raw

def test_thank_you_is_not_a_probe():
    r = parse_judgment('{"should_follow_up": true, "follow_up_question": "Thank you for sharing.", "reason": "x"}')
    assert r.should_follow_up is False and r.follow_up_question is None
    ok = parse_judgment('{"should_follow_up": true, "follow_up_question": "Thanks! What changed after that?"}')
    assert ok.should_follow_up is True

def test_judge_without_client_says_no():
    assert FollowUpJudge(client=None).judge("Q?", "meh", "goal").should_follow_up is False

def test_judge_sends_goal_question_and_answer():
    client, completions = fake_client('{"should_follow_up": false, "follow_up_question": null, "reason": "rich"}')
    r = FollowUpJudge(client=client, model="m").judge("How was setup?", "It took two hours because...", "an app")
    assert r == FollowUpResult(should_follow_up=False, follow_up_question=None, reason="rich")
    user = completions.kwargs["messages"][1]["content"]
    assert "SURVEY_GOAL: an app" in user and "LAST_QUESTION: How was setup?" in user
    assert completions.kwargs["response_format"] == {"type": "json_object"}
    assert completions.kwargs["model"] == "m"

def test_judge_network_error_fails_open():
    err = APIConnectionError(request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))
    client, _ = fake_client(error=err)
    assert FollowUpJudge(client=client).judge("Q?", "meh", "goal").should_follow_up is False

def test_judge_empty_content_fails_open():
    client, _ = fake_client(content=None)
    assert FollowUpJudge(client=client).judge("Q?", "meh", None).should_follow_up is False

def test_followup_endpoint(client, judge):
    s = make_survey(client)
    judge.always = FollowUpResult(should_follow_up=True, follow_up_question="Why?", reason="short")
    r = client.post(f"/surveys/{s['id']}/followup", json={"question_text": "Q?", "answer": "ok"})
    assert r.json() == {"should_follow_up": True, "follow_up_question": "Why?", "reason": "short"}
    # goal falls back to the survey's own
    assert judge.calls[-1] == ("Q?", "ok", "a note-taking app")

    calls = len(judge.calls)
    r = client.post(f"/surveys/{s['id']}/followup",
                    json={"question_text": "Why?", "answer": "dunno", "category": "PROBE"})
    assert r.json()["should_follow_up"] is False
    assert len(judge.calls) == calls

def test_followup_unknown_survey(client):
    assert client.post("/surveys/999999/followup", json={"question_text": "Q", "answer": "a"}).status_code == 404

def test_judge_unexpected_sdk_error_fails_open():
    client, _ = fake_client(error=OpenAIError("response did not match schema"))
    r = FollowUpJudge(client=client).judge("Q?", "meh", "goal")
    assert r.should_follow_up is False

def test_followup_endpoint_survives_sdk_error(client):
    s = make_survey(client)
    sdk, _ = fake_client(error=OpenAIError("response did not match schema"))
    app.dependency_overrides[get_judge] = lambda: FollowUpJudge(client=sdk)
    r = client.post(f"/surveys/{s['id']}/followup", json={"question_text": "Q?", "answer": "meh"})
    assert r.status_code == 200
    assert r.json()["should_follow_up"] is False
