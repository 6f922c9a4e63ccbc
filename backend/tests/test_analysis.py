from conftest import HDR, make_survey, three_questions
from analysis import AnalysisAggregator, TemplateAnalysis, AnalysisFailed
from models import Analysis, Survey
import lifecycle
import pytest

def _answer_all(client, survey, answers):
    sid = client.post(f"/surveys/{survey['id']}/sessions", json={"respondent_name": "R"}).json()["session_id"]
    for i, (q, a) in enumerate(zip(survey["questions"], answers)):
        r = client.post(f"/surveys/{survey['id']}/respond",
                        json={"session_id": sid, "turn_key": f"{i}:question", "question_id": q["id"], "answer": a})
        assert r.status_code == 200, r.text
    return sid

def test_analyse_without_sessions_reverts_to_collecting(client, db, hub):
    s = make_survey(client, questions=three_questions())
    client.patch(f"/surveys/{s['id']}", json={"status": "COLLECTING"}, headers=HDR)
    r = client.post(f"/surveys/{s['id']}/analyse", headers=HDR)
    assert r.status_code == 400
    assert r.json()["detail"] == "No sessions to analyze"
    assert client.get(f"/surveys/{s['id']}", headers=HDR).json()["status"] == "COLLECTING"
    assert db.query(Analysis).filter_by(survey_id=s["id"]).count() == 0
    assert hub.of(s["id"], "analysis_ready") == []
    assert client.get(f"/surveys/{s['id']}/analysis", headers=HDR).status_code == 404

def test_analyse_from_draft_without_sessions_lands_on_collecting(client):
    s = make_survey(client)
    assert client.post(f"/surveys/{s['id']}/analyse", headers=HDR).status_code == 400
    assert client.get(f"/surveys/{s['id']}", headers=HDR).json()["status"] == "COLLECTING"

def test_analysis_counts_sessions_and_keeps_history(client, db, hub):
    s = make_survey(client, questions=three_questions())
    client.patch(f"/surveys/{s['id']}", json={"status": "COLLECTING"}, headers=HDR)
    for i in range(3):
        _answer_all(client, s, [f"use {i}", f"friction {i}", f"idea {i}"])

    r1 = client.post(f"/surveys/{s['id']}/analyse", headers=HDR)
    assert r1.status_code == 200, r1.text
    first_id = r1.json()["analysis_id"]
    assert client.get(f"/surveys/{s['id']}", headers=HDR).json()["status"] == "COMPLETED"
    assert hub.of(s["id"], "analysis_ready") == [(s["id"], "analysis_ready", {"survey_id": s["id"]})]

    a = client.get(f"/surveys/{s['id']}/analysis", headers=HDR).json()
    assert a["id"] == first_id
    assert a["response_count"] == 3
    assert a["overall_sentiment"] == TemplateAnalysis.SENTIMENT and a["nps_score"] == TemplateAnalysis.NPS
    assert {t["theme"] for t in a["themes"]} == {"Usage", "Friction", "Ideas"}
    usage = next(t for t in a["themes"] if t["theme"] == "Usage")
    assert usage["quotes"] == ["use 0", "use 1", "use 2"]
    assert a["pain_points"] and a["opportunities"] and a["action_plan"]
    assert "3 respondents" in a["executive_summary"]

    r2 = client.post(f"/surveys/{s['id']}/analyse", headers=HDR)
    assert r2.status_code == 200
    assert r2.json()["analysis_id"] != first_id
    rows = db.query(Analysis).filter_by(survey_id=s["id"]).order_by(Analysis.id).all()
    assert len(rows) == 2
    assert rows[0].id == first_id and rows[0].response_count == 3
    assert client.get(f"/surveys/{s['id']}/analysis", headers=HDR).json()["id"] == r2.json()["analysis_id"]

def test_analysis_refused_while_running(client, db):
    s = make_survey(client, questions=three_questions())
    _answer_all(client, s, ["a", "b", "c"])
    lifecycle.transition(db, s["id"], "DRAFT", "ANALYSING")
    r = client.post(f"/surveys/{s['id']}/analyse", headers=HDR)
    assert r.status_code == 409
    assert db.query(Analysis).filter_by(survey_id=s["id"]).count() == 0

def test_failed_strategy_restores_status(client, db, hub):
    class Broken:
        def build(self, survey, sessions):
            raise ValueError("model exploded")
    s = make_survey(client, questions=three_questions())
    _answer_all(client, s, ["a", "b", "c"])
    survey = db.get(Survey, s["id"])
    with pytest.raises(AnalysisFailed, match="model exploded"):
        AnalysisAggregator(hub=hub, strategy=Broken()).analyse(db, survey)
    db.expire_all()
    assert db.get(Survey, s["id"]).status == "COLLECTING"
    assert db.query(Analysis).filter_by(survey_id=s["id"]).count() == 0

def test_transition_table():
    assert lifecycle.can_transition("DRAFT", "COLLECTING")
    assert lifecycle.can_transition("ANALYSING", "COLLECTING")
    assert not lifecycle.can_transition("DRAFT", "COMPLETED")
    assert not lifecycle.can_transition("ANALYSING", "ANALYSING")

def test_stale_status_write_is_rejected(client, db):
    s = make_survey(client)
    lifecycle.transition(db, s["id"], "DRAFT", "COLLECTING")
    with pytest.raises(lifecycle.StaleStatus):
        lifecycle.transition(db, s["id"], "DRAFT", "COLLECTING")
    with pytest.raises(lifecycle.IllegalTransition):
        lifecycle.transition(db, s["id"], "COLLECTING", "COMPLETED")
