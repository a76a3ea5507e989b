"""Tests for database - storing and reading back completed runs."""

import database
from database import AnalysisResult, CompanyProfile, delete_result, get_result, list_results, save_completed_run
from pipeline import PipelineRun, RunState


def _completed_run(url="https://example.com") -> PipelineRun:
    run = PipelineRun(url=url)
    run.state = RunState.DONE
    run.company_description = "Example makes examples."
    run.target_audience = "Developers"
    run.queries = ["q1", "q2", "q3"]
    run.competitor_results = [
        {"query": "q1", "analysis": "long text", "competitors": [{"url": "https://rival.test", "position": 1}]},
        {"query": "q2", "analysis": "long text", "competitors": []},
    ]
    run.query_contents = [
        {"query": "q1", "content": {"html": "<!DOCTYPE html><p>one</p>"}},
        {"query": "q2", "content": {"html": "<!DOCTYPE html><p>two</p>"}},
    ]
    return run


class TestSaveCompletedRun:

    def test_creates_profile_and_result(self, temp_db):
        run = _completed_run()
        result_id = save_completed_run("user-1", run)

        assert result_id == run.run_id
        db = database.SessionLocal()
        try:
            profile = db.query(CompanyProfile).one()
            assert profile.user_id == "user-1"
            assert profile.name == "example.com"
            assert profile.description == "Example makes examples."
            row = db.query(AnalysisResult).one()
            assert row.company_profile_id == profile.id
            assert "<p>one</p>" in row.generated_html and "<p>two</p>" in row.generated_html
        finally:
            db.close()

    def test_reuses_profile_for_same_site(self, temp_db):
        save_completed_run("user-1", _completed_run())
        save_completed_run("user-1", _completed_run())
        db = database.SessionLocal()
        try:
            assert db.query(CompanyProfile).count() == 1
            assert db.query(AnalysisResult).count() == 2
        finally:
            db.close()


class TestReadAndDelete:

    def test_get_result_shape(self, temp_db):
        run = _completed_run()
        save_completed_run("user-1", run)

        result = get_result("user-1", run.run_id)

        assert result["queries"] == ["q1", "q2", "q3"]
        assert result["competitorData"][0] == {
            "query": "q1", "competitors": [{"url": "https://rival.test", "position": 1}],
        }
        assert result["targetAudience"] == "Developers"

    def test_results_are_owner_scoped(self, temp_db):
        run = _completed_run()
        save_completed_run("user-1", run)

        assert get_result("user-2", run.run_id) is None
        assert list_results("user-2") == []
        assert not delete_result("user-2", run.run_id)
        assert len(list_results("user-1")) == 1

    def test_delete(self, temp_db):
        run = _completed_run()
        save_completed_run("user-1", run)

        assert delete_result("user-1", run.run_id)
        assert get_result("user-1", run.run_id) is None
        assert not delete_result("user-1", run.run_id)
