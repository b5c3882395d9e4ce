from __future__ import annotations

from datetime import datetime, timezone

import pytest
from conftest import FakeGateway, make_doc

from citeloop.agents.worker import (
    ResearchWorker,
    ScoredCandidate,
    run_workers,
    score_candidate,
    summarize,
    worker_confidence,
)
from citeloop.models.tasks import ResearchTask

NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)


def _task(task_id: str, *queries: str, aspect: str = "battery costs") -> ResearchTask:
    return ResearchTask(id=task_id, aspect=aspect, queries=list(queries))


def _worker(gateway, **kwargs) -> ResearchWorker:
    kwargs.setdefault("batch_delay_seconds", 0)
    return ResearchWorker(gateway, **kwargs)


class TestScoring:
    def test_provider_score_keywords_recency_content(self):
        doc = make_doc(
            "https://a.com",
            title="Battery costs fall",
            excerpt="Battery prices dropped",
            content="body",
            provider_score=1.0,
            published_at="2026-06-01",
        )
        # 0.4 provider + 0.2 title + 0.1 excerpt + 0.2 recency + 0.1 content
        assert score_candidate(doc, "battery costs", now=NOW) == pytest.approx(1.0)

    def test_missing_provider_score_is_neutral(self):
        doc = make_doc("https://a.com", title="Unrelated", excerpt="nothing")
        assert score_candidate(doc, "battery costs", now=NOW) == pytest.approx(0.3)

    def test_confidence_blends_count_score_and_content(self):
        selected = [
            ScoredCandidate(make_doc("https://a.com", content="x"), 0.8),
            ScoredCandidate(make_doc("https://b.com"), 0.6),
        ]
        # count 2/4 * 0.4 + avg 0.7 * 0.3 + content 0.5 * 0.3
        assert worker_confidence(selected, 4) == pytest.approx(0.56)
        assert worker_confidence([], 4) == 0.0

    def test_summary_names_hosts(self):
        docs = [make_doc("https://a.com/1"), make_doc("https://a.com/2"), make_doc("https://b.org/")]
        assert summarize("costs", docs) == "Found 3 relevant documents for costs from 2 sources including a.com, b.org"
        assert summarize("costs", []) == "No relevant documents found for costs"


class TestExecute:
    @pytest.mark.asyncio
    async def test_selects_top_documents_and_enriches_them(self):
        gateway = FakeGateway(
            {
                "q1": [
                    make_doc("https://a.com/1", title="battery costs", provider_score=0.9),
                    make_doc("https://b.com/1", title="other", provider_score=0.1),
                ],
                "q2": [
                    make_doc("https://www.a.com/1/", title="battery costs", provider_score=0.9),
                    make_doc("https://c.com/1", title="battery news", provider_score=0.5),
                ],
            },
            enriched=[make_doc("https://a.com/1", content="Full article text")],
        )
        worker = _worker(gateway, top_documents=2)
        result = await worker.execute(_task("task-1", "q1", "q2"), {"domains": ["example.org"]})

        assert result.task_id == "task-1"
        assert [d.url for d in result.documents] == ["https://a.com/1", "https://c.com/1"]
        assert result.documents[0].content == "Full article text"
        assert result.documents_found == 4
        assert result.documents_selected == 2
        assert gateway.enrich_calls == [["https://a.com/1", "https://c.com/1"]]
        assert all(c["include_domains"] == ["example.org"] for c in gateway.search_calls)
        assert all(0.0 <= d.normalized_score <= 1.0 for d in result.documents)
        assert 0.0 < result.confidence <= 1.0

    @pytest.mark.asyncio
    async def test_failed_queries_yield_empty_result(self):
        gateway = FakeGateway(failing_queries={"q1"})
        result = await _worker(gateway).execute(_task("task-1", "q1"))

        assert result.documents == []
        assert result.confidence == 0.0
        assert result.summary == "No relevant documents found for battery costs"

    @pytest.mark.asyncio
    async def test_queries_run_in_batches(self):
        gateway = FakeGateway()
        await _worker(gateway, batch_size=2).execute(_task("task-1", "a", "b", "c", "d", "e"))
        assert [c["query"] for c in gateway.search_calls] == ["a", "b", "c", "d", "e"]


class FlakyWorker(ResearchWorker):
    async def execute(self, task, constraints=None):
        if task.id == "task-2":
            raise RuntimeError("worker crashed")
        return await super().execute(task, constraints)


class TestFanOut:
    @pytest.mark.asyncio
    async def test_results_in_task_order_and_failures_skipped(self):
        gateway = FakeGateway(
            {
                "q1": [make_doc("https://a.com/")],
                "q2": [make_doc("https://b.com/")],
                "q3": [make_doc("https://c.com/")],
            }
        )
        worker = FlakyWorker(gateway, batch_delay_seconds=0)
        tasks = [_task("task-1", "q1"), _task("task-2", "q2"), _task("task-3", "q3")]
        results = await run_workers(tasks, worker, max_parallel=2)

        assert [r.task_id for r in results] == ["task-1", "task-3"]
        assert [t.id for t in tasks] == ["task-1", "task-2", "task-3"]
