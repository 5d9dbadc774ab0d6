"""
Tests for the MedEvidence task runner and Celery worker
"""

import asyncio
from dataclasses import replace

import pytest

from medevidence.db.store import StoredResult
from medevidence.literature.cache import LiteratureCache, MemoryCacheBackend
from medevidence.llm.schemas import SynthesisOutput, TranslationOutput
from medevidence.models import AnswerOutcome, SearchQuery, TaskStatus
from medevidence.observability.metrics import get_metric
from medevidence.pipelines.evidence import EvidencePipeline
from medevidence.pipelines.synthesizer import AnswerSynthesizer
from medevidence.pipelines.translator import QueryTranslator
from medevidence.worker import (
    TaskRunner,
    _job_store,
    celery_app,
    run_search_pipeline,
)


@pytest.fixture
def fake_pipeline(mocker, sample_answer):
    """Pipeline stand-in that echoes the task id into a canned answer."""
    pipeline = mocker.Mock()

    async def run(task_id, query, context=None):
        return replace(sample_answer, task_id=task_id, query=query.query)

    pipeline.run = mocker.AsyncMock(side_effect=run)
    return pipeline


@pytest.fixture
def runner(memory_store, fake_pipeline) -> TaskRunner:
    return TaskRunner(store=memory_store, pipeline=fake_pipeline, backend="inline")


class TestCeleryConfig:
    @pytest.mark.unit
    def test_celery_app_configured(self):
        assert celery_app.main == "medevidence"
        assert celery_app.conf.task_serializer == "json"
        assert celery_app.conf.task_acks_late is True

    @pytest.mark.unit
    def test_task_registered(self):
        assert "run_search_pipeline" in celery_app.tasks


class TestSubmit:
    """Tests for TaskRunner.submit()."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_placeholder_exists_before_execution(self, runner, memory_store, mocker):
        mocker.patch.object(runner, "execute", new=mocker.AsyncMock())

        task_id = await runner.submit(SearchQuery(query="糖尿病の治療"), user_id="u1")

        record = await memory_store.get_result(task_id)
        assert record.status is TaskStatus.RUNNING
        assert record.user_id == "u1"
        assert _job_store[task_id] == {"status": "running"}
        await runner.drain()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_inline_run_completes(self, runner, memory_store):
        task_id = await runner.submit(SearchQuery(query="糖尿病の治療"))
        await runner.drain()

        record = await memory_store.get_result(task_id)
        assert record.status is TaskStatus.COMPLETED
        assert record.answer.task_id == task_id
        assert (await runner.get_status(task_id)).status is TaskStatus.COMPLETED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_task_ids_are_unique(self, runner):
        ids = {await runner.submit(SearchQuery(query=f"q{i}")) for i in range(5)}
        await runner.drain()
        assert len(ids) == 5

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_celery_backend_dispatches_task(self, memory_store, fake_pipeline, mocker):
        apply_async = mocker.patch.object(run_search_pipeline, "apply_async")
        runner = TaskRunner(store=memory_store, pipeline=fake_pipeline, backend="celery")

        task_id = await runner.submit(SearchQuery(query="heart failure", literature_only=True))

        apply_async.assert_called_once()
        kwargs = apply_async.call_args.kwargs
        assert kwargs["task_id"] == task_id
        assert kwargs["args"][0] == task_id
        assert kwargs["args"][1]["query"] == "heart failure"
        assert kwargs["args"][1]["literature_only"] is True
        fake_pipeline.run.assert_not_called()


class TestExecute:
    """Tests for TaskRunner.execute()."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pipeline_error_marks_failed(self, runner, memory_store, fake_pipeline):
        fake_pipeline.run.side_effect = RuntimeError("pipeline exploded")
        await memory_store.create_result_placeholder("task-1", "q")

        await runner.execute("task-1", SearchQuery(query="q"))

        record = await memory_store.get_result("task-1")
        assert record.status is TaskStatus.FAILED
        assert record.error == "RuntimeError: pipeline exploded"
        assert get_metric("tasks_failed_total") == 1

        status = await runner.get_status("task-1")
        assert status.to_dict() == {
            "task_id": "task-1",
            "status": "failed",
            "error": "RuntimeError: pipeline exploded",
        }

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_update_failure_falls_back_to_create(self, runner, memory_store, mocker):
        mocker.patch.object(memory_store, "update_result", side_effect=RuntimeError("db down"))
        create = mocker.spy(memory_store, "create_result")

        await runner.execute("task-1", SearchQuery(query="q", previous_query_id="task-0"))

        create.assert_called_once()
        record = await memory_store.get_result("task-1")
        assert record.status is TaskStatus.COMPLETED
        assert record.previous_query_id == "task-0"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unpersistable_completion_reported_failed(self, runner, memory_store, mocker):
        mocker.patch.object(memory_store, "update_result", side_effect=RuntimeError("db down"))
        mocker.patch.object(memory_store, "create_result", side_effect=RuntimeError("db down"))

        await runner.execute("task-1", SearchQuery(query="q"))

        assert _job_store["task-1"] == {"status": "failed", "error": "RuntimeError: db down"}
        assert get_metric("tasks_failed_total") == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_follow_up_loads_conversation(self, runner, memory_store, fake_pipeline, sample_answer):
        await memory_store.create_result(
            StoredResult(
                task_id="task-0",
                query="メトホルミンの作用機序",
                status=TaskStatus.COMPLETED,
                answer=sample_answer,
            )
        )
        await memory_store.create_result_placeholder("task-1", "副作用は？", previous_query_id="task-0")

        await runner.execute("task-1", SearchQuery(query="副作用は？", previous_query_id="task-0"))

        context = fake_pipeline.run.call_args.args[2]
        assert context.previous_queries == ["メトホルミンの作用機序"]


class TestPolling:
    """Tests for get_status() and get_result()."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_task_status_is_none(self, runner):
        assert await runner.get_status("nope") is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_status_read_from_store(self, runner, memory_store):
        await memory_store.create_result_placeholder("task-1", "q")
        await memory_store.update_result("task-1", status=TaskStatus.FAILED, error="boom")

        status = await runner.get_status("task-1")

        assert status.status is TaskStatus.FAILED
        assert status.error == "boom"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_running_job_without_record(self, runner):
        _job_store["task-1"] = {"status": "running"}
        assert (await runner.get_status("task-1")).status is TaskStatus.RUNNING

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_terminal_job_entry_wins(self, runner, memory_store):
        await memory_store.create_result_placeholder("task-1", "q")
        _job_store["task-1"] = {"status": "completed"}
        assert (await runner.get_status("task-1")).status is TaskStatus.COMPLETED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_result_none_while_running(self, runner, memory_store):
        await memory_store.create_result_placeholder("task-1", "q")
        assert await runner.get_result("task-1") is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_result_after_completion(self, runner):
        task_id = await runner.submit(SearchQuery(query="q"))
        await runner.drain()

        answer = await runner.get_result(task_id)
        assert answer.task_id == task_id

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_repeated_result_reads_are_identical(self, runner, memory_store):
        task_id = await runner.submit(SearchQuery(query="q"), user_id="clinician-1")
        await runner.drain()

        first = await runner.get_result(task_id, user_id="clinician-1")
        second = await runner.get_result(task_id, user_id="clinician-1")

        assert first.to_dict() == second.to_dict()
        assert len(memory_store) == 1
        assert get_metric("result_recoveries_total") == 0


LOST_TASK_ID = "3f1c2a9e-5b7d-4e2a-9c1f-8d6e4b2a7c10"


async def _store_completed(store, sample_answer, task_id="task-original", user_id="clinician-1"):
    await store.create_result(
        StoredResult(
            task_id=task_id,
            query="q",
            status=TaskStatus.COMPLETED,
            answer=sample_answer,
            user_id=user_id,
        )
    )


class TestResultRecovery:
    """Tests for the recent-result recovery heuristic."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_id_adopts_callers_recent_result(self, runner, memory_store, sample_answer):
        await _store_completed(memory_store, sample_answer)

        answer = await runner.get_result(LOST_TASK_ID, user_id="clinician-1")

        assert answer.task_id == LOST_TASK_ID
        assert answer.text == sample_answer.text
        assert get_metric("result_recoveries_total") == 1
        copied = await memory_store.get_result(LOST_TASK_ID)
        assert copied.status is TaskStatus.COMPLETED
        assert copied.user_id == "clinician-1"
        assert _job_store[LOST_TASK_ID] == {"status": "completed"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_anonymous_caller_gets_nothing(self, runner, memory_store, sample_answer):
        await _store_completed(memory_store, sample_answer)

        assert await runner.get_result(LOST_TASK_ID) is None
        assert await runner.get_status(LOST_TASK_ID) is None
        assert get_metric("result_recoveries_total") == 0
        assert len(memory_store) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_other_users_results_never_adopted(self, runner, memory_store, sample_answer):
        await _store_completed(memory_store, sample_answer, user_id="clinician-1")

        assert await runner.get_result(LOST_TASK_ID, user_id="clinician-2") is None
        assert await memory_store.get_result(LOST_TASK_ID) is None
        assert get_metric("result_recoveries_total") == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_only_minted_ids_are_recovered(self, runner, memory_store, sample_answer):
        await _store_completed(memory_store, sample_answer)

        for guess in ("random-0", "random-1", LOST_TASK_ID.upper()):
            assert await runner.get_result(guess, user_id="clinician-1") is None
        assert len(memory_store) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_status_agrees_with_result(self, runner, memory_store, sample_answer):
        await _store_completed(memory_store, sample_answer)

        status = await runner.get_status(LOST_TASK_ID, user_id="clinician-1")
        answer = await runner.get_result(LOST_TASK_ID, user_id="clinician-1")

        assert status.status is TaskStatus.COMPLETED
        assert answer.task_id == LOST_TASK_ID
        assert get_metric("result_recoveries_total") == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_recovery_fires_once_per_id(self, runner, memory_store, sample_answer):
        await _store_completed(memory_store, sample_answer)

        first = await runner.get_result(LOST_TASK_ID, user_id="clinician-1")
        second = await runner.get_result(LOST_TASK_ID, user_id="clinician-1")

        assert get_metric("result_recoveries_total") == 1
        assert second.to_dict() == first.to_dict()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_disabled_recovery_returns_none(self, memory_store, fake_pipeline, sample_answer):
        await _store_completed(memory_store, sample_answer)
        runner = TaskRunner(store=memory_store, pipeline=fake_pipeline, recovery_enabled=False)

        assert await runner.get_result(LOST_TASK_ID, user_id="clinician-1") is None
        assert get_metric("result_recoveries_total") == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_nothing_recent_returns_none(self, runner):
        assert await runner.get_result(LOST_TASK_ID, user_id="clinician-1") is None
        assert get_metric("result_recoveries_total") == 0


class TestPipelineThroughRunner:
    """Evidence pipeline runs driven by the task runner."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_discovery_timeouts_complete_with_upstream_note(
        self, memory_store, make_pubmed_stub, make_literature_client, mocker
    ):
        stub = make_pubmed_stub(pmids=["101"], fail_esearch=4)

        async def complete(system_prompt, messages, response_model):
            if response_model is TranslationOutput:
                return TranslationOutput(translated_query="diabetes treatment")
            return SynthesisOutput(answer="unused")

        llm = mocker.Mock()
        llm.complete = mocker.AsyncMock(side_effect=complete)
        pipeline = EvidencePipeline(
            literature_client=make_literature_client(stub),
            translator=QueryTranslator(llm),
            synthesizer=AnswerSynthesizer(llm),
        )
        runner = TaskRunner(store=memory_store, pipeline=pipeline, backend="inline")

        task_id = await runner.submit(SearchQuery(query="糖尿病の治療", literature_only=True))
        await runner.drain()

        assert (await runner.get_status(task_id)).status is TaskStatus.COMPLETED
        answer = await runner.get_result(task_id)
        assert answer.outcome is AnswerOutcome.NO_EVIDENCE_FOUND
        assert answer.upstream_unavailable is True
        assert answer.text.strip()
        assert stub.count("esearch.fcgi") == 4
        assert get_metric("tasks_failed_total") == 0


class LoopBoundBackend(MemoryCacheBackend):
    """Memory backend that, like a pooled network client, is tied to one event loop until closed."""

    def __init__(self) -> None:
        super().__init__()
        self.loop: asyncio.AbstractEventLoop | None = None
        self.closes = 0

    async def get(self, key):
        loop = asyncio.get_running_loop()
        if self.loop is None:
            self.loop = loop
        elif self.loop is not loop:
            raise RuntimeError("client is bound to a different event loop")
        return await super().get(key)

    async def close(self) -> None:
        self.loop = None
        self.closes += 1


class TestRunSearchPipelineTask:
    """Tests for the run_search_pipeline Celery task."""

    @pytest.mark.unit
    def test_task_executes_through_runner(self, memory_store, fake_pipeline, mocker):
        runner = TaskRunner(store=memory_store, pipeline=fake_pipeline)
        mocker.patch("medevidence.worker.get_task_runner", return_value=runner)

        result = run_search_pipeline.run("task-1", {"query": "heart failure"})

        assert result == {"task_id": "task-1", "status": "completed"}
        query = fake_pipeline.run.call_args.args[1]
        assert query.query == "heart failure"

    @pytest.mark.unit
    def test_successive_tasks_reopen_loop_bound_clients(self, memory_store, sample_answer, mocker):
        cache = LiteratureCache(backend=LoopBoundBackend())
        mocker.patch("medevidence.worker.get_literature_cache", return_value=cache)
        close_db = mocker.patch("medevidence.worker.close_db", new=mocker.AsyncMock())

        async def run(task_id, query, context=None):
            await cache.get_search(query.query, 1, 3)
            return replace(sample_answer, task_id=task_id, query=query.query)

        pipeline = mocker.Mock()
        pipeline.run = mocker.AsyncMock(side_effect=run)
        runner = TaskRunner(store=memory_store, pipeline=pipeline)
        mocker.patch("medevidence.worker.get_task_runner", return_value=runner)

        first = run_search_pipeline.run("task-1", {"query": "heart failure"})
        second = run_search_pipeline.run("task-2", {"query": "heart failure"})

        assert first == {"task_id": "task-1", "status": "completed"}
        assert second == {"task_id": "task-2", "status": "completed"}
        assert cache.backend.closes == 2
        assert close_db.await_count == 2

    @pytest.mark.unit
    def test_clients_released_when_task_raises(self, mocker):
        runner = mocker.Mock()
        runner.execute = mocker.AsyncMock(side_effect=RuntimeError("db down"))
        mocker.patch("medevidence.worker.get_task_runner", return_value=runner)
        release = mocker.patch("medevidence.worker.release_loop_clients", new=mocker.AsyncMock())

        with pytest.raises(RuntimeError):
            run_search_pipeline.run("task-1", {"query": "heart failure"})

        release.assert_awaited_once()
