"""
Tests for sync orchestration, including the end-to-end thread scenario
"""
import pytest

from conftest import FakeLLM, FakeProvider
from job_timeline import pipeline_state, review
from job_timeline.classifier import EXTRACTION_PROMPT, RELEVANCE_PROMPT, StructuredClassifier
from job_timeline.errors import ClassifierError, ModelUnavailableError
from job_timeline.llm import API_KEY_ENV
from job_timeline.matcher import get_status_history, list_jobs
from job_timeline.models import DecisionAction, JobStatus, PipelineStage, SyncOptions
from job_timeline.sync import CancellationToken, recent_sync_runs, run_sync

ACCOUNT = "me@example.com"


def _acme_extraction(user_prompt):
    prompt = user_prompt.lower()
    if "unfortunately" in prompt:
        status = "rejected"
    elif "interview" in prompt:
        status = "interview"
    else:
        status = "applied"
    return {"company": "Acme Corp", "position": "Backend Engineer", "status": status}


@pytest.fixture
def acme_thread(make_message):
    return [
        make_message(
            "Application received - Backend Engineer",
            body="Thank you for applying to Acme Corp. We will review your application shortly.",
            day=1,
            thread_id="thread-1",
        ),
        make_message(
            "Re: Application received - Backend Engineer",
            body="We would like to invite you to interview next week. Please share your availability.",
            day=5,
            thread_id="thread-1",
        ),
        make_message(
            "Re: Application received - Backend Engineer",
            body="Unfortunately, we will not be moving forward with your candidacy.",
            day=20,
            thread_id="thread-1",
        ),
    ]


@pytest.mark.usefixtures("database")
class TestEndToEnd:
    """Full pipeline runs against a fake provider and model"""

    def test_thread_becomes_one_job(self, acme_thread, config):
        llm = FakeLLM(extraction=_acme_extraction)
        provider = FakeProvider(ACCOUNT, [list(reversed(acme_thread))])

        run = run_sync(SyncOptions(), [provider], StructuredClassifier(llm), config=config)

        assert run.status == "success"
        assert run.messages_fetched == 3
        assert run.messages_classified == 3
        assert run.jobs_found == 1

        (job,) = list_jobs(ACCOUNT)
        assert job.status == JobStatus.DECLINED
        assert job.company == "Acme Corp"
        assert len(job.email_history) == 3
        assert job.first_seen_date == acme_thread[0].received_at
        assert [c.status for c in get_status_history(job.id)] == [
            JobStatus.APPLIED,
            JobStatus.INTERVIEWED,
            JobStatus.DECLINED,
        ]

        for message in acme_thread:
            record = pipeline_state.get_record(ACCOUNT, message.provider_message_id)
            assert record.stage == PipelineStage.PROMOTED_TO_JOBS
            assert record.job_id == job.id
            assert record.decision == DecisionAction.JOB

    def test_thread_context_reaches_classifier(self, acme_thread, config):
        llm = FakeLLM(extraction=_acme_extraction)
        run_sync(SyncOptions(), [FakeProvider(ACCOUNT, [acme_thread])], StructuredClassifier(llm), config=config)

        prompts = llm.calls_for(RELEVANCE_PROMPT)
        assert "[This is email 1 of 3 in thread]" in prompts[0]
        assert "[This is email 3 of 3 in thread]" in prompts[2]
        assert "[Original subject: Application received - Backend Engineer]" in prompts[2]

    def test_rerun_is_noop(self, acme_thread, config):
        """Promoted records are never reprocessed"""
        llm = FakeLLM(extraction=_acme_extraction)
        classifier = StructuredClassifier(llm)
        provider = FakeProvider(ACCOUNT, [acme_thread])

        run_sync(SyncOptions(), [provider], classifier, config=config)
        calls_after_first = len(llm.calls)
        second = run_sync(SyncOptions(), [provider], classifier, config=config)

        assert len(llm.calls) == calls_after_first
        assert second.status == "success"
        assert second.messages_classified == 0
        (job,) = list_jobs(ACCOUNT)
        assert len(job.email_history) == 3

    def test_reset_and_rerun_keeps_single_history(self, acme_thread, config):
        llm = FakeLLM(extraction=_acme_extraction)
        classifier = StructuredClassifier(llm)
        provider = FakeProvider(ACCOUNT, [acme_thread])

        run_sync(SyncOptions(), [provider], classifier, config=config)
        assert pipeline_state.reset_stage(PipelineStage.ML_CLASSIFIED, ACCOUNT) == 3
        run_sync(SyncOptions(), [provider], classifier, config=config)

        (job,) = list_jobs(ACCOUNT)
        assert len(job.email_history) == 3
        assert job.status == JobStatus.DECLINED
        assert all(
            pipeline_state.get_record(ACCOUNT, m.provider_message_id).stage == PipelineStage.PROMOTED_TO_JOBS
            for m in acme_thread
        )

    def test_paginates(self, make_message, config):
        pages = [[make_message("Lunch?", from_address="sam@gmail.com")] for _ in range(3)]
        provider = FakeProvider(ACCOUNT, pages)
        llm = FakeLLM(relevance={"is_job": False, "confidence": 0.95})

        run = run_sync(SyncOptions(), [provider], StructuredClassifier(llm), config=config)

        assert provider.requests == [None, "1", "2"]
        assert run.messages_fetched == 3

    def test_max_messages_caps_fetch(self, make_message, config):
        pages = [[make_message(f"m{i}", from_address="sam@gmail.com") for i in range(5)]] * 2
        llm = FakeLLM(relevance={"is_job": False, "confidence": 0.95})

        run = run_sync(
            SyncOptions(max_messages=3), [FakeProvider(ACCOUNT, pages)], StructuredClassifier(llm), config=config
        )

        assert run.messages_fetched == 3


@pytest.mark.usefixtures("database")
class TestRouting:
    """Digest filtering and policy routing"""

    def test_digest_never_reaches_model(self, make_message, config):
        digest = make_message("10 new jobs for you", from_address="alerts@ziprecruiter.com")
        llm = FakeLLM()

        run_sync(SyncOptions(), [FakeProvider(ACCOUNT, [[digest]])], StructuredClassifier(llm), config=config)

        assert llm.calls == []
        record = pipeline_state.get_record(ACCOUNT, digest.provider_message_id)
        assert record.is_digest
        assert record.stage == PipelineStage.DIGEST_FILTERED
        assert record.is_terminal

    def test_confident_negative_discarded(self, make_message, config):
        message = make_message("Lunch?", body="Want to grab lunch?", from_address="sam@gmail.com")
        llm = FakeLLM(relevance={"is_job": False, "confidence": 0.95})

        run_sync(SyncOptions(), [FakeProvider(ACCOUNT, [[message]])], StructuredClassifier(llm), config=config)

        record = pipeline_state.get_record(ACCOUNT, message.provider_message_id)
        assert record.decision == DecisionAction.DISCARD
        assert record.stage == PipelineStage.ML_CLASSIFIED
        assert review.list_items() == []
        assert llm.calls_for(EXTRACTION_PROMPT) == []

    def test_uncertain_negative_queued_for_review(self, make_message, config):
        message = make_message("Quick question", body="Are you free to chat?", from_address="sam@gmail.com")
        llm = FakeLLM(relevance={"is_job": False, "confidence": 0.4})

        run_sync(SyncOptions(), [FakeProvider(ACCOUNT, [[message]])], StructuredClassifier(llm), config=config)

        (item,) = review.list_items()
        assert item.provider_message_id == message.provider_message_id
        assert item.retention_days == 30
        assert pipeline_state.get_record(ACCOUNT, message.provider_message_id).decision == DecisionAction.REVIEW

    def test_promotion_withdraws_pending_review_item(self, make_message, config):
        message = make_message(
            "Quick question", body="Are you free to chat about the Backend Engineer role?", from_address="sam@gmail.com"
        )
        provider = FakeProvider(ACCOUNT, [[message]])
        unsure = FakeLLM(relevance={"is_job": False, "confidence": 0.4})
        run_sync(SyncOptions(), [provider], StructuredClassifier(unsure), config=config)
        assert len(review.list_items()) == 1

        pipeline_state.reset_stage(PipelineStage.DIGEST_FILTERED, ACCOUNT)
        sure = FakeLLM(extraction={"company": "Acme Corp", "position": "Backend Engineer", "status": "applied"})
        run_sync(SyncOptions(), [provider], StructuredClassifier(sure), config=config)

        record = pipeline_state.get_record(ACCOUNT, message.provider_message_id)
        assert record.stage == PipelineStage.PROMOTED_TO_JOBS
        assert review.list_items() == []

    def test_sparse_extraction_queued_for_review(self, make_message, config):
        """An empty model extraction falls back to rules and scores too low to store"""
        message = make_message("Hello", body="Thanks for reaching out.", from_address="someone@gmail.com")
        llm = FakeLLM(extraction={"company": None, "position": None, "status": None})

        run_sync(SyncOptions(), [FakeProvider(ACCOUNT, [[message]])], StructuredClassifier(llm), config=config)

        record = pipeline_state.get_record(ACCOUNT, message.provider_message_id)
        assert record.extraction_method == "rules"
        assert record.decision == DecisionAction.REVIEW
        (item,) = review.list_items()
        assert item.retention_days == 30

    def test_empty_message_routed_to_review(self, make_message, config):
        message = make_message("", body="", from_address="someone@gmail.com")
        llm = FakeLLM()

        run_sync(SyncOptions(), [FakeProvider(ACCOUNT, [[message]])], StructuredClassifier(llm), config=config)

        assert llm.calls == []
        (item,) = review.list_items()
        assert item.confidence == 0.2
        assert item.retention_days == 30

    def test_unavailable_model_uses_rules(self, make_message, config):
        message = make_message(
            "Interview invitation: Senior Data Engineer",
            body="We'd like to schedule an interview for the Senior Data Engineer role.",
            from_address="Initech Recruiting <talent@initech.com>",
        )
        llm = FakeLLM(extraction=ModelUnavailableError("402"))

        run_sync(SyncOptions(), [FakeProvider(ACCOUNT, [[message]])], StructuredClassifier(llm), config=config)

        (job,) = list_jobs()
        assert job.company == "Initech"
        assert job.status == JobStatus.INTERVIEWED


@pytest.mark.usefixtures("database")
class TestFailures:
    """Retry, dead state and run-level errors"""

    def test_transient_failures_counted_until_dead(self, make_message, config):
        message = make_message("Application received", body="Thanks for applying")
        llm = FakeLLM(relevance=ClassifierError("timeout"))
        classifier = StructuredClassifier(llm)
        provider = FakeProvider(ACCOUNT, [[message]])

        run_sync(SyncOptions(), [provider], classifier, config=config)
        record = pipeline_state.get_record(ACCOUNT, message.provider_message_id)
        assert record.stage == PipelineStage.DIGEST_FILTERED
        assert record.attempts == 1
        assert not record.failed

        run_sync(SyncOptions(), [provider], classifier, config=config)
        run_sync(SyncOptions(), [provider], classifier, config=config)

        record = pipeline_state.get_record(ACCOUNT, message.provider_message_id)
        assert record.failed
        assert record.attempts == 3
        assert [r.provider_message_id for r in pipeline_state.list_failed()] == [message.provider_message_id]

        calls = len(llm.calls)
        run_sync(SyncOptions(), [provider], classifier, config=config)
        assert len(llm.calls) == calls

    def test_failure_does_not_block_other_messages(self, make_message, config):
        broken = make_message("Broken", body="first", day=0)
        fine = make_message("Application received", body="Thanks for applying", day=1)

        def relevance(prompt):
            return ClassifierError("timeout") if "first" in prompt else {"is_job": False, "confidence": 0.95}

        run_sync(
            SyncOptions(), [FakeProvider(ACCOUNT, [[broken, fine]])], StructuredClassifier(FakeLLM(relevance)),
            config=config,
        )

        assert pipeline_state.get_record(ACCOUNT, fine.provider_message_id).decision == DecisionAction.DISCARD

    def test_successful_calls_do_not_use_up_retries(self, make_message, config):
        """Stage 1 succeeds, then extraction gets the full max_attempts failures"""
        message = make_message("Application received", body="Thanks for applying")
        llm = FakeLLM(extraction=ClassifierError("timeout"))
        classifier = StructuredClassifier(llm)
        provider = FakeProvider(ACCOUNT, [[message]])

        for expected_failures in (1, 2):
            run_sync(SyncOptions(), [provider], classifier, config=config)
            record = pipeline_state.get_record(ACCOUNT, message.provider_message_id)
            assert record.failures == expected_failures
            assert not record.failed

        run_sync(SyncOptions(), [provider], classifier, config=config)

        record = pipeline_state.get_record(ACCOUNT, message.provider_message_id)
        assert record.failed
        assert record.failures == 3
        assert record.attempts == 4
        assert len(llm.calls_for(EXTRACTION_PROMPT)) == 3
        assert len(llm.calls_for(RELEVANCE_PROMPT)) == 1

    def test_unavailable_model_fails_run_without_charging_records(self, acme_thread, config):
        llm = FakeLLM(relevance=ModelUnavailableError("HTTP 401 invalid key"))
        classifier = StructuredClassifier(llm)
        provider = FakeProvider(ACCOUNT, [acme_thread])

        runs = [run_sync(SyncOptions(), [provider], classifier, config=config) for _ in range(3)]

        assert [r.status for r in runs] == ["failed", "failed", "failed"]
        assert all("401" in r.error for r in runs)
        assert len(llm.calls) == 3
        for message in acme_thread:
            record = pipeline_state.get_record(ACCOUNT, message.provider_message_id)
            assert record.attempts == 0
            assert record.failures == 0
            assert not record.failed
        assert len(pipeline_state.pending_records(ACCOUNT)) == 3
        assert recent_sync_runs()[0].status == "failed"

    def test_unavailable_model_stops_remaining_accounts(self, make_message, config):
        config.max_parallel_accounts = 1
        first = FakeProvider("a@example.com", [[make_message("Applied", account_id="a@example.com")]])
        second = FakeProvider("b@example.com", [[make_message("Applied", account_id="b@example.com")]])
        llm = FakeLLM(relevance=ModelUnavailableError("HTTP 402"))

        run = run_sync(SyncOptions(), [first, second], StructuredClassifier(llm), config=config)

        assert run.status == "failed"
        assert len(llm.calls) == 1
        assert second.requests == []

    def test_no_accounts_fails_run(self, config):
        run = run_sync(SyncOptions(), [], StructuredClassifier(FakeLLM()), config=config)
        assert run.status == "failed"
        assert "No accounts" in run.error
        assert recent_sync_runs()[0].status == "failed"

    def test_unknown_model_fails_run(self, make_message, config):
        message = make_message("Applied")
        run = run_sync(
            SyncOptions(model_id="someone/else"),
            [FakeProvider(ACCOUNT, [[message]])],
            StructuredClassifier(FakeLLM()),
            config=config,
        )
        assert run.status == "failed"
        assert pipeline_state.get_record(ACCOUNT, message.provider_message_id) is None

    def test_missing_api_key_fails_run(self, make_message, config, monkeypatch):
        monkeypatch.delenv(API_KEY_ENV, raising=False)
        run = run_sync(SyncOptions(), [FakeProvider(ACCOUNT, [[make_message("Applied")]])], config=config)
        assert run.status == "failed"
        assert API_KEY_ENV in run.error

    def test_provider_error_makes_run_partial(self, acme_thread, config):
        good = FakeProvider(ACCOUNT, [acme_thread])
        bad = FakeProvider("other@example.com", error="503 from provider")

        run = run_sync(
            SyncOptions(), [good, bad], StructuredClassifier(FakeLLM(extraction=_acme_extraction)), config=config
        )

        assert run.status == "partial"
        assert run.accounts_synced == 1
        assert "other@example.com" in run.error
        assert len(list_jobs(ACCOUNT)) == 1


@pytest.mark.usefixtures("database")
class TestControl:
    """Cancellation, progress and the run log"""

    def test_cancelled_before_start(self, acme_thread, config):
        token = CancellationToken()
        token.cancel()
        llm = FakeLLM()

        run = run_sync(
            SyncOptions(), [FakeProvider(ACCOUNT, [acme_thread])], StructuredClassifier(llm),
            cancel_token=token, config=config,
        )

        assert run.status == "cancelled"
        assert llm.calls == []
        assert list_jobs() == []

    def test_cancel_mid_run_leaves_rest_resumable(self, acme_thread, config):
        token = CancellationToken()

        def cancel_after_first(event):
            if event.phase == "saving":
                token.cancel()

        llm = FakeLLM(extraction=_acme_extraction)
        provider = FakeProvider(ACCOUNT, [acme_thread])
        run = run_sync(
            SyncOptions(), [provider], StructuredClassifier(llm),
            cancel_token=token, progress=cancel_after_first, config=config,
        )

        assert run.status == "cancelled"
        assert len(pipeline_state.pending_records(ACCOUNT)) == 2

        run_sync(SyncOptions(), [provider], StructuredClassifier(llm), config=config)
        (job,) = list_jobs(ACCOUNT)
        assert len(job.email_history) == 3

    def test_time_budget_stops_account(self, acme_thread, config):
        """Messages left unprocessed when the budget runs out stay pending"""
        for message in acme_thread:
            pipeline_state.ingest(message)
        config.account_time_budget_seconds = 1e-9
        llm = FakeLLM(extraction=_acme_extraction)

        run = run_sync(SyncOptions(), [FakeProvider(ACCOUNT)], StructuredClassifier(llm), config=config)

        assert run.status == "success"
        assert llm.calls == []
        assert len(pipeline_state.pending_records(ACCOUNT)) == 3

    def test_progress_events(self, acme_thread, config):
        events = []
        run_sync(
            SyncOptions(), [FakeProvider(ACCOUNT, [acme_thread])],
            StructuredClassifier(FakeLLM(extraction=_acme_extraction)),
            progress=events.append, config=config,
        )

        phases = [e.phase for e in events]
        assert phases[0] == "fetching"
        assert phases[-1] == "complete"
        assert "classifying" in phases
        assert phases.count("saving") == 3
        assert all(e.account_id == ACCOUNT for e in events)

    def test_runs_are_logged(self, acme_thread, config):
        run = run_sync(
            SyncOptions(), [FakeProvider(ACCOUNT, [acme_thread])],
            StructuredClassifier(FakeLLM(extraction=_acme_extraction)), config=config,
        )

        (logged,) = recent_sync_runs()
        assert logged.id == run.id
        assert logged.status == "success"
        assert logged.jobs_found == 1
        assert logged.duration_seconds >= 0

    def test_accounts_run_independently(self, make_message, config):
        a = FakeProvider("a@example.com", [[make_message("Applied", thread_id="t", account_id="a@example.com")]])
        b = FakeProvider("b@example.com", [[make_message("Applied", thread_id="t", account_id="b@example.com")]])
        llm = FakeLLM(extraction={"company": "Acme", "position": "Engineer", "status": "applied"})

        run = run_sync(SyncOptions(), [a, b], StructuredClassifier(llm), config=config)

        assert run.accounts_synced == 2
        assert run.jobs_found == 2
        assert len(list_jobs("a@example.com")) == 1
        assert len(list_jobs("b@example.com")) == 1
