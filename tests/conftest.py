"""
Shared fixtures: a throwaway SQLite database, an in-memory config, a scripted
LLM and a fake mailbox provider.
"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from job_timeline import config as config_module
from job_timeline import db
from job_timeline.classifier import EXTRACTION_PROMPT, RELEVANCE_PROMPT, SAME_JOB_PROMPT
from job_timeline.config import Config
from job_timeline.errors import ProviderError
from job_timeline.llm import LLMClient
from job_timeline.models import MessagePage, RawMessage

BASE_TIME = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeLLM(LLMClient):
    """LLMClient that answers from scripted handlers instead of the network.

    Each handler is a reply (dict, list or raw string), an exception instance
    to raise, or a callable taking the user prompt and returning one of those.
    """

    def __init__(self, relevance=None, extraction=None, same_job=None, model_id="test/model"):
        super().__init__(model_id=model_id, api_key="test-key")
        self.handlers = {
            RELEVANCE_PROMPT: relevance if relevance is not None else {"is_job": True, "confidence": 0.95},
            EXTRACTION_PROMPT: extraction if extraction is not None else {
                "company": None, "position": None, "status": None,
            },
            SAME_JOB_PROMPT: same_job if same_job is not None else {"same_job": False},
        }
        self.calls = []

    def calls_for(self, system_prompt):
        return [user for system, user in self.calls if system == system_prompt]

    def complete(self, system_prompt, user_prompt, max_tokens=150):
        self.calls.append((system_prompt, user_prompt))
        reply = self.handlers[system_prompt]
        if callable(reply):
            reply = reply(user_prompt)
        if isinstance(reply, Exception):
            raise reply
        return reply if isinstance(reply, str) else json.dumps(reply)


class FakeProvider:
    """Mailbox provider serving pre-built pages of messages."""

    def __init__(self, account_id, pages=None, error=None):
        self.account_id = account_id
        self.pages = pages or [[]]
        self.error = error
        self.requests = []

    def fetch_page(self, since, page_token=None):
        self.requests.append(page_token)
        if self.error is not None:
            raise ProviderError(self.error)
        index = int(page_token or 0)
        next_token = str(index + 1) if index + 1 < len(self.pages) else None
        return MessagePage(messages=self.pages[index], next_page_token=next_token)


@pytest.fixture
def config(monkeypatch):
    """Default configuration installed as the global config."""
    cfg = Config(allowed_models=["test/model"], model_id="test/model", max_parallel_accounts=2)
    monkeypatch.setattr(config_module, "_config", cfg)
    return cfg


@pytest.fixture
def database(tmp_path, monkeypatch, config):
    """Fresh, fully migrated database in a temp directory."""
    monkeypatch.setattr(db, "_db_path", None)
    path = tmp_path / "jobs.sqlite"
    db.init_db(path)
    return path


@pytest.fixture
def make_message():
    """Factory for RawMessage objects dated relative to BASE_TIME."""
    counter = {"n": 0}

    def _make(
        subject="",
        body="",
        from_address="Acme Careers <jobs@acme.com>",
        day=0,
        thread_id=None,
        account_id="me@example.com",
        message_id=None,
    ):
        counter["n"] += 1
        return RawMessage(
            account_id=account_id,
            provider_message_id=message_id or f"msg-{counter['n']}",
            thread_id=thread_id,
            subject=subject,
            from_address=from_address,
            received_at=BASE_TIME + timedelta(days=day),
            body_text=body,
        )

    return _make
