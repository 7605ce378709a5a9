"""Tests for the request gateway."""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
import time
from unittest.mock import patch

import pytest

from echovault.config import get_models
from echovault.escalation import EscalationPolicy
from echovault.gateway import (
    CHAT_MAX_INPUT_CHARS,
    CHAT_MAX_TOKENS,
    DEFAULT_SYSTEM_PROMPT,
    Gateway,
    GatewayState,
    GatewayTask,
    fingerprint,
    parse_confidence,
)
from echovault.governor import CostGovernor
from echovault.metrics import MetricsCollector
from echovault.providers import MockProvider, RemoteCallError
from echovault.schemas import TaskType
from echovault.storage import CacheStoreError, InMemoryStorage
from echovault.text import estimate_tokens
from echovault.validation import ValidationError


LOW = '{"answer": "maybe", "confidence": 0.3}'
HIGH = '{"answer": "Demain à 10h", "confidence": 0.9}'


def _chat(text="Quand est la réunion ?", **extra):
    return {"task": {"type": "chat", "input": text, **extra}}


class SlowProvider(MockProvider):
    """Holds each chat call open long enough for other requests to race it."""

    def complete(self, *args, **kwargs):
        time.sleep(0.2)
        return super().complete(*args, **kwargs)


class TestGatewayChat:
    """Test chat tasks end to end against a scripted provider."""

    def setup_method(self):
        """Set up test fixtures."""
        self.models = get_models()
        self.storage = InMemoryStorage()
        self.governor = CostGovernor(self.storage, default_daily_limit_usd=0.50)
        self.provider = MockProvider([HIGH])
        self.metrics = MetricsCollector(enable_logging=False)
        self.gateway = Gateway(self.provider, self.governor, metrics=self.metrics)

    def test_single_chat(self):
        """A fresh request calls the cheap model and records spend."""
        response = self.gateway.handle(_chat(), user_id="user_1")

        assert response["ok"] is True
        assert response["model"] == self.models["cheap"]
        assert response["cache_hit"] is False
        assert response["escalated"] is False
        assert response["data"]["confidence"] == pytest.approx(0.9)
        assert response["cost_usd"] > 0
        assert self.governor.get_ledger("user_1").spent_usd == pytest.approx(response["cost_usd"])

        audit = self.storage.list_audit("user_1")
        assert [e.outcome for e in audit] == ["ok"]

    def test_state_path(self):
        """A miss walks the full call path; a repeat walks the hit path."""
        task = GatewayTask(type=TaskType.CHAT, input="Quand est la réunion ?")
        first = self.gateway.process(task, "user_1")
        second = self.gateway.process(task, "user_1")

        assert first.states == [
            GatewayState.RECEIVED,
            GatewayState.FINGERPRINTED,
            GatewayState.CACHE_MISS,
            GatewayState.BUDGET_CHECKED,
            GatewayState.MODEL_SELECTED,
            GatewayState.CALLED,
            GatewayState.CACHED,
            GatewayState.LOGGED,
            GatewayState.DONE,
        ]
        assert second.states == [
            GatewayState.RECEIVED,
            GatewayState.FINGERPRINTED,
            GatewayState.CACHE_HIT,
            GatewayState.LOGGED_HIT,
            GatewayState.DONE,
        ]

    def test_repeat_is_free_cache_hit(self):
        """The same fingerprint is served from cache at zero cost."""
        first = self.gateway.handle(_chat(), user_id="user_1")
        spent = self.governor.get_ledger("user_1").spent_usd

        second = self.gateway.handle(_chat("Quand   est la réunion ?  "), user_id="user_1")

        assert second["cache_hit"] is True
        assert second["cost_usd"] == 0.0
        assert second["data"] == first["data"]
        assert second["fingerprint"] == first["fingerprint"]
        assert len(self.provider.chat_calls) == 1
        assert self.governor.get_ledger("user_1").spent_usd == pytest.approx(spent)

        audit = self.storage.list_audit("user_1")
        assert [e.outcome for e in audit] == ["ok", "cache_hit"]
        assert audit[1].cost_usd == 0.0

    def test_cache_is_per_user(self):
        """Another user's identical request is a miss."""
        self.gateway.handle(_chat(), user_id="user_1")
        response = self.gateway.handle(_chat(), user_id="user_2")

        assert response["cache_hit"] is False
        assert len(self.provider.chat_calls) == 2

    def test_cache_can_be_skipped(self):
        """use_cache=false neither reads nor writes the cache."""
        self.gateway.handle(_chat(use_cache=False), user_id="user_1")
        response = self.gateway.handle(_chat(use_cache=False), user_id="user_1")

        assert response["cache_hit"] is False
        assert len(self.provider.chat_calls) == 2

    def test_params_reach_provider(self):
        """Temperature and max_tokens are forwarded and fingerprinted."""
        self.gateway.handle(_chat(params={"temperature": 0.7, "max_tokens": 100}), user_id="user_1")
        call = self.provider.chat_calls[0]

        assert call["temperature"] == 0.7
        assert call["max_tokens"] == 100
        response = self.gateway.handle(_chat(), user_id="user_1")
        assert response["cache_hit"] is False

    def test_long_input_is_compressed(self):
        """Oversized prompts are cut before they are sent."""
        self.gateway.handle(_chat("mot " * 3000), user_id="user_1")
        assert len(self.provider.chat_calls[0]["user_prompt"]) <= CHAT_MAX_INPUT_CHARS + 5

    def test_budget_denial(self):
        """Over-budget chat returns an error with no provider call."""
        self.governor.set_daily_limit("user_1", 0.0)

        response = self.gateway.handle(_chat(), user_id="user_1")

        assert response["ok"] is False
        assert response["error"] == "budget_exceeded"
        assert response["suggested_action"] == "deny"
        assert self.provider.calls == []
        assert [e.outcome for e in self.storage.list_audit("user_1")] == ["denied"]

    def test_low_priority_is_deferred(self):
        """Low-priority work over budget is deferred."""
        self.governor.set_daily_limit("user_1", 0.0)
        response = self.gateway.handle(_chat(priority="low"), user_id="user_1")
        assert response["suggested_action"] == "defer"

    def test_spend_never_exceeds_limit(self):
        """Sequential requests stop once the daily limit is reached."""
        limit = 0.001
        self.governor.set_daily_limit("user_1", limit)

        outcomes = [
            self.gateway.handle(_chat(f"question numéro {i}"), user_id="user_1")["ok"]
            for i in range(40)
        ]

        assert False in outcomes
        assert self.governor.get_ledger("user_1").spent_usd <= limit

    def test_concurrent_requests_cannot_overspend(self):
        """Parallel requests each hold their estimate, so only one fits a tight limit."""
        provider = SlowProvider([HIGH])
        gateway = Gateway(provider, self.governor)
        prompts = [f"question numéro {i}" for i in range(4)]
        estimate = self.governor.estimate_cost(
            self.models["cheap"], estimate_tokens(DEFAULT_SYSTEM_PROMPT + prompts[0]), CHAT_MAX_TOKENS,
        )
        limit = estimate * 1.5
        self.governor.set_daily_limit("user_1", limit)

        with ThreadPoolExecutor(max_workers=4) as pool:
            responses = list(pool.map(lambda p: gateway.handle(_chat(p), user_id="user_1"), prompts))

        assert [r["ok"] for r in responses].count(True) == 1
        assert len(provider.chat_calls) == 1
        ledger = self.governor.get_ledger("user_1")
        assert ledger.spent_usd <= limit
        assert ledger.reserved_usd == 0.0

    def test_cache_hit_returns_a_copy(self):
        """Mutating a response never changes what later cache hits return."""
        first = self.gateway.handle(_chat(), user_id="user_1")
        first["data"]["confidence"] = 0.0
        first["data"]["content"] = "modifié"

        second = self.gateway.handle(_chat(), user_id="user_1")
        second["data"]["confidence"] = 0.0

        third = self.gateway.handle(_chat(), user_id="user_1")
        assert second["cache_hit"] is True
        assert third["cache_hit"] is True
        assert third["data"]["content"] == HIGH
        assert third["data"]["confidence"] == pytest.approx(0.9)

    def test_metrics(self):
        """Requests, hits, and calls are counted."""
        self.gateway.handle(_chat(), user_id="user_1")
        self.gateway.handle(_chat(), user_id="user_1")

        stats = self.metrics.get_stats()
        assert stats["counters"]["requests_total"] == 2
        assert stats["counters"]["cache_hits"] == 1
        assert stats["counters"]["calls_total"] == 1
        assert stats["cache_hit_rate"] == pytest.approx(0.5)

    def test_remaining_budget_gauge(self):
        """Each completion publishes the user's remaining budget."""
        response = self.gateway.handle(_chat(), user_id="user_1")

        gauges = self.metrics.get_stats()["gauges"]
        assert gauges["remaining_usd_user_1"] == pytest.approx(0.50 - response["cost_usd"])

    def test_purge_expired_cache(self):
        """Expired cache rows are purged using the gateway clock."""
        now = [datetime(2026, 3, 1, tzinfo=timezone.utc)]
        gateway = Gateway(self.provider, self.governor, clock=lambda: now[0])
        gateway.handle(_chat(), user_id="user_1")

        assert gateway.purge_expired_cache() == 0
        now[0] += timedelta(days=8)
        assert gateway.purge_expired_cache() == 1


class TestGatewayEscalation:
    """Test confidence-triggered escalation."""

    def setup_method(self):
        """Set up test fixtures."""
        self.models = get_models()
        self.storage = InMemoryStorage()
        self.governor = CostGovernor(self.storage, default_daily_limit_usd=0.50)

    def test_low_confidence_escalates_once(self):
        """A weak cheap answer is retried on the strong model."""
        provider = MockProvider([LOW, HIGH])
        gateway = Gateway(provider, self.governor)

        response = gateway.handle(_chat(), user_id="user_1")

        assert response["escalated"] is True
        assert response["model"] == self.models["strong"]
        assert [c["model"] for c in provider.chat_calls] == [self.models["cheap"], self.models["strong"]]
        assert self.governor.get_ledger("user_1").spent_usd == pytest.approx(response["cost_usd"])
        assert self.storage.list_audit("user_1")[0].escalated is True

    def test_attempts_are_bounded(self):
        """A still-weak escalated answer is returned as is."""
        provider = MockProvider([LOW])
        gateway = Gateway(provider, self.governor)

        response = gateway.handle(_chat(), user_id="user_1")

        assert response["ok"] is True
        assert len(provider.chat_calls) == 2
        assert response["data"]["confidence"] == pytest.approx(0.3)

    def test_escalation_can_be_disabled_per_task(self):
        """route_large_on_low_conf=false keeps the first answer."""
        provider = MockProvider([LOW])
        gateway = Gateway(provider, self.governor)

        response = gateway.handle(_chat(route_large_on_low_conf=False), user_id="user_1")

        assert response["escalated"] is False
        assert len(provider.chat_calls) == 1

    def test_cost_ceiling_blocks_escalation(self):
        """A policy ceiling below the strong model's price blocks the retry."""
        provider = MockProvider([LOW])
        gateway = Gateway(provider, self.governor, policy=EscalationPolicy(cost_ceiling_usd=0.0))

        gateway.handle(_chat(), user_id="user_1")
        assert len(provider.chat_calls) == 1

    def test_budget_blocks_escalation(self):
        """The first call fits the limit but the strong retry does not."""
        self.governor.set_daily_limit("user_1", 0.001)
        provider = MockProvider([LOW, HIGH])
        gateway = Gateway(provider, self.governor)

        response = gateway.handle(_chat(), user_id="user_1")

        assert response["ok"] is True
        assert response["escalated"] is False
        assert len(provider.chat_calls) == 1
        assert self.governor.get_ledger("user_1").spent_usd <= 0.001

    def test_failed_escalation_keeps_first_answer(self):
        """A failing strong model does not lose the cheap answer."""
        provider = MockProvider([LOW], failures={self.models["strong"]: "overloaded"})
        gateway = Gateway(provider, self.governor)

        response = gateway.handle(_chat(), user_id="user_1")

        assert response["ok"] is True
        assert response["model"] == self.models["cheap"]
        assert response["escalated"] is False
        assert self.governor.get_ledger("user_1").reserved_usd == 0.0


class TestGatewayFailures:
    """Test error paths."""

    def setup_method(self):
        """Set up test fixtures."""
        self.storage = InMemoryStorage()
        self.governor = CostGovernor(self.storage)

    def test_remote_failure_propagates(self):
        """A failed call raises and leaves an error audit row."""
        provider = MockProvider(failures={get_models()["cheap"]: "boom"})
        gateway = Gateway(provider, self.governor)

        with pytest.raises(RemoteCallError, match="boom"):
            gateway.handle(_chat(), user_id="user_1")

        assert [e.outcome for e in self.storage.list_audit("user_1")] == ["error"]
        assert self.governor.get_ledger("user_1").spent_usd == 0.0

    def test_remote_failure_releases_held_budget(self):
        """A failed call gives its reservation back to the user."""
        provider = MockProvider(failures={get_models()["cheap"]: "boom"})
        gateway = Gateway(provider, self.governor)
        limit = self.governor.get_ledger("user_1").daily_limit_usd

        for _ in range(3):
            with pytest.raises(RemoteCallError):
                gateway.handle(_chat(), user_id="user_1")

        ledger = self.governor.get_ledger("user_1")
        assert ledger.reserved_usd == 0.0
        assert ledger.remaining_usd == pytest.approx(limit)

    def test_cache_read_failure_is_a_miss(self):
        """A broken cache read falls through to a normal call."""
        provider = MockProvider([HIGH])
        gateway = Gateway(provider, self.governor)

        with patch.object(self.storage, "get_cache", side_effect=CacheStoreError("locked")):
            response = gateway.handle(_chat(), user_id="user_1")

        assert response["ok"] is True
        assert response["cache_hit"] is False
        assert len(provider.chat_calls) == 1

    @pytest.mark.parametrize("payload", [
        {},
        {"tasks": []},
        {"task": {"type": "image", "input": "x"}},
        {"task": {"type": "chat"}},
        {"task": {"type": "embed", "input": [1, 2]}},
        {"task": {"type": "chat", "input": "x", "priority": "urgent"}},
        {"tasks": [{"type": "chat", "input": "x"}] * 33},
    ])
    def test_invalid_payloads(self, payload):
        """Malformed bodies are rejected before any work."""
        provider = MockProvider()
        gateway = Gateway(provider, self.governor)

        with pytest.raises(ValidationError):
            gateway.handle(payload)
        assert provider.calls == []


class TestGatewayEmbed:
    """Test embedding tasks."""

    def setup_method(self):
        """Set up test fixtures."""
        self.storage = InMemoryStorage()
        self.governor = CostGovernor(self.storage)
        self.provider = MockProvider(embedding_dimensions=4)
        self.gateway = Gateway(self.provider, self.governor)

    def test_batch_embed(self):
        """One vector comes back per input string."""
        response = self.gateway.handle(
            {"task": {"type": "embed", "input": ["réunion demain", "budget vacances"]}},
            user_id="user_1",
        )

        assert response["ok"] is True
        assert response["model"] == get_models()["embedding"]
        assert len(response["data"]["embeddings"]) == 2
        assert all(len(v) == 4 for v in response["data"]["embeddings"])

    def test_embed_denial_degrades(self):
        """Over-budget embeddings return an empty, degraded result."""
        self.governor.set_daily_limit("user_1", 0.0)

        response = self.gateway.handle({"task": {"type": "embed", "input": "note"}}, user_id="user_1")

        assert response["ok"] is True
        assert response["data"] == {"embeddings": []}
        assert response["degraded"] == "budget_exceeded"
        assert self.provider.calls == []

    def test_mixed_batch(self):
        """A tasks array returns one result per task."""
        response = self.gateway.handle(
            {"tasks": [
                {"type": "chat", "input": "Bonjour"},
                {"type": "embed", "input": "Bonjour"},
            ]},
            user_id="user_1",
        )

        assert [r["type"] for r in response["results"]] == ["chat", "embed"]
        assert all(r["ok"] for r in response["results"])


class TestFingerprint:
    """Test request fingerprinting."""

    def test_whitespace_insensitive(self):
        """Whitespace differences do not change the fingerprint."""
        a = GatewayTask(type=TaskType.CHAT, input="hello   world\n")
        b = GatewayTask(type=TaskType.CHAT, input="hello world")
        assert fingerprint(a) == fingerprint(b)

    def test_relevant_fields_change_it(self):
        """Operation, system, mode, params, and model all matter."""
        base = GatewayTask(type=TaskType.CHAT, input="hello")
        variants = [
            GatewayTask(type=TaskType.EMBED, input="hello"),
            GatewayTask(type=TaskType.CHAT, input="hello", system="be brief"),
            GatewayTask(type=TaskType.CHAT, input="hello", mode="summarize"),
            GatewayTask(type=TaskType.CHAT, input="hello", params={"temperature": 0.9}),
            GatewayTask(type=TaskType.CHAT, input="hello", model="gpt-4.1-2025-04-14"),
        ]
        assert len({fingerprint(base)} | {fingerprint(v) for v in variants}) == 6

    def test_prompt_shaping_changes_it(self):
        """Compression settings are part of the fingerprint."""
        base = GatewayTask(type=TaskType.CHAT, input="hello")
        variants = [
            GatewayTask(type=TaskType.CHAT, input="hello", preprocess=False),
            GatewayTask(type=TaskType.CHAT, input="hello", max_input_chars=40),
            GatewayTask(type=TaskType.CHAT, input="hello", max_input_chars=80),
        ]
        assert len({fingerprint(base)} | {fingerprint(v) for v in variants}) == 4

    def test_truncated_answer_not_served_for_full_input(self):
        """A request cut to a short prefix does not answer the full request."""
        provider = MockProvider([HIGH])
        gateway = Gateway(provider, CostGovernor(InMemoryStorage(), default_daily_limit_usd=0.50))
        text = "Résumé de la semaine. " * 10

        gateway.handle({"task": {"type": "chat", "input": text, "max_input_chars": 40}}, user_id="u")
        second = gateway.handle({"task": {"type": "chat", "input": text, "preprocess": False}}, user_id="u")

        assert second["cache_hit"] is False
        assert len(provider.chat_calls) == 2
        assert provider.chat_calls[1]["user_prompt"] == text

    def test_param_order_irrelevant(self):
        """Params are canonicalized."""
        a = GatewayTask(type=TaskType.CHAT, input="x", params={"a": 1, "b": 2})
        b = GatewayTask(type=TaskType.CHAT, input="x", params={"b": 2, "a": 1})
        assert fingerprint(a) == fingerprint(b)


class TestParseConfidence:
    """Test self-reported confidence parsing."""

    def test_json_value(self):
        assert parse_confidence('{"confidence": 0.42}') == pytest.approx(0.42)

    def test_clamped(self):
        assert parse_confidence('{"confidence": 7}') == 1.0
        assert parse_confidence('{"confidence": -1}') == 0.0

    def test_length_heuristic(self):
        assert parse_confidence("short answer") == 0.6
        assert parse_confidence("x" * 200) == 0.85
        assert parse_confidence('{"confidence": "high"}') == 0.6
