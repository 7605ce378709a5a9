"""
Request gateway for EchoVault.

Server-side entry point for paid model calls. Each task walks a fixed
state machine:

    RECEIVED -> FINGERPRINTED
      -> CACHE_HIT -> LOGGED_HIT -> DONE
      -> CACHE_MISS -> BUDGET_CHECKED
           -> DENIED -> DONE
           -> MODEL_SELECTED -> CALLED [-> LOW_CONFIDENCE -> ESCALATED -> CALLED_AGAIN]
              -> CACHED -> LOGGED -> DONE

A failed remote call ends in FAILED and the error propagates. Every
terminal path writes exactly one audit row.
"""

import copy
import dataclasses
import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from echovault.config import CHAT_CACHE_TTL_SECONDS, EMBED_CACHE_TTL_SECONDS, get_models
from echovault.escalation import EscalationPolicy
from echovault.governor import CostGovernor
from echovault.metrics import MetricsCollector
from echovault.models import AuditLogEntry, CacheEntry
from echovault.providers import LLMProvider, RemoteCallError
from echovault.schemas import BudgetReservation, Priority, TaskType
from echovault.storage import CacheStoreError
from echovault.text import compress_text, estimate_tokens, normalize_whitespace
from echovault.validation import validate_payload, validate_task


logger = logging.getLogger("echovault.gateway")


DEFAULT_SYSTEM_PROMPT = (
    "You are a concise personal knowledge assistant. "
    'Reply with a JSON object {"answer": string, "confidence": number between 0 and 1}.'
)
CHAT_TEMPERATURE = 0.2
CHAT_MAX_TOKENS = 280
STOP_SEQUENCE = "__END__"
CHAT_MAX_INPUT_CHARS = 4000
EMBED_MAX_INPUT_CHARS = 8000


class GatewayState(str, Enum):
    """States a task passes through."""
    RECEIVED = "received"
    FINGERPRINTED = "fingerprinted"
    CACHE_HIT = "cache_hit"
    LOGGED_HIT = "logged_hit"
    CACHE_MISS = "cache_miss"
    BUDGET_CHECKED = "budget_checked"
    DENIED = "denied"
    MODEL_SELECTED = "model_selected"
    CALLED = "called"
    LOW_CONFIDENCE = "low_confidence"
    ESCALATED = "escalated"
    CALLED_AGAIN = "called_again"
    CACHED = "cached"
    LOGGED = "logged"
    FAILED = "failed"
    DONE = "done"


@dataclass
class GatewayTask:
    """One unit of work sent to the gateway."""
    type: TaskType
    input: Any
    system: Optional[str] = None
    mode: str = "auto"
    params: dict[str, Any] = field(default_factory=dict)
    model: Optional[str] = None
    use_cache: bool = True
    cache_ttl_seconds: Optional[int] = None
    route_large_on_low_conf: bool = True
    preprocess: bool = True
    max_input_chars: Optional[int] = None
    priority: Priority = Priority.MEDIUM

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GatewayTask":
        validate_task(data)
        return cls(
            type=TaskType(data["type"]),
            input=data["input"],
            system=data.get("system"),
            mode=data.get("mode", "auto"),
            params=dict(data.get("params") or {}),
            model=data.get("model"),
            use_cache=bool(data.get("use_cache", True)),
            cache_ttl_seconds=data.get("cache_ttl_seconds"),
            route_large_on_low_conf=bool(data.get("route_large_on_low_conf", True)),
            preprocess=bool(data.get("preprocess", True)),
            max_input_chars=data.get("max_input_chars"),
            priority=Priority(data.get("priority", "medium")),
        )


@dataclass
class TaskResult:
    """Per-task response; batched and single requests share this shape."""
    ok: bool
    type: str
    fingerprint: str
    model: Optional[str] = None
    data: Optional[dict[str, Any]] = None
    cache_hit: bool = False
    cost_usd: float = 0.0
    escalated: bool = False
    error: Optional[str] = None
    degraded: Optional[str] = None
    suggested_action: Optional[str] = None
    states: list[GatewayState] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        result = {
            "ok": self.ok,
            "type": self.type,
            "model": self.model,
            "data": self.data,
            "cache_hit": self.cache_hit,
            "cost_usd": self.cost_usd,
            "escalated": self.escalated,
            "fingerprint": self.fingerprint,
        }
        if self.error:
            result["error"] = self.error
        if self.degraded:
            result["degraded"] = self.degraded
        if self.suggested_action:
            result["suggested_action"] = self.suggested_action
        return result


def _normalize_input(value: Any) -> Any:
    if isinstance(value, str):
        return normalize_whitespace(value)
    if isinstance(value, list):
        return [_normalize_input(v) for v in value]
    if isinstance(value, dict):
        return {k: _normalize_input(v) for k, v in value.items()}
    return value


def fingerprint(task: GatewayTask) -> str:
    """SHA-256 over the logically relevant fields of a task."""
    params = dict(task.params)
    if task.model:
        params["model"] = task.model
    # Prompt-shaping options change what the model sees.
    if not task.preprocess:
        params["preprocess"] = False
    elif task.max_input_chars:
        params["max_input_chars"] = task.max_input_chars
    payload = {
        "operation": task.type.value,
        "input": _normalize_input(task.input),
        "system": normalize_whitespace(task.system or ""),
        "mode": task.mode,
        "params": params,
    }
    canonical = json.dumps(payload, sort_keys=True, ensure_ascii=False, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def parse_confidence(content: str) -> float:
    """
    Confidence reported by the model in its JSON answer.

    The value is self-reported and not independently verified. Without a
    usable number, long answers get 0.85 and short ones 0.6.
    """
    try:
        parsed = json.loads(content)
    except (json.JSONDecodeError, TypeError):
        parsed = None
    if isinstance(parsed, dict):
        value = parsed.get("confidence")
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return max(0.0, min(1.0, float(value)))
    return 0.85 if len(content) > 120 else 0.6


class Gateway:
    """
    Fingerprinting, caching, budget-checked gateway to remote models.

    Example:
        ```python
        storage = SQLiteStorage("echovault.db")
        gateway = Gateway(OpenAIProvider(), CostGovernor(storage))

        response = gateway.handle(
            {"task": {"type": "chat", "input": "Summarize my week"}},
            user_id="user_123",
        )
        ```
    """

    def __init__(
        self,
        provider: LLMProvider,
        governor: CostGovernor,
        policy: Optional[EscalationPolicy] = None,
        models: Optional[dict[str, str]] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.provider = provider
        self.governor = governor
        self.store = governor.storage
        self.models = dict(models or get_models())
        policy = policy or EscalationPolicy()
        if not policy.ladder:
            policy = dataclasses.replace(policy, ladder=[self.models["cheap"], self.models["strong"]])
        self.policy = policy
        self.metrics = metrics
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # =========================================================================
    # Request/response contract
    # =========================================================================

    def handle(self, payload: dict[str, Any], user_id: str = "anonymous") -> dict[str, Any]:
        """
        Process a JSON body holding either `task` or `tasks`.

        Returns `{"results": [...]}` for batches and a single result object
        otherwise; both use the same per-task shape.

        Raises:
            ValidationError: If the body is malformed
            RemoteCallError: If a remote call fails
        """
        validate_payload(payload)
        if "tasks" in payload:
            tasks = [GatewayTask.from_dict(t) for t in payload["tasks"]]
            return {"results": [self.process(t, user_id).to_dict() for t in tasks]}
        return self.process(GatewayTask.from_dict(payload["task"]), user_id).to_dict()

    def process(self, task: GatewayTask, user_id: str = "anonymous") -> TaskResult:
        """Run one task through the state machine."""
        started = time.perf_counter()
        states = [GatewayState.RECEIVED]

        fp = fingerprint(task)
        states.append(GatewayState.FINGERPRINTED)
        if self.metrics:
            self.metrics.record_request(fp, user_id, task.type.value)

        if task.use_cache:
            cached = self._read_cache(user_id, fp)
            if cached is not None:
                states.append(GatewayState.CACHE_HIT)
                self.store.append_audit(AuditLogEntry(
                    user_id=user_id,
                    operation=task.type.value,
                    model=cached.model,
                    request_tokens=0,
                    response_tokens=cached.tokens_estimated,
                    cost_usd=0.0,
                    latency_ms=self._elapsed_ms(started),
                    cache_hit=True,
                    fingerprint=fp,
                    prompt_chars=self._prompt_chars(task),
                    outcome="cache_hit",
                ))
                states += [GatewayState.LOGGED_HIT, GatewayState.DONE]
                if self.metrics:
                    self.metrics.record_cache_hit(fp, user_id)
                return TaskResult(
                    ok=True,
                    type=task.type.value,
                    fingerprint=fp,
                    model=cached.model,
                    data=copy.deepcopy(cached.result),
                    cache_hit=True,
                    states=states,
                )

        states.append(GatewayState.CACHE_MISS)
        if task.type == TaskType.EMBED:
            return self._process_embed(task, user_id, fp, states, started)
        return self._process_chat(task, user_id, fp, states, started)

    def purge_expired_cache(self) -> int:
        return self.store.purge_expired_cache(self._clock())

    # =========================================================================
    # Chat
    # =========================================================================

    def _process_chat(
        self,
        task: GatewayTask,
        user_id: str,
        fp: str,
        states: list[GatewayState],
        started: float,
    ) -> TaskResult:
        system = task.system or DEFAULT_SYSTEM_PROMPT
        user_prompt = task.input if isinstance(task.input, str) else json.dumps(task.input, ensure_ascii=False)
        if task.preprocess:
            user_prompt = compress_text(user_prompt, task.max_input_chars or CHAT_MAX_INPUT_CHARS)

        temperature = float(task.params.get("temperature", CHAT_TEMPERATURE))
        max_tokens = int(task.params.get("max_tokens", CHAT_MAX_TOKENS))
        model = task.model or self.models["cheap"]

        request_tokens = estimate_tokens(system + user_prompt)
        estimated = self.governor.estimate_cost(model, request_tokens, max_tokens)
        decision = self.governor.reserve(
            "chat", request_tokens + max_tokens, estimated, task.priority, user_id=user_id,
        )
        states.append(GatewayState.BUDGET_CHECKED)
        if not decision.allowed:
            return self._deny(task, user_id, fp, states, started, request_tokens, decision, degraded_data=None)

        reservation = decision.reservation
        states.append(GatewayState.MODEL_SELECTED)
        completion = self._call_chat(
            task, user_id, fp, states, started, reservation, model, system, user_prompt, temperature, max_tokens,
        )
        states.append(GatewayState.CALLED)

        total_cost = self.governor.estimate_cost(model, completion.input_tokens, completion.output_tokens)
        tokens_in = completion.input_tokens
        tokens_out = completion.output_tokens
        confidence = parse_confidence(completion.content)
        attempts = 1
        escalated = False

        while task.route_large_on_low_conf:
            next_model = self.policy.model_for_attempt(attempts, completion.model)
            extra = self.governor.estimate_cost(next_model, request_tokens, max_tokens)
            # Holding the extra estimate is the budget check; it runs last.
            verdict = self.policy.decide(
                attempts,
                confidence,
                completion.model,
                extra,
                budget_allows=lambda cost: self.governor.extend(reservation, cost),
            )
            if not verdict.escalate:
                if self.policy.low_confidence(confidence):
                    logger.info("not escalating %s: %s", fp[:12], verdict.reason)
                break

            states += [GatewayState.LOW_CONFIDENCE, GatewayState.ESCALATED]
            try:
                retry = self.provider.complete(
                    verdict.next_model,
                    system,
                    user_prompt,
                    temperature=temperature,
                    max_tokens=max_tokens,
                    response_format="json",
                    stop=[STOP_SEQUENCE],
                )
            except RemoteCallError as e:
                logger.warning("escalation to %s failed, keeping first answer: %s", verdict.next_model, e)
                break

            states.append(GatewayState.CALLED_AGAIN)
            if self.metrics:
                self.metrics.record_escalation(fp, user_id, completion.model, retry.model)
            total_cost += self.governor.estimate_cost(retry.model, retry.input_tokens, retry.output_tokens)
            tokens_in += retry.input_tokens
            tokens_out += retry.output_tokens
            completion = retry
            confidence = parse_confidence(retry.content)
            attempts += 1
            escalated = True

        data = {"content": completion.content, "confidence": confidence}
        ttl = task.cache_ttl_seconds or CHAT_CACHE_TTL_SECONDS
        return self._complete(
            task, user_id, fp, states, started,
            model=completion.model,
            data=data,
            cost=total_cost,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            tokens_estimated=estimate_tokens(completion.content),
            ttl_seconds=ttl,
            escalated=escalated,
            reservation=reservation,
        )

    def _call_chat(self, task, user_id, fp, states, started, reservation, model, system, user_prompt, temperature, max_tokens):
        try:
            return self.provider.complete(
                model,
                system,
                user_prompt,
                temperature=temperature,
                max_tokens=max_tokens,
                response_format="json",
                stop=[STOP_SEQUENCE],
            )
        except RemoteCallError as e:
            self._fail(task, user_id, fp, states, started, model, e, reservation)
            raise

    # =========================================================================
    # Embed
    # =========================================================================

    def _process_embed(
        self,
        task: GatewayTask,
        user_id: str,
        fp: str,
        states: list[GatewayState],
        started: float,
    ) -> TaskResult:
        texts = task.input if isinstance(task.input, list) else [task.input]
        if task.preprocess:
            limit = task.max_input_chars or EMBED_MAX_INPUT_CHARS
            texts = [compress_text(t, limit) for t in texts]

        model = task.model or self.models["embedding"]
        request_tokens = sum(estimate_tokens(t) for t in texts)
        estimated = self.governor.estimate_cost(model, request_tokens, 0)
        decision = self.governor.reserve(
            "embed", request_tokens, estimated, task.priority, user_id=user_id,
        )
        states.append(GatewayState.BUDGET_CHECKED)
        if not decision.allowed:
            return self._deny(
                task, user_id, fp, states, started, request_tokens, decision,
                degraded_data={"embeddings": []},
            )

        states.append(GatewayState.MODEL_SELECTED)
        try:
            batch = self.provider.embed(model, texts)
        except RemoteCallError as e:
            self._fail(task, user_id, fp, states, started, model, e, decision.reservation)
            raise
        states.append(GatewayState.CALLED)

        cost = self.governor.estimate_cost(model, batch.input_tokens, 0)
        ttl = task.cache_ttl_seconds or EMBED_CACHE_TTL_SECONDS
        return self._complete(
            task, user_id, fp, states, started,
            model=model,
            data={"embeddings": batch.vectors},
            cost=cost,
            tokens_in=batch.input_tokens,
            tokens_out=0,
            tokens_estimated=batch.input_tokens,
            ttl_seconds=ttl,
            escalated=False,
            reservation=decision.reservation,
        )

    # =========================================================================
    # Terminal paths
    # =========================================================================

    def _complete(
        self,
        task: GatewayTask,
        user_id: str,
        fp: str,
        states: list[GatewayState],
        started: float,
        model: str,
        data: dict[str, Any],
        cost: float,
        tokens_in: int,
        tokens_out: int,
        tokens_estimated: int,
        ttl_seconds: int,
        escalated: bool,
        reservation: Optional[BudgetReservation] = None,
    ) -> TaskResult:
        latency_ms = self._elapsed_ms(started)
        cache_entry = None
        if task.use_cache:
            now = self._clock()
            cache_entry = CacheEntry(
                user_id=user_id,
                fingerprint=fp,
                result=copy.deepcopy(data),
                model=model,
                tokens_estimated=tokens_estimated,
                expires_at=now + timedelta(seconds=ttl_seconds),
                created_at=now,
            )
        audit = AuditLogEntry(
            user_id=user_id,
            operation=task.type.value,
            model=model,
            request_tokens=tokens_in,
            response_tokens=tokens_out,
            cost_usd=cost,
            latency_ms=latency_ms,
            cache_hit=False,
            fingerprint=fp,
            prompt_chars=self._prompt_chars(task),
            outcome="ok",
            escalated=escalated,
        )
        ledger = self.governor.record_completion(
            user_id, cost, tokens_in, tokens_out, audit, cache_entry=cache_entry, reservation=reservation,
        )
        if cache_entry is not None:
            states.append(GatewayState.CACHED)
        states += [GatewayState.LOGGED, GatewayState.DONE]

        if self.metrics:
            self.metrics.record_call(fp, user_id, model, cost, latency_ms, escalated=escalated)
            self.metrics.set_gauge(f"remaining_usd_{user_id}", ledger.remaining_usd)
        return TaskResult(
            ok=True,
            type=task.type.value,
            fingerprint=fp,
            model=model,
            data=data,
            cost_usd=cost,
            escalated=escalated,
            states=states,
        )

    def _deny(self, task, user_id, fp, states, started, request_tokens, decision, degraded_data) -> TaskResult:
        states.append(GatewayState.DENIED)
        self.store.append_audit(AuditLogEntry(
            user_id=user_id,
            operation=task.type.value,
            model=None,
            request_tokens=request_tokens,
            response_tokens=0,
            cost_usd=0.0,
            latency_ms=self._elapsed_ms(started),
            cache_hit=False,
            fingerprint=fp,
            prompt_chars=self._prompt_chars(task),
            outcome="denied",
        ))
        states.append(GatewayState.DONE)
        if self.metrics:
            self.metrics.record_denial(fp, user_id, decision.suggested_action.value, decision.reason or "")

        # Embeddings degrade to an empty result; chat reports the error.
        if degraded_data is not None:
            return TaskResult(
                ok=True,
                type=task.type.value,
                fingerprint=fp,
                data=degraded_data,
                degraded="budget_exceeded",
                suggested_action=decision.suggested_action.value,
                states=states,
            )
        return TaskResult(
            ok=False,
            type=task.type.value,
            fingerprint=fp,
            error="budget_exceeded",
            suggested_action=decision.suggested_action.value,
            states=states,
        )

    def _fail(self, task, user_id, fp, states, started, model, error: RemoteCallError, reservation=None) -> None:
        states += [GatewayState.FAILED, GatewayState.DONE]
        self.governor.release(reservation)
        self.store.append_audit(AuditLogEntry(
            user_id=user_id,
            operation=task.type.value,
            model=model,
            request_tokens=0,
            response_tokens=0,
            cost_usd=0.0,
            latency_ms=self._elapsed_ms(started),
            cache_hit=False,
            fingerprint=fp,
            prompt_chars=self._prompt_chars(task),
            outcome="error",
        ))
        if self.metrics:
            self.metrics.record_error(fp, user_id, "remote_call_failed", str(error))

    # =========================================================================
    # Helpers
    # =========================================================================

    def _read_cache(self, user_id: str, fp: str) -> Optional[CacheEntry]:
        try:
            return self.store.get_cache(user_id, fp, self._clock())
        except CacheStoreError as e:
            logger.warning("cache read failed, treating as miss: %s", e)
            return None

    @staticmethod
    def _prompt_chars(task: GatewayTask) -> int:
        if isinstance(task.input, str):
            return len(task.input)
        if isinstance(task.input, list):
            return sum(len(str(t)) for t in task.input)
        return len(json.dumps(task.input, ensure_ascii=False, default=str))

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.perf_counter() - started) * 1000)
