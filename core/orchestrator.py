"""Per-turn agent orchestration: classify, recall, plan, execute, respond, remember."""

from __future__ import annotations

import json
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from cognition.followup_rules import confirmation_kind
from cognition.intent_classifier import IntentClassifier
from cognition.query_intent import IntentType, QueryIntent
from core.errors import LLMError, MemoryStoreError
from core.event_bus import MEMORY_WRITTEN, EventBus
from core.policy_runtime import ensure_runtime_dirs, load_effective_config, section
from executor.cancellation import CancellationToken
from executor.safe_runner import SafeRunner
from executor.tool_execution_engine import (
    USER_CANCELLED,
    ExecutionOutcome,
    ExecutionState,
    ToolExecutionEngine,
)
from governance.audit_logger import AuditLogger
from governance.permission_engine import PermissionEngine
from llm.base_llm import BaseLLM
from llm.llm_factory import build_llm
from llm.prompt_engine.memory_injection import render_memory_block
from memory.confirmations import PendingConfirmationStore
from memory.context_assembler import AssembledContext, MemoryContextAssembler
from memory.embeddings import build_embedder
from memory.episodic import EpisodicMemoryManager
from memory.memory_manager import MemoryManager
from memory.semantic import ExtractionReport, SemanticMemoryManager
from memory.stores.graph_store import SQLGraphStore
from memory.stores.sql_store import SQLStore
from memory.stores.vector_store import SQLVectorStore
from planner.execution_plan import ChainPlan
from planner.tool_chain_planner import ToolChainPlanner
from tools.tool_registry import ToolRegistry, build_default_registry

logger = logging.getLogger("mta.orchestrator")

_SYNTHESIS_SYSTEM_PROMPT = """\
You are a helpful assistant with long-term memory and tools. Answer the
user using the memories and tool results provided. If a tool failed, say
what failed and what still succeeded. Never invent tool results.
"""


@dataclass
class AgentTurnResult:
    response: str
    intent: QueryIntent
    execution: ExecutionOutcome | None = None
    plan: ChainPlan | None = None
    memory_context: AssembledContext | None = None
    low_confidence: bool = False
    needs_more_info: bool = False
    clarification: str | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def state(self) -> ExecutionState | None:
        return self.execution.state if self.execution is not None else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "response": self.response,
            "intent": self.intent.model_dump(mode="json"),
            "execution": (
                {
                    **self.execution.summary(),
                    "results": [r.to_dict() for r in self.execution.results],
                }
                if self.execution is not None
                else None
            ),
            "low_confidence": self.low_confidence,
            "needs_more_info": self.needs_more_info,
            "clarification": self.clarification,
            "warnings": list(self.warnings),
        }


def _format_results(outcome: ExecutionOutcome, max_chars: int = 800) -> str:
    lines = [f"State: {outcome.state.value}"]
    for result in outcome.results:
        if result.success:
            body = json.dumps(result.result, default=str)
            if len(body) > max_chars:
                body = body[:max_chars] + "..."
            lines.append(f"- {result.step_id} {result.tool_name} succeeded: {body}")
        else:
            lines.append(f"- {result.step_id} {result.tool_name} {result.status.value}: {result.error}")
    return "\n".join(lines)


class AgentOrchestrator:
    """Composes memory, classification, planning and execution into one turn.

    Instances hold their collaborators and no per-session state; anything
    that must survive between turns lives in the memory layer.
    """

    def __init__(
        self,
        llm: BaseLLM,
        memory: MemoryManager,
        classifier: IntentClassifier,
        planner: ToolChainPlanner,
        engine: ToolExecutionEngine,
        registry: ToolRegistry,
        confirmations: PendingConfirmationStore,
        config: dict[str, Any] | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self.llm = llm
        self.memory = memory
        self.classifier = classifier
        self.planner = planner
        self.engine = engine
        self.registry = registry
        self.confirmations = confirmations
        self.event_bus = event_bus or EventBus()
        cfg = config or {}
        orch_cfg = cfg.get("orchestrator", {})
        self.low_confidence_floor = float(cfg.get("classifier", {}).get("low_confidence_floor", 0.5))
        self.tail_limit = int(cfg.get("classifier", {}).get("conversation_tail", 6))
        self.prefetch = bool(orch_cfg.get("prefetch_memory_context", True))
        self.synthesis_temperature = float(orch_cfg.get("synthesis_temperature", 0.5))
        self.auto_extract = bool(cfg.get("extraction", {}).get("auto_extract", False))
        self._background = ThreadPoolExecutor(max_workers=1, thread_name_prefix="mta-extract")
        self._extractions: list[Future[ExtractionReport]] = []

    def close(self, wait: bool = True) -> None:
        self._background.shutdown(wait=wait)

    def _prior_intent(self, user_id: str, session_id: str) -> QueryIntent | None:
        last = self.memory.episodic.last_turn(user_id, session_id, source="agent")
        if last is None or not isinstance(last.context.get("intent"), dict):
            return None
        try:
            return QueryIntent.model_validate(last.context["intent"])
        except ValueError:
            return None

    def _pending(self, user_id: str, session_id: str, warnings: list[str]) -> bool:
        try:
            return self.confirmations.get(user_id, session_id) is not None
        except MemoryStoreError as exc:
            logger.warning("Pending confirmation lookup failed: %s", exc)
            warnings.append(f"confirmation state unavailable: {exc}")
            return False

    def classify_query(
        self,
        query: str,
        user_id: str | None = None,
        session_id: str | None = None,
    ) -> QueryIntent:
        """Classify ``query``, using session history when ids are given."""
        prior = None
        tail: list[Any] = []
        pending = False
        if user_id is not None and session_id is not None:
            warnings: list[str] = []
            try:
                prior = self._prior_intent(user_id, session_id)
                tail = self.memory.episodic.get_context(user_id, session_id, limit=self.tail_limit)
            except MemoryStoreError as exc:
                logger.warning("Conversation history unavailable: %s", exc)
            pending = self._pending(user_id, session_id, warnings)
        return self.classifier.classify(
            query,
            prior_intent=prior,
            conversation_tail=tail,
            pending_confirmation=pending,
        )

    def _assemble(
        self,
        user_id: str,
        session_id: str,
        query: str,
        cancel_token: CancellationToken,
    ) -> AssembledContext:
        return self.memory.assembler.assemble(user_id, session_id, query, cancel_token=cancel_token)

    def execute_agent_turn(
        self,
        query: str,
        user_id: str,
        session_id: str,
        confirmation_reply: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> AgentTurnResult:
        """Run one request/response cycle; degraded paths return warnings, not errors."""
        token = cancel_token or CancellationToken()
        warnings: list[str] = []
        prior: QueryIntent | None = None
        tail: list[Any] = []
        try:
            prior = self._prior_intent(user_id, session_id)
            tail = self.memory.episodic.get_context(user_id, session_id, limit=self.tail_limit)
        except MemoryStoreError as exc:
            logger.warning("Conversation history unavailable: %s", exc)
            warnings.append(f"conversation history unavailable: {exc}")
        pending = self._pending(user_id, session_id, warnings)

        explicit = None
        if confirmation_reply is not None and pending:
            explicit = (
                confirmation_reply
                if confirmation_reply in ("affirm", "deny")
                else confirmation_kind(confirmation_reply)
            )

        assembled: AssembledContext | None = None
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="mta-turn") as pool:
            context_future = (
                pool.submit(self._assemble, user_id, session_id, query, token)
                if self.prefetch and explicit is None
                else None
            )
            if explicit is not None:
                intent = QueryIntent(
                    type=IntentType.TOOL_EXECUTION,
                    confidence=1.0,
                    reasoning="Explicit confirmation reply.",
                    confirmation=explicit,
                    override="confirmation_reply",
                )
            else:
                intent = self.classifier.classify(
                    query,
                    prior_intent=prior,
                    conversation_tail=tail,
                    pending_confirmation=pending,
                    cancel_token=token,
                )
            if intent.memory_context:
                try:
                    if context_future is not None:
                        assembled = context_future.result()
                    else:
                        assembled = self._assemble(user_id, session_id, query, token)
                except MemoryStoreError as exc:
                    logger.warning("Memory context unavailable: %s", exc)
                    warnings.append(f"memory context unavailable: {exc}")
            elif context_future is not None:
                try:
                    context_future.result()
                except MemoryStoreError as exc:
                    logger.debug("Discarded prefetch failed: %s", exc)
        if assembled is not None:
            warnings.extend(assembled.warnings)

        execution: ExecutionOutcome | None = None
        plan: ChainPlan | None = None
        clarification: str | None = None
        response: str | None = None

        if intent.confirmation is not None:
            try:
                execution = self.engine.resolve_confirmation(user_id, session_id, intent.confirmation, token)
            except MemoryStoreError as exc:
                execution = self._store_failure(ChainPlan(query=query), exc, warnings)
            if execution is None:
                response = "There is nothing waiting for your confirmation."
            elif execution.reason == USER_CANCELLED:
                response = "Okay, I cancelled that. Nothing was executed."
        elif intent.needs_tools:
            plan = self.planner.plan(
                query,
                context=render_memory_block(assembled),
                cancel_token=token,
            )
            if plan.needs_more_info:
                clarification = plan.clarification
            if not plan.steps:
                response = clarification or "Could you tell me more about what you need?"
            else:
                try:
                    execution = self.engine.run(plan, user_id, session_id, token)
                except MemoryStoreError as exc:
                    execution = self._store_failure(plan, exc, warnings)
                if execution.state is ExecutionState.CONFIRMING:
                    response = execution.confirmation_message

        if response is None:
            response = self._synthesize(query, intent, assembled, execution, token, warnings)
            if clarification and execution is not None:
                response = f"{response}\n\n{clarification}"

        result = AgentTurnResult(
            response=response,
            intent=intent,
            execution=execution,
            plan=plan,
            memory_context=assembled,
            low_confidence=intent.confidence < self.low_confidence_floor,
            needs_more_info=bool(plan is not None and plan.needs_more_info),
            clarification=clarification,
            warnings=warnings,
        )
        self._write_back(query, user_id, session_id, result)
        return result

    @staticmethod
    def _store_failure(plan: ChainPlan, exc: MemoryStoreError, warnings: list[str]) -> ExecutionOutcome:
        logger.warning("Confirmation state unavailable, nothing executed: %s", exc)
        warnings.append(f"confirmation state unavailable: {exc}")
        return ExecutionOutcome(ExecutionState.FAILED, plan, reason=f"confirmation store failed: {exc}")

    def _synthesize(
        self,
        query: str,
        intent: QueryIntent,
        assembled: AssembledContext | None,
        execution: ExecutionOutcome | None,
        token: CancellationToken,
        warnings: list[str],
    ) -> str:
        sections: list[str] = []
        memory_block = render_memory_block(assembled)
        if memory_block:
            sections.append(memory_block)
        if execution is not None:
            sections.append("Tool results:\n" + _format_results(execution))
        sections.append(f"Intent: {intent.type.value}")
        sections.append(f"User: {query}")
        prompt = "\n\n".join(sections)

        if not token.is_cancelled():
            try:
                return self.llm.complete(
                    prompt,
                    system=_SYNTHESIS_SYSTEM_PROMPT,
                    temperature=self.synthesis_temperature,
                )
            except LLMError as exc:
                logger.warning("Response synthesis failed, using template: %s", exc)
                warnings.append(f"response synthesis unavailable: {exc}")
        return self._template_response(assembled, execution)

    @staticmethod
    def _template_response(
        assembled: AssembledContext | None,
        execution: ExecutionOutcome | None,
    ) -> str:
        parts: list[str] = []
        if execution is not None:
            parts.append(_format_results(execution))
        if assembled is not None and not assembled.context.is_empty():
            parts.append("From memory:\n" + "\n".join(assembled.lines()[-5:]))
        if not parts:
            return "I couldn't produce a full answer right now. Please try again."
        return "\n\n".join(parts)

    def _write_back(self, query: str, user_id: str, session_id: str, result: AgentTurnResult) -> None:
        agent_context: dict[str, Any] = {"intent": result.intent.model_dump(mode="json")}
        if result.execution is not None:
            agent_context["execution"] = result.execution.summary()
        if result.low_confidence:
            agent_context["low_confidence"] = True
        try:
            user_id_mem = self.memory.remember_turn(
                user_id,
                session_id,
                query,
                source="user",
                context={"intent": result.intent.type.value},
            )
            agent_id_mem = self.memory.remember_turn(
                user_id,
                session_id,
                result.response,
                source="agent",
                context=agent_context,
            )
        except MemoryStoreError as exc:
            logger.warning("Memory write-back failed: %s", exc)
            result.warnings.append(f"memory write-back failed: {exc}")
            return
        self.event_bus.emit(
            MEMORY_WRITTEN,
            {"user_id": user_id, "session_id": session_id, "ids": [user_id_mem, agent_id_mem]},
        )
        if self.auto_extract:
            self._extractions.append(
                self._background.submit(self._extract_quietly, user_id, session_id)
            )

    def _extract_quietly(self, user_id: str, session_id: str) -> ExtractionReport | None:
        try:
            return self.memory.extract_knowledge(user_id, session_id)
        except MemoryStoreError as exc:
            logger.warning("Background extraction failed: %s", exc)
            return None

    def wait_for_background(self, timeout: float | None = None) -> list[ExtractionReport | None]:
        """Block until queued extractions finish; used by the CLI and tests."""
        done = [future.result(timeout=timeout) for future in self._extractions]
        self._extractions.clear()
        return done

    def search_memories(self, user_id: str, query: str, **kwargs: Any) -> dict[str, list[dict[str, Any]]]:
        return self.memory.search_memories(user_id, query, **kwargs)

    def get_memory_context(self, user_id: str, session_id: str, query: str = "") -> AssembledContext:
        return self.memory.get_memory_context(user_id, session_id, query)

    def get_memory_stats(self, user_id: str) -> dict[str, Any]:
        return self.memory.get_memory_stats(user_id)


@dataclass
class RuntimeBundle:
    """Holds initialized runtime components."""

    config: dict[str, Any]
    paths: dict[str, Path]
    sql_store: SQLStore
    llm: BaseLLM
    memory: MemoryManager
    tool_registry: ToolRegistry
    permissions: PermissionEngine
    confirmations: PendingConfirmationStore
    engine: ToolExecutionEngine
    event_bus: EventBus
    agent: AgentOrchestrator

    def close(self) -> None:
        self.agent.close()
        self.sql_store.dispose()


class Orchestrator:
    """Creates and wires runtime components for CLI and test use."""

    def __init__(
        self,
        root: Path | None = None,
        config_overrides: dict[str, Any] | None = None,
        llm: BaseLLM | None = None,
        tool_registry: ToolRegistry | None = None,
    ) -> None:
        default_root = Path(__file__).resolve().parents[1]
        self.root = (root or default_root).resolve()
        self.config_overrides = config_overrides
        self.llm = llm
        self.tool_registry = tool_registry

    def build(self) -> RuntimeBundle:
        config = load_effective_config(self.root, self.config_overrides)
        paths = ensure_runtime_dirs(self.root, config)

        sql_store = SQLStore(paths["db_path"])
        sql_store.create_all()
        event_bus = EventBus()
        llm = self.llm or build_llm(config=config)

        episodic = EpisodicMemoryManager(SQLGraphStore(sql_store), config=config)
        semantic = SemanticMemoryManager(
            SQLVectorStore(sql_store),
            build_embedder(config),
            episodic=episodic,
            llm=llm,
            config=config,
        )
        assembler = MemoryContextAssembler(episodic, semantic=semantic, llm=llm, config=config)
        memory = MemoryManager(episodic, semantic, assembler)
        confirmations = PendingConfirmationStore(sql_store, config=config)

        tool_registry = self.tool_registry or build_default_registry(config, paths["workspace_dir"])
        permissions = PermissionEngine(config=section(config, "permissions"))
        audit_logger = AuditLogger(paths["audit_log_path"])
        runner = SafeRunner.from_config(config, audit_logger=audit_logger)
        engine = ToolExecutionEngine(
            tool_registry,
            runner,
            permissions,
            confirmations,
            config=config,
            event_bus=event_bus,
        )
        agent = AgentOrchestrator(
            llm=llm,
            memory=memory,
            classifier=IntentClassifier(llm, tool_registry, config=config, event_bus=event_bus),
            planner=ToolChainPlanner(llm, tool_registry, config=config, event_bus=event_bus),
            engine=engine,
            registry=tool_registry,
            confirmations=confirmations,
            config=config,
            event_bus=event_bus,
        )
        return RuntimeBundle(
            config=config,
            paths=paths,
            sql_store=sql_store,
            llm=llm,
            memory=memory,
            tool_registry=tool_registry,
            permissions=permissions,
            confirmations=confirmations,
            engine=engine,
            event_bus=event_bus,
            agent=agent,
        )
