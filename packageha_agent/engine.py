"""Session engine: the single entry point for one chat request.

Role:
    Parses the request body, applies reset / staleness / flow-switch rules,
    repairs inconsistent memory against the flow table, dispatches to the flow
    handler, persists memory, and builds the response envelope. The stages run
    through a TurnRunner over a TurnContext so each one can be tested alone.

Failure policy:
    Collaborator failures are converted to replies inside the handlers. Any
    other exception stops at this boundary and becomes a 500 envelope with the
    generic apology; it is logged with its traceback.
"""

from __future__ import annotations

import logging
import threading
import weakref
from dataclasses import dataclass
from typing import Callable, List, Mapping, Optional, Tuple, Union

from .charter import ConsultationStep
from .errors import InvalidStateError
from .flow_table import FLOW_TABLE, FlowSpec, StepKind, repair_memory
from .flows import FlowHandler
from .memory import DEFAULT_FLOW, Flow, Memory, default_memory, memory_from_dict
from .models import (
    ChatRequest,
    ChatResponse,
    CurrentQuestionInfo,
    DraftOrderInfo,
    FlowStateInfo,
    ProductMatchInfo,
    VariantInfo,
    parse_chat_request,
)
from .results import FlowResult
from .session_store import SessionStore
from .turn_runner import TurnRunner, TurnStep
from .utils import contains_keyword, now_ms

logger = logging.getLogger("packageha.engine")

RESET_KEYWORDS = ("reset", "إعادة", "start over", "جديد")
STALE_AFTER_MS = 60 * 60 * 1000

RESET_REPLY = "♻️ Memory reset. Starting fresh! What packaging solution are you looking for?"
UNKNOWN_FLOW_REPLY = "I'm not sure what to do. Type 'reset' to start over."
ERROR_REPLY = "I encountered an error. Please try again or type 'reset' to start over."

EMPTY_DEFAULT_QUESTIONS = ("dimensions", "product_dimensions")


def memory_key(session_id: str) -> str:
    return f"{session_id}:memory"


def is_reset_request(request: ChatRequest) -> bool:
    """True for an explicit reset flag or a reset keyword anywhere in the message."""
    if request.reset is True:
        return True
    return contains_keyword(request.message or "", RESET_KEYWORDS)


def question_default(question: ConsultationStep, memory: Memory) -> Optional[str]:
    if question.id == "quantity":
        return memory.clipboard.get("quantity")
    if question.id in EMPTY_DEFAULT_QUESTIONS:
        return ""
    return None


def _as_lists(options: object) -> Optional[List[object]]:
    if options is None:
        return None
    return [_as_lists(option) if isinstance(option, tuple) else option for option in options]


def build_envelope(
    result: FlowResult,
    memory: Memory,
    flow_spec: FlowSpec,
) -> ChatResponse:
    """Purpose: Build the response envelope from a turn result and the final memory.
    Inputs/Outputs: Inputs are FlowResult, Memory, and the flow's FlowSpec; output is
        a ChatResponse.
    Side Effects / State: None.
    Dependencies: FlowSpec lookups for the current step kind and phase.
    Failure Modes: None; missing data simply omits optional fields.
    If Removed: Clients cannot render options, variants or progress.
    Testing Notes: variants appear only at a variant step with no variant chosen;
        currentQuestion appears only inside a consultation phase.
    """
    # Optional fields are filled only when they describe the next expected input.
    flow_state = FlowStateInfo(
        step=memory.step,
        package_name=memory.package_name,
        variant_name=memory.selected_variant_name,
        has_package=memory.has_package,
        has_variant=memory.has_variant,
        question_index=memory.question_index,
    )
    response = ChatResponse(reply=result.reply, flow_state=flow_state)

    if result.draft_order is not None:
        order = result.draft_order
        response.draft_order = DraftOrderInfo(
            id=order.order_id, admin_url=order.admin_url, invoice_url=order.invoice_url
        )
    if result.product_matches:
        response.product_matches = [
            ProductMatchInfo(id=match.id, catalog_id=match.catalog_id, name=match.name, reason=match.reason)
            for match in result.product_matches
        ]

    spec = flow_spec.spec_for(memory.step)
    if (
        spec is not None
        and spec.kind == StepKind.VARIANT
        and memory.has_package
        and memory.variants
        and not memory.has_variant
    ):
        response.variants = [
            VariantInfo(id=variant.id, title=variant.title, price=variant.price) for variant in memory.variants
        ]

    phase = flow_spec.phase_for(memory.step)
    question = phase.step_at(memory.question_index) if phase else None
    if question is not None:
        response.current_question = CurrentQuestionInfo(
            id=question.id,
            question=question.question,
            options=_as_lists(question.options),
            multiple=True if question.multiple is None else question.multiple,
            default_value=question_default(question, memory),
        )
    return response


@dataclass
class TurnContext:
    """Mutable state of one request as it moves through the engine stages."""
    session_id: str
    raw_body: Union[bytes, str, None]
    now: int
    request: Optional[ChatRequest] = None
    memory: Optional[Memory] = None
    flow_spec: Optional[FlowSpec] = None
    handler: Optional[FlowHandler] = None
    result: Optional[FlowResult] = None
    repairs: Optional[List[InvalidStateError]] = None
    finished: bool = False
    discard_memory: bool = False
    response: Optional[ChatResponse] = None

    @property
    def message(self) -> str:
        if self.request is None or not self.request.message:
            return ""
        return self.request.message.strip()

    @property
    def requested_flow(self) -> Optional[str]:
        return self.request.flow if self.request is not None else None


def _turn_finished(context: TurnContext) -> bool:
    return context.finished


class SessionEngine:
    """Serialised per-session request handler."""

    def __init__(
        self,
        store: SessionStore,
        handlers: Mapping[Flow, FlowHandler],
        stale_after_ms: int = STALE_AFTER_MS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        """Purpose: Wire the store, flow handlers and turn stages.
        Inputs/Outputs: Inputs are the SessionStore, a handler per Flow, the staleness
            window and a millisecond clock; no return value.
        Side Effects / State: Builds the TurnRunner and the per-session lock table.
        Dependencies: TurnRunner/TurnStep and the stage methods on this class.
        Failure Modes: None at init.
        If Removed: The HTTP layer has nothing to call.
        Testing Notes: Inject a fake clock to exercise staleness.
        """
        # Regular stages stop once a stage finishes the turn; finalizers always run.
        self._store = store
        self._handlers = dict(handlers)
        self._stale_after_ms = stale_after_ms
        self._clock = clock
        self._locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()
        self._runner = TurnRunner(
            is_finished=_turn_finished,
            steps=[
                TurnStep("parse_request", self._step_parse_request),
                TurnStep("detect_reset", self._step_detect_reset),
                TurnStep("load_memory", self._step_load_memory),
                TurnStep("switch_flow", self._step_switch_flow),
                TurnStep("repair_state", self._step_repair_state),
                TurnStep("dispatch", self._step_dispatch),
                TurnStep("persist", self._step_persist, finalizer=True),
                TurnStep("build_envelope", self._step_build_envelope, finalizer=True),
            ]
        )

    def _session_lock(self, session_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[session_id] = lock
            return lock

    def handle(self, session_id: str, raw_body: Union[bytes, str, None]) -> Tuple[int, ChatResponse]:
        """Purpose: Process one chat request for a session.
        Inputs/Outputs: Inputs are the session key and the raw JSON body; output is
            (HTTP status, ChatResponse).
        Side Effects / State: Reads, mutates, persists or deletes the session memory.
        Dependencies: TurnRunner stages, SessionStore, flow handlers.
        Failure Modes: Unhandled exceptions return 500 with the generic apology and
            leave stored memory as it was before the request.
        If Removed: The chat endpoint cannot answer.
        Testing Notes: Patch a handler to raise and expect status 500.
        """
        # One request per session at a time.
        with self._session_lock(session_id):
            context = TurnContext(session_id=session_id, raw_body=raw_body, now=self._clock())
            try:
                self._runner.run(context)
            except Exception:
                logger.exception("unhandled error session=%s", session_id)
                memory = context.memory or default_memory(context.now)
                flow = Flow.parse(memory.flow) or DEFAULT_FLOW
                return 500, build_envelope(FlowResult(reply=ERROR_REPLY), memory, FLOW_TABLE[flow])
            return 200, context.response

    def _step_parse_request(self, context: TurnContext) -> None:
        context.request = parse_chat_request(context.raw_body)

    def _step_detect_reset(self, context: TurnContext) -> None:
        if not is_reset_request(context.request):
            return
        flow = Flow.parse(context.requested_flow) or self._stored_flow(context.session_id) or DEFAULT_FLOW
        logger.info("memory reset session=%s flow=%s", context.session_id, flow.value)
        context.memory = default_memory(context.now, flow)
        context.flow_spec = FLOW_TABLE[flow]
        context.result = FlowResult(reply=RESET_REPLY, memory_reset=True)
        context.discard_memory = True
        context.finished = True

    def _stored_flow(self, session_id: str) -> Optional[Flow]:
        stored = self._store.get(memory_key(session_id))
        return Flow.parse(stored.get("flow")) if isinstance(stored, dict) else None

    def _step_load_memory(self, context: TurnContext) -> None:
        """Purpose: Load stored memory or start fresh when missing or stale.
        Inputs/Outputs: Input is TurnContext; sets context.memory.
        Side Effects / State: Deletes stale memory from the store.
        Dependencies: SessionStore, memory_from_dict, default_memory.
        Failure Modes: Corrupt blobs are tolerated by memory_from_dict.
        If Removed: Every request starts a new conversation.
        Testing Notes: A blob older than the staleness window yields start-step memory.
        """
        # A stale session is deleted and treated exactly like a new one.
        requested = Flow.parse(context.requested_flow) or DEFAULT_FLOW
        stored = self._store.get(memory_key(context.session_id))
        if stored is not None:
            memory = memory_from_dict(stored, context.now)
            idle = context.now - memory.last_activity
            if idle <= self._stale_after_ms:
                context.memory = memory
                return
            logger.info("stale session reset session=%s idle_ms=%s", context.session_id, idle)
            self._store.delete_session(context.session_id)
        context.memory = default_memory(context.now, requested)

    def _step_switch_flow(self, context: TurnContext) -> None:
        """Purpose: Resolve the active flow and restart memory when it changes.
        Inputs/Outputs: Input is TurnContext; sets flow_spec and handler.
        Side Effects / State: A flow switch discards step, answers and selection.
        Dependencies: Flow.parse and FLOW_TABLE.
        Failure Modes: Unknown requested or stored flows finish the turn with the
            reset hint and fresh memory.
        If Removed: Requests could never change flows.
        Testing Notes: Switching flows mid-consultation empties the clipboard.
        """
        # Requested flow wins over stored flow when present.
        memory = context.memory
        requested = context.requested_flow
        if requested is not None and Flow.parse(requested) is None:
            self._unknown_flow(context, requested)
            return
        stored_flow = Flow.parse(memory.flow)
        if requested is None and stored_flow is None:
            self._unknown_flow(context, memory.flow)
            return

        flow = Flow.parse(requested) if requested is not None else stored_flow
        if memory.flow != flow.value:
            logger.info(
                "flow switch session=%s from=%s to=%s dropped_answers=%s",
                context.session_id,
                memory.flow,
                flow.value,
                len(memory.clipboard),
            )
            memory.flow = flow.value
            memory.step = FLOW_TABLE[flow].steps[0].name
            memory.clipboard = {}
            memory.question_index = 0
            memory.clear_selection()
        context.flow_spec = FLOW_TABLE[flow]
        context.handler = self._handlers[flow]

    def _unknown_flow(self, context: TurnContext, value: object) -> None:
        logger.warning("unknown flow session=%s flow=%r", context.session_id, value)
        context.memory = default_memory(context.now)
        context.flow_spec = FLOW_TABLE[DEFAULT_FLOW]
        context.result = FlowResult(reply=UNKNOWN_FLOW_REPLY)
        context.finished = True

    def _step_repair_state(self, context: TurnContext) -> None:
        context.repairs = repair_memory(context.memory, context.flow_spec)

    def _step_dispatch(self, context: TurnContext) -> None:
        memory = context.memory
        logger.info(
            "dispatch session=%s flow=%s step=%s question_index=%s",
            context.session_id,
            memory.flow,
            memory.step,
            memory.question_index,
        )
        context.result = context.handler.handle(context.message, memory, context.session_id)
        if context.result.memory_reset:
            # Completed orders start the next project from scratch.
            flow = Flow.parse(memory.flow) or DEFAULT_FLOW
            context.memory = default_memory(context.now, flow)
            context.discard_memory = True

    def _step_persist(self, context: TurnContext) -> None:
        if context.discard_memory:
            self._store.delete_session(context.session_id)
            return
        context.memory.last_activity = context.now
        self._store.put(memory_key(context.session_id), context.memory.to_dict())

    def _step_build_envelope(self, context: TurnContext) -> None:
        context.response = build_envelope(context.result, context.memory, context.flow_spec)
