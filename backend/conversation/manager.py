"""Conversation lifecycle: multi-turn dialogue with the remote analyzer.

State machine::

    CREATED -> ACTIVE                 first turn appended
    ACTIVE <-> AWAITING_REMOTE        once per exchange
    ACTIVE -> FINALIZING              budget exhausted or finalize requested
    FINALIZING -> COMPLETED           closing summary produced
    any live state -> FAILED          permanent remote failure or turn guard

Every operation on a session runs inside ``ConversationStore.with_session``
so exchanges on one session are strictly serialized. ``status`` is the only
operation that reads a session without its lock.
"""

import asyncio
import time
from collections.abc import Callable
from types import MappingProxyType
from typing import Any

import structlog

from config import Settings, settings
from conversation.models import (
    ConversationStatus,
    ConversationSummary,
    Session,
    SessionBudget,
    StartResult,
    TurnResult,
    TurnRole,
)
from conversation.store import ConversationStore
from errors import (
    BudgetExhausted,
    InvalidBudget,
    RemoteFailure,
    SessionFailed,
    SessionNotActive,
    SessionNotFound,
)
from events.bus import EventBus
from events.types import EscalationEvent, EventType
from models.schemas import (
    AnalysisContext,
    AnalysisType,
    BudgetRequest,
    SessionState,
    SummaryFormat,
)
from reasoning.client import ReasoningRequest, ReasoningResponse, RemoteReasoningClient
from reasoning.prompts import (
    build_followup_prompt,
    build_opening_prompt,
    build_summary_prompt,
    resolve_profile,
)
from reasoning.utils import coerce_confidence, coerce_str_list, window_transcript

logger = structlog.get_logger()


class ConversationManager:
    """Drives escalation conversations on top of a store and a reasoning client.

    Attributes:
        store: Session table shared with the sweep loop and health reporting.
        client: Remote reasoning client used for every exchange.
        event_bus: Optional bus receiving lifecycle events.
        config: Settings supplying budget defaults and transcript limits.
    """

    def __init__(
        self,
        store: ConversationStore,
        client: RemoteReasoningClient,
        event_bus: EventBus | None = None,
        config: Settings | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.store = store
        self.client = client
        self.event_bus = event_bus
        self.config = config or settings
        self._clock = clock or time.monotonic

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def start(
        self,
        analysis_type: AnalysisType,
        context: AnalysisContext | dict[str, Any] | None = None,
        budget: BudgetRequest | None = None,
    ) -> StartResult:
        """Open a conversation and run the opening exchange.

        The opening exchange is charged wall time but no turn from the turn
        budget.

        Raises:
            InvalidBudget: If a requested budget is zero or negative.
            PermanentFailure: If the opening call failed permanently; the
                session is FAILED.
        """
        session_budget = self._resolve_budget(budget)
        if isinstance(context, AnalysisContext):
            context_data = context.model_dump()
        else:
            context_data = dict(context or {})

        session = Session(
            id=self.store.generate_session_id(),
            analysis_type=analysis_type,
            profile=resolve_profile(analysis_type, self.config),
            context=context_data,
            budget=session_budget,
        )
        await self.store.create(session)
        logger.info(
            "session_started",
            session_id=session.id,
            analysis_type=analysis_type.value,
            backend=session.profile.backend,
            budget_seconds=session_budget.seconds_remaining,
            budget_turns=session_budget.turns_remaining,
        )
        await self._publish(
            EventType.SESSION_STARTED,
            session.id,
            analysis_type=analysis_type.value,
            backend=session.profile.backend,
        )

        async def _open(session: Session) -> StartResult:
            prompt = build_opening_prompt(session.context)
            opening_turn = session.append_turn(
                TurnRole.REQUESTER, {"message": prompt, "context": session.context}
            )
            session.transition(SessionState.ACTIVE)
            await self._publish_turn(session, opening_turn.index, TurnRole.REQUESTER)

            try:
                result = await self._exchange(
                    session,
                    prompt=prompt,
                    transcript=[],
                    requester_payload=None,
                    turns_charged=0,
                )
            except RemoteFailure as failure:
                if not failure.retryable:
                    raise
                return StartResult(
                    session_id=session.id,
                    state=session.state,
                    opening=None,
                    opening_error=failure,
                    budget_remaining=session.budget.copy(),
                )
            return StartResult(
                session_id=session.id,
                state=session.state,
                opening=result,
                opening_error=None,
                budget_remaining=session.budget.copy(),
            )

        return await self.store.with_session(session.id, _open)

    async def continue_session(
        self,
        session_id: str,
        message: str,
        include_code_snippets: bool = False,
    ) -> TurnResult:
        """Send one follow-up message and return the analyzer's reply.

        A retryable remote failure leaves the transcript untouched and only
        charges the elapsed time; the caller may resubmit the same message.

        Raises:
            SessionNotFound: Unknown or evicted session.
            SessionFailed: The session failed earlier or hits the turn guard.
            BudgetExhausted: Budget spent; the caller must finalize.
            SessionNotActive: The session does not accept turns.
            RemoteFailure: The exchange failed after retries.
        """

        async def _continue(session: Session) -> TurnResult:
            self._check_accepts_turn(session)
            transcript = window_transcript(
                session.transcript_messages(),
                max_messages=self.config.context_max_turns,
                max_tokens=self.config.context_max_tokens,
            )
            return await self._exchange(
                session,
                prompt=build_followup_prompt(message, include_code_snippets),
                transcript=transcript,
                requester_payload={
                    "message": message,
                    "include_code_snippets": include_code_snippets,
                },
                turns_charged=1,
            )

        return await self.store.with_session(session_id, _continue)

    async def finalize(
        self,
        session_id: str,
        summary_format: SummaryFormat = SummaryFormat.DETAILED,
    ) -> ConversationSummary:
        """Produce the closing summary and complete the session.

        Finalizing a COMPLETED session returns the stored summary unchanged.
        The closing call may run even on an exhausted budget; its deadline is
        at least one request timeout.

        Raises:
            SessionNotFound: Unknown or evicted session.
            SessionFailed: The session failed earlier.
            SessionNotActive: The session is neither ACTIVE nor FINALIZING.
            RemoteFailure: The closing call failed after retries.
        """

        async def _finalize(session: Session) -> ConversationSummary:
            if session.state == SessionState.COMPLETED and session.summary is not None:
                return session.summary
            if session.state == SessionState.FAILED:
                raise SessionFailed(session.id, session.failure_reason or "", session.state)
            if session.state not in (SessionState.ACTIVE, SessionState.FINALIZING):
                raise SessionNotActive(
                    session.id, f"Cannot finalize a {session.state} session", session.state
                )
            if session.state == SessionState.ACTIVE:
                session.transition(SessionState.FINALIZING)

            prompt = build_summary_prompt(summary_format, session.findings)
            transcript = window_transcript(
                session.transcript_messages(),
                max_messages=self.config.context_max_turns,
                max_tokens=self.config.context_max_tokens,
            )
            started = self._clock()
            allowance = max(
                session.budget.seconds_remaining,
                self.config.remote_request_timeout_seconds,
            )
            try:
                response = await self.client.invoke(
                    self._request(session, prompt, transcript, purpose="summary"),
                    deadline=started + allowance,
                )
            except RemoteFailure as failure:
                session.budget.charge(self._clock() - started)
                await self._handle_remote_failure(session, failure)
                raise
            except asyncio.CancelledError:
                session.budget.charge(self._clock() - started)
                raise
            except Exception as exc:
                session.budget.charge(self._clock() - started)
                await self._fail_unexpected(session, exc)
                raise

            session.budget.charge(self._clock() - started)
            summary = self._build_summary(session, response, summary_format)
            requester = session.append_turn(
                TurnRole.REQUESTER,
                {"message": "Summarize the investigation.", "summary_format": summary_format.value},
            )
            analyzer = session.append_turn(
                TurnRole.ANALYZER,
                {
                    "response": summary.summary,
                    "root_causes": list(summary.root_causes),
                    "key_findings": list(summary.key_findings),
                    "recommendations": list(summary.recommendations),
                    "confidence": summary.confidence,
                },
            )
            session.summary = summary
            session.transition(SessionState.COMPLETED)

            logger.info(
                "session_finalized",
                session_id=session.id,
                summary_format=summary_format.value,
                turns=len(session.turns),
                findings=len(session.findings),
                confidence=summary.confidence,
            )
            await self._publish_turn(session, requester.index, TurnRole.REQUESTER)
            await self._publish_turn(session, analyzer.index, TurnRole.ANALYZER)
            await self._publish(
                EventType.SESSION_FINALIZED,
                session.id,
                summary_format=summary_format.value,
                confidence=summary.confidence,
            )
            if self.event_bus is not None:
                await self.event_bus.close_session(session.id)
            return summary

        return await self.store.with_session(session_id, _finalize)

    def status(self, session_id: str) -> ConversationStatus:
        """Best-effort snapshot of a session; never waits for an in-flight turn.

        Raises:
            SessionNotFound: Unknown or evicted session.
        """
        session = self.store.peek(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return ConversationStatus(
            session_id=session.id,
            analysis_type=session.analysis_type,
            state=session.state,
            turns_taken=len(session.turns),
            budget_remaining=session.budget.copy(),
            findings_count=len(session.findings),
            confidence=session.confidence,
            created_at=session.created_at,
            last_activity_at=session.last_activity_at,
        )

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _resolve_budget(self, budget: BudgetRequest | None) -> SessionBudget:
        seconds = self.config.session_default_budget_seconds
        turns = self.config.session_default_budget_turns
        if budget is not None:
            if budget.seconds is not None:
                seconds = budget.seconds
            if budget.turns is not None:
                turns = budget.turns
        # "not > 0" also rejects NaN.
        if not seconds > 0:
            raise InvalidBudget(f"Budget seconds must be positive, got {seconds}")
        if not turns > 0:
            raise InvalidBudget(f"Budget turns must be positive, got {turns}")
        return SessionBudget(seconds_remaining=float(seconds), turns_remaining=int(turns))

    def _check_accepts_turn(self, session: Session) -> None:
        if session.state == SessionState.FAILED:
            raise SessionFailed(session.id, session.failure_reason or "", session.state)
        if session.state in (SessionState.ACTIVE, SessionState.FINALIZING) and session.budget.exhausted:
            raise BudgetExhausted(
                session.id, "Budget spent; finalize the session", session.state
            )
        if session.state != SessionState.ACTIVE:
            raise SessionNotActive(
                session.id, f"Session is {session.state}, not accepting turns", session.state
            )
        # Two turns stay reserved for the closing summary exchange.
        if len(session.turns) + 2 > self.config.session_max_turns - 2:
            reason = f"Turn limit of {self.config.session_max_turns} reached"
            session.fail(reason)
            logger.warning("session_turn_limit_reached", session_id=session.id, turns=len(session.turns))
            raise SessionFailed(session.id, reason, session.state)

    def _request(
        self,
        session: Session,
        prompt: str,
        transcript: list[dict[str, str]],
        purpose: str,
    ) -> ReasoningRequest:
        return ReasoningRequest(
            backend=session.profile.backend,
            prompt=prompt,
            system_prompt=session.profile.system_prompt,
            transcript=transcript,
            purpose=purpose,
            caller_id=session.id,
            session_id=session.id,
        )

    async def _exchange(
        self,
        session: Session,
        *,
        prompt: str,
        transcript: list[dict[str, str]],
        requester_payload: dict[str, Any] | None,
        turns_charged: int,
    ) -> TurnResult:
        """Run one ACTIVE -> AWAITING_REMOTE -> ACTIVE exchange.

        Turns are appended only after the analyzer replied, so a failed
        exchange never advances the turn index.
        """
        session.transition(SessionState.AWAITING_REMOTE)
        started = self._clock()
        try:
            response = await self.client.invoke(
                self._request(session, prompt, transcript, purpose="turn"),
                deadline=started + session.budget.seconds_remaining,
            )
        except RemoteFailure as failure:
            session.budget.charge(self._clock() - started)
            if failure.retryable:
                session.transition(SessionState.ACTIVE)
                self._finalize_if_exhausted(session)
            await self._handle_remote_failure(session, failure)
            raise
        except asyncio.CancelledError:
            session.budget.charge(self._clock() - started)
            session.transition(SessionState.ACTIVE)
            raise
        except Exception as exc:
            session.budget.charge(self._clock() - started)
            await self._fail_unexpected(session, exc)
            raise

        elapsed = self._clock() - started
        appended: list[tuple[int, TurnRole]] = []
        if requester_payload is not None:
            requester = session.append_turn(TurnRole.REQUESTER, requester_payload)
            appended.append((requester.index, TurnRole.REQUESTER))

        reply = self._parse_reply(session, response)
        analyzer_index = len(session.turns)
        new_findings = session.merge_findings(analyzer_index, reply["new_findings"])
        analyzer = session.append_turn(
            TurnRole.ANALYZER, {**reply, "new_findings": new_findings}
        )
        appended.append((analyzer.index, TurnRole.ANALYZER))
        session.confidence = reply["confidence"]
        session.pending_questions = reply["questions"]

        session.budget.charge(elapsed, turns=turns_charged)
        session.transition(SessionState.ACTIVE)
        self._finalize_if_exhausted(session)

        ready = (
            reply["confidence"] >= self.config.completion_confidence_threshold
            or not reply["questions"]
        )
        logger.info(
            "turn_completed",
            session_id=session.id,
            turn_index=analyzer.index,
            new_findings=len(new_findings),
            confidence=reply["confidence"],
            ready_to_finalize=ready,
            seconds_remaining=round(session.budget.seconds_remaining, 2),
            turns_remaining=session.budget.turns_remaining,
            state=session.state.value,
        )
        for index, role in appended:
            await self._publish_turn(session, index, role)

        return TurnResult(
            session_id=session.id,
            turn_index=analyzer.index,
            response=reply["response"],
            new_findings=new_findings,
            questions=reply["questions"],
            confidence=reply["confidence"],
            ready_to_finalize=ready,
            state=session.state,
            budget_remaining=session.budget.copy(),
        )

    @staticmethod
    def _finalize_if_exhausted(session: Session) -> None:
        if session.state == SessionState.ACTIVE and session.budget.exhausted:
            session.transition(SessionState.FINALIZING)
            logger.info("session_budget_exhausted", session_id=session.id)

    async def _handle_remote_failure(self, session: Session, failure: RemoteFailure) -> None:
        if failure.retryable:
            logger.warning(
                "turn_failed",
                session_id=session.id,
                error_type=failure.code,
                error=failure.message,
                state=session.state.value,
            )
            await self._publish(
                EventType.TURN_FAILED,
                session.id,
                error=failure.code,
                retryable=True,
            )
            return

        session.fail(failure.message)
        logger.error(
            "session_failed",
            session_id=session.id,
            error_type=failure.code,
            error=failure.message,
        )
        await self._publish(
            EventType.SESSION_FAILED,
            session.id,
            error=failure.code,
            reason=failure.message,
        )

    async def _fail_unexpected(self, session: Session, exc: Exception) -> None:
        """Fail a session whose remote call raised outside the failure taxonomy."""
        reason = f"{type(exc).__name__}: {exc}"
        session.fail(reason)
        logger.exception("session_failed", session_id=session.id, error_type="internal_error")
        await self._publish(
            EventType.SESSION_FAILED,
            session.id,
            error="internal_error",
            reason=reason,
        )

    @staticmethod
    def _parse_reply(session: Session, response: ReasoningResponse) -> dict[str, Any]:
        """Normalize the analyzer reply; a non-JSON reply becomes plain response text."""
        payload = response.payload or {}
        text = payload.get("response")
        if not isinstance(text, str) or not text.strip():
            text = response.content
        findings = payload.get("new_findings")
        return {
            "response": text,
            "new_findings": findings if isinstance(findings, list) else [],
            "questions": coerce_str_list(payload.get("questions")),
            "confidence": coerce_confidence(payload.get("confidence"), default=session.confidence),
        }

    @staticmethod
    def _build_summary(
        session: Session,
        response: ReasoningResponse,
        summary_format: SummaryFormat,
    ) -> ConversationSummary:
        payload = response.payload or {}
        text = payload.get("summary")
        if not isinstance(text, str) or not text.strip():
            text = response.content
        return ConversationSummary(
            session_id=session.id,
            summary_format=summary_format,
            summary=text,
            root_causes=tuple(coerce_str_list(payload.get("root_causes"))),
            key_findings=tuple(coerce_str_list(payload.get("key_findings"))),
            recommendations=tuple(coerce_str_list(payload.get("recommendations"))),
            confidence=coerce_confidence(payload.get("confidence"), default=session.confidence),
            # Counts the closing request and reply that finalize appends.
            turns_taken=len(session.turns) + 2,
            findings=MappingProxyType(
                {key: dict(value) if isinstance(value, dict) else value
                 for key, value in session.findings.items()}
            ),
        )

    async def _publish_turn(self, session: Session, index: int, role: TurnRole) -> None:
        await self._publish(EventType.TURN_APPENDED, session.id, index=index, role=role.value)

    async def _publish(self, event_type: EventType, session_id: str, **data: Any) -> None:
        if self.event_bus is None:
            return
        await self.event_bus.publish(
            EscalationEvent(type=event_type, session_id=session_id, data=data)
        )
