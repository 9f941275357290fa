"""
Stage Orchestrator
==================

Owns the per-session stage machine and runs conversation turns.

A turn:
1. Strips leading directives from the raw input ([FORCE_AGENT:<stage>],
   [TEST_MODE]).
2. Picks the strategy for the forced stage, or for the session's stage.
3. Checks prerequisites, builds the model request and opens the stream.
4. Feeds every chunk to the response assembler (and, for the coding
   stage, to the file extractor), yielding a stamped snapshot for each
   update.
5. At stream end interprets the final response, records it, applies the
   forward-only stage transition, persists, and yields the final snapshot.

Failures end the turn with exactly one error snapshot. A consumer closing
the stream pauses the session instead.

Usage:
    orchestrator = StageOrchestrator(InMemorySessionRepository(), client, config)
    session_id = await orchestrator.create_session()
    async for snapshot in orchestrator.process_turn(session_id, "Hi"):
        print(snapshot.reply)
"""

import asyncio
import uuid
import weakref
from datetime import timedelta
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import anyio

from stageflow.agent.directives import ParsedInput, parse_directives
from stageflow.agent.health import (
    RecoveryRecommendation,
    SessionHealth,
    assess_health,
    recommend_recovery,
)
from stageflow.agent.models import (
    AgentExecution,
    ExecutionStatus,
    ImmediateDisplay,
    PartialResponse,
    Session,
    SessionStatus,
    Stage,
    SystemState,
    utc_now,
)
from stageflow.agent.stages import (
    is_terminal,
    next_stage,
    parse_stage,
    progress_for,
    stage_index,
)
from stageflow.agent.strategies import (
    AgentStrategy,
    StageOutcome,
    TurnContext,
    build_strategy_table,
    ensure_exhaustive,
)
from stageflow.database.repository import SessionRepository
from stageflow.llm.base import ModelClient
from stageflow.streaming.assembler import ResponseAssembler
from stageflow.streaming.files import FileExtractor, FileUpdate
from stageflow.utils.config import Config
from stageflow.utils.errors import (
    ModelCallError,
    ModelTimeoutError,
    NothingToRetryError,
    SessionAlreadyRunningError,
    SessionNotFoundError,
    StageflowError,
    TransportCancelled,
)
from stageflow.utils.logging import PerformanceLogger, get_logger, set_session_id, set_turn_id

logger = get_logger(__name__)

SYSTEM_AGENT = "system"
STREAMING_INTENT = "streaming"
SESSION_COMPLETE_INTENT = "session_complete"
RETRYABLE_STATUSES = (ExecutionStatus.FAILED, ExecutionStatus.CANCELLED)
PROGRESS_CEILING = 100


class SnapshotStamper:
    """
    Stamps the turn-level fields into every snapshot before it is yielded.

    Progress never decreases within a turn, ``done`` is masked on all but the
    final snapshot, and in the coding stage the tracked files ride along in
    ``system_state.metadata``.
    """

    def __init__(self, stage: Stage, floor: int, extractor: Optional[FileExtractor] = None):
        self.stage = stage
        self.floor = floor
        self.extractor = extractor

    def stamp(self, snapshot: PartialResponse, file_update: Optional[FileUpdate] = None,
              final: bool = False, stage: Optional[Stage] = None,
              progress: Optional[int] = None) -> PartialResponse:
        state = snapshot.system_state
        if state is None:
            state = snapshot.system_state = SystemState(intent=STREAMING_INTENT)

        state.current_stage = (stage or self.stage).value
        reported = state.progress if progress is None else max(progress, state.progress)
        self.floor = min(PROGRESS_CEILING, max(self.floor, reported))
        state.progress = self.floor
        state.done = final

        if self.extractor is not None:
            self.attach_files(state, file_update)
        return snapshot

    def attach_files(self, state: SystemState, file_update: Optional[FileUpdate] = None) -> None:
        state.metadata["files"] = [f.to_dict() for f in self.extractor.files]
        if file_update is not None and file_update.changed:
            state.metadata["file_event"] = file_update.to_dict()
        else:
            state.metadata.pop("file_event", None)


class StageOrchestrator:
    """
    Runs conversation turns against a session repository and a model client.

    Args:
        repository: Session storage
        client: Streaming model client
        config: Configuration (defaults apply when omitted)
        strategies: Stage -> strategy table; built from config when omitted
    """

    def __init__(self, repository: SessionRepository, client: ModelClient,
                 config: Optional[Config] = None,
                 strategies: Optional[Dict[Stage, AgentStrategy]] = None):
        self.repository = repository
        self.client = client
        self.config = config or Config()
        if strategies is None:
            strategies = build_strategy_table(self.config)
        ensure_exhaustive(strategies)
        self.strategies = strategies
        # Entries live only while a turn or reset holds a reference
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    # =========================================================================
    # Session Operations
    # =========================================================================

    async def create_session(self) -> str:
        """Create a session at the welcome stage and return its id."""
        session_id = await self.repository.create(Session())
        logger.info("orchestrator.session.created", extra={"session_id": session_id})
        return session_id

    async def get_session(self, session_id: str) -> Session:
        """
        Fetch a session.

        Raises:
            SessionNotFoundError: If no session has this id
        """
        session = await self.repository.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def is_running(self, session_id: str) -> bool:
        lock = self._locks.get(session_id)
        return lock is not None and lock.locked()

    async def get_session_status(self, session_id: str) -> Dict[str, Any]:
        """Summary of a session for status displays."""
        session = await self.get_session(session_id)
        last = session.last_execution()
        return {
            "session_id": session.session_id,
            "status": session.status.value,
            "current_stage": session.current_stage.value,
            "completed_stages": [stage.value for stage in session.completed_stages],
            "progress": session.progress,
            "metrics": session.metrics.to_dict(),
            "running": self.is_running(session_id) or session.running_execution() is not None,
            "last_execution": last.to_dict() if last else None,
            "health": assess_health(session).status.value,
            "last_activity": session.last_activity.isoformat(),
        }

    async def get_session_health(self, session_id: str) -> SessionHealth:
        return assess_health(await self.get_session(session_id))

    async def get_recovery_recommendation(self, session_id: str,
                                          error_message: str) -> RecoveryRecommendation:
        return recommend_recovery(await self.get_session(session_id), error_message)

    def advance_stage(self, session: Session, from_stage: Optional[Stage] = None) -> Optional[Stage]:
        """
        Move a session to the stage after ``from_stage``.

        The move only happens when the target is ahead of the session's
        current stage, so a forced run of an earlier stage never moves the
        session backwards.

        Args:
            session: Session to mutate
            from_stage: Stage whose successor is the target (default: current)

        Returns:
            The new stage, or None if the session did not move
        """
        source = from_stage or session.current_stage
        target = next_stage(source)
        if target is None or stage_index(target) <= stage_index(session.current_stage):
            return None

        previous = session.current_stage
        if source not in session.completed_stages:
            session.completed_stages.append(source)
        session.current_stage = target
        session.progress = max(session.progress, progress_for(target))
        session.metrics.stage_transitions += 1
        if is_terminal(target):
            session.status = SessionStatus.COMPLETED

        logger.info(
            "orchestrator.stage.advanced",
            extra={"from_stage": previous.value, "to_stage": target.value,
                   "executed_stage": source.value}
        )
        return target

    async def reset_to_stage(self, session_id: str, stage: Union[str, Stage]) -> Session:
        """
        Set a session's stage directly.

        Completed stages at or after the target are dropped, progress is
        recomputed and a completed session becomes active again. The reset
        is logged as a system execution.

        Raises:
            SessionNotFoundError: If no session has this id
            SessionAlreadyRunningError: If a turn is in flight
            InvalidStageError: If the stage name is unknown
        """
        target = stage if isinstance(stage, Stage) else parse_stage(stage)
        lock = self._lock(session_id)
        if lock.locked():
            raise SessionAlreadyRunningError(session_id)

        async with lock:
            session = await self.get_session(session_id)
            previous = session.current_stage

            # No turn holds the lock, so a running record is left over from a dead process
            for execution in session.executions:
                if execution.status == ExecutionStatus.RUNNING:
                    execution.finish(ExecutionStatus.CANCELLED, error={"message": "superseded by reset"})

            session.current_stage = target
            session.completed_stages = [
                s for s in session.completed_stages if stage_index(s) < stage_index(target)
            ]
            session.progress = progress_for(target)
            session.status = SessionStatus.COMPLETED if is_terminal(target) else SessionStatus.ACTIVE
            session.metrics.stage_transitions += 1

            entry = AgentExecution(stage=target, agent_name=SYSTEM_AGENT)
            entry.finish(
                ExecutionStatus.COMPLETED,
                output={"action": "reset", "from_stage": previous.value, "to_stage": target.value},
            )
            session.executions.append(entry)
            session.add_message(
                "system",
                f"Session reset from {previous.value} to {target.value}",
                agent=SYSTEM_AGENT,
                metadata={"action": "reset"},
            )
            await self._save(session)

        logger.info(
            "orchestrator.stage.reset",
            extra={"session_id": session_id, "from_stage": previous.value, "to_stage": target.value}
        )
        return session

    async def abandon_idle_sessions(self, max_idle: Optional[timedelta] = None) -> List[str]:
        """
        Mark active or paused sessions idle for longer than ``max_idle`` as abandoned.

        Returns:
            Ids of the sessions that were abandoned
        """
        if max_idle is None:
            max_idle = timedelta(hours=self.config.orchestrator.idle_abandon_hours)
        now = utc_now()
        abandoned = []
        for session_id in await self.repository.list_ids():
            if self.is_running(session_id):
                continue
            session = await self.repository.get(session_id)
            if session is None or session.status not in (SessionStatus.ACTIVE, SessionStatus.PAUSED):
                continue
            if now - session.last_activity <= max_idle:
                continue
            session.status = SessionStatus.ABANDONED
            await self.repository.put(session_id, session)
            abandoned.append(session_id)

        if abandoned:
            logger.info("orchestrator.sessions.abandoned", extra={"count": len(abandoned)})
        return abandoned

    # =========================================================================
    # Turns
    # =========================================================================

    async def process_turn(self, session_id: str, raw_input: str) -> AsyncIterator[PartialResponse]:
        """
        Run one turn and yield partial-then-final snapshots.

        Args:
            session_id: Session to run against
            raw_input: User text, leading directives included

        Yields:
            PartialResponse snapshots; the last one has ``done`` set

        Raises:
            SessionNotFoundError: If no session has this id
        """
        turn = self._run_turn(session_id, raw_input)
        try:
            async for snapshot in turn:
                yield snapshot
        finally:
            await turn.aclose()

    async def retry_last_turn(self, session_id: str) -> AsyncIterator[PartialResponse]:
        """
        Re-run the most recent user input after a failed or cancelled turn.

        The input is replayed with its directives, and the user message is
        not added to the history a second time. When there is nothing to
        retry a single rejection snapshot is yielded.
        """
        turn = self._run_turn(session_id, None)
        try:
            async for snapshot in turn:
                yield snapshot
        finally:
            await turn.aclose()

    async def _run_turn(self, session_id: str, raw_input: Optional[str]) -> AsyncIterator[PartialResponse]:
        retry = raw_input is None
        lock = self._lock(session_id)
        if lock.locked():
            session = await self.get_session(session_id)
            yield self._reject(session, SessionAlreadyRunningError(session_id))
            return

        async with lock:
            session = await self.get_session(session_id)
            turn_id = str(uuid.uuid4())
            set_session_id(session_id)
            set_turn_id(turn_id)
            try:
                if session.running_execution() is not None:
                    yield self._reject(session, SessionAlreadyRunningError(session_id))
                    return

                if retry:
                    try:
                        raw_input = self._retry_input(session)
                    except NothingToRetryError as e:
                        yield self._reject(session, e)
                        return

                try:
                    parsed = parse_directives(raw_input)
                except StageflowError as e:
                    yield self._reject(session, e)
                    return

                if session.status in (SessionStatus.PAUSED, SessionStatus.ABANDONED):
                    logger.info(
                        "orchestrator.session.reactivated",
                        extra={"previous_status": session.status.value}
                    )
                    session.status = SessionStatus.ACTIVE

                if is_terminal(session.current_stage) and not parsed.forced:
                    yield self._session_complete(session)
                    return

                execution = self._execute(session, parsed, raw_input, retry)
                try:
                    async for snapshot in execution:
                        yield snapshot
                finally:
                    await execution.aclose()
            finally:
                set_turn_id(None)
                set_session_id(None)

    async def _execute(self, session: Session, parsed: ParsedInput, raw_input: str,
                       retry: bool) -> AsyncIterator[PartialResponse]:
        stage = parsed.force_stage or session.current_stage
        strategy = self.strategies[stage]
        ctx = TurnContext(text=parsed.text, test_mode=parsed.test_mode, forced=parsed.forced)
        recorded_stage = session.current_stage

        session.metrics.turn_count += 1
        if not retry:
            session.add_message(
                "user", parsed.text,
                metadata={"forced_stage": stage.value if parsed.forced else None,
                          "test_mode": parsed.test_mode},
            )
        execution = AgentExecution(
            stage=stage,
            agent_name=strategy.agent_name,
            user_input=raw_input,
            forced=parsed.forced,
            test_mode=parsed.test_mode,
        )
        session.executions.append(execution)
        await self._save(session)

        logger.info(
            "orchestrator.turn.started",
            extra={"stage": stage.value, "recorded_stage": recorded_stage.value,
                   "forced": parsed.forced, "test_mode": parsed.test_mode, "retry": retry}
        )

        assembler = ResponseAssembler(strategy.agent_name)
        extractor = FileExtractor() if strategy.extracts_files else None
        stamper = SnapshotStamper(stage, session.progress, extractor)
        raw_parts: List[str] = []
        model_stream: Optional[AsyncIterator[str]] = None
        failure: Optional[StageflowError] = None
        final: Optional[PartialResponse] = None

        try:
            strategy.check_prerequisites(session, ctx)
            with PerformanceLogger("model_stream_open", {"stage": stage.value}):
                request = strategy.build_request(session, ctx)
                model_stream = self.client.stream(request)

            timeout = self.config.orchestrator.turn_timeout
            deadline = asyncio.get_running_loop().time() + timeout
            while True:
                chunk = await self._next_chunk(model_stream, deadline, timeout)
                if chunk is None:
                    break
                raw_parts.append(chunk)
                for snapshot in self._absorb(chunk, assembler, extractor, stamper):
                    yield snapshot

            final = self._complete_turn(
                session, strategy, ctx, execution, assembler, extractor, "".join(raw_parts)
            )
        except StageflowError as e:
            failure = e
        except (GeneratorExit, asyncio.CancelledError):
            # A cancelled transport scope re-cancels every await; shield the bookkeeping
            with anyio.CancelScope(shield=True):
                if model_stream is not None:
                    await self._close_stream(model_stream)
                    model_stream = None
                await self._cancel_turn(session, execution, extractor)
            raise
        except Exception as e:
            logger.exception("orchestrator.turn.crashed", extra={"stage": stage.value})
            execution.finish(ExecutionStatus.FAILED, error={"message": str(e)})
            await self._save(session)
            raise
        finally:
            if model_stream is not None:
                await self._close_stream(model_stream)

        if failure is not None:
            yield await self._fail_turn(session, strategy, execution, failure, stamper.floor)
            return

        await self._save(session)
        logger.info(
            "orchestrator.turn.completed",
            extra={"stage": stage.value, "current_stage": session.current_stage.value,
                   "status": session.status.value, "progress": session.progress}
        )
        yield stamper.stamp(final, final=True, stage=session.current_stage, progress=session.progress)

    def _absorb(self, chunk: str, assembler: ResponseAssembler,
                extractor: Optional[FileExtractor],
                stamper: SnapshotStamper) -> List[PartialResponse]:
        """Feed one chunk to the consumers and stamp the resulting snapshots."""
        snapshots = assembler.feed(chunk)
        update = extractor.feed(chunk) if extractor is not None else None

        stamped = [stamper.stamp(snapshot) for snapshot in snapshots]
        if update is not None and update.changed:
            if stamped:
                stamper.attach_files(stamped[-1].system_state, update)
            else:
                stamped.append(stamper.stamp(assembler.snapshot(), file_update=update))
        return stamped

    async def _next_chunk(self, stream: AsyncIterator[str], deadline: float,
                          timeout: float) -> Optional[str]:
        """
        Read the next chunk within the turn deadline.

        Returns:
            The chunk, or None at end of stream

        Raises:
            ModelTimeoutError: If the deadline passes
            ModelCallError: For any non-stageflow failure from the client
        """
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise ModelTimeoutError(timeout)
        try:
            return await asyncio.wait_for(stream.__anext__(), remaining)
        except StopAsyncIteration:
            return None
        except asyncio.TimeoutError:
            raise ModelTimeoutError(timeout) from None
        except StageflowError:
            raise
        except Exception as e:
            raise ModelCallError(
                f"Model stream failed: {e}", provider=self.client.provider_name
            ) from e

    def _complete_turn(self, session: Session, strategy: AgentStrategy, ctx: TurnContext,
                       execution: AgentExecution, assembler: ResponseAssembler,
                       extractor: Optional[FileExtractor], raw_text: str) -> PartialResponse:
        """Close out a stream that ended normally; mutates the session."""
        assembler.finish()
        final = assembler.snapshot()
        if not assembler.completed:
            logger.warning(
                "orchestrator.turn.unstructured",
                extra={"stage": strategy.stage.value, "anomalies": len(assembler.anomalies)}
            )
            if not final.reply and raw_text.strip():
                final.immediate_display = ImmediateDisplay(
                    reply=raw_text.strip(),
                    agent_name=strategy.agent_name,
                    timestamp=utc_now().isoformat(),
                )

        if extractor is not None:
            extractor.complete_all()
            if final.system_state is None:
                final.system_state = SystemState(intent=STREAMING_INTENT)
            final.system_state.metadata["files"] = [f.to_dict() for f in extractor.files]

        outcome = strategy.interpret(final, session, ctx)
        strategy.record(session, outcome)
        execution.finish(ExecutionStatus.COMPLETED, output=outcome.output)
        session.add_message(
            "assistant", final.reply,
            agent=strategy.agent_name,
            metadata={"stage": strategy.stage.value, "execution_id": execution.execution_id},
        )
        self._apply_outcome(session, strategy.stage, ctx, outcome, final)
        return final

    def _apply_outcome(self, session: Session, stage: Stage, ctx: TurnContext,
                       outcome: StageOutcome, final: PartialResponse) -> None:
        at_own_stage = stage == session.current_stage
        if at_own_stage:
            session.progress = max(session.progress, progress_for(stage))

        if outcome.advance:
            self.advance_stage(session, from_stage=stage)

        # Done with nothing left to ask and nowhere to go ends the session
        if (outcome.done and not outcome.advance and final.interaction is None
                and not ctx.test_mode):
            session.status = SessionStatus.COMPLETED

        if session.status == SessionStatus.COMPLETED:
            logger.info("orchestrator.session.completed", extra={"session_id": session.session_id})

    async def _fail_turn(self, session: Session, strategy: AgentStrategy,
                         execution: AgentExecution, failure: StageflowError,
                         floor: int) -> PartialResponse:
        """Record a failed turn and build its error snapshot."""
        details = failure.to_dict()
        session.metrics.errors_encountered += 1
        session.add_message(
            "system", f"Error: {failure}",
            agent=SYSTEM_AGENT,
            metadata={"error": details},
        )
        execution.finish(ExecutionStatus.FAILED, error=details)
        await self._save(session)

        logger.warning(
            "orchestrator.turn.failed",
            extra={"stage": strategy.stage.value, "error_code": failure.error_code,
                   "detail": str(failure)}
        )
        return PartialResponse.error(
            str(failure),
            stage=session.current_stage.value,
            progress=max(floor, session.progress),
            agent_name=strategy.agent_name,
            metadata={
                "error_code": failure.error_code,
                "category": failure.category.value,
                "recoverable": failure.recoverable,
                "recovery": recommend_recovery(session, str(failure)).to_dict(),
            },
        )

    async def _cancel_turn(self, session: Session, execution: AgentExecution,
                           extractor: Optional[FileExtractor]) -> None:
        if extractor is not None:
            extractor.fail_streaming()
        execution.finish(ExecutionStatus.CANCELLED, error=TransportCancelled().to_dict())
        session.status = SessionStatus.PAUSED
        await self._save(session)
        logger.info("orchestrator.turn.cancelled", extra={"stage": execution.stage.value})

    async def _close_stream(self, stream: AsyncIterator[str]) -> None:
        aclose = getattr(stream, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:
            logger.warning("orchestrator.stream.close_failed", extra={"error": str(e)})

    # =========================================================================
    # Helpers
    # =========================================================================

    def _lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    async def _save(self, session: Session) -> None:
        session.touch()
        await self.repository.put(session.session_id, session)

    def _retry_input(self, session: Session) -> str:
        """Raw input of the last agent execution, if it can be retried."""
        agent_runs = [e for e in session.executions if e.agent_name != SYSTEM_AGENT]
        if not agent_runs:
            raise NothingToRetryError(session.session_id, "no previous turn")
        last = agent_runs[-1]
        if last.status not in RETRYABLE_STATUSES:
            raise NothingToRetryError(
                session.session_id, f"last turn {last.status.value}"
            )
        if last.user_input is None:
            raise NothingToRetryError(session.session_id, "last turn has no recorded input")
        logger.info("orchestrator.turn.retrying", extra={"execution_id": last.execution_id})
        return last.user_input

    def _reject(self, session: Session, error: StageflowError) -> PartialResponse:
        """Error snapshot for a turn refused before any strategy ran."""
        logger.info(
            "orchestrator.turn.rejected",
            extra={"error_code": error.error_code, "detail": str(error)}
        )
        return PartialResponse.error(
            str(error),
            stage=session.current_stage.value,
            progress=session.progress,
            agent_name=SYSTEM_AGENT,
            metadata={
                "error_code": error.error_code,
                "category": error.category.value,
                "recoverable": error.recoverable,
                "rejected": True,
            },
        )

    def _session_complete(self, session: Session) -> PartialResponse:
        return PartialResponse(
            immediate_display=ImmediateDisplay(
                reply="This session is complete. Reset it to a stage to keep working.",
                agent_name=SYSTEM_AGENT,
                timestamp=utc_now().isoformat(),
            ),
            system_state=SystemState(
                intent=SESSION_COMPLETE_INTENT,
                current_stage=session.current_stage.value,
                progress=max(session.progress, progress_for(session.current_stage)),
                done=True,
            ),
        )
