"""Workflow executor for the ADT object lifecycle.

One run drives a single object through

    validate -> create -> lock -> precheck -> update -> unlock -> postcheck -> activate

as a state machine. Failures at or after ``locked`` pass through ``compensating``
(the lock is released) before ``failed``; earlier failures go straight to
``failed``. The caller always receives a ``WorkflowOutcome``, never an exception.
"""

import asyncio
import logging
from contextlib import contextmanager
from typing import Dict, List, Optional, Set

from config import env_manager
from .adapters import ObjectAdapter
from .check_gate import CheckGate
from .errors import AdtError, classify, resolve_step_kind
from .lock_manager import LockManager
from .lock_registry import LockRegistry
from .session import SessionContext
from .types import (
    AdapterResult,
    ErrorKind,
    ObjectDescriptor,
    WorkflowMode,
    WorkflowOptions,
    WorkflowOutcome,
    WorkflowState,
    WorkflowStep,
)

logger = logging.getLogger(__name__)

# Valid transitions: {from_state: {to_state, ...}}
TRANSITIONS: Dict[WorkflowState, Set[WorkflowState]] = {
    WorkflowState.START: {
        WorkflowState.VALIDATED,
        # update workflows start at the lock
        WorkflowState.LOCKED,
        # benign short circuit (already exists, delete finished)
        WorkflowState.DONE,
        WorkflowState.FAILED,
    },
    WorkflowState.VALIDATED: {
        WorkflowState.CREATED,
        WorkflowState.DONE,
        WorkflowState.FAILED,
    },
    WorkflowState.CREATED: {
        WorkflowState.LOCKED,
        # created without content
        WorkflowState.ACTIVATED,
        WorkflowState.DONE,
        WorkflowState.FAILED,
    },
    WorkflowState.LOCKED: {WorkflowState.PRECHECKED, WorkflowState.COMPENSATING},
    WorkflowState.PRECHECKED: {WorkflowState.UPDATED, WorkflowState.COMPENSATING},
    WorkflowState.UPDATED: {WorkflowState.UNLOCKED, WorkflowState.FAILED},
    WorkflowState.UNLOCKED: {WorkflowState.POSTCHECKED, WorkflowState.FAILED},
    WorkflowState.POSTCHECKED: {
        WorkflowState.ACTIVATED,
        WorkflowState.DONE,
        WorkflowState.FAILED,
    },
    WorkflowState.ACTIVATED: {WorkflowState.DONE},
    WorkflowState.COMPENSATING: {WorkflowState.FAILED},
    WorkflowState.DONE: set(),
    WorkflowState.FAILED: set(),
}


class StepFailed(Exception):
    """Unwinds a run from the step that failed"""

    def __init__(self, step: Optional[WorkflowStep], error: BaseException):
        super().__init__(str(error))
        self.step = step
        self.error = error

    @property
    def message(self) -> str:
        if isinstance(self.error, AdtError):
            return self.error.message
        return str(self.error) or type(self.error).__name__


@contextmanager
def _step_errors(step: Optional[WorkflowStep], session_ctx: SessionContext):
    """Translate anything a step raises into StepFailed"""
    try:
        yield
    except StepFailed:
        raise
    except AdtError as e:
        session_ctx.advance(e.session_state)
        raise StepFailed(step, e) from e
    except Exception as e:
        raise StepFailed(step, e) from e


class WorkflowRun:
    """State and bookkeeping of one workflow run"""

    def __init__(self, descriptor: ObjectDescriptor, options: WorkflowOptions):
        self.descriptor = descriptor
        self.options = options
        self.state = WorkflowState.START
        self.steps_completed: List[WorkflowStep] = []
        self.warnings: List[str] = []
        self.activation_warnings: List[str] = []
        self.diagnostics: List[str] = []
        self.benign_kind: Optional[ErrorKind] = None
        self.benign_message: Optional[str] = None

    def transition(self, target: WorkflowState) -> None:
        if target not in TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Invalid workflow transition {self.state.value} -> {target.value}"
            )
        logger.debug(
            f"{self.descriptor.label}: {self.state.value} -> {target.value}"
        )
        self.state = target

    def complete(
        self, step: WorkflowStep, target: Optional[WorkflowState] = None
    ) -> None:
        self.steps_completed.append(step)
        if target is not None:
            self.transition(target)

    def short_circuit(self, kind: ErrorKind, message: str) -> None:
        """Finish successfully because the desired end state already holds"""
        self.benign_kind = kind
        self.benign_message = message
        self.transition(WorkflowState.DONE)

    def _outcome(self, session_ctx: SessionContext, **kwargs) -> WorkflowOutcome:
        return WorkflowOutcome(
            steps_completed=list(self.steps_completed),
            activation_warnings=list(self.activation_warnings),
            warnings=list(self.warnings),
            diagnostics=list(self.diagnostics),
            final_state=self.state,
            session_state=session_ctx.current,
            **kwargs,
        )

    def finish(self, session_ctx: SessionContext) -> WorkflowOutcome:
        return self._outcome(
            session_ctx,
            success=True,
            error_kind=self.benign_kind,
            error_message=self.benign_message,
        )

    def fail(
        self, session_ctx: SessionContext, kind: ErrorKind, message: str
    ) -> WorkflowOutcome:
        self.transition(WorkflowState.FAILED)
        return self._outcome(
            session_ctx, success=False, error_kind=kind, error_message=message
        )


class WorkflowExecutor:
    """Drives one object through its lifecycle with a given adapter.

    Args:
        adapter: Lifecycle operations for the object's kind
        lock_registry: Optional registry recording outstanding locks
        validation_policy: "halt" or "proceed" on a failed name validation;
            defaults to the ``adt_validation_failure_policy`` setting
    """

    def __init__(
        self,
        adapter: ObjectAdapter,
        lock_registry: Optional[LockRegistry] = None,
        validation_policy: Optional[str] = None,
    ):
        self.adapter = adapter
        self.lock_registry = lock_registry
        self.validation_policy = validation_policy
        self.check_gate = CheckGate(adapter)

    async def run(
        self,
        descriptor: ObjectDescriptor,
        payload: Optional[str],
        session_ctx: SessionContext,
        options: Optional[WorkflowOptions] = None,
    ) -> WorkflowOutcome:
        """Run the workflow for one object.

        Args:
            descriptor: The object to work on
            payload: Source or metadata content; None creates without content
            session_ctx: Session to thread through every call, bootstrapped if
                it has not been started
            options: Mode, activation flag, validation policy and deadline

        Returns:
            WorkflowOutcome describing what happened
        """
        options = options or WorkflowOptions()
        run = WorkflowRun(descriptor, options)
        logger.info(f"Starting {options.mode.value} workflow for {descriptor.label}")

        try:
            if options.timeout_seconds:
                await asyncio.wait_for(
                    self._execute(run, payload, session_ctx),
                    timeout=options.timeout_seconds,
                )
            else:
                await self._execute(run, payload, session_ctx)
        except StepFailed as failure:
            kind = resolve_step_kind(classify(failure.error), failure.step)
            step_name = failure.step.value if failure.step else "session"
            logger.error(
                f"{options.mode.value} workflow for {descriptor.label} failed at "
                f"{step_name}: [{kind.value}] {failure.message}"
            )
            return run.fail(session_ctx, kind, failure.message)
        except asyncio.TimeoutError:
            message = (
                f"Workflow for {descriptor.label} exceeded its "
                f"{options.timeout_seconds}s deadline in state {run.state.value}"
            )
            logger.error(message)
            return run.fail(session_ctx, ErrorKind.CANCELLED, message)

        outcome = run.finish(session_ctx)
        logger.info(
            f"{options.mode.value} workflow for {descriptor.label} completed: "
            f"{[step.value for step in outcome.steps_completed]}"
        )
        return outcome

    def _validation_policy(self, run: WorkflowRun) -> str:
        return (
            run.options.validation_policy
            or self.validation_policy
            or env_manager.get_validation_failure_policy()
        )

    async def _call(
        self, step: WorkflowStep, session_ctx: SessionContext, operation, *args, **kwargs
    ) -> AdapterResult:
        logger.debug(f"Running {step.value}")
        with _step_errors(step, session_ctx):
            result = await operation(*args, session=session_ctx.current, **kwargs)
        session_ctx.advance(result.session)
        return result

    async def _execute(
        self, run: WorkflowRun, payload: Optional[str], session_ctx: SessionContext
    ) -> None:
        descriptor = run.descriptor
        mode = run.options.mode

        if not session_ctx.started:
            with _step_errors(None, session_ctx):
                await session_ctx.bootstrap()

        if mode == WorkflowMode.UPDATE and payload is None:
            raise StepFailed(
                WorkflowStep.UPDATE,
                AdtError(
                    f"Content is required to update {descriptor.label}",
                    kind=ErrorKind.VALIDATION_FAILED,
                ),
            )

        if mode == WorkflowMode.DELETE:
            await self._delete(run, session_ctx)
            return

        if mode == WorkflowMode.CREATE:
            if not await self._validate(run, session_ctx):
                return
            if not await self._create(run, session_ctx):
                return
            if payload is None:
                if run.options.activate:
                    await self._activate(run, session_ctx)
                run.transition(WorkflowState.DONE)
                return

        await self._edit(run, payload, session_ctx)
        await self._postcheck(run, session_ctx)
        if run.options.activate:
            await self._activate(run, session_ctx)
        run.transition(WorkflowState.DONE)

    async def _validate(self, run: WorkflowRun, session_ctx: SessionContext) -> bool:
        """Validate the name; False when the run short-circuited"""
        try:
            await self._call(
                WorkflowStep.VALIDATE, session_ctx, self.adapter.validate, run.descriptor
            )
        except StepFailed as failure:
            kind = classify(failure.error)
            if kind == ErrorKind.ALREADY_EXISTS:
                logger.info(f"{run.descriptor.label} already exists: {failure.message}")
                run.complete(WorkflowStep.VALIDATE)
                run.short_circuit(kind, failure.message)
                return False
            if (
                kind in (ErrorKind.UNKNOWN, ErrorKind.VALIDATION_FAILED)
                and self._validation_policy(run) == "proceed"
            ):
                warning = (
                    f"Validation of {run.descriptor.label} failed, creating anyway: "
                    f"{failure.message}"
                )
                logger.warning(warning)
                run.warnings.append(warning)
                run.transition(WorkflowState.VALIDATED)
                return True
            raise
        run.complete(WorkflowStep.VALIDATE, WorkflowState.VALIDATED)
        return True

    async def _create(self, run: WorkflowRun, session_ctx: SessionContext) -> bool:
        """Create the object; False when the run short-circuited"""
        try:
            await self._call(
                WorkflowStep.CREATE, session_ctx, self.adapter.create, run.descriptor
            )
        except StepFailed as failure:
            if classify(failure.error) == ErrorKind.ALREADY_EXISTS:
                logger.info(f"{run.descriptor.label} already exists: {failure.message}")
                run.complete(WorkflowStep.CREATE)
                run.short_circuit(ErrorKind.ALREADY_EXISTS, failure.message)
                return False
            raise
        run.complete(WorkflowStep.CREATE, WorkflowState.CREATED)
        return True

    async def _edit(
        self, run: WorkflowRun, payload: str, session_ctx: SessionContext
    ) -> None:
        """Lock, check the proposed content, update and unlock"""
        descriptor = run.descriptor
        lock_manager = LockManager(self.adapter, self.lock_registry)
        locked = False

        try:
            async with lock_manager.hold(descriptor, session_ctx, run.diagnostics) as lease:
                locked = True
                run.complete(WorkflowStep.LOCK, WorkflowState.LOCKED)
                try:
                    await self._precheck(run, payload, session_ctx)
                    await self._call(
                        WorkflowStep.UPDATE,
                        session_ctx,
                        self.adapter.update,
                        descriptor,
                        payload,
                        lease.handle,
                    )
                    run.complete(WorkflowStep.UPDATE, WorkflowState.UPDATED)
                except BaseException:
                    run.transition(WorkflowState.COMPENSATING)
                    raise
        except StepFailed:
            raise
        except Exception as e:
            # Raised by the lock itself, or by the release after a clean block
            step = WorkflowStep.UNLOCK if locked else WorkflowStep.LOCK
            if isinstance(e, AdtError):
                session_ctx.advance(e.session_state)
            raise StepFailed(step, e) from e

        run.complete(WorkflowStep.UNLOCK, WorkflowState.UNLOCKED)

    async def _precheck(
        self, run: WorkflowRun, payload: str, session_ctx: SessionContext
    ) -> None:
        with _step_errors(WorkflowStep.PRECHECK, session_ctx):
            check = await self.check_gate.check(
                run.descriptor, session_ctx, proposed_content=payload, version="inactive"
            )

        if not check.passed and not check.benign:
            raise StepFailed(
                WorkflowStep.PRECHECK,
                AdtError(
                    f"Check of proposed content for {run.descriptor.label} failed: "
                    f"{check.summary()}",
                    kind=ErrorKind.CHECK_FAILED,
                    session_state=session_ctx.current,
                ),
            )

        run.warnings.extend(f"Pre-check {message}" for message in check.warnings)
        run.complete(WorkflowStep.PRECHECK, WorkflowState.PRECHECKED)

    async def _postcheck(self, run: WorkflowRun, session_ctx: SessionContext) -> None:
        """Re-check the persisted inactive version; problems become warnings"""
        try:
            check = await self.check_gate.check(
                run.descriptor, session_ctx, version="inactive"
            )
        except Exception as e:
            warning = f"Post-check of {run.descriptor.label} could not run: {e}"
            logger.warning(warning)
            run.warnings.append(warning)
            run.transition(WorkflowState.POSTCHECKED)
            return

        for message in check.errors + check.warnings:
            run.warnings.append(f"Post-check {message}")
        if not check.passed:
            logger.warning(
                f"Post-check of {run.descriptor.label} reported: {check.summary()}"
            )
        run.complete(WorkflowStep.POSTCHECK, WorkflowState.POSTCHECKED)

    async def _activate(self, run: WorkflowRun, session_ctx: SessionContext) -> None:
        result = await self._call(
            WorkflowStep.ACTIVATE, session_ctx, self.adapter.activate, run.descriptor
        )
        activation = result.data
        run.activation_warnings.extend(activation.warnings)

        if not activation.activated:
            details = "; ".join(activation.errors) or "activation was not executed"
            raise StepFailed(
                WorkflowStep.ACTIVATE,
                AdtError(
                    f"Activation of {run.descriptor.label} failed: {details}",
                    kind=ErrorKind.ACTIVATION_FAILED,
                    session_state=session_ctx.current,
                ),
            )

        if activation.warnings:
            logger.warning(
                f"Activation of {run.descriptor.label} produced warnings: {activation.warnings}"
            )
        run.complete(WorkflowStep.ACTIVATE, WorkflowState.ACTIVATED)

    async def _delete(self, run: WorkflowRun, session_ctx: SessionContext) -> None:
        try:
            await self._call(
                WorkflowStep.DELETE, session_ctx, self.adapter.delete, run.descriptor
            )
        except StepFailed as failure:
            if classify(failure.error) == ErrorKind.NOT_FOUND:
                logger.info(f"{run.descriptor.label} does not exist, nothing to delete")
                run.complete(WorkflowStep.DELETE)
                run.short_circuit(ErrorKind.NOT_FOUND, failure.message)
                return
            raise
        run.complete(WorkflowStep.DELETE)
        run.transition(WorkflowState.DONE)
