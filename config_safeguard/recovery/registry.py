"""Dispatch a failure class to its recovery procedure and score the run.

Usage:
    registry = RecoveryRegistry(RecoveryContext.from_settings())
    outcome = registry.execute("service_start_failure", "tlp.service")
    if outcome.verdict is Verdict.SUCCESS:
        ...

Every step runs even when an earlier one failed; only a cancellation stops
the run early. Start, per-step results and the verdict go to the recovery
ledger as well as the regular logs.
"""

from __future__ import annotations

from typing import Iterable, Optional

from config_safeguard.domain.models import FailureClass, RecoveryOutcome, StepResult, Verdict
from config_safeguard.logging import EventLogger, LoggerFactory
from config_safeguard.storage.exceptions import UnknownRecoveryTagError

from .context import RecoveryContext
from .procedures import RecoveryProcedure, default_procedures


class RecoveryRegistry:
    """Closed set of recovery procedures keyed by FailureClass."""

    def __init__(
        self,
        context: RecoveryContext,
        procedures: Optional[Iterable[RecoveryProcedure]] = None,
    ):
        self.context = context
        self.ledger = context.ledger
        self._procedures: dict[FailureClass, RecoveryProcedure] = {}
        for procedure in procedures if procedures is not None else default_procedures():
            self._procedures[procedure.failure_class] = procedure

    def resolve(self, tag: str | FailureClass) -> RecoveryProcedure:
        """Procedure for a tag such as ``"network_failure"``.

        Raises:
            UnknownRecoveryTagError: If the tag names no registered procedure
        """
        known = [failure_class.value for failure_class in self._procedures]
        try:
            failure_class = tag if isinstance(tag, FailureClass) else FailureClass(tag)
        except ValueError:
            raise UnknownRecoveryTagError(str(tag), known) from None
        procedure = self._procedures.get(failure_class)
        if procedure is None:
            raise UnknownRecoveryTagError(failure_class.value, known)
        return procedure

    def list_mechanisms(self) -> list[RecoveryProcedure]:
        return list(self._procedures.values())

    def history(self, limit: int = 20) -> list[str]:
        """Last ``limit`` lines of the recovery ledger."""
        return self.ledger.tail(limit)

    def execute(self, tag: str | FailureClass, *args: str) -> RecoveryOutcome:
        """Run the procedure for ``tag`` and return its scored outcome.

        Raises:
            UnknownRecoveryTagError: If the tag is unknown
            ValueError: If the procedure's arguments are missing or malformed
        """
        procedure = self.resolve(tag)
        ctx = self.context
        steps = procedure.build_steps(ctx, *args)
        subject = procedure.subject(ctx, *args)
        mechanism = procedure.mechanism
        rlog = LoggerFactory.for_recovery()

        rlog.info(f"Attempting {mechanism} recovery for: {subject}")
        self.ledger.record(mechanism, "started", f"{subject} (operator: {ctx.operator})")

        results: list[StepResult] = []
        cancelled = False
        for index, step in enumerate(steps, start=1):
            if ctx.cancel.is_set():
                cancelled = True
                rlog.warning(
                    f"Recovery cancelled before step {index}/{len(steps)}: {ctx.cancel.reason}"
                )
                for skipped in steps[index - 1:]:
                    results.append(StepResult(skipped.name, False, "not attempted"))
                break

            rlog.info(f"Step {index}/{len(steps)}: {step.name}")
            detail = ""
            try:
                succeeded = bool(step.action())
            except Exception as error:
                succeeded = False
                detail = f"{type(error).__name__}: {error}"
                rlog.opt(exception=error).debug(f"Step raised: {step.name}")
            results.append(StepResult(step.name, succeeded, detail))
            EventLogger.log_recovery_step(rlog, mechanism, step.name, succeeded, detail=detail)
            self.ledger.record(
                mechanism, "step", f"{step.name}: {'ok' if succeeded else 'failed'}"
                + (f" ({detail})" if detail else "")
            )

        outcome = RecoveryOutcome(
            mechanism=mechanism,
            failure_class=procedure.failure_class.value,
            steps_total=len(steps),
            steps_succeeded=sum(1 for result in results if result.succeeded),
            threshold_percent=procedure.threshold,
            step_results=tuple(results),
            cancelled=cancelled,
        )
        verdict = outcome.verdict
        self.ledger.record(
            mechanism,
            "cancelled" if cancelled else verdict.value,
            f"{subject} - {outcome.success_rate_percent}% success rate",
        )
        if verdict is Verdict.SUCCESS:
            rlog.success(f"{mechanism} recovery completed: {outcome.summary()}")
        elif verdict is Verdict.PARTIAL:
            rlog.warning(f"{mechanism} recovery partially successful: {outcome.summary()}")
        else:
            rlog.error(f"{mechanism} recovery failed: {outcome.summary()}")
        return outcome
