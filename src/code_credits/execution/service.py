from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from ..errors import InsufficientCredits, InvalidInput, NoCreditsAvailable
from ..logging.ledger_logger import LedgerLogger
from ..models.execution import CreditDecision, ExecutionRecord, ExecutionStatus, Exhausted
from ..services.credit_ledger import CreditLedger
from .delegate import DelegateResult, ExecutionDelegate


logger = logging.getLogger(__name__)


class ExecutionOutcome(BaseModel):
    record: ExecutionRecord
    output: Optional[str] = None
    error: Optional[str] = None


class ExecutionService:
    """
    select source (locked) -> run delegate (unlocked, time-bounded) -> commit (locked).

    Billing is pay-per-attempt: a failed run or a timeout still consumes the
    selected credit. If the selected pool was drained by a concurrent request
    while the code ran, one fallback source is tried; failing that, the run
    is recorded unbilled so the outcome is never lost.
    """

    def __init__(
        self,
        credits: CreditLedger,
        delegate: ExecutionDelegate,
        ledger: LedgerLogger,
        *,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._credits = credits
        self._delegate = delegate
        self._ledger = ledger
        self._timeout = timeout_seconds

    async def execute(
        self,
        user_id: str,
        language: str,
        code: str,
        input: str = "",
        now: Optional[datetime] = None,
    ) -> ExecutionOutcome:
        if not language or not code:
            raise InvalidInput("Language and code are required")
        if not self._delegate.supports(language):
            raise InvalidInput(
                f"Unsupported language: {language}",
                supported_languages=self._delegate.supported_languages(),
            )

        decision = await self._credits.select_source(user_id, now=now)
        if isinstance(decision, Exhausted):
            raise NoCreditsAvailable(
                decision.message,
                plan=decision.plan.value,
                remediation=decision.remediation,
                upgrade_options=decision.upgrade_options,
            )

        started = time.perf_counter()
        result = await self._run(decision, language, code, input)
        elapsed = round(time.perf_counter() - started, 3)

        status = ExecutionStatus.FAILED if result.failed else ExecutionStatus.SUCCESS
        record = await self._commit(decision, status, elapsed, language.lower(), result.error, now)
        return ExecutionOutcome(record=record, output=result.output, error=result.error)

    async def _run(
        self, decision: CreditDecision, language: str, code: str, input: str
    ) -> DelegateResult:
        try:
            return await asyncio.wait_for(
                self._delegate.run(language, code, input, request_id=decision.execution_id),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            return DelegateResult(error=f"Execution timed out after {self._timeout:g} seconds")
        except Exception as exc:
            logger.exception(
                "Execution delegate failed", extra={"execution_id": decision.execution_id}
            )
            await self._ledger.log_error(
                "Execution delegate failed",
                user_id=decision.user_id,
                execution_id=decision.execution_id,
                error=exc,
            )
            return DelegateResult(error="Execution service error")

    async def _commit(
        self,
        decision: CreditDecision,
        status: ExecutionStatus,
        elapsed: float,
        language: str,
        error: Optional[str],
        now: Optional[datetime],
    ) -> ExecutionRecord:
        kwargs = dict(execution_time=elapsed, language=language, error=error, now=now)
        try:
            return await self._credits.commit(decision, status, **kwargs)
        except InsufficientCredits:
            logger.info(
                "Credit source %s drained before commit, re-selecting",
                decision.credit_source.value,
                extra={"execution_id": decision.execution_id},
            )

        fallback = await self._credits.select_source(decision.user_id, now=now)
        if isinstance(fallback, CreditDecision):
            # Same execution id keeps the commit idempotent
            fallback = fallback.model_copy(update={"execution_id": decision.execution_id})
            try:
                return await self._credits.commit(fallback, status, **kwargs)
            except InsufficientCredits:
                pass
        return await self._credits.commit_unbilled(decision, status, **kwargs)
