"""Batch helper shared by the reconcilers.

A reconciliation run pushes a batch of candidates through a sequence of
stages. Each stage returns ``Ok(candidate)`` to keep an organization (possibly
annotated with fetched data) or ``Skip(reason)`` to drop it. Anticipated
failures of the remote calls a stage makes (``NotFoundException``,
``ExternalServiceError``) are converted into skips so one organization never
blocks the rest of the batch. Anything else propagates and aborts the run.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Sequence, Union

from cream.core.exceptions import ANTICIPATED_ERRORS
from cream.core.logging import _ContextualLogger, logger as default_logger
from cream.schemas import Candidate


@dataclass(frozen=True)
class Ok:
    """Keep the candidate for the next stage."""

    candidate: Candidate


@dataclass(frozen=True)
class Skip:
    """Drop the candidate from the rest of the run."""

    organization_id: int
    stage: str
    reason: str
    error: Optional[Exception] = None


StageResult = Union[Ok, Skip]
Stage = Callable[[Candidate], Awaitable[StageResult]]


@dataclass
class BatchResult:
    """Outcome of a reconciliation run."""

    check: str
    processed: List[Candidate] = field(default_factory=list)
    skipped: List[Skip] = field(default_factory=list)

    @property
    def processed_ids(self) -> List[int]:
        """Ids of the organizations that made it through every stage, in batch order."""
        return [c.organization_id for c in self.processed]

    def skip_reasons(self) -> dict[int, str]:
        """Map each skipped organization id to why it was dropped."""
        return {s.organization_id: s.reason for s in self.skipped}


async def run_stage(
    candidates: Sequence[Candidate],
    stage_name: str,
    stage: Stage,
    max_concurrency: int = 10,
    sequential: bool = False,
) -> List[StageResult]:
    """Run ``stage`` over every candidate and return one result per candidate, in order.

    Anticipated errors become ``Skip`` results. Other exceptions propagate.
    """

    async def _run_one(candidate: Candidate) -> StageResult:
        try:
            return await stage(candidate)
        except ANTICIPATED_ERRORS as e:
            return Skip(candidate.organization_id, stage_name, str(e), error=e)

    if sequential:
        return [await _run_one(c) for c in candidates]

    semaphore = asyncio.Semaphore(max_concurrency)

    async def _bounded(candidate: Candidate) -> StageResult:
        async with semaphore:
            return await _run_one(candidate)

    return list(await asyncio.gather(*(_bounded(c) for c in candidates)))


class ReconciliationBatch:
    """Runs candidates through filtering stages with bounded concurrency.

    Survivors keep their original relative order regardless of the order in
    which their remote calls complete.
    """

    def __init__(
        self,
        check: str,
        candidates: Sequence[Candidate],
        max_concurrency: int = 10,
        logger: Optional[_ContextualLogger] = None,
        skipped: Optional[Sequence[Skip]] = None,
    ) -> None:
        """Initialize the batch.

        Args:
            check: Name of the check, used in logs and on the result.
            candidates: The candidate set, in the order it should be processed.
            max_concurrency: Maximum number of stage calls in flight at once.
            logger: Logger to report skips on.
            skipped: Skips already recorded while building the candidate set.
        """
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.check = check
        self.max_concurrency = max_concurrency
        self.logger = (logger or default_logger).with_context(check=check)
        self._survivors: List[Candidate] = list(candidates)
        self._skipped: List[Skip] = []
        for skip in skipped or []:
            self._record(skip)

    @property
    def survivors(self) -> List[Candidate]:
        """Candidates still in the batch, in order."""
        return list(self._survivors)

    def keep(
        self,
        stage_name: str,
        predicate: Callable[[Candidate], bool],
        reason: Union[str, Callable[[Candidate], str]],
    ) -> None:
        """Apply an in-memory filter. Errors raised by ``predicate`` propagate."""
        kept = []
        for candidate in self._survivors:
            if predicate(candidate):
                kept.append(candidate)
            else:
                why = reason(candidate) if callable(reason) else reason
                self._record(Skip(candidate.organization_id, stage_name, why))
        self._survivors = kept
        self._log_stage(stage_name)

    async def apply(self, stage_name: str, stage: Stage, sequential: bool = False) -> None:
        """Run an async stage over every survivor.

        Args:
            stage_name: Name used in logs and skip records.
            stage: Coroutine function returning ``Ok`` or ``Skip``.
            sequential: Run one candidate at a time, in order (used for publishing).
        """
        results = await run_stage(
            self._survivors,
            stage_name,
            stage,
            max_concurrency=self.max_concurrency,
            sequential=sequential,
        )

        kept = []
        for result in results:
            if isinstance(result, Ok):
                kept.append(result.candidate)
            else:
                self._record(result)
        self._survivors = kept
        self._log_stage(stage_name)

    def result(self) -> BatchResult:
        """Freeze the batch into its outcome."""
        return BatchResult(
            check=self.check, processed=list(self._survivors), skipped=list(self._skipped)
        )

    def _record(self, skip: Skip) -> None:
        self._skipped.append(skip)
        self.logger.with_context(organization_id=skip.organization_id).warning(
            f"Dropping organization {skip.organization_id} at {skip.stage}: {skip.reason}"
        )

    def _log_stage(self, stage_name: str) -> None:
        self.logger.debug(
            f"{stage_name}: {len(self._survivors)} organizations remaining "
            f"({len(self._skipped)} skipped so far)"
        )
